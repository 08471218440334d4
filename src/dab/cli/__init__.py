"""Command line interface for DAB."""
