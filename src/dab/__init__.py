"""
DAB (Diagnostic Agent Bridge) - Human-approved network diagnostics for chat agents.

This package provides a conversational client that discovers tools exposed by
MCP tool providers, gates every effectful call behind human approval, and
streams live progress of long-running diagnostics, plus a bundled network
diagnostics provider.
"""

__version__ = "1.0.0"
__author__ = "DAB Development Team"

__all__ = [
    "models",
    "services",
    "lib",
    "provider",
    "cli"
]
