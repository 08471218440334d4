"""DAB library components: configuration, logging, telemetry and metrics."""
