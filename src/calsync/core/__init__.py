"""Process-level plumbing: logging, telemetry, metrics and the state store."""
