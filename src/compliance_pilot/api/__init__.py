"""HTTP API for the controls engine."""
