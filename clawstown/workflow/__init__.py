"""Per-worker state machine and work loop."""
