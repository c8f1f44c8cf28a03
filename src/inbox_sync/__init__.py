"""Real-time conversation list synchronization."""
