"""UI-facing HTTP bridge."""
