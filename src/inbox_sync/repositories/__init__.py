"""History API repositories."""
