"""Per-user content encryption."""
