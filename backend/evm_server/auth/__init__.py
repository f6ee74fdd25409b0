"""JWT and request authentication."""
