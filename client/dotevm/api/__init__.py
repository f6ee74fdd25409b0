"""HTTP client for the remote store."""
