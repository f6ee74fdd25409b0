"""Local SQLite store."""
