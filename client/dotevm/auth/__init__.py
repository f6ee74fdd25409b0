"""Login, registration and credential storage."""
