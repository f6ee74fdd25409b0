"""Accounts: register, login, refresh."""
