"""Pending operations and the sync reconciler."""
