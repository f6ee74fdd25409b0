"""dotevm: versioned, encrypted env files with offline-first sync."""

__version__ = "0.1.0"
