"""dotevm remote store (FastAPI)."""

__version__ = "0.1.0"
