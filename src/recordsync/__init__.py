"""recordsync - Synchronized record store for a hosted backend."""

__version__ = "0.1.0"
