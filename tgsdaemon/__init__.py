"""Session manager for the typegen schema parser daemon."""

__version__ = "0.1.0"
