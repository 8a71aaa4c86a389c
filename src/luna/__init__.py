"""Luna — a spoken journaling companion."""

__version__ = "0.1.0"
