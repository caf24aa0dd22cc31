"""Table booking engine: weekly windows, availability search and reservations."""

__version__ = "1.0.0"
