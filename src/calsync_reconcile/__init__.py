"""Two-way calendar reconciliation engine."""

__version__ = "1.0.0"
