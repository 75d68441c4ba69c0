"""stackctl: coordination layer for a declarative deployment CLI."""

__version__ = "0.1.0"
