"""Quire: translate documents unit by unit and rebuild them in place."""

__version__ = "0.1.0"
