"""Identity bridge between an external identity provider and first-party bearer tokens."""

__version__ = "1.0.0"
