"""pairlink - pair companion mobile clients with a desktop broker."""

__version__ = "0.1.0"
