"""Release pipeline coordinator."""

__version__ = "0.4.0"
