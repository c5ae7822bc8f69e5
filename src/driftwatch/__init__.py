"""Azure infrastructure drift analysis worker."""

__version__ = "0.1.0"
