"""Recording-to-artifact pipeline core for Khutbah Notes."""

__version__ = "0.4.0"
