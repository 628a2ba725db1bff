"""Command-line internet radio client for Icecast/SHOUTcast streams."""

__version__ = "1.0.0"
