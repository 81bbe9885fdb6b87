"""Self-hosted mirror, cache and proxy for the Zed extension marketplace and releases."""

__version__ = "0.3.0"
