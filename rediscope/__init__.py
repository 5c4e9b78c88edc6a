"""Client-side engine for browsing Redis deployments."""

__version__ = "0.1.0"
