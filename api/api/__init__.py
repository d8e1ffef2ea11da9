"""meterbridge HTTP service: admission, charging and run tracking endpoints."""

__version__ = "0.1.0"
