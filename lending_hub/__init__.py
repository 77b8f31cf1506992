"""lending-hub: multi-protocol lending aggregation for Base."""

__version__ = "0.1.0"
