"""HTTP service for the entitlement enforcement engine."""

__version__ = "0.1.0"
