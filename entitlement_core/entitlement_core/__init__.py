"""Entitlement enforcement engine: value model, cache, and state layer."""

__version__ = "0.1.0"
