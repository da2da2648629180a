"""Shared-region parsing, priority feedback, metrics and DCU allocation for shared GPU and DCU devices."""

__version__ = "0.1.0"