"""Ingestion layer.

This package contains adapters that turn inbound push-channel frames into
typed location updates.
"""

__all__: list[str] = []
