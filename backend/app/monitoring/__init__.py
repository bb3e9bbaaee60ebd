"""Monitoring helpers and metric registry for the realtime service."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
