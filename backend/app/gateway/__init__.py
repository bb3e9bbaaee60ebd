"""Persistence gateway implementations."""

from .memory import InMemoryGateway
from .sql import SQLGateway

__all__ = ["InMemoryGateway", "SQLGateway"]
