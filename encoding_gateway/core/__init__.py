"""Core module for configuration, persistence and observability."""

from encoding_gateway.core.config import settings
from encoding_gateway.core.database import Base, get_session

__all__ = [
    "settings",
    "Base",
    "get_session",
]
