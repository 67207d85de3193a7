"""Database layer for lesson intelligence system."""

from .database_manager import DatabaseManager

__all__ = ["DatabaseManager"]
