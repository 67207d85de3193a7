"""
CLI interface for lesson intelligence system.
"""

from .main import main


__all__ = ["main"]
