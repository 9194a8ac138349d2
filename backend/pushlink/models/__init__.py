"""Database models."""
from .settings import Setting

__all__ = ["Setting"]
