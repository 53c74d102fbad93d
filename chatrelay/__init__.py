"""Streaming chat relay with key rotation, token budgets and balance lookups."""

__all__ = [
    "create_app",
]

from .app import create_app
