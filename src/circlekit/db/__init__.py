# src/circlekit/db/__init__.py
"""Database configuration and utilities."""

from .session import Base, SessionLocal, get_db, make_session_factory

__all__ = ["Base", "get_db", "make_session_factory", "SessionLocal"]
