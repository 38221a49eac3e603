# src/circlekit/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .communities import router as communities_router
from .courses import router as courses_router
from .posts import router as posts_router

__all__ = [
    "communities_router",
    "courses_router",
    "posts_router",
]
