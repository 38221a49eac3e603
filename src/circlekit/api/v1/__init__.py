# src/circlekit/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import communities_router, courses_router, posts_router

__all__ = [
    "communities_router",
    "courses_router",
    "posts_router",
]
