"""Data access helpers: the query/command interface over the relational store."""

from .community_repo import CommunityRepository
from .course_repo import CourseRepository
from .post_repo import PostRepository

__all__ = ["CommunityRepository", "CourseRepository", "PostRepository"]
