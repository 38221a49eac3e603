# src/circlekit/models/__init__.py
"""SQLAlchemy models for the circlekit application."""

from .community import Community, CommunityMember
from .course import Course, CourseLesson, CourseSection
from .post import Comment, Post, PostLike
from .profile import Profile

__all__ = [
    "Community", "CommunityMember",
    "Course", "CourseSection", "CourseLesson",
    "Comment", "Post", "PostLike",
    "Profile",
]
