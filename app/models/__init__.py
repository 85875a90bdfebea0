"""Database models."""
from app.models.batch_log import BatchLog
from app.models.category import Category
from app.models.resource import Resource
from app.models.tag import ResourceTag, Tag
from app.models.user import User

__all__ = ["BatchLog", "Category", "Resource", "ResourceTag", "Tag", "User"]
