"""Resource model."""
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base


class Resource(Base):
    """A shared file or link offered on the marketplace."""

    __tablename__ = "resources"

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), nullable=False, unique=True, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=False, default="")
    file_url = Column(String(2048), nullable=False)
    category_id = Column(Integer, nullable=True, index=True)
    author_id = Column(String(64), nullable=False, index=True)
    status = Column(
        String(20), nullable=False, default="pending"
    )  # pending, approved, rejected
    rating_avg = Column(Float, nullable=False, default=0)
    rating_count = Column(Integer, nullable=False, default=0)
    view_count = Column(Integer, nullable=False, default=0)
    access_count = Column(Integer, nullable=False, default=0)
    is_featured = Column(Boolean, nullable=False, default=False)
    is_free = Column(Boolean, nullable=False, default=True)
    credits = Column(Integer, nullable=False, default=0)
    top = Column(Boolean, nullable=False, default=False)

    # AI review
    ai_risk_score = Column(Integer, nullable=True)
    ai_review_result = Column(Text, nullable=True)
    ai_reviewed_at = Column(DateTime, nullable=True)
    auto_approved = Column(Boolean, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<Resource(id={self.id}, uuid='{self.uuid}', title='{self.title}')>"
