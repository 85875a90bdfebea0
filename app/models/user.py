"""User model (read-only from the batch upload point of view)."""
from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from app.database import Base


class User(Base):
    __tablename__ = "users"

    uuid = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
