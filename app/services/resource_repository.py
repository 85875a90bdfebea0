"""Long-term store access for users, categories, resources and tags."""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.category import Category
from app.models.resource import Resource
from app.models.tag import ResourceTag, Tag
from app.models.user import User

logger = logging.getLogger(__name__)


def user_exists(db: Session, user_id: str) -> bool:
    return db.execute(select(User.uuid).where(User.uuid == user_id)).first() is not None


def get_category_map(db: Session) -> dict[str, int]:
    """Category name -> id, for every category in the store."""
    rows = db.execute(select(Category.id, Category.name).order_by(Category.id)).all()
    return {name: category_id for category_id, name in rows}


def insert_resources(db: Session, rows: list[dict]) -> dict[str, int]:
    """
    Insert resources in a single statement.

    Args:
        db: Database session
        rows: Column dicts, each with a pre-generated ``uuid``

    Returns:
        Mapping of resource uuid to its new row id
    """
    if not rows:
        return {}

    logger.debug(f"⚡ Inserting {len(rows)} resources")
    stmt = insert(Resource).values(rows).returning(Resource.id, Resource.uuid)
    try:
        inserted = db.execute(stmt).all()
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    return {resource_uuid: resource_id for resource_id, resource_uuid in inserted}


def add_resource_tags(db: Session, resource_id: int, tag_names: list[str]) -> int:
    """
    Attach tags to a resource, creating missing tags.

    Returns:
        Number of tags newly attached
    """
    names = []
    for name in tag_names:
        name = name.strip()[:100]
        if name and name not in names:
            names.append(name)
    if not names:
        return 0

    existing = {
        tag.name: tag
        for tag in db.execute(select(Tag).where(Tag.name.in_(names))).scalars()
    }
    for name in names:
        if name not in existing:
            tag = Tag(name=name, usage_count=0)
            db.add(tag)
            existing[name] = tag
    db.flush()

    linked = set(
        db.execute(
            select(ResourceTag.tag_id).where(ResourceTag.resource_id == resource_id)
        ).scalars()
    )

    attached = 0
    for name in names:
        tag = existing[name]
        if tag.id in linked:
            continue
        db.add(ResourceTag(resource_id=resource_id, tag_id=tag.id))
        tag.usage_count = (tag.usage_count or 0) + 1
        attached += 1

    db.commit()
    return attached


def update_resource_ai_review(
    db: Session,
    resource_id: int,
    risk_score: int,
    reasoning: str,
    auto_approved: bool,
    reviewed_at: Optional[datetime] = None,
) -> None:
    values = {
        "ai_risk_score": risk_score,
        "ai_review_result": reasoning,
        "ai_reviewed_at": reviewed_at or datetime.now(timezone.utc).replace(tzinfo=None),
        "auto_approved": auto_approved,
    }
    if auto_approved:
        values["status"] = "approved"

    db.execute(update(Resource).where(Resource.id == resource_id).values(**values))
    db.commit()
