from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from .base import Base


# --- Content Item Model ---
class ContentItemORM(Base):
    __tablename__ = "content_items"

    content_item_id = Column(String, primary_key=True, index=True)
    # hero, cta, service, event, testimonial, lead_magnet, video
    type = Column(String, nullable=False, index=True)

    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    image_ref = Column(String, nullable=True)

    order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    overrides = relationship(
        "VisibilityOverrideORM",
        back_populates="content_item",
        cascade="all, delete-orphan",
    )


# --- Persona x Funnel Stage Override Model ---
class VisibilityOverrideORM(Base):
    __tablename__ = "visibility_overrides"

    override_id = Column(String, primary_key=True)
    content_item_id = Column(
        String,
        ForeignKey("content_items.content_item_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # NULL on either axis is a wildcard matching any value on that axis
    persona = Column(String, nullable=True)
    funnel_stage = Column(String, nullable=True)

    is_visible = Column(Boolean, default=True, nullable=False)
    order = Column(Integer, nullable=True)

    title_override = Column(Text, nullable=True)
    description_override = Column(Text, nullable=True)
    image_ref_override = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    content_item = relationship("ContentItemORM", back_populates="overrides")


# NULLs compare distinct inside a plain unique constraint, so the wildcard
# slots are folded to '' for the uniqueness check.
Index(
    "ux_visibility_override_slot",
    VisibilityOverrideORM.content_item_id,
    func.coalesce(VisibilityOverrideORM.persona, ""),
    func.coalesce(VisibilityOverrideORM.funnel_stage, ""),
    unique=True,
)
