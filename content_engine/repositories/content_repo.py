import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from content_engine.core.errors import ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.orm.content import ContentItemORM
from content_engine.models.orm.experiment import VariantORM
from content_engine.models.schemas.content import (
    ContentItemCreateModel,
    ContentItemUpdateModel,
)

logger = get_logger(__name__)


class ContentRepository:
    """Read access to base content items, plus the authoring write path."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, content_item_id: str) -> Optional[ContentItemORM]:
        return self.db.get(ContentItemORM, content_item_id)

    def list_by_type(
        self, content_type: str, active_only: bool = True
    ) -> list[ContentItemORM]:
        stmt = select(ContentItemORM).where(ContentItemORM.type == content_type)

        if active_only:
            stmt = stmt.where(ContentItemORM.is_active.is_(True))

        stmt = stmt.order_by(ContentItemORM.order, ContentItemORM.content_item_id)
        return self.db.scalars(stmt).all()

    def create_content_item(self, item_data: ContentItemCreateModel) -> ContentItemORM:
        item_dict = item_data.model_dump()
        item_dict["content_item_id"] = str(uuid.uuid4())

        db_item = ContentItemORM(**item_dict)
        try:
            self.db.add(db_item)
            self.db.commit()
            self.db.refresh(db_item)
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Invalid content item: {str(e).splitlines()[0]}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("content_item_create_failed", error=str(e))
            raise RuntimeError("A database error occurred during content item creation")

        return db_item

    def update_content_item(
        self, content_item_id: str, updates: ContentItemUpdateModel
    ) -> Optional[ContentItemORM]:
        db_item = self.get(content_item_id)
        if db_item is None:
            return None

        for field, value in updates.model_dump(exclude_unset=True).items():
            setattr(db_item, field, value)

        try:
            self.db.commit()
            self.db.refresh(db_item)
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Invalid content item: {str(e).splitlines()[0]}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "content_item_update_failed",
                content_item_id=content_item_id,
                error=str(e),
            )
            raise RuntimeError("A database error occurred during content item update")

        return db_item

    def list_items(
        self, content_type: Optional[str] = None, active_only: bool = False
    ) -> list[ContentItemORM]:
        """Authoring listing; unlike ``list_by_type`` it includes inactive items by default."""
        if content_type is not None:
            return self.list_by_type(content_type, active_only=active_only)

        stmt = select(ContentItemORM)
        if active_only:
            stmt = stmt.where(ContentItemORM.is_active.is_(True))

        stmt = stmt.order_by(
            ContentItemORM.type, ContentItemORM.order, ContentItemORM.content_item_id
        )
        return self.db.scalars(stmt).all()

    def delete_content_item(self, content_item_id: str) -> bool:
        """
        Deletes an item and its overrides. Variants linking to it fall back to
        their configuration (or the base item) from then on.
        """
        db_item = self.get(content_item_id)
        if db_item is None:
            return False

        try:
            self.db.execute(
                update(VariantORM)
                .where(VariantORM.linked_content_item_id == content_item_id)
                .values(linked_content_item_id=None)
            )
            self.db.delete(db_item)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "content_item_delete_failed",
                content_item_id=content_item_id,
                error=str(e),
            )
            raise RuntimeError("A database error occurred during content item deletion")

        logger.info("content_item_deleted", content_item_id=content_item_id)
        return True
