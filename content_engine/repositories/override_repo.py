import uuid
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from content_engine.core.errors import ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.orm.content import VisibilityOverrideORM
from content_engine.models.schemas.content import (
    VisibilityOverrideCreateModel,
    VisibilityOverrideUpdateModel,
)

logger = get_logger(__name__)


def _matches(column, value: Optional[str]):
    return column.is_(None) if value is None else column == value


class OverrideRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_override(self, override_id: str) -> Optional[VisibilityOverrideORM]:
        return self.db.get(VisibilityOverrideORM, override_id)

    def all_for(self, content_item_id: str) -> list[VisibilityOverrideORM]:
        """Every override of a content item, for the admin matrix editor."""
        stmt = (
            select(VisibilityOverrideORM)
            .where(VisibilityOverrideORM.content_item_id == content_item_id)
            .order_by(
                VisibilityOverrideORM.order,
                VisibilityOverrideORM.persona,
                VisibilityOverrideORM.funnel_stage,
            )
        )
        return self.db.scalars(stmt).all()

    def find_slot(
        self, content_item_id: str, persona: Optional[str], funnel_stage: Optional[str]
    ) -> Optional[VisibilityOverrideORM]:
        """The override stored at exactly this triple (NULL matches only NULL)."""
        stmt = select(VisibilityOverrideORM).where(
            VisibilityOverrideORM.content_item_id == content_item_id,
            _matches(VisibilityOverrideORM.persona, persona),
            _matches(VisibilityOverrideORM.funnel_stage, funnel_stage),
        )
        return self.db.scalars(stmt).one_or_none()

    def candidates_for(
        self, content_item_id: str, persona: Optional[str], funnel_stage: Optional[str]
    ) -> list[VisibilityOverrideORM]:
        """
        Overrides that could apply to (persona, funnel_stage): the exact slot
        plus the wildcard slots. Precedence among them is decided by the caller.
        """
        persona_clause = (
            VisibilityOverrideORM.persona.is_(None)
            if persona is None
            else or_(
                VisibilityOverrideORM.persona.is_(None),
                VisibilityOverrideORM.persona == persona,
            )
        )
        stage_clause = (
            VisibilityOverrideORM.funnel_stage.is_(None)
            if funnel_stage is None
            else or_(
                VisibilityOverrideORM.funnel_stage.is_(None),
                VisibilityOverrideORM.funnel_stage == funnel_stage,
            )
        )
        stmt = select(VisibilityOverrideORM).where(
            VisibilityOverrideORM.content_item_id == content_item_id,
            persona_clause,
            stage_clause,
        )
        return self.db.scalars(stmt).all()

    def create_override(
        self, content_item_id: str, override_data: VisibilityOverrideCreateModel
    ) -> VisibilityOverrideORM:
        """
        Creates the override for one (persona, funnel_stage) slot.

        Raises:
            ValidationError: an override already exists for the same triple,
                wildcard triples included. The existing row is left untouched.
        """
        override_dict = override_data.model_dump()

        if self.find_slot(
            content_item_id, override_dict["persona"], override_dict["funnel_stage"]
        ):
            raise ValidationError(
                "An override already exists for content item "
                f"{content_item_id} persona={override_dict['persona']} "
                f"funnel_stage={override_dict['funnel_stage']}"
            )

        db_override = VisibilityOverrideORM(
            override_id=str(uuid.uuid4()),
            content_item_id=content_item_id,
            **override_dict,
        )
        try:
            self.db.add(db_override)
            self.db.commit()
            self.db.refresh(db_override)
        except IntegrityError as e:
            # A concurrent writer took the slot between the check and the insert
            self.db.rollback()
            raise ValidationError(
                f"Duplicate override slot: {str(e).splitlines()[0]}"
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "override_create_failed", content_item_id=content_item_id, error=str(e)
            )
            raise RuntimeError("A database error occurred during override creation")

        return db_override

    def update_override(
        self, override_id: str, updates: VisibilityOverrideUpdateModel
    ) -> Optional[VisibilityOverrideORM]:
        db_override = self.get_override(override_id)
        if db_override is None:
            return None

        changes = updates.model_dump(exclude_unset=True)

        if "persona" in changes or "funnel_stage" in changes:
            persona = changes.get("persona", db_override.persona)
            funnel_stage = changes.get("funnel_stage", db_override.funnel_stage)
            existing = self.find_slot(db_override.content_item_id, persona, funnel_stage)
            if existing is not None and existing.override_id != override_id:
                raise ValidationError(
                    f"Another override already covers persona={persona} "
                    f"funnel_stage={funnel_stage}"
                )

        for field, value in changes.items():
            setattr(db_override, field, value)

        return self._commit(db_override)

    def reset_override(self, override_id: str) -> Optional[VisibilityOverrideORM]:
        """Drops the title/description/image replacements, keeping visibility and order."""
        db_override = self.get_override(override_id)
        if db_override is None:
            return None

        db_override.title_override = None
        db_override.description_override = None
        db_override.image_ref_override = None

        return self._commit(db_override)

    def delete_override(self, override_id: str) -> bool:
        db_override = self.get_override(override_id)
        if db_override is None:
            return False

        try:
            self.db.delete(db_override)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("override_delete_failed", override_id=override_id, error=str(e))
            raise RuntimeError("A database error occurred during override deletion")
        return True

    def _commit(self, db_override: VisibilityOverrideORM) -> VisibilityOverrideORM:
        try:
            self.db.commit()
            self.db.refresh(db_override)
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Duplicate override slot: {str(e).splitlines()[0]}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "override_update_failed",
                override_id=db_override.override_id,
                error=str(e),
            )
            raise RuntimeError("A database error occurred during override update")
        return db_override
