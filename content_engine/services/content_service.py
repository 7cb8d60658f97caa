# services/content_service.py
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from content_engine.core.errors import ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.schemas.content import (
    ContentItemCreateModel,
    ContentItemModel,
    ContentItemUpdateModel,
    VisibilityOverrideCreateModel,
    VisibilityOverrideModel,
    VisibilityOverrideUpdateModel,
)
from content_engine.repositories.content_repo import ContentRepository
from content_engine.repositories.override_repo import OverrideRepository
from content_engine.services.override_index import OverrideIndex

logger = get_logger(__name__)


class ContentService:
    """Authoring path for content items and their persona x funnel stage overrides."""

    def __init__(self, db: Session):
        self.content_repo = ContentRepository(db)
        self.override_repo = OverrideRepository(db)
        self.override_index = OverrideIndex(self.override_repo)

    def create_content_item(self, item_data: ContentItemCreateModel) -> ContentItemModel:
        try:
            db_item = self.content_repo.create_content_item(item_data)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return ContentItemModel.model_validate(db_item)

    def get_content_item(self, content_item_id: str) -> ContentItemModel:
        return ContentItemModel.model_validate(self._require_item(content_item_id))

    def update_content_item(
        self, content_item_id: str, updates: ContentItemUpdateModel
    ) -> ContentItemModel:
        try:
            db_item = self.content_repo.update_content_item(content_item_id, updates)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if db_item is None:
            raise self._not_found("Content item", content_item_id)
        return ContentItemModel.model_validate(db_item)

    def list_content_items(
        self, content_type: Optional[str] = None, active_only: bool = False
    ) -> list[ContentItemModel]:
        return [
            ContentItemModel.model_validate(i)
            for i in self.content_repo.list_items(content_type, active_only=active_only)
        ]

    def delete_content_item(self, content_item_id: str) -> None:
        if not self.content_repo.delete_content_item(content_item_id):
            raise self._not_found("Content item", content_item_id)

    def list_overrides(self, content_item_id: str) -> list[VisibilityOverrideModel]:
        self._require_item(content_item_id)
        return [
            VisibilityOverrideModel.model_validate(o)
            for o in self.override_index.all_for(content_item_id)
        ]

    def create_override(
        self, content_item_id: str, override_data: VisibilityOverrideCreateModel
    ) -> VisibilityOverrideModel:
        self._require_item(content_item_id)
        try:
            db_override = self.override_repo.create_override(content_item_id, override_data)
        except ValidationError as e:
            logger.info("override_rejected", content_item_id=content_item_id, reason=str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        logger.info(
            "override_created",
            content_item_id=content_item_id,
            override_id=db_override.override_id,
            persona=db_override.persona,
            funnel_stage=db_override.funnel_stage,
        )
        return VisibilityOverrideModel.model_validate(db_override)

    def update_override(
        self, override_id: str, updates: VisibilityOverrideUpdateModel
    ) -> VisibilityOverrideModel:
        try:
            db_override = self.override_repo.update_override(override_id, updates)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if db_override is None:
            raise self._not_found("Override", override_id)
        return VisibilityOverrideModel.model_validate(db_override)

    def reset_override(self, override_id: str) -> VisibilityOverrideModel:
        db_override = self.override_repo.reset_override(override_id)
        if db_override is None:
            raise self._not_found("Override", override_id)
        return VisibilityOverrideModel.model_validate(db_override)

    def delete_override(self, override_id: str) -> None:
        if not self.override_repo.delete_override(override_id):
            raise self._not_found("Override", override_id)

    def _require_item(self, content_item_id: str):
        db_item = self.content_repo.get(content_item_id)
        if db_item is None:
            raise self._not_found("Content item", content_item_id)
        return db_item

    @staticmethod
    def _not_found(kind: str, identifier: str) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{kind} {identifier} not found.",
        )
