from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from content_engine.models.enums import ContentType, FunnelStage, Persona
from content_engine.models.schemas.common import reject_explicit_nulls


class ContentItemCreateModel(BaseModel):
    """Schema for creating a new content item (API Input)."""

    model_config = ConfigDict(use_enum_values=True)

    type: ContentType
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_ref: Optional[str] = Field(None, description="Image asset name or URL.")
    order: int = 0
    is_active: bool = True


class ContentItemUpdateModel(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image_ref: Optional[str] = None
    order: Optional[int] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def check_nulls(self):
        reject_explicit_nulls(self, ("title", "order", "is_active"))
        return self


class ContentItemModel(BaseModel):
    """Data model for a persistent content item record."""

    content_item_id: str
    type: str
    title: str
    description: Optional[str] = None
    image_ref: Optional[str] = None
    order: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# --- Persona x Funnel Stage Overrides ---


class VisibilityOverrideCreateModel(BaseModel):
    """
    Override for one (persona, funnel stage) slot of a content item.
    Leaving persona or funnel_stage empty makes that axis a wildcard.
    """

    model_config = ConfigDict(use_enum_values=True)

    persona: Optional[Persona] = None
    funnel_stage: Optional[FunnelStage] = None
    is_visible: bool = True
    order: Optional[int] = None
    title_override: Optional[str] = None
    description_override: Optional[str] = None
    image_ref_override: Optional[str] = None


class VisibilityOverrideUpdateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    persona: Optional[Persona] = None
    funnel_stage: Optional[FunnelStage] = None
    is_visible: Optional[bool] = None
    order: Optional[int] = None
    title_override: Optional[str] = None
    description_override: Optional[str] = None
    image_ref_override: Optional[str] = None

    @model_validator(mode="after")
    def check_nulls(self):
        reject_explicit_nulls(self, ("is_visible",))
        return self


class VisibilityOverrideModel(BaseModel):
    override_id: str
    content_item_id: str
    persona: Optional[str] = None
    funnel_stage: Optional[str] = None
    is_visible: bool = True
    order: Optional[int] = None
    title_override: Optional[str] = None
    description_override: Optional[str] = None
    image_ref_override: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
