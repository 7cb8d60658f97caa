from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from content_engine.models.enums import FunnelStage, Persona
from content_engine.models.schemas.variation import VariantConfiguration


class PreviewOverride(BaseModel):
    """Forced context from the admin preview UI; bypasses bucketing and never touches assignments."""

    model_config = ConfigDict(use_enum_values=True)

    forced_persona: Optional[Persona] = None
    forced_funnel_stage: Optional[FunnelStage] = None
    forced_variants: Dict[str, str] = Field(
        default_factory=dict, description="experiment_id -> variant_id"
    )


class ResolveRequestModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    content_item_id: str
    persona: Optional[Persona] = None
    funnel_stage: Optional[FunnelStage] = None
    session_id: str


class PreviewRequestModel(ResolveRequestModel):
    preview: PreviewOverride = Field(default_factory=PreviewOverride)


class ResolvedContent(BaseModel):
    """The exact content to render for one item in one visitor context."""

    model_config = ConfigDict(frozen=True)

    content_item_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    image_ref: Optional[str] = None
    is_visible: bool = True
    order: int = 0
    source_variant_id: Optional[str] = None
    experiment_id: Optional[str] = None
    variation: Optional[VariantConfiguration] = None
    is_preview: bool = False
