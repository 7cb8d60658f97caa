from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from content_engine.models.enums import (
    ContentType,
    ExperimentStatus,
    FunnelStage,
    Persona,
)
from content_engine.models.schemas.common import reject_explicit_nulls
from content_engine.models.schemas.variation import (
    VARIATION_KIND_BY_CONTENT_TYPE,
    VariantConfiguration,
)


class VariantConfig(BaseModel):
    """Configuration for a single variant in an experiment."""

    variant_name: str
    traffic_weight: float = Field(
        50.0,
        ge=0.0,
        description="Relative weight; normalized by the sum over the experiment's variants.",
    )
    is_control: bool = False
    linked_content_item_id: Optional[str] = Field(
        None, description="Alternate content item rendered as-is for this variant."
    )
    configuration: Optional[VariantConfiguration] = None


class VariantUpdateModel(BaseModel):
    traffic_weight: Optional[float] = Field(None, ge=0.0)
    is_control: Optional[bool] = None
    linked_content_item_id: Optional[str] = None
    configuration: Optional[VariantConfiguration] = None

    @model_validator(mode="after")
    def check_nulls(self):
        reject_explicit_nulls(self, ("traffic_weight", "is_control"))
        return self


class TargetModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True, from_attributes=True)

    persona: Persona
    funnel_stage: FunnelStage


class ExperimentCreateModel(BaseModel):
    """Schema for creating an experiment together with its variants and targets."""

    model_config = ConfigDict(use_enum_values=True)

    name: str
    description: Optional[str] = None
    content_type: ContentType
    status: ExperimentStatus = ExperimentStatus.DRAFT
    traffic_allocation: float = Field(
        100.0,
        ge=0.0,
        le=100.0,
        description="Percentage of sessions eligible for the experiment at all.",
    )
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    primary_metric_name: str = Field("cta_click", description="Primary metric name")
    variants: List[VariantConfig] = Field(default_factory=list)
    # Empty means the experiment applies to every persona x funnel stage pair
    targets: List[TargetModel] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stored columns are naive UTC
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def check_shape(self):
        names = [v.variant_name for v in self.variants]
        if len(names) != len(set(names)):
            raise ValueError("Variant names must be unique within an experiment")

        slots = [(t.persona, t.funnel_stage) for t in self.targets]
        if len(slots) != len(set(slots)):
            raise ValueError("Duplicate persona/funnel stage target")

        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")

        expected_kind = VARIATION_KIND_BY_CONTENT_TYPE[self.content_type]
        for variant in self.variants:
            if variant.configuration and variant.configuration.kind != expected_kind:
                raise ValueError(
                    f"Variant {variant.variant_name} configuration must be "
                    f"{expected_kind} for {self.content_type} experiments"
                )
        return self


class ExperimentUpdateModel(BaseModel):
    """
    Partial edit of an experiment's settings. Sending ``targets`` replaces the
    whole target set; an empty list opens the experiment to every slot.
    """

    name: Optional[str] = None
    description: Optional[str] = None
    traffic_allocation: Optional[float] = Field(None, ge=0.0, le=100.0)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    primary_metric_name: Optional[str] = None
    targets: Optional[List[TargetModel]] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def check_shape(self):
        reject_explicit_nulls(
            self, ("name", "traffic_allocation", "primary_metric_name", "targets")
        )
        if self.targets:
            slots = [(t.persona, t.funnel_stage) for t in self.targets]
            if len(slots) != len(set(slots)):
                raise ValueError("Duplicate persona/funnel stage target")
        return self


class ExperimentStatusUpdateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: ExperimentStatus


class ExperimentVariantConfigResponseModel(BaseModel):
    variant_id: str
    variant_name: str
    traffic_weight: float
    is_control: bool
    linked_content_item_id: Optional[str] = None
    configuration: Optional[VariantConfiguration] = None


class ExperimentResponseModel(BaseModel):
    experiment_id: str = Field(..., description="Unique ID for the experiment.")
    name: str
    description: Optional[str] = None
    content_type: str
    status: str = Field(..., description="draft, active, paused or completed")
    traffic_allocation: float
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    primary_metric_name: str
    variants: List[ExperimentVariantConfigResponseModel]
    targets: List[TargetModel]
