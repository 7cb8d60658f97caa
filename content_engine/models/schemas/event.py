from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


#  event posting flow


class EventCreateModel(BaseModel):
    """Schema for recording an experiment event (API Input)."""

    session_id: str
    experiment_id: str
    type: str = Field(..., description="e.g., 'page_view', 'cta_click', 'form_submit'")
    event_target: Optional[str] = None
    event_value: Optional[float] = None
    # The server sets the timestamp when the client omits it.
    timestamp: Optional[datetime] = Field(default_factory=datetime.utcnow)

    properties: Dict = Field(default_factory=dict, description="Flexible JSON object.")

    @field_validator("timestamp")
    @classmethod
    def to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class EventResponseModel(BaseModel):
    event_id: str
    experiment_id: str
    variant_id: str
