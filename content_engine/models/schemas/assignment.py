from typing import Optional

from pydantic import BaseModel


class SessionAssignmentModel(BaseModel):
    """Result of asking for a session's variant; variant_id is None outside the allocation."""

    experiment_id: str
    session_id: str
    variant_id: Optional[str] = None
    in_experiment: bool
