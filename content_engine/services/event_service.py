# services/event_service.py
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from content_engine.core.errors import ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.schemas.event import EventCreateModel, EventResponseModel
from content_engine.repositories.assignment_repo import AssignmentRepository
from content_engine.repositories.event_repo import EventRepository

logger = get_logger(__name__)


class EventService:
    def __init__(self, db: Session):
        """Initializes the service with repositories it needs."""
        self.event_repo = EventRepository(db)
        # The assignment supplies the variant the event is credited to
        self.assignment_repo = AssignmentRepository(db)

    def record_event(self, event_data: EventCreateModel) -> EventResponseModel:
        """
        Records an experiment event against the session's assigned variant.

        Sessions without a stored assignment (outside the allocation, or only
        ever seen through admin preview) cannot record events.
        """
        try:
            assignment = self.assignment_repo.get_assignment(
                event_data.experiment_id, event_data.session_id
            )
            if assignment is None:
                raise ValidationError(
                    f"Session {event_data.session_id} has no assignment in "
                    f"experiment {event_data.experiment_id}"
                )

            recorded_event = self.event_repo.create_event(
                event_data=event_data, variant_id=assignment.variant_id
            )

            return EventResponseModel(
                event_id=recorded_event.event_id,
                experiment_id=recorded_event.experiment_id,
                variant_id=recorded_event.variant_id,
            )
        except ValidationError as e:
            logger.info(
                "event_rejected",
                experiment_id=event_data.experiment_id,
                session_id=event_data.session_id,
                reason=str(e),
            )
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except RuntimeError:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Encountered error when creating event",
            )
