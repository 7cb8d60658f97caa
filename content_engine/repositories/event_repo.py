import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from content_engine.core.errors import ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.orm.event import ExperimentEventORM
from content_engine.models.schemas.event import EventCreateModel

logger = get_logger(__name__)


class EventRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def get_events_for_experiment(
        self, experiment_id: str, **kwargs
    ) -> list[ExperimentEventORM]:
        """
        Retrieves events for a specific experiment, applying optional filters
        for event type and time range.
        """
        stmt = select(ExperimentEventORM).where(
            ExperimentEventORM.experiment_id == experiment_id
        )

        if event_type := kwargs.get("event_type"):
            stmt = stmt.where(ExperimentEventORM.type == event_type)

        if start_date := kwargs.get("start_date"):
            stmt = stmt.where(ExperimentEventORM.timestamp >= start_date)

        if end_date := kwargs.get("end_date"):
            stmt = stmt.where(ExperimentEventORM.timestamp <= end_date)

        return self.db.scalars(stmt).all()

    def create_event(
        self, event_data: EventCreateModel, variant_id: str
    ) -> ExperimentEventORM:
        """
        Creates a new event record in the database.

        Args:
            event_data: The Pydantic model containing event details.
            variant_id: The variant the session is assigned to (set by service).

        Returns:
            The created ExperimentEventORM object.
        """
        event_dict = event_data.model_dump(exclude_unset=True)

        event_dict["event_id"] = str(uuid.uuid4())
        event_dict["variant_id"] = variant_id

        if event_dict.get("timestamp") is None:
            event_dict["timestamp"] = datetime.utcnow()

        db_event = ExperimentEventORM(**event_dict)
        try:
            self.db.add(db_event)
            self.db.commit()
            self.db.refresh(db_event)

        except IntegrityError as e:
            self.db.rollback()
            logger.warning("event_integrity_error", error=str(e))
            raise ValidationError(
                "Invalid event data: a required field is missing or a foreign key "
                f"reference is invalid. Details: {str(e).splitlines()[0]}"
            )

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("event_create_failed", error=str(e))
            raise RuntimeError("An unexpected database error occurred.")

        return db_event
