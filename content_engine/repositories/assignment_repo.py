# repositories/assignment_repo.py
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from content_engine.core.logging import get_logger
from content_engine.models.orm.assignment import AssignmentORM

logger = get_logger(__name__)


@dataclass(frozen=True)
class InsertResult:
    inserted: bool
    variant_id: str
    assignment: AssignmentORM


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(
        self, experiment_id: str, session_id: str
    ) -> Optional[AssignmentORM]:
        """Retrieves the sticky assignment of a session in a specific experiment."""
        stmt = select(AssignmentORM).where(
            AssignmentORM.experiment_id == experiment_id,
            AssignmentORM.session_id == session_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def get_assignments_for_experiment(self, experiment_id: str) -> list[AssignmentORM]:
        stmt = select(AssignmentORM).where(AssignmentORM.experiment_id == experiment_id)

        return self.db.scalars(stmt).all()

    def insert_if_absent(
        self,
        experiment_id: str,
        session_id: str,
        variant_id: str,
        persona: Optional[str] = None,
        funnel_stage: Optional[str] = None,
    ) -> InsertResult:
        """
        Inserts the assignment unless one already exists for
        (experiment_id, session_id).

        The primary key is the arbiter: when a concurrent request (possibly in
        another process) wins the insert, this one rolls back and returns the
        winner's row with inserted=False.
        """
        db_assignment = AssignmentORM(
            experiment_id=experiment_id,
            session_id=session_id,
            variant_id=variant_id,
            persona=persona,
            funnel_stage=funnel_stage,
            assignment_timestamp=datetime.utcnow(),
        )

        try:
            self.db.add(db_assignment)
            self.db.commit()
            self.db.refresh(db_assignment)

            return InsertResult(
                inserted=True, variant_id=db_assignment.variant_id, assignment=db_assignment
            )

        except IntegrityError:
            self.db.rollback()

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "assignment_insert_failed",
                experiment_id=experiment_id,
                session_id=session_id,
                error=str(e),
            )
            raise RuntimeError("Exception occurred during assignment creation")

        existing = self.get_assignment(experiment_id, session_id)
        if existing is None:
            # The conflict was not on the primary key (e.g. a dangling variant)
            raise RuntimeError(
                f"Assignment insert for experiment {experiment_id} was rejected "
                "and no existing assignment was found"
            )

        return InsertResult(
            inserted=False, variant_id=existing.variant_id, assignment=existing
        )
