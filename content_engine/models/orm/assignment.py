from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, PrimaryKeyConstraint, String
from sqlalchemy.orm import relationship

from .base import Base


class AssignmentORM(Base):
    __tablename__ = "assignments"

    session_id = Column(String, nullable=False, index=True)
    experiment_id = Column(
        String,
        ForeignKey("experiments.experiment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id = Column(
        String, ForeignKey("variants.variant_id", ondelete="CASCADE"), nullable=False
    )

    # Context captured when the session was first bucketed
    persona = Column(String, nullable=True)
    funnel_stage = Column(String, nullable=True)

    assignment_timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    # One row per (experiment, session): the sticky-bucketing guarantee
    __table_args__ = (
        PrimaryKeyConstraint("experiment_id", "session_id", name="assignment_pk"),
    )

    variant = relationship("VariantORM")

    experiment = relationship("ExperimentORM")
