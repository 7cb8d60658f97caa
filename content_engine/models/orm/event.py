from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, String
from sqlalchemy.orm import relationship

from .base import Base, JSON_TYPE


class ExperimentEventORM(Base):
    __tablename__ = "experiment_events"

    event_id = Column(String, primary_key=True, index=True)

    session_id = Column(String, nullable=False, index=True)

    # page_view, cta_click, form_submit, ...
    type = Column(String, nullable=False, index=True)
    event_target = Column(String, nullable=True)
    event_value = Column(Float, nullable=True)

    experiment_id = Column(
        String,
        ForeignKey("experiments.experiment_id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    variant_id = Column(
        String, ForeignKey("variants.variant_id", ondelete="CASCADE"), nullable=False
    )

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    properties = Column(JSON_TYPE, default=dict, nullable=False)

    experiment = relationship("ExperimentORM", back_populates="events")
