from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from content_engine.models.enums import ExperimentStatus

from .base import Base, JSON_TYPE


# --- Experiment Model ---
class ExperimentORM(Base):
    __tablename__ = "experiments"

    # --- Core Identifiers ---
    experiment_id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)

    # Which content type the experiment competes for (hero, cta, ...)
    content_type = Column(String, nullable=False, index=True)

    # --- Lifecycle and Governance ---
    status = Column(
        Enum(
            ExperimentStatus,
            name="experiment_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=ExperimentStatus.DRAFT,
        nullable=False,
    )

    # Percent of sessions (0-100) eligible for the experiment at all
    traffic_allocation = Column(Float, default=100.0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # --- Timing and Duration ---
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    # --- Analysis and Metrics ---
    primary_metric_name = Column(String, nullable=False, default="cta_click")

    # --- Relationships ---
    variants = relationship(
        "VariantORM",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="VariantORM.created_at",
    )

    # Empty target set means every persona x funnel stage pair
    targets = relationship(
        "ExperimentTargetORM",
        back_populates="experiment",
        cascade="all, delete-orphan",
    )

    events = relationship("ExperimentEventORM", back_populates="experiment")

    def targets_slot(self, persona: str, funnel_stage: str) -> bool:
        if not self.targets:
            return True
        return any(
            t.persona == persona and t.funnel_stage == funnel_stage
            for t in self.targets
        )


# --- Persona x Funnel Stage Target Model ---
class ExperimentTargetORM(Base):
    __tablename__ = "experiment_targets"

    experiment_id = Column(
        String,
        ForeignKey("experiments.experiment_id", ondelete="CASCADE"),
        nullable=False,
    )
    persona = Column(String, nullable=False)
    funnel_stage = Column(String, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint(
            "experiment_id", "persona", "funnel_stage", name="experiment_target_pk"
        ),
    )

    experiment = relationship("ExperimentORM", back_populates="targets")


# --- Variant Model ---
class VariantORM(Base):
    __tablename__ = "variants"

    variant_id = Column(String, primary_key=True)
    variant_name = Column(String, nullable=False)

    # Relative weight; selection normalizes by the experiment's total
    traffic_weight = Column(Float, nullable=False, default=50.0)
    is_control = Column(Boolean, default=False, nullable=False)

    # Alternate content item rendered as-is for sessions in this variant
    linked_content_item_id = Column(
        String,
        ForeignKey("content_items.content_item_id", ondelete="SET NULL"),
        nullable=True,
    )

    # Presentation overrides, tagged by "kind" (hero_variation, cta_variation, ...)
    configuration_json = Column(JSON_TYPE, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    experiment_id = Column(
        String,
        ForeignKey("experiments.experiment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint("experiment_id", "variant_name", name="ux_variant_name"),
    )

    experiment = relationship("ExperimentORM", back_populates="variants")
