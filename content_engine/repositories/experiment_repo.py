import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from content_engine.core.errors import NotFoundError, ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.enums import ExperimentStatus
from content_engine.models.orm.assignment import AssignmentORM
from content_engine.models.orm.content import ContentItemORM
from content_engine.models.orm.event import ExperimentEventORM
from content_engine.models.orm.experiment import (
    ExperimentORM,
    ExperimentTargetORM,
    VariantORM,
)
from content_engine.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentUpdateModel,
    VariantConfig,
    VariantUpdateModel,
)
from content_engine.models.schemas.variation import VARIATION_KIND_BY_CONTENT_TYPE

logger = get_logger(__name__)


def _slots(experiment: ExperimentORM) -> Optional[set]:
    """Targeted (persona, funnel_stage) pairs; None means every pair."""
    if not experiment.targets:
        return None
    return {(t.persona, t.funnel_stage) for t in experiment.targets}


def _windows_overlap(a: ExperimentORM, b: ExperimentORM) -> bool:
    a_start, b_start = a.start_time or datetime.min, b.start_time or datetime.min
    a_end, b_end = a.end_time or datetime.max, b.end_time or datetime.max
    return a_start <= b_end and b_start <= a_end


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentORM:
        """
        Creates an experiment together with its variants and targets in one
        transaction.

        Variant weights are relative and are not required to sum to 100.
        Activating on creation runs the same slot-conflict check as
        ``set_status``.
        """
        for variant_data in experiment_data.variants:
            self._check_linked_item(variant_data.linked_content_item_id)

        experiment_id = str(uuid.uuid4())

        experiment_data_dict = experiment_data.model_dump(
            exclude={"variants", "targets"}
        )
        experiment_data_dict["experiment_id"] = experiment_id
        experiment_data_dict["status"] = ExperimentStatus(experiment_data_dict["status"])

        db_experiment = ExperimentORM(**experiment_data_dict)

        for target in experiment_data.targets:
            db_experiment.targets.append(
                ExperimentTargetORM(
                    persona=target.persona, funnel_stage=target.funnel_stage
                )
            )

        for variant_data in experiment_data.variants:
            db_experiment.variants.append(self._build_variant(experiment_id, variant_data))

        if db_experiment.status == ExperimentStatus.ACTIVE:
            self._check_slot_conflicts(db_experiment)

        try:
            self.db.add(db_experiment)
            self.db.commit()
            self.db.refresh(db_experiment)

        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Database integrity error (e.g., duplicate name): {e}")

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(
                f"A database error occurred during experiment creation: {e}"
            )

        return db_experiment

    def get_experiment_with_variants(self, experiment_id: str) -> ExperimentORM | None:
        """
        Fetches a single Experiment by experiment_id and eagerly loads its
        variants and targets.
        """
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.experiment_id == experiment_id)
            .options(
                selectinload(ExperimentORM.variants),
                selectinload(ExperimentORM.targets),
            )
        )
        return self.db.scalars(stmt).one_or_none()

    def get_active_experiments(
        self, content_type: str, now: Optional[datetime] = None
    ) -> list[ExperimentORM]:
        """
        Active experiments for a content type whose optional start/end window
        contains ``now``, ordered by experiment_id.
        """
        now = now or datetime.utcnow()
        stmt = (
            select(ExperimentORM)
            .where(
                ExperimentORM.content_type == content_type,
                ExperimentORM.status == ExperimentStatus.ACTIVE,
                or_(ExperimentORM.start_time.is_(None), ExperimentORM.start_time <= now),
                or_(ExperimentORM.end_time.is_(None), ExperimentORM.end_time >= now),
            )
            .options(
                selectinload(ExperimentORM.variants),
                selectinload(ExperimentORM.targets),
            )
            .order_by(ExperimentORM.experiment_id)
        )
        return self.db.scalars(stmt).all()

    def get_variant(self, variant_id: str) -> Optional[VariantORM]:
        return self.db.get(VariantORM, variant_id)

    def add_variant(self, experiment_id: str, variant_data: VariantConfig) -> VariantORM:
        experiment = self.get_experiment_with_variants(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found.")

        self._check_linked_item(variant_data.linked_content_item_id)
        self._check_configuration_kind(experiment, variant_data.configuration)

        if any(v.variant_name == variant_data.variant_name for v in experiment.variants):
            raise ValidationError(
                f"Variant {variant_data.variant_name} already exists in experiment {experiment_id}"
            )

        db_variant = self._build_variant(experiment_id, variant_data)
        try:
            self.db.add(db_variant)
            self.db.commit()
            self.db.refresh(db_variant)
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Duplicate variant: {str(e).splitlines()[0]}")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during variant creation: {e}")

        return db_variant

    def update_variant(
        self, variant_id: str, updates: VariantUpdateModel
    ) -> Optional[VariantORM]:
        """
        Updates weight/link/configuration. Existing assignments are untouched:
        sessions already bucketed keep their variant.
        """
        db_variant = self.get_variant(variant_id)
        if db_variant is None:
            return None

        changes = updates.model_dump(exclude_unset=True)

        if "linked_content_item_id" in changes:
            self._check_linked_item(changes["linked_content_item_id"])

        if "configuration" in changes:
            self._check_configuration_kind(db_variant.experiment, updates.configuration)
            db_variant.configuration_json = (
                updates.configuration.model_dump() if updates.configuration else None
            )
            changes.pop("configuration")

        for field, value in changes.items():
            setattr(db_variant, field, value)

        try:
            self.db.commit()
            self.db.refresh(db_variant)
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Invalid variant update: {str(e).splitlines()[0]}")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during variant update: {e}")

        return db_variant

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None
    ) -> list[ExperimentORM]:
        stmt = select(ExperimentORM).options(
            selectinload(ExperimentORM.variants),
            selectinload(ExperimentORM.targets),
        )
        if status is not None:
            stmt = stmt.where(ExperimentORM.status == ExperimentStatus(status))

        stmt = stmt.order_by(ExperimentORM.created_at, ExperimentORM.experiment_id)
        return self.db.scalars(stmt).all()

    def update_experiment(
        self, experiment_id: str, updates: ExperimentUpdateModel
    ) -> Optional[ExperimentORM]:
        """
        Applies a partial edit of name, allocation, window or targets.

        An active experiment whose targets or window change is re-checked for
        slot conflicts before anything is committed. Lowering the allocation
        does not touch stored assignments; sessions that fall outside the new
        allocation simply stop resolving into the experiment.
        """
        experiment = self.get_experiment_with_variants(experiment_id)
        if experiment is None:
            return None

        changes = updates.model_dump(exclude_unset=True, exclude={"targets"})

        start_time = changes.get("start_time", experiment.start_time)
        end_time = changes.get("end_time", experiment.end_time)
        if start_time and end_time and end_time <= start_time:
            raise ValidationError("end_time must be after start_time")

        for field, value in changes.items():
            setattr(experiment, field, value)

        if updates.targets is not None:
            experiment.targets = [
                ExperimentTargetORM(persona=t.persona, funnel_stage=t.funnel_stage)
                for t in updates.targets
            ]

        reshaped = updates.targets is not None or {"start_time", "end_time"} & changes.keys()
        if reshaped and experiment.status == ExperimentStatus.ACTIVE:
            try:
                with self.db.no_autoflush:
                    self._check_slot_conflicts(experiment)
            except ValidationError:
                self.db.rollback()
                raise

        try:
            self.db.commit()
            self.db.refresh(experiment)
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError(f"Database integrity error (e.g., duplicate name): {e}")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during experiment update: {e}")

        logger.info(
            "experiment_updated",
            experiment_id=experiment_id,
            fields=sorted(updates.model_fields_set),
        )
        return experiment

    def delete_experiment(self, experiment_id: str) -> bool:
        """
        Removes an experiment with its variants, targets, assignments and
        events.
        """
        experiment = self.get_experiment_with_variants(experiment_id)
        if experiment is None:
            return False

        try:
            self.db.execute(
                delete(ExperimentEventORM).where(
                    ExperimentEventORM.experiment_id == experiment_id
                )
            )
            self.db.execute(
                delete(AssignmentORM).where(AssignmentORM.experiment_id == experiment_id)
            )
            self.db.delete(experiment)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during experiment deletion: {e}")

        logger.info("experiment_deleted", experiment_id=experiment_id)
        return True

    def set_status(
        self, experiment_id: str, status: ExperimentStatus
    ) -> Optional[ExperimentORM]:
        """
        Moves an experiment through draft/active/paused/completed.

        Raises:
            ValidationError: activating would put two active experiments on the
                same (content_type, persona, funnel_stage) slot.
        """
        experiment = self.get_experiment_with_variants(experiment_id)
        if experiment is None:
            return None

        status = ExperimentStatus(status)
        if status == ExperimentStatus.ACTIVE:
            self._check_slot_conflicts(experiment)

        experiment.status = status
        try:
            self.db.commit()
            self.db.refresh(experiment)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during status change: {e}")

        logger.info(
            "experiment_status_changed", experiment_id=experiment_id, status=status.value
        )
        return experiment

    def find_slot_conflicts(self, experiment: ExperimentORM) -> list[ExperimentORM]:
        """Other active experiments sharing a content type, time window and target slot."""
        stmt = (
            select(ExperimentORM)
            .where(
                ExperimentORM.content_type == experiment.content_type,
                ExperimentORM.status == ExperimentStatus.ACTIVE,
                ExperimentORM.experiment_id != experiment.experiment_id,
            )
            .options(selectinload(ExperimentORM.targets))
        )
        mine = _slots(experiment)

        conflicts = []
        for other in self.db.scalars(stmt).all():
            if not _windows_overlap(experiment, other):
                continue
            theirs = _slots(other)
            if mine is None or theirs is None or mine & theirs:
                conflicts.append(other)
        return conflicts

    def _check_slot_conflicts(self, experiment: ExperimentORM) -> None:
        conflicts = self.find_slot_conflicts(experiment)
        if conflicts:
            names = ", ".join(sorted(c.name for c in conflicts))
            raise ValidationError(
                f"Experiment {experiment.name} overlaps active experiment(s) {names} "
                f"on content type {experiment.content_type}"
            )

    def _check_linked_item(self, content_item_id: Optional[str]) -> None:
        if content_item_id and self.db.get(ContentItemORM, content_item_id) is None:
            raise ValidationError(f"Linked content item {content_item_id} not found.")

    @staticmethod
    def _check_configuration_kind(experiment: ExperimentORM, configuration) -> None:
        if configuration is None:
            return
        expected_kind = VARIATION_KIND_BY_CONTENT_TYPE.get(experiment.content_type)
        if configuration.kind != expected_kind:
            raise ValidationError(
                f"Configuration must be {expected_kind} for "
                f"{experiment.content_type} experiments"
            )

    @staticmethod
    def _build_variant(experiment_id: str, variant_data: VariantConfig) -> VariantORM:
        variant_dict = variant_data.model_dump(exclude={"configuration"})
        variant_dict["variant_id"] = str(uuid.uuid4())
        variant_dict["experiment_id"] = experiment_id
        if variant_data.configuration is not None:
            variant_dict["configuration_json"] = variant_data.configuration.model_dump()
        return VariantORM(**variant_dict)
