# services/experiment_service.py

from collections import defaultdict
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from content_engine.core.errors import NotFoundError, ValidationError
from content_engine.core.logging import get_logger
from content_engine.models.enums import ContentType, ExperimentStatus
from content_engine.models.orm.assignment import AssignmentORM
from content_engine.models.orm.event import ExperimentEventORM
from content_engine.models.orm.experiment import ExperimentORM, VariantORM
from content_engine.models.schemas.assignment import SessionAssignmentModel
from content_engine.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentUpdateModel,
    ExperimentVariantConfigResponseModel,
    TargetModel,
    VariantConfig,
    VariantUpdateModel,
)
from content_engine.models.schemas.variation import parse_variant_configuration
from content_engine.repositories.assignment_repo import AssignmentRepository
from content_engine.repositories.event_repo import EventRepository
from content_engine.repositories.experiment_repo import ExperimentRepository
from content_engine.services.bucketing import BucketingAssigner
from content_engine.services.experiment_registry import ExperimentRegistry

logger = get_logger(__name__)


def _variant_response(variant: VariantORM) -> ExperimentVariantConfigResponseModel:
    return ExperimentVariantConfigResponseModel(
        variant_id=variant.variant_id,
        variant_name=variant.variant_name,
        traffic_weight=variant.traffic_weight,
        is_control=variant.is_control,
        linked_content_item_id=variant.linked_content_item_id,
        configuration=parse_variant_configuration(variant.configuration_json),
    )


def _covers(
    experiment: ExperimentORM, persona: Optional[str], funnel_stage: Optional[str]
) -> bool:
    """Untargeted experiments cover everything; an omitted axis matches any value."""
    if not experiment.targets:
        return True
    return any(
        (persona is None or t.persona == persona)
        and (funnel_stage is None or t.funnel_stage == funnel_stage)
        for t in experiment.targets
    )


class ExperimentService:
    def __init__(self, db: Session):
        self.assignment_repo = AssignmentRepository(db)
        self.experiment_repo = ExperimentRepository(db)
        self.event_repo = EventRepository(db)
        self.assigner = BucketingAssigner(self.assignment_repo)
        self.db = db

    def _to_response(self, experiment_orm: ExperimentORM) -> ExperimentResponseModel:
        return ExperimentResponseModel(
            experiment_id=experiment_orm.experiment_id,
            name=experiment_orm.name,
            description=experiment_orm.description,
            content_type=experiment_orm.content_type,
            status=experiment_orm.status.value,
            traffic_allocation=experiment_orm.traffic_allocation,
            start_time=experiment_orm.start_time,
            end_time=experiment_orm.end_time,
            primary_metric_name=experiment_orm.primary_metric_name,
            variants=[_variant_response(v) for v in experiment_orm.variants],
            targets=[TargetModel.model_validate(t) for t in experiment_orm.targets],
        )

    def _require_experiment(self, experiment_id: str) -> ExperimentORM:
        experiment = self.experiment_repo.get_experiment_with_variants(experiment_id)
        if not experiment:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Experiment {experiment_id} not found.",
            )
        return experiment

    def create_experiment(
        self, experiment_data: ExperimentCreateModel
    ) -> ExperimentResponseModel:
        """
        Creates an experiment with its variants and targets.

        Business validation errors (duplicate name, unknown linked item,
        overlapping active experiment) become 400s.
        """
        try:
            experiment_orm = self.experiment_repo.create_experiment(experiment_data)
        except ValidationError as e:
            logger.info("experiment_rejected", name=experiment_data.name, reason=str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to create experiment: {str(e)}",
            )

        logger.info(
            "experiment_created",
            experiment_id=experiment_orm.experiment_id,
            content_type=experiment_orm.content_type,
            status=experiment_orm.status.value,
        )
        return self._to_response(experiment_orm)

    def get_experiment(self, experiment_id: str) -> ExperimentResponseModel:
        return self._to_response(self._require_experiment(experiment_id))

    def list_experiments(
        self, experiment_status: Optional[ExperimentStatus] = None
    ) -> list[ExperimentResponseModel]:
        return [
            self._to_response(e)
            for e in self.experiment_repo.list_experiments(experiment_status)
        ]

    def list_variants(self, experiment_id: str) -> list[ExperimentVariantConfigResponseModel]:
        experiment = self._require_experiment(experiment_id)
        return [_variant_response(v) for v in experiment.variants]

    def list_active(
        self,
        content_type: Optional[str] = None,
        persona: Optional[str] = None,
        funnel_stage: Optional[str] = None,
    ) -> list[ExperimentResponseModel]:
        """
        Experiments live right now, optionally narrowed to one content type
        and to those that would apply to a persona and/or funnel stage.
        """
        registry = ExperimentRegistry(self.experiment_repo)
        content_types = [content_type] if content_type else [c.value for c in ContentType]

        live = []
        for ct in content_types:
            for experiment in registry.active_for(ct):
                if _covers(experiment, persona, funnel_stage):
                    live.append(self._to_response(experiment))
        return live

    def update_experiment(
        self, experiment_id: str, updates: ExperimentUpdateModel
    ) -> ExperimentResponseModel:
        try:
            experiment = self.experiment_repo.update_experiment(experiment_id, updates)
        except ValidationError as e:
            logger.info("experiment_update_rejected", experiment_id=experiment_id, reason=str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if experiment is None:
            self._require_experiment(experiment_id)
        return self._to_response(experiment)

    def delete_experiment(self, experiment_id: str) -> None:
        if not self.experiment_repo.delete_experiment(experiment_id):
            self._require_experiment(experiment_id)

    def add_variant(
        self, experiment_id: str, variant_data: VariantConfig
    ) -> ExperimentVariantConfigResponseModel:
        try:
            variant = self.experiment_repo.add_variant(experiment_id, variant_data)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return _variant_response(variant)

    def update_variant(
        self, variant_id: str, updates: VariantUpdateModel
    ) -> ExperimentVariantConfigResponseModel:
        try:
            variant = self.experiment_repo.update_variant(variant_id, updates)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if variant is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Variant {variant_id} not found.",
            )
        return _variant_response(variant)

    def set_status(
        self, experiment_id: str, new_status: ExperimentStatus
    ) -> ExperimentResponseModel:
        try:
            experiment = self.experiment_repo.set_status(experiment_id, new_status)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if experiment is None:
            self._require_experiment(experiment_id)
        return self._to_response(experiment)

    def get_session_assignment(
        self,
        experiment_id: str,
        session_id: str,
        persona: Optional[str] = None,
        funnel_stage: Optional[str] = None,
    ) -> SessionAssignmentModel:
        """
        Gets a session's variant, creating the sticky assignment on first touch.
        Sessions outside the traffic allocation get variant_id=None.
        """
        experiment = self._require_experiment(experiment_id)
        if experiment.status != ExperimentStatus.ACTIVE:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Active experiment {experiment_id} not found.",
            )
        if not experiment.variants:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Experiment {experiment_id} has no variants.",
            )

        try:
            variant = self.assigner.assign(experiment, session_id, persona, funnel_stage)
        except RuntimeError as e:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
            )

        return SessionAssignmentModel(
            experiment_id=experiment_id,
            session_id=session_id,
            variant_id=variant.variant_id if variant else None,
            in_experiment=variant is not None,
        )

    def _filter_events(
        self,
        events: list[ExperimentEventORM],
        session_to_variant_assignment: dict[str, dict],
    ) -> list[ExperimentEventORM]:
        """Drops events recorded before the session was bucketed."""
        filtered_events: list[ExperimentEventORM] = []
        for event in events:
            assignment = session_to_variant_assignment.get(event.session_id)
            if assignment and event.timestamp >= assignment["assignment_timestamp"]:
                filtered_events.append(event)
        return filtered_events

    def _generate_variant_agg_stats(
        self,
        variant_orm: list[VariantORM],
        assignment_orm: list[AssignmentORM],
        experiment_events_orm: list[ExperimentEventORM],
        variant_id_to_variant: dict[str, VariantORM],
        primary_metric_name: str,
    ):
        # aggregate event stats on variant level, handle variants without assignments
        variant_stats = {}
        for variant in variant_orm:
            variant_stats[variant.variant_name] = {
                "variant_id": variant.variant_id,
                "is_control": variant.is_control,
                "sessions": set(),
                "event_type_counts": defaultdict(int),
                "conversion_sessions": set(),
                "total_value": 0.0,
                "traffic_weight": variant.traffic_weight,
            }

        for assignment in assignment_orm:
            variant = variant_id_to_variant.get(assignment.variant_id)
            if variant is None:
                continue
            variant_stats[variant.variant_name]["sessions"].add(assignment.session_id)

        for event in experiment_events_orm:
            variant = variant_id_to_variant.get(event.variant_id)
            if variant is None:
                continue
            stats = variant_stats[variant.variant_name]

            stats["event_type_counts"][event.type] += 1

            if event.type == primary_metric_name:
                stats["conversion_sessions"].add(event.session_id)

            if event.event_value:
                stats["total_value"] += event.event_value

        agg_variant_stats = {}
        for variant_name, stats in variant_stats.items():
            total_sessions = len(stats["sessions"])
            conversion_sessions = len(stats["conversion_sessions"])
            conversion_rate = (
                conversion_sessions / total_sessions if total_sessions != 0 else 0.0
            )

            agg_variant_stats[variant_name] = {
                "variant_id": stats["variant_id"],
                "is_control": stats["is_control"],
                "total_assigned_sessions": total_sessions,
                "conversion_rate": conversion_rate,
                "conversion_count": conversion_sessions,
                "event_counts": dict(stats["event_type_counts"]),
                "metrics": {"total_value": stats["total_value"]},
                "traffic_weight": stats["traffic_weight"],
            }

        return agg_variant_stats

    def get_experiment_results(
        self, experiment_id: str, filter_params: Optional[dict] = None
    ):
        """
        Descriptive per-variant results: assigned sessions, event counts by
        type and primary-metric conversion. Events recorded before a
        session's assignment are ignored.
        """
        experiment_orm = self._require_experiment(experiment_id)

        variants_orm = experiment_orm.variants
        assignment_orm = self.assignment_repo.get_assignments_for_experiment(
            experiment_id
        )
        experiment_events_orm = self.event_repo.get_events_for_experiment(
            experiment_id, **(filter_params or {})
        )

        # lookup tables
        session_to_variant_assignment = {
            assignment.session_id: {
                "variant_id": assignment.variant_id,
                "assignment_timestamp": assignment.assignment_timestamp,
            }
            for assignment in assignment_orm
        }
        variant_id_to_variant = {variant.variant_id: variant for variant in variants_orm}

        filtered_events = self._filter_events(
            experiment_events_orm, session_to_variant_assignment
        )

        started = experiment_orm.start_time or experiment_orm.created_at
        now = datetime.utcnow()
        finished = (
            experiment_orm.end_time
            if experiment_orm.end_time and now > experiment_orm.end_time
            else now
        )
        days_running = (finished - started).days if started else 0

        converted_sessions = {
            event.session_id
            for event in filtered_events
            if event.type == experiment_orm.primary_metric_name
        }
        global_conversion_rate = (
            len(converted_sessions) / len(assignment_orm) if assignment_orm else 0.0
        )

        return {
            "experiment_id": experiment_orm.experiment_id,
            "name": experiment_orm.name,
            "description": experiment_orm.description,
            "content_type": experiment_orm.content_type,
            "start_time": experiment_orm.start_time,
            "end_time": experiment_orm.end_time,
            "experiment_days_running": days_running,
            "status": experiment_orm.status.value,
            "traffic_allocation": experiment_orm.traffic_allocation,
            "total_variants": len(variants_orm),
            "total_events": len(filtered_events),
            "primary_metric_name": experiment_orm.primary_metric_name,
            "total_sessions_in_experiment": len(assignment_orm),
            "global_conversion_rate": global_conversion_rate,
            # variant drill down stats
            "variant_stats": self._generate_variant_agg_stats(
                variants_orm,
                assignment_orm,
                filtered_events,
                variant_id_to_variant,
                experiment_orm.primary_metric_name,
            ),
        }
