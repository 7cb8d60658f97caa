# services/experiment_registry.py
from datetime import datetime
from typing import Optional

from content_engine.core.logging import get_logger
from content_engine.models.orm.experiment import ExperimentORM
from content_engine.repositories.experiment_repo import ExperimentRepository

logger = get_logger(__name__)


class ExperimentRegistry:
    """
    Read view of the experiments live at one instant.

    Built per request and passed to the resolver; the per-content-type memo
    lives only as long as this object.
    """

    def __init__(self, experiment_repo: ExperimentRepository, now: Optional[datetime] = None):
        self.experiment_repo = experiment_repo
        self.now = now or datetime.utcnow()
        self._active: dict[str, list[ExperimentORM]] = {}

    def active_for(self, content_type: str) -> list[ExperimentORM]:
        """Active, in-window experiments for a content type, ordered by experiment_id."""
        if content_type not in self._active:
            self._active[content_type] = list(
                self.experiment_repo.get_active_experiments(content_type, now=self.now)
            )
        return self._active[content_type]

    def find_active(
        self, content_type: str, persona: Optional[str], funnel_stage: Optional[str]
    ) -> Optional[ExperimentORM]:
        """
        The active experiment covering (content_type, persona, funnel_stage).

        At most one should exist. If several do, the lowest experiment_id wins
        and the conflict is logged for admins.
        """
        matches = [
            e
            for e in self.active_for(content_type)
            if e.targets_slot(persona, funnel_stage)
        ]
        if not matches:
            return None

        if len(matches) > 1:
            logger.warning(
                "experiment_slot_conflict",
                content_type=content_type,
                persona=persona,
                funnel_stage=funnel_stage,
                experiment_ids=[e.experiment_id for e in matches],
                chosen=matches[0].experiment_id,
            )
        return matches[0]
