"""Deterministic, sticky bucketing of sessions into experiment variants.

Both decisions are pure functions of (experiment_id, session_id):

- the allocation gate hashes with the "alloc" salt and keeps the session when
  the bucket, scaled to [0, 100), is below the experiment's traffic allocation;
- the variant pick hashes with the "variant" salt, scales to [0, total weight)
  and walks the variants in creation order accumulating weight.

The first pick for a session is persisted through an insert-or-fetch on the
assignment store, and from then on the stored row wins over any weight or
variant-set change.
"""

import hashlib
from datetime import datetime
from typing import Optional

from content_engine.core.logging import get_logger
from content_engine.models.orm.experiment import ExperimentORM, VariantORM
from content_engine.repositories.assignment_repo import AssignmentRepository

logger = get_logger(__name__)

ALLOCATION_SALT = "alloc"
VARIANT_SALT = "variant"


def stable_hash(experiment_id: str, session_id: str, salt: str) -> float:
    """SHA-256 of the inputs mapped uniformly onto [0.0, 1.0)."""
    hash_input = f"{experiment_id}:{session_id}:{salt}"
    hash_bytes = hashlib.sha256(hash_input.encode()).digest()
    # First 8 bytes as unsigned int, normalized to [0, 1)
    return int.from_bytes(hash_bytes[:8], "big") / (2**64)


def in_allocation(experiment_id: str, session_id: str, traffic_allocation: float) -> bool:
    bucket = stable_hash(experiment_id, session_id, ALLOCATION_SALT) * 100
    return bucket < (traffic_allocation or 0)


def ordered_variants(variants) -> list:
    return sorted(
        variants, key=lambda v: (v.created_at or datetime.min, v.variant_id)
    )


def select_variant(variants, bucket: float):
    """
    Picks the variant whose cumulative weight range contains
    bucket * total_weight. Zero-weight variants are never picked; returns
    None when there is nothing to pick from.
    """
    choices = [(max(v.traffic_weight or 0.0, 0.0), v) for v in ordered_variants(variants)]
    total_weight = sum(w for w, _ in choices)
    if total_weight <= 0:
        return None

    point = bucket * total_weight
    cumulative_weight = 0.0
    for weight, variant in choices:
        cumulative_weight += weight
        if point < cumulative_weight:
            return variant

    # Floating point edge: fall back to the last weighted variant
    return [v for w, v in choices if w > 0][-1]


class BucketingAssigner:
    def __init__(self, assignment_repo: AssignmentRepository):
        self.assignment_repo = assignment_repo

    def peek(self, experiment: ExperimentORM, session_id: str) -> Optional[VariantORM]:
        """The variant a fresh session would get, without touching the assignment store."""
        if not in_allocation(
            experiment.experiment_id, session_id, experiment.traffic_allocation
        ):
            return None
        return select_variant(
            experiment.variants,
            stable_hash(experiment.experiment_id, session_id, VARIANT_SALT),
        )

    def assign(
        self,
        experiment: ExperimentORM,
        session_id: str,
        persona: Optional[str] = None,
        funnel_stage: Optional[str] = None,
    ) -> Optional[VariantORM]:
        """
        Returns the session's variant, or None when the session is outside the
        experiment.

        1. Allocation gate (excluded sessions never read or write the store).
        2. An existing assignment is returned unconditionally.
        3. Hash-based variant selection.
        4. Insert-or-fetch; a lost race returns the winner's variant.
        """
        experiment_id = experiment.experiment_id

        if not in_allocation(experiment_id, session_id, experiment.traffic_allocation):
            return None

        existing = self.assignment_repo.get_assignment(experiment_id, session_id)
        if existing is not None:
            if existing.variant is None:
                logger.warning(
                    "assignment_variant_missing",
                    experiment_id=experiment_id,
                    session_id=session_id,
                    variant_id=existing.variant_id,
                )
            return existing.variant

        selected = select_variant(
            experiment.variants,
            stable_hash(experiment_id, session_id, VARIANT_SALT),
        )
        if selected is None:
            logger.warning("experiment_has_no_weighted_variants", experiment_id=experiment_id)
            return None

        result = self.assignment_repo.insert_if_absent(
            experiment_id=experiment_id,
            session_id=session_id,
            variant_id=selected.variant_id,
            persona=persona,
            funnel_stage=funnel_stage,
        )

        if result.inserted:
            logger.info(
                "assignment_created",
                experiment_id=experiment_id,
                session_id=session_id,
                variant_id=result.variant_id,
            )
        else:
            logger.info(
                "assignment_race_resolved",
                experiment_id=experiment_id,
                session_id=session_id,
                discarded_variant_id=selected.variant_id,
                variant_id=result.variant_id,
            )

        return result.assignment.variant
