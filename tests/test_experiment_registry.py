"""
Active experiment lookup, the lowest-id tie-break and activation conflicts.
"""

from datetime import datetime, timedelta

import pytest

from content_engine.core.errors import ValidationError
from content_engine.models.enums import ExperimentStatus
from content_engine.repositories.experiment_repo import ExperimentRepository
from content_engine.services.experiment_registry import ExperimentRegistry


@pytest.fixture
def registry(db):
    return ExperimentRegistry(ExperimentRepository(db))


def force_active(db, experiment):
    """Bypasses the activation check to set up a misconfigured slot."""
    experiment.status = ExperimentStatus.ACTIVE
    db.commit()
    return experiment


class TestFindActive:
    def test_untargeted_experiment_covers_every_slot(self, registry, make_experiment):
        experiment = make_experiment()

        assert registry.find_active("hero", "donor", "decision") is experiment
        assert registry.find_active("hero", None, None) is experiment
        assert registry.find_active("cta", "donor", "decision") is None

    def test_targets_restrict_slots(self, registry, make_experiment):
        experiment = make_experiment(
            targets=[{"persona": "donor", "funnel_stage": "decision"}]
        )

        assert registry.find_active("hero", "donor", "decision") is experiment
        assert registry.find_active("hero", "donor", "awareness") is None
        assert registry.find_active("hero", None, None) is None

    def test_only_active_experiments_participate(self, registry, make_experiment):
        make_experiment(status="draft")
        make_experiment(status="paused", name="paused-one")

        assert registry.find_active("hero", "donor", "decision") is None

    def test_time_window(self, db, make_experiment):
        now = datetime(2025, 6, 1, 12, 0)
        make_experiment(
            start_time=now - timedelta(days=1), end_time=now + timedelta(days=1)
        )
        repo = ExperimentRepository(db)

        assert ExperimentRegistry(repo, now=now).find_active("hero", None, None)
        assert ExperimentRegistry(repo, now=now + timedelta(days=2)).find_active(
            "hero", None, None
        ) is None
        assert ExperimentRegistry(repo, now=now - timedelta(days=2)).find_active(
            "hero", None, None
        ) is None

    def test_active_for_is_memoized_per_registry(self, registry, make_experiment):
        first = registry.active_for("hero")
        make_experiment()

        assert registry.active_for("hero") == first == []

    def test_overlapping_experiments_resolve_to_lowest_id(
        self, db, registry, make_experiment
    ):
        one = make_experiment(status="draft")
        two = make_experiment(status="draft")
        force_active(db, one)
        force_active(db, two)

        chosen = registry.find_active("hero", "donor", "decision")

        assert chosen.experiment_id == min(one.experiment_id, two.experiment_id)


class TestActivationConflicts:
    def test_activating_onto_occupied_slot_rejected(self, db, make_experiment):
        make_experiment()
        draft = make_experiment(status="draft")

        with pytest.raises(ValidationError):
            ExperimentRepository(db).set_status(draft.experiment_id, ExperimentStatus.ACTIVE)

        db.refresh(draft)
        assert draft.status == ExperimentStatus.DRAFT

    def test_creating_active_onto_occupied_slot_rejected(self, make_experiment):
        make_experiment(targets=[{"persona": "donor", "funnel_stage": "decision"}])

        with pytest.raises(ValidationError):
            make_experiment()

    def test_disjoint_targets_may_both_be_active(self, make_experiment):
        make_experiment(targets=[{"persona": "donor", "funnel_stage": "decision"}])
        make_experiment(targets=[{"persona": "parent", "funnel_stage": "decision"}])

    def test_other_content_type_does_not_conflict(self, make_experiment):
        make_experiment()
        make_experiment(content_type="cta")

    def test_disjoint_windows_do_not_conflict(self, make_experiment):
        start = datetime(2025, 1, 1)
        make_experiment(start_time=start, end_time=start + timedelta(days=10))
        make_experiment(
            start_time=start + timedelta(days=11), end_time=start + timedelta(days=20)
        )

    def test_pausing_frees_the_slot(self, db, make_experiment):
        running = make_experiment()
        draft = make_experiment(status="draft")
        repo = ExperimentRepository(db)

        repo.set_status(running.experiment_id, ExperimentStatus.PAUSED)
        activated = repo.set_status(draft.experiment_id, ExperimentStatus.ACTIVE)

        assert activated.status == ExperimentStatus.ACTIVE
