"""
Sticky assignment and insert-or-fetch reconciliation.
"""

from datetime import datetime

import pytest
from sqlalchemy import insert

from content_engine.models.orm.assignment import AssignmentORM
from content_engine.models.schemas.experiment import VariantConfig, VariantUpdateModel
from content_engine.repositories.assignment_repo import AssignmentRepository
from content_engine.repositories.experiment_repo import ExperimentRepository
from content_engine.services.bucketing import in_allocation


def allocated_sessions(experiment, count, prefix="session"):
    found, i = [], 0
    while len(found) < count:
        session_id = f"{prefix}-{i}"
        if in_allocation(experiment.experiment_id, session_id, experiment.traffic_allocation):
            found.append(session_id)
        i += 1
    return found


class TestStickyAssignment:
    def test_repeated_calls_return_same_variant(self, db, make_experiment, assigner):
        experiment = make_experiment()

        first = assigner.assign(experiment, "xyz", "donor", "decision")
        second = assigner.assign(experiment, "xyz", "donor", "decision")

        assert first is not None
        assert first.variant_id == second.variant_id
        assert len(AssignmentRepository(db).get_assignments_for_experiment(
            experiment.experiment_id
        )) == 1

    def test_assignment_records_context(self, db, make_experiment, assigner):
        experiment = make_experiment()

        assigner.assign(experiment, "xyz", "donor", "decision")

        stored = AssignmentRepository(db).get_assignment(experiment.experiment_id, "xyz")
        assert stored.persona == "donor"
        assert stored.funnel_stage == "decision"
        assert isinstance(stored.assignment_timestamp, datetime)

    def test_survives_weight_change(self, db, make_experiment, assigner):
        experiment = make_experiment()
        original = assigner.assign(experiment, "xyz")
        other = next(v for v in experiment.variants if v.variant_id != original.variant_id)

        repo = ExperimentRepository(db)
        repo.update_variant(original.variant_id, VariantUpdateModel(traffic_weight=0))
        repo.update_variant(other.variant_id, VariantUpdateModel(traffic_weight=100))
        experiment = repo.get_experiment_with_variants(experiment.experiment_id)

        assert assigner.assign(experiment, "xyz").variant_id == original.variant_id
        # A fresh session can only land on the remaining weighted variant
        assert assigner.assign(experiment, "fresh-session").variant_id == other.variant_id

    def test_survives_new_variant(self, db, make_experiment, assigner):
        experiment = make_experiment()
        sessions = allocated_sessions(experiment, 20)
        before = {s: assigner.assign(experiment, s).variant_id for s in sessions}

        repo = ExperimentRepository(db)
        new_variant = repo.add_variant(
            experiment.experiment_id, VariantConfig(variant_name="B", traffic_weight=1000)
        )
        experiment = repo.get_experiment_with_variants(experiment.experiment_id)

        after = {s: assigner.assign(experiment, s).variant_id for s in sessions}
        assert after == before

        newcomers = [
            assigner.assign(experiment, s).variant_id
            for s in allocated_sessions(experiment, 20, prefix="newcomer")
        ]
        assert new_variant.variant_id in newcomers

    def test_excluded_session_never_touches_store(self, db, make_experiment, assigner):
        experiment = make_experiment(traffic_allocation=0)

        assert assigner.assign(experiment, "abc") is None
        assert AssignmentRepository(db).get_assignments_for_experiment(
            experiment.experiment_id
        ) == []

    def test_peek_matches_first_assignment_without_writing(
        self, db, make_experiment, assigner
    ):
        experiment = make_experiment()

        peeked = assigner.peek(experiment, "xyz")
        assert AssignmentRepository(db).get_assignment(experiment.experiment_id, "xyz") is None

        assert assigner.assign(experiment, "xyz").variant_id == peeked.variant_id

    def test_no_weighted_variants_means_no_assignment(self, db, make_experiment, assigner):
        experiment = make_experiment(
            variants=[{"variant_name": "Control", "traffic_weight": 0}]
        )

        assert assigner.assign(experiment, "xyz") is None


class TestInsertOrFetch:
    def test_insert_if_absent_reports_existing_row(
        self, db, session_factory, make_experiment
    ):
        experiment = make_experiment()
        control, variant_a = experiment.variants
        control_id, variant_a_id = control.variant_id, variant_a.variant_id

        first = AssignmentRepository(db).insert_if_absent(
            experiment.experiment_id, "abc", control_id
        )
        # A second request with its own session
        other_session = session_factory()
        try:
            second = AssignmentRepository(other_session).insert_if_absent(
                experiment.experiment_id, "abc", variant_a_id
            )
        finally:
            other_session.close()

        assert first.inserted is True
        assert second.inserted is False
        assert second.variant_id == control_id

    def test_lost_race_returns_winner(self, db, make_experiment, assigner, monkeypatch):
        experiment = make_experiment()
        local_pick = assigner.peek(experiment, "xyz")
        winner = next(v for v in experiment.variants if v.variant_id != local_pick.variant_id)

        # Another process commits its assignment after our existence check
        db.execute(
            insert(AssignmentORM).values(
                experiment_id=experiment.experiment_id,
                session_id="xyz",
                variant_id=winner.variant_id,
                assignment_timestamp=datetime.utcnow(),
            )
        )
        db.commit()

        repo = assigner.assignment_repo
        real_get = repo.get_assignment
        calls = []

        def stale_then_real(experiment_id, session_id):
            calls.append(session_id)
            if len(calls) == 1:
                return None
            return real_get(experiment_id, session_id)

        monkeypatch.setattr(repo, "get_assignment", stale_then_real)

        result = assigner.assign(experiment, "xyz")

        assert result.variant_id == winner.variant_id
        assert len(calls) == 2
        rows = AssignmentRepository(db).get_assignments_for_experiment(
            experiment.experiment_id
        )
        assert [r.variant_id for r in rows] == [winner.variant_id]

    def test_conflict_without_readable_row_raises(self, db, make_experiment, monkeypatch):
        experiment = make_experiment()
        variant_id = experiment.variants[0].variant_id
        db.execute(
            insert(AssignmentORM).values(
                experiment_id=experiment.experiment_id,
                session_id="abc",
                variant_id=variant_id,
                assignment_timestamp=datetime.utcnow(),
            )
        )
        db.commit()

        repo = AssignmentRepository(db)
        monkeypatch.setattr(repo, "get_assignment", lambda *args: None)

        with pytest.raises(RuntimeError):
            repo.insert_if_absent(experiment.experiment_id, "abc", variant_id)
