"""
Authoring write path below the HTTP layer: constraint violations surface as
ValidationError, experiment edits re-check slot conflicts, deletes clean up.
"""

import pydantic
import pytest
from sqlalchemy import select

from content_engine.core.errors import ValidationError
from content_engine.models.orm.assignment import AssignmentORM
from content_engine.models.schemas.content import ContentItemUpdateModel
from content_engine.models.schemas.experiment import (
    ExperimentUpdateModel,
    VariantUpdateModel,
)
from content_engine.repositories.assignment_repo import AssignmentRepository
from content_engine.repositories.content_repo import ContentRepository
from content_engine.repositories.experiment_repo import ExperimentRepository


class TestNullUpdates:
    def test_update_models_reject_explicit_null(self):
        with pytest.raises(pydantic.ValidationError):
            VariantUpdateModel(traffic_weight=None)
        with pytest.raises(pydantic.ValidationError):
            ContentItemUpdateModel(title=None)
        with pytest.raises(pydantic.ValidationError):
            ExperimentUpdateModel(traffic_allocation=None)

    def test_omitted_fields_are_not_nulls(self):
        assert VariantUpdateModel(is_control=True).model_dump(exclude_unset=True) == {
            "is_control": True
        }

    def test_variant_not_null_violation_is_validation_error(self, db, make_experiment):
        experiment = make_experiment()
        variant_id = experiment.variants[0].variant_id
        updates = VariantUpdateModel.model_construct(
            _fields_set={"traffic_weight"}, traffic_weight=None
        )

        with pytest.raises(ValidationError):
            ExperimentRepository(db).update_variant(variant_id, updates)

        assert ExperimentRepository(db).get_variant(variant_id).traffic_weight == 50

    def test_content_not_null_violation_is_validation_error(self, db, make_item):
        item = make_item(title="Welcome")
        updates = ContentItemUpdateModel.model_construct(_fields_set={"title"}, title=None)

        with pytest.raises(ValidationError):
            ContentRepository(db).update_content_item(item.content_item_id, updates)

        assert ContentRepository(db).get(item.content_item_id).title == "Welcome"


class TestExperimentUpdates:
    def test_duplicate_targets_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ExperimentUpdateModel(
                targets=[
                    {"persona": "donor", "funnel_stage": "decision"},
                    {"persona": "donor", "funnel_stage": "decision"},
                ]
            )

    def test_window_change_rechecks_conflicts(self, db, make_experiment):
        make_experiment(start_time="2030-01-01T00:00:00", end_time="2030-02-01T00:00:00")
        later = make_experiment(
            start_time="2030-03-01T00:00:00", end_time="2030-04-01T00:00:00"
        )

        with pytest.raises(ValidationError):
            ExperimentRepository(db).update_experiment(
                later.experiment_id,
                ExperimentUpdateModel(start_time="2030-01-15T00:00:00"),
            )

        kept = ExperimentRepository(db).get_experiment_with_variants(later.experiment_id)
        assert kept.start_time.month == 3

    def test_allocation_change_keeps_stored_assignments(
        self, db, make_experiment, assigner
    ):
        experiment = make_experiment()
        variant = assigner.assign(experiment, "s1")
        repo = ExperimentRepository(db)

        updated = repo.update_experiment(
            experiment.experiment_id, ExperimentUpdateModel(traffic_allocation=0)
        )

        assert updated.traffic_allocation == 0
        stored = AssignmentRepository(db).get_assignment(experiment.experiment_id, "s1")
        assert stored.variant_id == variant.variant_id
        assert assigner.assign(updated, "s1") is None

    def test_empty_targets_open_every_slot(self, db, make_experiment):
        experiment = make_experiment(
            targets=[{"persona": "donor", "funnel_stage": "decision"}]
        )

        updated = ExperimentRepository(db).update_experiment(
            experiment.experiment_id, ExperimentUpdateModel(targets=[])
        )

        assert updated.targets == []
        assert updated.targets_slot("parent", "awareness") is True

    def test_unknown_experiment(self, db):
        repo = ExperimentRepository(db)

        assert repo.update_experiment("missing", ExperimentUpdateModel(name="x")) is None
        assert repo.delete_experiment("missing") is False


class TestDeletes:
    def test_delete_experiment_cascades(self, db, make_experiment, assigner):
        experiment = make_experiment()
        assigner.assign(experiment, "s1")
        experiment_id = experiment.experiment_id

        assert ExperimentRepository(db).delete_experiment(experiment_id) is True

        assert ExperimentRepository(db).get_experiment_with_variants(experiment_id) is None
        assert db.scalars(select(AssignmentORM)).all() == []

    def test_list_experiments_by_status(self, db, make_experiment):
        make_experiment(name="live")
        make_experiment(name="draft", status="draft", content_type="cta", variants=[])
        repo = ExperimentRepository(db)

        assert {e.name for e in repo.list_experiments()} == {"live", "draft"}
        assert [e.name for e in repo.list_experiments("draft")] == ["draft"]

    def test_delete_content_item_unlinks_variants(self, db, make_item, make_override, make_experiment):
        linked = make_item(title="Alt")
        make_override(linked.content_item_id, persona="donor", title_override="x")
        experiment = make_experiment(
            variants=[{"variant_name": "Alt", "linked_content_item_id": linked.content_item_id}]
        )
        variant_id = experiment.variants[0].variant_id

        assert ContentRepository(db).delete_content_item(linked.content_item_id) is True

        db.expire_all()
        assert ContentRepository(db).get(linked.content_item_id) is None
        assert ExperimentRepository(db).get_variant(variant_id).linked_content_item_id is None

    def test_list_items_includes_inactive(self, db, make_item):
        make_item(title="On")
        make_item(title="Off", is_active=False, type="cta")
        repo = ContentRepository(db)

        assert {i.title for i in repo.list_items()} == {"On", "Off"}
        assert [i.title for i in repo.list_items("cta")] == ["Off"]
        assert [i.title for i in repo.list_items(active_only=True)] == ["On"]
