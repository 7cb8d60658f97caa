# services/content_resolver.py
from typing import Optional

from pydantic import ValidationError as ConfigurationShapeError
from sqlalchemy.orm import Session

from content_engine.core.errors import DanglingReferenceError
from content_engine.core.logging import get_logger
from content_engine.models.orm.content import ContentItemORM
from content_engine.models.orm.experiment import ExperimentORM, VariantORM
from content_engine.models.schemas.resolution import PreviewOverride, ResolvedContent
from content_engine.models.schemas.variation import parse_variant_configuration
from content_engine.repositories.assignment_repo import AssignmentRepository
from content_engine.repositories.content_repo import ContentRepository
from content_engine.repositories.experiment_repo import ExperimentRepository
from content_engine.repositories.override_repo import OverrideRepository
from content_engine.services.bucketing import BucketingAssigner
from content_engine.services.experiment_registry import ExperimentRegistry
from content_engine.services.override_index import OverrideIndex

logger = get_logger(__name__)


def _skip_layer(error: DanglingReferenceError, **context) -> None:
    logger.warning(
        "dangling_reference",
        kind=error.kind,
        reference_id=error.reference_id,
        reason=error.reason,
        **context,
    )


class ContentResolver:
    """
    Produces the exact title/description/image to render for one content item
    in one visitor context.

    Precedence, highest first:
        1. admin preview (forced persona/stage/variants, no assignment I/O)
        2. experiment variant (linked item as-is, or variation fields)
        3. persona x funnel stage visibility override
        4. base item

    The two variant forms treat an override that hides the item differently.
    A linked item replaces the slot outright and is always visible, so a
    variant can surface content that the override hid. A configuration is
    layered onto the overridden base and keeps its visibility, so the item
    stays hidden.

    Missing or inactive references make their layer absent; resolution never
    raises because of admin data.
    """

    def __init__(
        self,
        content_repo: ContentRepository,
        override_index: OverrideIndex,
        registry: ExperimentRegistry,
        assigner: BucketingAssigner,
    ):
        self.content_repo = content_repo
        self.override_index = override_index
        self.registry = registry
        self.assigner = assigner

    @classmethod
    def from_session(cls, db: Session) -> "ContentResolver":
        """Wires a resolver (and a fresh experiment registry) for one request."""
        return cls(
            content_repo=ContentRepository(db),
            override_index=OverrideIndex(OverrideRepository(db)),
            registry=ExperimentRegistry(ExperimentRepository(db)),
            assigner=BucketingAssigner(AssignmentRepository(db)),
        )

    def resolve(
        self,
        item: ContentItemORM,
        persona: Optional[str],
        funnel_stage: Optional[str],
        session_id: str,
        preview: Optional[PreviewOverride] = None,
    ) -> ResolvedContent:
        is_preview = preview is not None
        if is_preview:
            persona = preview.forced_persona or persona
            funnel_stage = preview.forced_funnel_stage or funnel_stage

        if not item.is_active:
            return ResolvedContent(
                content_item_id=item.content_item_id,
                is_visible=False,
                order=item.order,
                is_preview=is_preview,
            )

        # Layers 3 and 4
        base = self.override_index.apply(
            item,
            self.override_index.lookup(item.content_item_id, persona, funnel_stage),
            is_preview=is_preview,
        )

        # Layers 1 and 2
        experiment, variant = self._experiment_variant(
            item, persona, funnel_stage, session_id, preview
        )
        if variant is None:
            return base

        return self._apply_variant(item, base, experiment, variant)

    def resolve_by_id(
        self,
        content_item_id: str,
        persona: Optional[str],
        funnel_stage: Optional[str],
        session_id: str,
        preview: Optional[PreviewOverride] = None,
    ) -> ResolvedContent:
        item = self.content_repo.get(content_item_id)
        if item is None:
            _skip_layer(
                DanglingReferenceError("content_item", content_item_id, "does not exist"),
                session_id=session_id,
            )
            return ResolvedContent(
                content_item_id=content_item_id,
                is_visible=False,
                is_preview=preview is not None,
            )
        return self.resolve(item, persona, funnel_stage, session_id, preview)

    def resolve_section(
        self,
        content_type: str,
        persona: Optional[str],
        funnel_stage: Optional[str],
        session_id: str,
        preview: Optional[PreviewOverride] = None,
    ) -> list[ResolvedContent]:
        """Every visible item of a content type, resolved and ordered for rendering."""
        items = self.content_repo.list_by_type(content_type)
        resolved = [
            self.resolve(item, persona, funnel_stage, session_id, preview)
            for item in items
        ]
        visible = [r for r in resolved if r.is_visible]
        return sorted(visible, key=lambda r: (r.order, r.content_item_id))

    def _experiment_variant(
        self,
        item: ContentItemORM,
        persona: Optional[str],
        funnel_stage: Optional[str],
        session_id: str,
        preview: Optional[PreviewOverride],
    ) -> tuple[Optional[ExperimentORM], Optional[VariantORM]]:
        experiment = self.registry.find_active(item.type, persona, funnel_stage)
        if experiment is None:
            return None, None

        if preview is not None:
            forced_variant_id = preview.forced_variants.get(experiment.experiment_id)
            if forced_variant_id is None:
                return experiment, self.assigner.peek(experiment, session_id)

            forced = next(
                (v for v in experiment.variants if v.variant_id == forced_variant_id),
                None,
            )
            if forced is None:
                _skip_layer(
                    DanglingReferenceError(
                        "forced_variant",
                        forced_variant_id,
                        f"is not a variant of experiment {experiment.experiment_id}",
                    )
                )
            return experiment, forced

        try:
            variant = self.assigner.assign(experiment, session_id, persona, funnel_stage)
        except RuntimeError:
            logger.error(
                "assignment_failed",
                experiment_id=experiment.experiment_id,
                session_id=session_id,
                exc_info=True,
            )
            return experiment, None

        return experiment, variant

    def _apply_variant(
        self,
        item: ContentItemORM,
        base: ResolvedContent,
        experiment: ExperimentORM,
        variant: VariantORM,
    ) -> ResolvedContent:
        experiment_id = experiment.experiment_id
        variant_id = variant.variant_id

        if variant.linked_content_item_id:
            linked = self.content_repo.get(variant.linked_content_item_id)
            if linked is None or not linked.is_active:
                reason = "does not exist" if linked is None else "is inactive"
                _skip_layer(
                    DanglingReferenceError(
                        "linked_content_item", variant.linked_content_item_id, reason
                    ),
                    experiment_id=experiment_id,
                    variant_id=variant_id,
                )
                return base

            # The linked item is rendered as-is, no override layering
            return ResolvedContent(
                content_item_id=item.content_item_id,
                title=linked.title,
                description=linked.description,
                image_ref=linked.image_ref,
                is_visible=True,
                order=base.order,
                source_variant_id=variant_id,
                experiment_id=experiment_id,
                is_preview=base.is_preview,
            )

        try:
            variation = parse_variant_configuration(variant.configuration_json)
        except ConfigurationShapeError:
            _skip_layer(
                DanglingReferenceError(
                    "variant_configuration", variant_id, "does not match any variation shape"
                ),
                experiment_id=experiment_id,
            )
            return base

        update = {"source_variant_id": variant_id, "experiment_id": experiment_id}
        if variation is not None:
            update["variation"] = variation
            for field in ("title", "description", "image_ref"):
                value = getattr(variation, field, None)
                if value is not None:
                    update[field] = value

        return base.model_copy(update=update)
