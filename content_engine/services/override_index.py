# services/override_index.py
from typing import Optional

from content_engine.models.orm.content import ContentItemORM, VisibilityOverrideORM
from content_engine.models.schemas.resolution import ResolvedContent
from content_engine.repositories.override_repo import OverrideRepository


class OverrideIndex:
    """
    Persona x funnel stage overrides of a content item, with wildcard slots.

    Precedence is an explicit ordered list of candidate keys, evaluated top to
    bottom; the first stored override wins:

        1. (persona, funnel_stage)
        2. (persona, None)
        3. (None,    funnel_stage)
        4. (None,    None)

    No match means the base item is used as-is.
    """

    def __init__(self, override_repo: OverrideRepository):
        self.override_repo = override_repo

    @staticmethod
    def lookup_keys(
        persona: Optional[str], funnel_stage: Optional[str]
    ) -> list[tuple[Optional[str], Optional[str]]]:
        keys = [
            (persona, funnel_stage),
            (persona, None),
            (None, funnel_stage),
            (None, None),
        ]
        # A visitor without a persona/stage collapses onto the wildcard keys
        return list(dict.fromkeys(keys))

    def lookup(
        self, content_item_id: str, persona: Optional[str], funnel_stage: Optional[str]
    ) -> Optional[VisibilityOverrideORM]:
        candidates = self.override_repo.candidates_for(
            content_item_id, persona, funnel_stage
        )
        by_slot = {(o.persona, o.funnel_stage): o for o in candidates}

        for key in self.lookup_keys(persona, funnel_stage):
            if key in by_slot:
                return by_slot[key]
        return None

    def all_for(self, content_item_id: str) -> list[VisibilityOverrideORM]:
        return self.override_repo.all_for(content_item_id)

    @staticmethod
    def apply(
        item: ContentItemORM,
        override: Optional[VisibilityOverrideORM],
        is_preview: bool = False,
    ) -> ResolvedContent:
        """
        Merges the matched override onto the base item. Each field falls back
        to the base item on its own; there is no inheritance from a less
        specific override.
        """
        if override is None:
            return ResolvedContent(
                content_item_id=item.content_item_id,
                title=item.title,
                description=item.description,
                image_ref=item.image_ref,
                is_visible=True,
                order=item.order,
                is_preview=is_preview,
            )

        def pick(replacement, base):
            return base if replacement is None else replacement

        return ResolvedContent(
            content_item_id=item.content_item_id,
            title=pick(override.title_override, item.title),
            description=pick(override.description_override, item.description),
            image_ref=pick(override.image_ref_override, item.image_ref),
            is_visible=bool(override.is_visible),
            order=pick(override.order, item.order),
            is_preview=is_preview,
        )
