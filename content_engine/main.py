from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Path, Query
from sqlalchemy.orm import Session
from starlette import status

from content_engine.core.auth import require_auth_token
from content_engine.core.db import get_db, init_db
from content_engine.core.logging import get_logger, setup_logging
from content_engine.core.settings import config_settings
from content_engine.models.enums import (
    ContentType,
    ExperimentStatus,
    FunnelStage,
    Persona,
)
from content_engine.models.schemas.assignment import SessionAssignmentModel
from content_engine.models.schemas.content import (
    ContentItemCreateModel,
    ContentItemModel,
    ContentItemUpdateModel,
    VisibilityOverrideCreateModel,
    VisibilityOverrideModel,
    VisibilityOverrideUpdateModel,
)
from content_engine.models.schemas.event import EventCreateModel, EventResponseModel
from content_engine.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentStatusUpdateModel,
    ExperimentUpdateModel,
    ExperimentVariantConfigResponseModel,
    VariantConfig,
    VariantUpdateModel,
)
from content_engine.models.schemas.resolution import (
    PreviewRequestModel,
    ResolvedContent,
    ResolveRequestModel,
)
from content_engine.services.content_resolver import ContentResolver
from content_engine.services.content_service import ContentService
from content_engine.services.event_service import EventService
from content_engine.services.experiment_service import ExperimentService

logger = get_logger(__name__)

admin = [Depends(require_auth_token)]


def _value(member):
    return member.value if member is not None else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(level=config_settings.LOG_LEVEL, json_logs=config_settings.LOG_JSON)
    if config_settings.AUTO_CREATE_TABLES:
        init_db()
    logger.info("content_engine_started", version=config_settings.APP_VERSION)
    yield


app = FastAPI(
    title=config_settings.APP_NAME,
    description="Persona and funnel stage aware content resolution with sticky A/B assignment",
    version=config_settings.APP_VERSION,
    lifespan=lifespan,
)


# --- Resolution (public) ---


@app.post(
    "/resolve",
    response_model=ResolvedContent,
    status_code=status.HTTP_200_OK,
    summary="Resolve one content item for a visitor",
)
def post_resolve(request: ResolveRequestModel, db: Session = Depends(get_db)):
    """
    Returns the exact title/description/image to render. Unknown or inactive
    items come back with is_visible=false rather than an error.
    """
    resolver = ContentResolver.from_session(db)
    return resolver.resolve_by_id(
        request.content_item_id,
        persona=request.persona,
        funnel_stage=request.funnel_stage,
        session_id=request.session_id,
    )


@app.get(
    "/sections/{content_type}",
    response_model=list[ResolvedContent],
    status_code=status.HTTP_200_OK,
    summary="Resolve every visible item of a content type",
)
def get_section(
    content_type: ContentType = Path(..., description="The section's content type."),
    session_id: str = Query(...),
    persona: Optional[Persona] = Query(None),
    funnel_stage: Optional[FunnelStage] = Query(None),
    db: Session = Depends(get_db),
):
    resolver = ContentResolver.from_session(db)
    return resolver.resolve_section(
        content_type.value,
        persona=_value(persona),
        funnel_stage=_value(funnel_stage),
        session_id=session_id,
    )


@app.post(
    "/preview",
    response_model=ResolvedContent,
    status_code=status.HTTP_200_OK,
    summary="Preview an item with forced persona, stage or variants",
    dependencies=admin,
)
def post_preview(request: PreviewRequestModel, db: Session = Depends(get_db)):
    """Never creates assignments; the result is flagged is_preview."""
    resolver = ContentResolver.from_session(db)
    return resolver.resolve_by_id(
        request.content_item_id,
        persona=request.persona,
        funnel_stage=request.funnel_stage,
        session_id=request.session_id,
        preview=request.preview,
    )


# --- Content authoring (admin) ---


@app.get(
    "/content",
    response_model=list[ContentItemModel],
    status_code=status.HTTP_200_OK,
    summary="List content items, optionally of one type",
    dependencies=admin,
)
def get_content_list(
    content_type: Optional[ContentType] = Query(None, alias="type"),
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    return ContentService(db).list_content_items(_value(content_type), active_only)


@app.post(
    "/content",
    response_model=ContentItemModel,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin,
)
def post_content(item_data: ContentItemCreateModel, db: Session = Depends(get_db)):
    return ContentService(db).create_content_item(item_data)


@app.get(
    "/content/{content_item_id}",
    response_model=ContentItemModel,
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def get_content(content_item_id: str, db: Session = Depends(get_db)):
    return ContentService(db).get_content_item(content_item_id)


@app.patch(
    "/content/{content_item_id}",
    response_model=ContentItemModel,
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def patch_content(
    content_item_id: str, updates: ContentItemUpdateModel, db: Session = Depends(get_db)
):
    return ContentService(db).update_content_item(content_item_id, updates)


@app.delete(
    "/content/{content_item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an item and its overrides",
    dependencies=admin,
)
def delete_content(content_item_id: str, db: Session = Depends(get_db)):
    ContentService(db).delete_content_item(content_item_id)


@app.get(
    "/content/{content_item_id}/overrides",
    response_model=list[VisibilityOverrideModel],
    status_code=status.HTTP_200_OK,
    summary="Persona x funnel stage matrix of an item",
    dependencies=admin,
)
def get_overrides(content_item_id: str, db: Session = Depends(get_db)):
    return ContentService(db).list_overrides(content_item_id)


@app.post(
    "/content/{content_item_id}/overrides",
    response_model=VisibilityOverrideModel,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin,
)
def post_override(
    content_item_id: str,
    override_data: VisibilityOverrideCreateModel,
    db: Session = Depends(get_db),
):
    return ContentService(db).create_override(content_item_id, override_data)


@app.patch(
    "/overrides/{override_id}",
    response_model=VisibilityOverrideModel,
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def patch_override(
    override_id: str,
    updates: VisibilityOverrideUpdateModel,
    db: Session = Depends(get_db),
):
    return ContentService(db).update_override(override_id, updates)


@app.post(
    "/overrides/{override_id}/reset",
    response_model=VisibilityOverrideModel,
    status_code=status.HTTP_200_OK,
    summary="Clear replacement title, description and image",
    dependencies=admin,
)
def post_override_reset(override_id: str, db: Session = Depends(get_db)):
    return ContentService(db).reset_override(override_id)


@app.delete(
    "/overrides/{override_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=admin,
)
def delete_override(override_id: str, db: Session = Depends(get_db)):
    ContentService(db).delete_override(override_id)


# --- Experiments ---


@app.post(
    "/experiments",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin,
)
def post_experiments(
    experiment_data: ExperimentCreateModel,
    db: Session = Depends(get_db),
):
    experiment_service = ExperimentService(db)
    return experiment_service.create_experiment(experiment_data)


@app.get(
    "/experiments",
    response_model=list[ExperimentResponseModel],
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def get_experiments(
    experiment_status: Optional[ExperimentStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    return ExperimentService(db).list_experiments(experiment_status)


# Declared before /experiments/{experiment_id} so "active" is not read as an id
@app.get(
    "/experiments/active",
    response_model=list[ExperimentResponseModel],
    status_code=status.HTTP_200_OK,
    summary="Experiments currently live for a persona and funnel stage",
)
def get_active_experiments(
    content_type: Optional[ContentType] = Query(None),
    persona: Optional[Persona] = Query(None),
    funnel_stage: Optional[FunnelStage] = Query(None),
    db: Session = Depends(get_db),
):
    return ExperimentService(db).list_active(
        content_type=_value(content_type),
        persona=_value(persona),
        funnel_stage=_value(funnel_stage),
    )


@app.get(
    "/experiments/{experiment_id}",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def get_experiment(experiment_id: str, db: Session = Depends(get_db)):
    return ExperimentService(db).get_experiment(experiment_id)


@app.patch(
    "/experiments/{experiment_id}",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Edit name, allocation, window or targets",
    dependencies=admin,
)
def patch_experiment(
    experiment_id: str, updates: ExperimentUpdateModel, db: Session = Depends(get_db)
):
    return ExperimentService(db).update_experiment(experiment_id, updates)


@app.delete(
    "/experiments/{experiment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an experiment with its assignments and events",
    dependencies=admin,
)
def delete_experiment(experiment_id: str, db: Session = Depends(get_db)):
    ExperimentService(db).delete_experiment(experiment_id)


@app.get(
    "/experiments/{experiment_id}/variants",
    response_model=list[ExperimentVariantConfigResponseModel],
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def get_variants(experiment_id: str, db: Session = Depends(get_db)):
    return ExperimentService(db).list_variants(experiment_id)


@app.post(
    "/experiments/{experiment_id}/variants",
    response_model=ExperimentVariantConfigResponseModel,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin,
)
def post_variant(
    experiment_id: str, variant_data: VariantConfig, db: Session = Depends(get_db)
):
    """New variants only receive sessions that have not been bucketed yet."""
    return ExperimentService(db).add_variant(experiment_id, variant_data)


@app.patch(
    "/variants/{variant_id}",
    response_model=ExperimentVariantConfigResponseModel,
    status_code=status.HTTP_200_OK,
    dependencies=admin,
)
def patch_variant(
    variant_id: str, updates: VariantUpdateModel, db: Session = Depends(get_db)
):
    return ExperimentService(db).update_variant(variant_id, updates)


@app.post(
    "/experiments/{experiment_id}/status",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Activate, pause or complete an experiment",
    dependencies=admin,
)
def post_experiment_status(
    experiment_id: str,
    status_data: ExperimentStatusUpdateModel,
    db: Session = Depends(get_db),
):
    return ExperimentService(db).set_status(experiment_id, status_data.status)


@app.get(
    "/experiments/{experiment_id}/assignment/{session_id}",
    response_model=SessionAssignmentModel,
    status_code=status.HTTP_200_OK,
    summary="Get session assignment",
)
def get_session_variant_assignment(
    experiment_id: str = Path(..., description="The ID of the experiment."),
    session_id: str = Path(..., description="The visitor's session ID."),
    persona: Optional[Persona] = Query(None),
    funnel_stage: Optional[FunnelStage] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Retrieves a session's variant assignment. If no assignment exists, a new,
    persistent assignment is generated based on traffic allocation rules.
    """
    experiment_service = ExperimentService(db)
    return experiment_service.get_session_assignment(
        experiment_id=experiment_id,
        session_id=session_id,
        persona=_value(persona),
        funnel_stage=_value(funnel_stage),
    )


@app.post(
    "/events",
    response_model=EventResponseModel,
    status_code=status.HTTP_201_CREATED,
    summary="Record a new session event.",
)
def post_events(event_data: EventCreateModel, db: Session = Depends(get_db)):
    # The service credits the event to the session's assigned variant
    return EventService(db).record_event(event_data)


@app.get(
    "/experiments/{experiment_id}/results",
    status_code=status.HTTP_200_OK,
    summary="Get statistics for experiments",
    dependencies=admin,
)
def get_experiment_results(
    experiment_id: str,
    event_type: str | None = Query(
        None,
    ),
    start_date: datetime | None = Query(
        None,
    ),
    end_date: datetime | None = Query(
        None,
    ),
    db: Session = Depends(get_db),
):
    filter_params = {
        "event_type": event_type,
        "start_date": start_date,
        "end_date": end_date,
    }
    experiment_service = ExperimentService(db)
    return experiment_service.get_experiment_results(experiment_id, filter_params)


if __name__ == "__main__":
    uvicorn.run("content_engine.main:app", host="0.0.0.0", port=8000, reload=True)
