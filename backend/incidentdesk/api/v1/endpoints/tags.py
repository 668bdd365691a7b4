import logging

from fastapi import APIRouter, Depends, status

from incidentdesk.api.deps import get_current_user_id, get_tag_service, respond
from incidentdesk.schemas.tag import TagCreate, TagUpdate
from incidentdesk.services.incidents import IncidentQuery
from incidentdesk.services.tags import TagService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/events/{event_id}/tags", status_code=status.HTTP_201_CREATED, summary="Create an event tag")
def create_tag(
    event_id: str,
    request: TagCreate,
    user_id: str = Depends(get_current_user_id),
    service: TagService = Depends(get_tag_service),
):
    return respond(service.create_tag(event_id, request.name, request.color, user_id), status.HTTP_201_CREATED)


@router.get("/events/{event_id}/tags", summary="List an event's tags with usage counts")
def list_tags(
    event_id: str,
    user_id: str = Depends(get_current_user_id),
    service: TagService = Depends(get_tag_service),
):
    return respond(service.get_tags_by_event(event_id, user_id))


@router.patch("/tags/{tag_id}")
def update_tag(
    tag_id: str,
    request: TagUpdate,
    user_id: str = Depends(get_current_user_id),
    service: TagService = Depends(get_tag_service),
):
    return respond(service.update_tag(tag_id, request.model_dump(exclude_unset=True), user_id))


@router.delete("/tags/{tag_id}")
def delete_tag(
    tag_id: str,
    user_id: str = Depends(get_current_user_id),
    service: TagService = Depends(get_tag_service),
):
    return respond(service.delete_tag(tag_id, user_id))


@router.get("/tags/{tag_id}/incidents", summary="Incidents carrying a tag")
def tag_incidents(
    tag_id: str,
    page: int = 1,
    limit: int = 20,
    user_id: str = Depends(get_current_user_id),
    service: TagService = Depends(get_tag_service),
):
    return respond(service.get_incidents_by_tag(tag_id, user_id, IncidentQuery(page=page, limit=limit)))
