import logging

from fastapi import APIRouter, Depends, status

from incidentdesk.api.deps import get_comment_service, get_container, get_current_user_id, respond
from incidentdesk.container import ServiceContainer
from incidentdesk.schemas.comment import CommentCreate, CommentUpdate
from incidentdesk.services.comments import CommentQuery, CommentService
from incidentdesk.services.notifications import NotificationType

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/incidents/{incident_id}/comments", status_code=status.HTTP_201_CREATED)
def create_comment(
    incident_id: str,
    request: CommentCreate,
    user_id: str = Depends(get_current_user_id),
    service: CommentService = Depends(get_comment_service),
    container: ServiceContainer = Depends(get_container),
):
    result = service.create_comment(
        incident_id, user_id, request.body, visibility=request.visibility, is_markdown=request.is_markdown
    )
    if result.success:
        container.notifier.notify_incident_event(
            incident_id, NotificationType.INCIDENT_COMMENT_ADDED, exclude_user_id=user_id
        )
    return respond(result, status.HTTP_201_CREATED)


@router.get("/incidents/{incident_id}/comments")
def list_comments(
    incident_id: str,
    page: int = 1,
    limit: int = 10,
    visibility: str | None = None,
    author_id: str | None = None,
    search: str | None = None,
    sort_by: str = "created_at",
    sort_order: str = "asc",
    user_id: str = Depends(get_current_user_id),
    service: CommentService = Depends(get_comment_service),
):
    query = CommentQuery(
        page=page,
        limit=limit,
        visibility=visibility,
        author_id=author_id,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return respond(service.get_incident_comments(incident_id, user_id, query))


@router.get("/comments/{comment_id}")
def get_comment(
    comment_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CommentService = Depends(get_comment_service),
):
    return respond(service.get_comment(comment_id, user_id))


@router.patch("/comments/{comment_id}")
def update_comment(
    comment_id: str,
    request: CommentUpdate,
    user_id: str = Depends(get_current_user_id),
    service: CommentService = Depends(get_comment_service),
):
    return respond(service.update_comment(comment_id, request.model_dump(exclude_none=True), user_id))


@router.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CommentService = Depends(get_comment_service),
):
    return respond(service.delete_comment(comment_id, user_id))


@router.get("/users/me/comments", summary="Comments written by the caller")
def my_comments(
    page: int = 1,
    limit: int = 10,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    user_id: str = Depends(get_current_user_id),
    service: CommentService = Depends(get_comment_service),
):
    query = CommentQuery(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    return respond(service.get_comments_by_author(user_id, query))
