"""
incidents.py - Incident endpoints.

Every handler authenticates the caller, calls one IncidentService operation
and renders its ServiceResult. Notifications go out only after a mutation
has succeeded.

RESPONSE CODES:
- 200/201: {success: true, data}
- 400: validation failure
- 401: missing or unknown X-User-Id
- 403: caller lacks the role for this operation
- 404: incident missing or not in this event
- 500: storage failure
"""

import logging
import unicodedata
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status

from incidentdesk.api.deps import (
    forbidden,
    get_authorization,
    get_container,
    get_current_user_id,
    get_incident_service,
    respond,
)
from incidentdesk.container import ServiceContainer
from incidentdesk.schemas.incident import (
    BulkIncidentUpdate,
    IncidentAssignmentUpdate,
    IncidentContactPreferenceUpdate,
    IncidentCreate,
    IncidentDateUpdate,
    IncidentDescriptionUpdate,
    IncidentLocationUpdate,
    IncidentPartiesUpdate,
    IncidentSeverityUpdate,
    IncidentStateUpdate,
    IncidentTagsUpdate,
    IncidentTitleUpdate,
    IncidentTypeUpdate,
)
from incidentdesk.services.authorization import AuthorizationService
from incidentdesk.services.incidents import IncidentQuery, IncidentService, RelatedFileUpload
from incidentdesk.services.notifications import NotificationType

logger = logging.getLogger(__name__)

router = APIRouter()
files_router = APIRouter()

_UNSAFE_FILENAME_CHARS = frozenset('"\\;')


def attachment_header(filename: str) -> str:
    """
    Content-Disposition for a stored upload. Names with quotes, separators
    or non-ASCII characters get an underscored fallback plus an RFC 5987
    ``filename*`` carrying the real name.
    """
    name = "".join(ch for ch in filename if unicodedata.category(ch)[0] != "C").strip() or "download"
    fallback = "".join(ch if 32 <= ord(ch) < 127 and ch not in _UNSAFE_FILENAME_CHARS else "_" for ch in name)
    if fallback == name:
        return f'attachment; filename="{name}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


@router.post("", status_code=status.HTTP_201_CREATED, summary="Submit an incident")
def create_incident(
    event_id: str,
    request: IncidentCreate,
    user_id: str = Depends(get_current_user_id),
    authz: AuthorizationService = Depends(get_authorization),
    service: IncidentService = Depends(get_incident_service),
    container: ServiceContainer = Depends(get_container),
):
    if not authz.has_event_role(user_id, event_id):
        return forbidden("Access denied. User does not have permission for this event.")

    data = request.model_dump()
    data.update(event_id=event_id, reporter_id=user_id)
    result = service.create_incident(data)
    if result.success:
        container.notifier.notify_incident_event(
            result.data["incident"]["id"], NotificationType.INCIDENT_SUBMITTED, exclude_user_id=user_id
        )
    return respond(result, status.HTTP_201_CREATED)


@router.get("", summary="List incidents for an event")
def list_incidents(
    event_id: str,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
    status_filter: str | None = Query(None, alias="status"),
    severity: str | None = None,
    assigned: str | None = None,
    sort: str = "created_at",
    order: str = "desc",
    reporter_id: str | None = None,
    include_stats: bool = False,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    query = IncidentQuery(
        page=page,
        limit=limit,
        search=search,
        status=status_filter,
        severity=severity,
        assigned=assigned,
        sort=sort,
        order=order,
        reporter_id=reporter_id,
        include_stats=include_stats,
    )
    return respond(service.get_event_incidents(event_id, user_id, query))


@router.post("/bulk", summary="Assign, change status of, or delete several incidents")
def bulk_update(
    event_id: str,
    request: BulkIncidentUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    options = {
        "assigned_to": request.assigned_to,
        "status": request.status,
        "notes": request.notes,
        "user_id": user_id,
    }
    return respond(service.bulk_update_incidents(event_id, request.incident_ids, request.action, options))


@router.get("/{incident_id}", summary="Get one incident, projected for the caller")
def get_incident(
    event_id: str,
    incident_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.get_incident(incident_id, event_id=event_id, viewer_id=user_id))


@router.patch("/{incident_id}/state", summary="Change incident state")
def update_state(
    event_id: str,
    incident_id: str,
    request: IncidentStateUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
    container: ServiceContainer = Depends(get_container),
):
    result = service.update_incident_state(
        event_id,
        incident_id,
        request.state,
        user_id,
        notes=request.notes,
        assigned_to_user_id=request.assigned_to_user_id,
    )
    if result.success:
        incident = result.data["incident"]
        if incident["state"] != result.data["original_state"]:
            container.notifier.notify_incident_event(
                incident_id, NotificationType.INCIDENT_STATUS_CHANGED, exclude_user_id=user_id
            )
        if incident["assigned_responder_id"] != result.data["original_assigned_responder_id"]:
            container.notifier.notify_incident_event(
                incident_id, NotificationType.INCIDENT_ASSIGNED, exclude_user_id=user_id
            )
    return respond(result)


@router.get("/{incident_id}/history", summary="State change history")
def state_history(
    event_id: str,
    incident_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    access = service.check_incident_access(user_id, incident_id, event_id)
    if not access.success:
        return respond(access)
    if not access.data["has_access"]:
        return forbidden("Access denied. User does not have permission for this report.")
    return respond(service.get_incident_state_history(incident_id))


@router.patch("/{incident_id}/title")
def update_title(
    event_id: str,
    incident_id: str,
    request: IncidentTitleUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_title(event_id, incident_id, request.title, user_id))


@router.patch("/{incident_id}/description")
def update_description(
    event_id: str,
    incident_id: str,
    request: IncidentDescriptionUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_description(event_id, incident_id, request.description, user_id))


@router.patch("/{incident_id}/location")
def update_location(
    event_id: str,
    incident_id: str,
    request: IncidentLocationUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_location(event_id, incident_id, request.location, user_id))


@router.patch("/{incident_id}/incident-date")
def update_incident_date(
    event_id: str,
    incident_id: str,
    request: IncidentDateUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_incident_date(event_id, incident_id, request.incident_at, user_id))


@router.patch("/{incident_id}/parties")
def update_parties(
    event_id: str,
    incident_id: str,
    request: IncidentPartiesUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_parties(event_id, incident_id, request.parties, user_id))


@router.patch("/{incident_id}/severity")
def update_severity(
    event_id: str,
    incident_id: str,
    request: IncidentSeverityUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_severity(event_id, incident_id, request.severity, user_id))


@router.patch("/{incident_id}/tags")
def update_tags(
    event_id: str,
    incident_id: str,
    request: IncidentTagsUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_tags(event_id, incident_id, request.tag_ids, user_id))


@router.patch("/{incident_id}/type")
def update_type(
    event_id: str,
    incident_id: str,
    request: IncidentTypeUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.update_incident_type(event_id, incident_id, request.type, user_id))


@router.patch("/{incident_id}/contact-preference")
def update_contact_preference(
    event_id: str,
    incident_id: str,
    request: IncidentContactPreferenceUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(
        service.update_incident_contact_preference(event_id, incident_id, request.contact_preference, user_id)
    )


@router.patch("/{incident_id}/assignment", summary="Change assignee, severity or resolution")
def update_assignment(
    event_id: str,
    incident_id: str,
    request: IncidentAssignmentUpdate,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
    container: ServiceContainer = Depends(get_container),
):
    changes = request.model_dump(exclude_unset=True)
    result = service.update_incident_assignment(event_id, incident_id, changes, user_id)
    if result.success:
        assignee = result.data["incident"]["assigned_responder_id"]
        if assignee and assignee != result.data["original_assigned_responder_id"]:
            container.notifier.notify_incident_event(
                incident_id, NotificationType.INCIDENT_ASSIGNED, exclude_user_id=user_id
            )
    return respond(result)


@router.post("/{incident_id}/files", status_code=status.HTTP_201_CREATED, summary="Attach related files")
def upload_files(
    event_id: str,
    incident_id: str,
    files: list[UploadFile] = File(...),
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    access = service.check_incident_access(user_id, incident_id, event_id)
    if not access.success:
        return respond(access)

    uploads = [
        RelatedFileUpload(
            filename=upload.filename or "upload",
            mimetype=upload.content_type or "application/octet-stream",
            data=upload.file.read(),
            uploader_id=user_id,
        )
        for upload in files
    ]
    return respond(service.upload_related_files(incident_id, uploads, user_id), status.HTTP_201_CREATED)


@router.get("/{incident_id}/files")
def list_files(
    event_id: str,
    incident_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    access = service.check_incident_access(user_id, incident_id, event_id)
    if not access.success:
        return respond(access)
    return respond(service.list_related_files(incident_id, user_id))


@files_router.get("/{file_id}", summary="Download a related file")
def download_file(
    file_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    result = service.get_related_file(file_id, user_id)
    if not result.success:
        return respond(result)
    stored = result.data
    return Response(
        content=stored["data"],
        media_type=stored["mimetype"],
        headers={"Content-Disposition": attachment_header(stored["filename"])},
    )


@files_router.delete("/{file_id}")
def delete_file(
    file_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IncidentService = Depends(get_incident_service),
):
    return respond(service.delete_related_file(file_id, user_id))
