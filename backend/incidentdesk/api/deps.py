"""
deps.py - FastAPI dependencies.

Authentication is done upstream; the proxy forwards the authenticated
user's id in X-User-Id. A request without it, or naming an unknown user,
is unauthenticated.
"""

from collections.abc import Generator

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from incidentdesk.container import ServiceContainer
from incidentdesk.core.errors import ErrorKind
from incidentdesk.database import session_scope
from incidentdesk.models import User
from incidentdesk.services.authorization import AuthorizationService
from incidentdesk.services.comments import CommentService
from incidentdesk.services.incidents import IncidentService
from incidentdesk.services.results import ServiceResult
from incidentdesk.services.tags import TagService

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_db(container: ServiceContainer = Depends(get_container)) -> Generator[Session, None, None]:
    yield from session_scope(container.session_factory)


def get_current_user_id(
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required.")
    if db.get(User, x_user_id) is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user.")
    return x_user_id


def get_authorization(
    db: Session = Depends(get_db), container: ServiceContainer = Depends(get_container)
) -> AuthorizationService:
    return container.authorization(db)


def get_incident_service(
    db: Session = Depends(get_db), container: ServiceContainer = Depends(get_container)
) -> IncidentService:
    return container.incidents(db)


def get_comment_service(
    db: Session = Depends(get_db), container: ServiceContainer = Depends(get_container)
) -> CommentService:
    return container.comments(db)


def get_tag_service(
    db: Session = Depends(get_db), container: ServiceContainer = Depends(get_container)
) -> TagService:
    return container.tags(db)


def respond(result: ServiceResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Render a ServiceResult as {success, data} / {success: false, error}."""
    status_code = success_status if result.success else STATUS_BY_KIND[result.kind or ErrorKind.INTERNAL]
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.as_dict()))


def forbidden(message: str) -> JSONResponse:
    return respond(ServiceResult.fail(ErrorKind.FORBIDDEN, message))
