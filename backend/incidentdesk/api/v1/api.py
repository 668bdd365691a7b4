from fastapi import APIRouter

from incidentdesk.api.v1.endpoints import comments, incidents, roles, tags

# Create the main API router
router = APIRouter()

# Include all endpoint routers
router.include_router(incidents.router, prefix="/events/{event_id}/incidents", tags=["incidents"])
router.include_router(incidents.files_router, prefix="/files", tags=["related-files"])
router.include_router(comments.router, tags=["comments"])
router.include_router(tags.router, tags=["tags"])
router.include_router(roles.router, prefix="/roles", tags=["roles"])
