"""FastAPI dependencies shared by the routes."""
from fastapi import Header, HTTPException, Request

from docvault.services.upload_coordinator import UploadCoordinator


def get_coordinator(request: Request) -> UploadCoordinator:
    """The coordinator built during app lifespan."""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return coordinator


def get_owner_id(x_user_id: str = Header(None, alias="X-User-Id")) -> str:
    """Authenticated user id, resolved by the upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()
