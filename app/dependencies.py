"""FastAPI dependencies shared by the routers."""
from fastapi import Header, HTTPException, Request

from app.services.batch_services import BatchServices


def get_batch_services(request: Request) -> BatchServices:
    """Services built at startup and stored on the application state."""
    return request.app.state.batch_services


def get_current_user_id(x_user_id: str = Header(None)) -> str:
    """Caller identity as forwarded by the authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id.strip()
