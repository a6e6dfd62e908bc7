# waflow/api/deps.py
"""
API dependencies for owner resolution and shared services.

Owner resolution priority:
1. JWT Bearer token (owner id claim)
2. X-Owner-Id header (development / internal callers)
3. DEFAULT_OWNER_ID from the environment
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from waflow.core.config import DEFAULT_OWNER_ID
from waflow.core.jwt_auth import JWTAuth
from waflow.services.flow_engine import FlowRouter
from waflow.ws.manager import EventBus

log = logging.getLogger("waflow.api")

# Optional so the header fallback keeps working
security = HTTPBearer(auto_error=False)


# ────────────────────────────────────────────
# Owner
# ────────────────────────────────────────────

async def get_owner_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    if credentials and credentials.credentials:
        payload = JWTAuth.decode_token(credentials.credentials)
        owner_id = JWTAuth.get_owner_id(payload)
        if not owner_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token carries no owner id"
            )
        return owner_id

    owner_id = request.headers.get("x-owner-id")
    if owner_id:
        return owner_id

    if DEFAULT_OWNER_ID:
        return DEFAULT_OWNER_ID

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Provide a JWT token or X-Owner-Id header."
    )


# ────────────────────────────────────────────
# Application services
# ────────────────────────────────────────────

def get_event_bus(request: Request) -> Optional[EventBus]:
    return getattr(request.app.state, "event_bus", None)


def get_flow_router(request: Request) -> FlowRouter:
    router = getattr(request.app.state, "flow_router", None)
    if router is None:
        router = FlowRouter(bus=get_event_bus(request))
        request.app.state.flow_router = router
    return router
