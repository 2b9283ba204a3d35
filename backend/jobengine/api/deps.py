from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, WebSocket

from jobengine.core.config import BACKEND_TOKEN


@dataclass(frozen=True)
class Caller:
    tenant_id: str
    user_id: Optional[str] = None


async def verify_token(request: Request) -> None:
    if BACKEND_TOKEN and request.headers.get("X-Backend-Token") != BACKEND_TOKEN:
        raise HTTPException(status_code=401, detail="unauthorized")


async def verify_ws_token(websocket: WebSocket) -> bool:
    if BACKEND_TOKEN and websocket.headers.get("x-backend-token") != BACKEND_TOKEN:
        await websocket.close(code=1008)
        return False
    return True


async def get_caller(
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> Caller:
    # Tenant resolution is done upstream; the header is trusted here.
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(status_code=401, detail="tenant required")
    return Caller(tenant_id=x_tenant_id.strip(), user_id=x_user_id or None)
