from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jobengine.api.deps import verify_ws_token
from jobengine.utils.time import utc_now
from jobengine.websocket.manager import manager

router = APIRouter()


@router.websocket("/events")
async def events(websocket: WebSocket) -> None:
    if not await verify_ws_token(websocket):
        return
    # Without a tenant header the socket is an operator feed (logs + all jobs).
    tenant_id = websocket.headers.get("x-tenant-id") or None
    await manager.connect(websocket, tenant_id)
    await websocket.send_json(
        {"type": "connected", "tenant_id": tenant_id, "timestamp": utc_now()}
    )
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
