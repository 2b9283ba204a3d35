from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from jobengine.core.logging import logger
from jobengine.utils.time import utc_now


class WebSocketManager:
    def __init__(self) -> None:
        # websocket -> tenant it listens for; None is an operator connection
        self.connections: Dict[WebSocket, Optional[str]] = {}

    async def connect(
        self, websocket: WebSocket, tenant_id: Optional[str] = None
    ) -> None:
        await websocket.accept()
        self.connections[websocket] = tenant_id

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.pop(websocket, None)

    async def broadcast(
        self, payload: Dict[str, Any], tenant_id: Optional[str] = None
    ) -> None:
        """Send to operator connections and, for tenant payloads, that tenant."""
        dead: list[WebSocket] = []
        for conn, listens_for in list(self.connections.items()):
            if listens_for is not None and listens_for != tenant_id:
                continue
            try:
                await conn.send_json(payload)
            except (RuntimeError, WebSocketDisconnect, OSError) as exc:
                logger.info("dropping websocket connection: %r", exc)
                dead.append(conn)
        for conn in dead:
            self.connections.pop(conn, None)

    async def job_status(self, job: Dict[str, Any]) -> None:
        await self.broadcast(
            {"type": "job.status", "job_id": job["job_id"], "status": job["status"]},
            tenant_id=job["tenant_id"],
        )

    async def job_progress(self, job: Dict[str, Any]) -> None:
        await self.broadcast(
            {
                "type": "job.progress",
                "job_id": job["job_id"],
                "completed_items": job["completed_items"],
                "failed_items": job["failed_items"],
                "total_items": job["total_items"],
            },
            tenant_id=job["tenant_id"],
        )

    async def emit_log(
        self, level: str, message: str, meta: Optional[Dict[str, Any]] = None
    ) -> None:
        log_message = message.strip()
        if not log_message:
            return
        if level == "error":
            logger.error(log_message)
        elif level == "warn":
            logger.warning(log_message)
        else:
            logger.info(log_message)
        await self.broadcast(
            {
                "type": "log",
                "level": level,
                "message": log_message,
                "timestamp": utc_now(),
                "meta": meta,
            }
        )


manager = WebSocketManager()
