from typing import Any, Dict

from fastapi import APIRouter, Depends

from jobengine.api.deps import verify_token
from jobengine.db import connection
from jobengine.utils.time import utc_now

router = APIRouter()


@router.get("/health")
async def health(_: None = Depends(verify_token)) -> Dict[str, Any]:
    database = "ok" if connection.db_conn is not None else "unavailable"
    return {"status": "ok", "database": database, "time": utc_now()}
