from typing import Any, Dict

from fastapi import APIRouter, Depends

from jobengine.api.deps import verify_token
from jobengine.services.jobs import status_snapshot
from jobengine.services.workflows import registered_kinds

router = APIRouter()


@router.get("/status")
async def status(_: None = Depends(verify_token)) -> Dict[str, Any]:
    return {**status_snapshot(), "kinds": registered_kinds()}
