from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

MAX_TOTAL_ITEMS = 100


class JobCreate(BaseModel):
    kind: str = Field(..., min_length=1)
    total_items: int = Field(1, ge=1, le=MAX_TOTAL_ITEMS)
    payload: Dict[str, Any] = Field(default_factory=dict)


class JobAccepted(BaseModel):
    job_id: str
    status: str
    total_items: int


class JobProgress(BaseModel):
    job_id: str
    kind: str
    status: str
    percent: int
    estimated: bool = False
    completed_items: int
    failed_items: int
    total_items: int
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class JobRecord(BaseModel):
    job_id: str
    tenant_id: str
    owner_id: Optional[str] = None
    kind: str
    status: str
    total_items: int
    completed_items: int
    failed_items: int
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class JobList(BaseModel):
    jobs: List[JobRecord]


class JobEvent(BaseModel):
    event_id: int
    created_at: str
    level: str
    message: str
    meta: Optional[Dict[str, Any]] = None


class JobEventList(BaseModel):
    job_id: str
    events: List[JobEvent]
