"""Response models for the introspection API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy when every worker is alive, degraded otherwise")
    workers_alive: int
    workers_total: int
    tasks_tracked: int
    uptime_seconds: float
    cpu_percent: float
    memory_percent: float


class TaskInfoResponse(BaseModel):
    task_id: int
    name: str
    status: str
    priority: int
    worker: Optional[int] = None
    deps: List[int] = Field(default_factory=list)
    order_deps: List[int] = Field(default_factory=list)
    dependents: List[int] = Field(default_factory=list)
    result_chunk: Optional[int] = None
    error: Optional[str] = None
    created_at: float
    dispatched_at: Optional[float] = None
    finished_at: Optional[float] = None


class WorkerInfo(BaseModel):
    worker_id: int
    kind: str
    alive: bool
    capacity: int
    load: int = 0
    inflight: List[int] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    processors: List[Dict[str, Any]] = Field(default_factory=list)


class WorkersResponse(BaseModel):
    workers: List[WorkerInfo]
    host: Dict[str, Any]


class PriorityRequest(BaseModel):
    priority: int = Field(..., description="Higher runs first")


class ControlResponse(BaseModel):
    task_id: int
    accepted: bool
    message: str
