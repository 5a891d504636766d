"""Read-only HTTP view of a running context, plus queue control."""

import logging
import os
import time
from typing import Any, Dict, Optional

import psutil
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status

from taskmesh.config.settings import setup_logging
from taskmesh.runtime import Context
from taskmesh.server.models import (
    ControlResponse,
    HealthResponse,
    PriorityRequest,
    TaskInfoResponse,
    WorkerInfo,
    WorkersResponse,
)

logger = logging.getLogger("taskmesh.api")


def host_stats() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "cpu_count": psutil.cpu_count(),
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_total": memory.total,
        "memory_available": memory.available,
        "memory_percent": memory.percent,
        "pid": os.getpid(),
    }


def create_app(context: Context) -> FastAPI:
    app = FastAPI(
        title="Taskmesh",
        description="Introspection and control for a taskmesh context",
        version="0.1.0",
    )
    app.state.context = context
    app.state.started = time.time()

    def get_context(request: Request) -> Context:
        ctx: Optional[Context] = request.app.state.context
        if ctx is None or ctx.closed:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Context is shut down")
        return ctx

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({time.time() - start_time:.4f}s)"
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    def health(ctx: Context = Depends(get_context)):
        snapshot = ctx.snapshot()
        alive = sum(1 for w in snapshot["workers"] if w["alive"])
        total = len(snapshot["workers"])
        stats = host_stats()
        return HealthResponse(
            status="healthy" if alive == total else "degraded",
            workers_alive=alive,
            workers_total=total,
            tasks_tracked=len(snapshot["tasks"]),
            uptime_seconds=time.time() - app.state.started,
            cpu_percent=stats["cpu_percent"],
            memory_percent=stats["memory_percent"],
        )

    @app.get("/graph")
    def graph(ctx: Context = Depends(get_context)) -> Dict[str, Any]:
        return ctx.snapshot()

    @app.get("/tasks/{task_id}", response_model=TaskInfoResponse)
    def task_info(task_id: int, ctx: Context = Depends(get_context)):
        info = ctx.controller.task_info(task_id)
        if info is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task {task_id} not found")
        return TaskInfoResponse(**info)

    @app.get("/workers", response_model=WorkersResponse)
    def workers(ctx: Context = Depends(get_context)):
        snapshot = ctx.snapshot()
        return WorkersResponse(
            workers=[
                WorkerInfo(**{k: v for k, v in w.items() if k in WorkerInfo.model_fields})
                for w in snapshot["workers"]
            ],
            host=host_stats(),
        )

    @app.post("/tasks/{task_id}/cancel", response_model=ControlResponse)
    def cancel_task(task_id: int, ctx: Context = Depends(get_context)):
        if ctx.controller.task_info(task_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task {task_id} not found")
        accepted = ctx.controller.cancel(task_id)
        message = "cancellation requested" if accepted else "task already finished"
        logger.info(f"Cancel task {task_id}: {message}")
        return ControlResponse(task_id=task_id, accepted=accepted, message=message)

    @app.post("/tasks/{task_id}/priority", response_model=ControlResponse)
    def set_priority(task_id: int, body: PriorityRequest, ctx: Context = Depends(get_context)):
        if ctx.controller.task_info(task_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task {task_id} not found")
        accepted = ctx.controller.reprioritize(task_id, body.priority)
        message = f"priority set to {body.priority}" if accepted else "task is no longer queued"
        return ControlResponse(task_id=task_id, accepted=accepted, message=message)

    return app


def serve(context: Context, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the introspection server until interrupted."""
    config = context.settings
    setup_logging("api", config)
    host = host or config.api_host
    port = port or config.api_port
    logger.info(f"Serving taskmesh introspection API on {host}:{port}")
    uvicorn.run(create_app(context), host=host, port=port, log_config=None)
