"""
FastAPI dependencies: the pipeline context and runner live on app.state.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from core.context import PipelineContext
from pipeline.runner import PipelineRunner
from pipeline.scheduler import SyncScheduler


def get_context(request: Request) -> PipelineContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not started")
    return context


def get_runner(request: Request) -> Optional[PipelineRunner]:
    return getattr(request.app.state, "runner", None)


def get_scheduler(
    context: PipelineContext = Depends(get_context),
    runner: Optional[PipelineRunner] = Depends(get_runner),
) -> SyncScheduler:
    if runner is not None:
        return runner.scheduler
    return SyncScheduler(context)


async def verify_api_key(
    context: PipelineContext = Depends(get_context),
    x_api_key: Optional[str] = Header(None),
) -> None:
    """Only enforced when API_KEY is configured"""
    expected = context.settings.API_KEY
    if expected and x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
