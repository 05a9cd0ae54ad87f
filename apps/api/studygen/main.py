from __future__ import annotations

from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .config import configure_logging, settings
from .db import init_db
from .errors import InvalidRequest, ResultNotReady, RunNotCancellable, RunNotFound
from .models import RunStatus, WorkflowRunRead
from .publishing import render_day_markdown
from .run_store import load_days
from .schemas import CacheStats, DailyContent, GenerationRequest, RunResult, StartRunResponse
from .workflow import StudyGenerationService

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[StudyGenerationService] = None


def get_service() -> StudyGenerationService:
    global _service
    if _service is None:
        _service = StudyGenerationService()
    return _service


@app.on_event("startup")
def _startup() -> None:
    configure_logging()
    init_db()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/runs", response_model=StartRunResponse, status_code=202)
async def start_run(
    payload: GenerationRequest, service: StudyGenerationService = Depends(get_service)
) -> StartRunResponse:
    try:
        run_id = await service.start_run(payload)
    except InvalidRequest as exc:
        raise HTTPException(status_code=422, detail=exc.errors)
    return StartRunResponse(run_id=run_id, status="pending")


@app.get("/runs/{run_id}", response_model=WorkflowRunRead)
async def get_run_status(
    run_id: str, service: StudyGenerationService = Depends(get_service)
) -> WorkflowRunRead:
    try:
        return service.get_run_status(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@app.post("/runs/{run_id}/cancel", response_model=WorkflowRunRead)
async def cancel_run(run_id: str, service: StudyGenerationService = Depends(get_service)) -> WorkflowRunRead:
    try:
        return service.cancel_run(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")
    except RunNotCancellable as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.get("/runs/{run_id}/result", response_model=RunResult)
async def get_result(run_id: str, service: StudyGenerationService = Depends(get_service)) -> RunResult:
    try:
        return service.get_result(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")
    except ResultNotReady as exc:
        raise HTTPException(status_code=409, detail=str(exc))


def _succeeded_days(service: StudyGenerationService, run_id: str) -> list[DailyContent]:
    try:
        run = service.get_run_status(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.status != RunStatus.succeeded:
        raise HTTPException(status_code=409, detail=f"Run {run_id} is {run.status.value}")
    return load_days(run_id)


@app.get("/runs/{run_id}/days", response_model=list[DailyContent])
async def get_days(run_id: str, service: StudyGenerationService = Depends(get_service)) -> list[DailyContent]:
    return _succeeded_days(service, run_id)


@app.get("/runs/{run_id}/days/{day}/markdown", response_class=PlainTextResponse)
async def get_day_markdown(
    run_id: str, day: int, service: StudyGenerationService = Depends(get_service)
) -> str:
    for content in _succeeded_days(service, run_id):
        if content.day == day:
            return render_day_markdown(content)
    raise HTTPException(status_code=404, detail="Day not found")


@app.get("/references/cache/stats", response_model=CacheStats)
async def reference_cache_stats(service: StudyGenerationService = Depends(get_service)) -> CacheStats:
    return service.reference_cache_stats()


@app.delete("/references/cache/expired")
async def purge_reference_cache(service: StudyGenerationService = Depends(get_service)) -> dict[str, int]:
    return {"removed": service.purge_reference_cache()}
