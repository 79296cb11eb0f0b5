"""
Clinic Ingestion Service — FastAPI Application Layer
api.py

Endpoints:
  1. POST /upload          — Remedii clinic exports
  2. POST /upload-leads    — Lead exports, with per-file tags & sources
  3. GET  /uploads         — Recent upload records
  4. GET  /uploads/latest  — Latest upload per record type (ingestion report)
  5. GET  /sources         — Lead sources
  6. POST /sources         — Create a lead source
  7. GET  /tags            — Lead tags
  8. POST /tags            — Create a lead tag
  9. GET  /health          — Health check

The layer is thin: it reads uploaded bytes and hands them to the
orchestrator. Every failure reaches the client as {"error": "..."}.
"""
from __future__ import annotations
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import (
    BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query,
    Request, UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from config import Settings, configure_logging, get_settings
from ingestion_orchestrator import REPORT_FILTERS, IngestionOrchestrator
from models import (
    IngestionReportEntry, LeadSource, LeadTag, UploadOutcome, UploadRecord,
)
from repository import IngestionRepository
from tabular_parser import file_extension

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# ============================================================
# Request/Response Models (API-specific)
# ============================================================

class UploadResponse(BaseModel):
    status: str
    upload_ids: list[int] = Field(default_factory=list)
    results: list[UploadOutcome] = Field(default_factory=list)
    queued_files: list[str] = Field(default_factory=list)
    validation_issues: list[str] = Field(default_factory=list)


class LeadFileMetadata(BaseModel):
    tag_ids: list[int] = Field(default_factory=list)
    source_ids: list[int] = Field(default_factory=list)


class NameRequest(BaseModel):
    name: str


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: int
    components: dict[str, Any] = Field(default_factory=dict)


# ============================================================
# Application State
# ============================================================

class AppState:
    """Holds the shared service instances for one app."""
    settings: Settings
    repo: IngestionRepository
    orchestrator: IngestionOrchestrator

    def __init__(self, settings: Settings):
        self.settings = settings
        self.start_time = time.monotonic()


def get_state(request: Request) -> AppState:
    return request.app.state.ingestion


# ============================================================
# Upload helpers
# ============================================================

async def _read_uploads(
    files: list[UploadFile], settings: Settings,
) -> tuple[list[tuple[str, bytes]], list[str]]:
    """Keep files with a supported extension and size; describe the rest."""
    accepted, issues = [], []
    allowed = settings.supported_extension_list
    for f in files:
        if not f.filename:
            issues.append("File missing filename")
            continue
        if file_extension(f.filename) not in allowed:
            issues.append(f"{f.filename}: unsupported format (allowed: {', '.join(allowed)})")
            continue
        content = await f.read()
        if len(content) > settings.max_upload_bytes:
            issues.append(f"{f.filename}: exceeds {settings.max_upload_size_mb}MB limit")
            continue
        accepted.append((f.filename, content))
    return accepted, issues


def _parse_lead_metadata(raw: Optional[str]) -> dict[str, LeadFileMetadata]:
    """JSON object mapping file name -> {tag_ids, source_ids}."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("metadata must be a JSON object keyed by file name")
        return {name: LeadFileMetadata(**(meta or {})) for name, meta in data.items()}
    except (ValueError, TypeError, ValidationError) as e:
        raise HTTPException(400, f"Invalid metadata: {e}")


async def _process_files(
    state: AppState,
    background_tasks: BackgroundTasks,
    accepted: list[tuple[str, bytes]],
    issues: list[str],
    metadata: Optional[dict[str, LeadFileMetadata]] = None,
    table_hint: Optional[str] = None,
    category: Optional[str] = None,
) -> UploadResponse:
    if not accepted:
        raise HTTPException(400, "No valid files to ingest: " + "; ".join(issues))

    metadata = metadata or {}
    orchestrator = state.orchestrator
    jobs = []
    for file_name, content in accepted:
        meta = metadata.get(file_name, LeadFileMetadata())
        # Upload record exists before any processing, background or not
        upload_id = await orchestrator.open_upload(
            file_name, meta.tag_ids, meta.source_ids, table_hint)
        jobs.append(dict(
            file_name=file_name, content=content, tag_ids=meta.tag_ids,
            source_ids=meta.source_ids, table_hint=table_hint,
            upload_id=upload_id, category=category,
        ))
    upload_ids = [j["upload_id"] for j in jobs]

    if state.settings.process_in_background:
        for job in jobs:
            background_tasks.add_task(_run_upload, orchestrator, job)
        return UploadResponse(
            status="queued",
            upload_ids=upload_ids,
            queued_files=[j["file_name"] for j in jobs],
            validation_issues=issues,
        )

    results = [await orchestrator.process_upload(**job) for job in jobs]
    return UploadResponse(
        status="success" if all(r.success for r in results) else "partial",
        upload_ids=upload_ids,
        results=results,
        validation_issues=issues,
    )


async def _run_upload(orchestrator: IngestionOrchestrator, job: dict) -> None:
    """Background task; the orchestrator records its own failures."""
    outcome = await orchestrator.process_upload(**job)
    logger.info(
        "[upload] file=%s upload=%s success=%s", outcome.file_name,
        outcome.upload_id, outcome.success,
    )


# ============================================================
# FastAPI App
# ============================================================

def create_app(
    settings: Optional[Settings] = None,
    repo: Optional[IngestionRepository] = None,
) -> FastAPI:
    """
    Build the app. With no repo, the lifespan opens an asyncpg pool and
    applies schema.sql; tests pass an InMemoryRepository instead.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Clinic Ingestion Service...")
        state = AppState(settings)
        db = None
        if repo is None:
            from asyncpg_repository import AsyncPGIngestionRepository, DatabasePool
            db = DatabasePool(settings)
            await db.initialize()
            await db.apply_schema()
            state.repo = AsyncPGIngestionRepository(db)
        else:
            state.repo = repo
        state.orchestrator = IngestionOrchestrator(state.repo, settings)
        app.state.ingestion = state
        logger.info("System ready (schema=%s)", settings.db_schema)
        yield

        logger.info("Shutting down Clinic Ingestion Service...")
        if db is not None:
            await db.close()

    app = FastAPI(
        title="Clinic Ingestion Service API",
        description="Remedii clinic exports and marketing lead files into PostgreSQL.",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = int((time.monotonic() - start) * 1000)
        response.headers["X-Response-Time-Ms"] = str(elapsed)
        return response

    # ============================================================
    # 1. POST /upload — Clinic Exports
    # ============================================================

    @app.post("/upload", response_model=UploadResponse, tags=["Ingestion"])
    async def upload_clinic_files(
        background_tasks: BackgroundTasks,
        files: list[UploadFile] = File(...),
        table_name: Optional[str] = Form(None),
        state: AppState = Depends(get_state),
    ):
        """
        Upload one or more Remedii exports (CSV or XLSX).
        The record type is detected from the header row; lead files are
        refused here and belong on /upload-leads.
        """
        accepted, issues = await _read_uploads(files, state.settings)
        return await _process_files(
            state, background_tasks, accepted, issues,
            table_hint=table_name, category="clinical",
        )

    # ============================================================
    # 2. POST /upload-leads — Lead Exports
    # ============================================================

    @app.post("/upload-leads", response_model=UploadResponse, tags=["Ingestion"])
    async def upload_lead_files(
        background_tasks: BackgroundTasks,
        files: list[UploadFile] = File(...),
        metadata: Optional[str] = Form(None),
        state: AppState = Depends(get_state),
    ):
        """
        Upload lead exports. `metadata` is a JSON object keyed by file name:
        {"leads.csv": {"tag_ids": [1], "source_ids": [2]}}.
        Clinic exports are refused here.
        """
        per_file = _parse_lead_metadata(metadata)
        accepted, issues = await _read_uploads(files, state.settings)
        return await _process_files(
            state, background_tasks, accepted, issues, per_file, category="leads",
        )

    # ============================================================
    # 3-4. GET /uploads — Upload Records
    # ============================================================

    @app.get("/uploads", response_model=list[UploadRecord], tags=["Uploads"])
    async def list_uploads(
        limit: int = Query(50, ge=1, le=500),
        state: AppState = Depends(get_state),
    ):
        return await state.repo.list_uploads(limit)

    @app.get("/uploads/latest", response_model=list[IngestionReportEntry], tags=["Uploads"])
    async def latest_uploads(
        filter: str = Query("all", description="all|clinical|leads"),
        state: AppState = Depends(get_state),
    ):
        """Latest upload per record type; queued/processing show as in progress."""
        try:
            return await state.orchestrator.latest_uploads(filter)
        except ValueError:
            raise HTTPException(400, f"filter must be one of {', '.join(REPORT_FILTERS)}")

    @app.get("/uploads/{upload_id}", response_model=UploadRecord, tags=["Uploads"])
    async def get_upload(upload_id: int, state: AppState = Depends(get_state)):
        upload = await state.repo.get_upload(upload_id)
        if upload is None:
            raise HTTPException(404, f"Upload not found: {upload_id}")
        return upload

    # ============================================================
    # 5-8. Lead Sources & Tags
    # ============================================================

    @app.get("/sources", response_model=list[LeadSource], tags=["Leads"])
    async def list_sources(state: AppState = Depends(get_state)):
        return await state.repo.list_sources()

    @app.post("/sources", response_model=LeadSource, tags=["Leads"])
    async def create_source(request: NameRequest, state: AppState = Depends(get_state)):
        name = request.name.strip()
        if not name:
            raise HTTPException(400, "Source name cannot be empty")
        source = await state.repo.create_source(name)
        logger.info("[sources] created %s (%d)", source.source_name, source.source_id)
        return source

    @app.get("/tags", response_model=list[LeadTag], tags=["Leads"])
    async def list_tags(state: AppState = Depends(get_state)):
        return await state.repo.list_tags()

    @app.post("/tags", response_model=LeadTag, tags=["Leads"])
    async def create_tag(request: NameRequest, state: AppState = Depends(get_state)):
        name = request.name.strip()
        if not name:
            raise HTTPException(400, "Tag name cannot be empty")
        tag = await state.repo.create_tag(name)
        logger.info("[tags] created %s (%d)", tag.tag_name, tag.tag_id)
        return tag

    # ============================================================
    # 9. GET /health — Health Check
    # ============================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(state: AppState = Depends(get_state)):
        uptime = int(time.monotonic() - state.start_time)
        try:
            repository = await state.repo.health_check()
        except Exception as e:
            logger.exception("Repository health check failed")
            raise HTTPException(503, f"Repository unavailable: {e}")
        return HealthResponse(
            status="healthy",
            version=APP_VERSION,
            uptime_seconds=uptime,
            components={"repository": repository},
        )

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
