from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from fastapi import FastAPI, File, Form, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.errors import JobNotFound
from backend.jobs import JobOrchestrator, build_orchestrator
from backend.pipeline_config import PipelineSettings, configure_logging
from backend.schema_models import FeatureKind

settings = PipelineSettings.from_env()
configure_logging(settings.log_level)

app = FastAPI(title="ClarityAI Generation API")


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.orchestrator = build_orchestrator(settings)

ALLOWED_UPLOAD_SUFFIXES = {".txt", ".md", ".markdown"}


class DocumentProcessRequest(BaseModel):
    text: str = ""
    generate_roadmap: bool = False


class ExplainRequest(BaseModel):
    text: str = ""


class RewriteRequest(BaseModel):
    text: str = ""
    tone: str = "professional"


class RoadmapRequest(BaseModel):
    goal: str = ""
    level: str = "beginner"
    weeks: int = Field(default=4, ge=1, le=52)


def _orchestrator() -> JobOrchestrator:
    return app.state.orchestrator


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def _accepted(request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "status": "processing",
            "request_id": request_id,
            "message": f"Document accepted. Poll /document/request/{request_id} for the result.",
        },
    )


def _feature_response(job: dict):
    if job["status"] == "failed":
        return JSONResponse(
            status_code=502,
            content={"status": "error", "request_id": job["id"], "error": job["error_message"]},
        )
    return {
        "status": "ok",
        "request_id": job["id"],
        "result": job["result"],
        "warnings": job["warnings"],
        "metrics": job["metrics"],
    }


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/document/process")
def process_document(request: DocumentProcessRequest):
    if not request.text.strip():
        return _error(400, "Document text must not be empty.")
    request_id = _orchestrator().submit_document(request.text, request.generate_roadmap)
    return _accepted(request_id)


@app.post("/document/upload")
async def upload_document(
    file: UploadFile = File(...),
    generate_roadmap: bool = Form(False),
):
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    suffix = Path(file.filename or "").suffix.lower()
    if suffix not in ALLOWED_UPLOAD_SUFFIXES and not content_type.startswith("text/"):
        return _error(415, "Only UTF-8 text files (.txt, .md) are supported.")

    content = await file.read()
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return _error(415, "The uploaded file is not valid UTF-8 text.")

    if not text.strip():
        return _error(400, "The uploaded file is empty.")

    request_id = _orchestrator().submit_document(text, generate_roadmap)
    return _accepted(request_id)


@app.get("/document/request/{request_id}")
def document_request_status(request_id: str):
    try:
        job = _orchestrator().get_job(request_id)
    except JobNotFound:
        return _error(404, f"Unknown request id '{request_id}'.")

    return {
        "status": job["status"],
        "request_id": job["id"],
        "result": job["result"],
        "error": job["error_message"],
        "warnings": job["warnings"],
        "metrics": job["metrics"],
    }


@app.post("/ai/explain")
def explain_text(request: ExplainRequest):
    if not request.text.strip():
        return _error(400, "Text to explain must not be empty.")
    job = _orchestrator().run_feature_job(FeatureKind.EXPLAIN, {"text": request.text})
    return _feature_response(job)


@app.post("/ai/rewrite")
def rewrite_text(request: RewriteRequest):
    if not request.text.strip():
        return _error(400, "Text to rewrite must not be empty.")
    job = _orchestrator().run_feature_job(
        FeatureKind.REWRITE,
        {"text": request.text, "tone": request.tone.strip() or "professional"},
    )
    return _feature_response(job)


@app.post("/ai/roadmap")
def build_roadmap(request: RoadmapRequest):
    if not request.goal.strip():
        return _error(400, "A learning goal is required.")
    job = _orchestrator().run_feature_job(
        FeatureKind.ROADMAP,
        {"goal": request.goal, "level": request.level.strip() or "beginner", "weeks": request.weeks},
    )
    return _feature_response(job)
