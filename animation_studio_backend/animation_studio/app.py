import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import ALLOWED_ORIGINS, MAX_UPLOAD_MB, has_all_keys
from .errors import (
    AlreadyIngested,
    ConfigurationError,
    EmptyDocument,
    EmptyResponse,
    GenerationInProgress,
    InvalidImage,
    MalformedResponse,
    MissingIllustration,
    NotIngested,
    ProjectNotFound,
    SceneNotReachable,
    ServiceError,
    StudioError,
    SynthesisError,
    UnknownScene,
    UnsupportedFormat,
)
from .media import load_image
from .models import is_completed, nav_items, scene_label
from .navigation import navigation_state, next_scene_id, resolve_active_scene
from .orchestrator import ScenePipeline
from .storage import ProjectRepository

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    UnsupportedFormat: 415,
    EmptyDocument: 422,
    InvalidImage: 422,
    MissingIllustration: 422,
    NotIngested: 409,
    AlreadyIngested: 409,
    SceneNotReachable: 409,
    GenerationInProgress: 409,
    UnknownScene: 404,
    ProjectNotFound: 404,
    ServiceError: 502,
    EmptyResponse: 502,
    MalformedResponse: 502,
    SynthesisError: 502,
    ConfigurationError: 500,
}

app = FastAPI(title="Animation Studio Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

_pipeline: Optional[ScenePipeline] = None


def get_pipeline() -> ScenePipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ScenePipeline(ProjectRepository())
    return _pipeline


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    status = ERROR_STATUS.get(type(exc), 400)
    body = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, ServiceError):
        body["upstream_status"] = exc.status
    return JSONResponse(status_code=status, content=body)


async def _read_upload(upload: UploadFile) -> bytes:
    data = await upload.read()
    if len(data) > MAX_UPLOAD_MB * 1024 * 1024:
        raise HTTPException(413, f"{upload.filename} is larger than {MAX_UPLOAD_MB} MB")
    return data


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


@app.get("/health")
def health():
    keys_ok = has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "has_keys": keys_ok}


# --- projects (dashboard) ---

@app.get("/v1/projects")
def list_projects(pipeline: ScenePipeline = Depends(get_pipeline)):
    return [_dump(p) for p in pipeline.repository.list_projects()]


@app.post("/v1/projects", status_code=201)
def create_project(pipeline: ScenePipeline = Depends(get_pipeline)):
    return _dump(pipeline.repository.create_project())


@app.get("/v1/projects/{project_id}")
def get_project(project_id: str, pipeline: ScenePipeline = Depends(get_pipeline)):
    return _dump(pipeline.repository.get_project(project_id))


@app.delete("/v1/projects/{project_id}", status_code=204)
def delete_project(project_id: str, pipeline: ScenePipeline = Depends(get_pipeline)):
    pipeline.repository.delete_project(project_id)
    return Response(status_code=204)


# --- pipeline ---

@app.post("/v1/projects/{project_id}:ingest")
async def ingest(project_id: str, file: UploadFile = File(...), pipeline: ScenePipeline = Depends(get_pipeline)):
    data = await _read_upload(file)
    project = await pipeline.ingest_document(project_id, file.filename or "", data)
    return _dump(project)


@app.get("/v1/projects/{project_id}/navigation")
def navigation(project_id: str, current: Optional[str] = None, pipeline: ScenePipeline = Depends(get_pipeline)):
    project = pipeline.repository.get_project(project_id)
    state = navigation_state(project.total_pages, project.scenes, current)
    active = resolve_active_scene(project.total_pages, project.scenes, current)
    items = []
    for scene_id in state.items:
        items.append({
            "id": scene_id,
            "label": scene_label(scene_id),
            "status": "completed" if is_completed(project.scenes.get(scene_id)) else "pending",
            "reachable": scene_id in state.reachable,
        })
    return {
        "items": items,
        "first_pending_index": state.first_pending_index,
        "active_scene": active,
        "next_scene": next_scene_id(project.total_pages, active) if active else None,
    }


@app.get("/v1/projects/{project_id}/scenes/{scene_id}")
def get_scene(project_id: str, scene_id: str, pipeline: ScenePipeline = Depends(get_pipeline)):
    project = pipeline.repository.get_project(project_id)
    if scene_id not in nav_items(project.total_pages):
        raise UnknownScene(f"Scene '{scene_id}' does not exist in this project")
    scene = project.scenes.get(scene_id)
    return {
        "id": scene_id,
        "label": scene_label(scene_id),
        "scene": _dump(scene) if scene is not None else {"status": "pending"},
        "activity": _dump(pipeline.scene_activity(project_id, scene_id)),
    }


@app.get("/v1/projects/{project_id}/scenes/{scene_id}/prompt")
def get_scene_prompt(project_id: str, scene_id: str, pipeline: ScenePipeline = Depends(get_pipeline)):
    project = pipeline.repository.get_project(project_id)
    scene = project.scenes.get(scene_id)
    if not is_completed(scene):
        raise HTTPException(404, f"Scene '{scene_id}' has no generated prompt yet")
    return Response(content=scene.prompt.to_json(), media_type="application/json")


@app.post("/v1/projects/{project_id}/scenes/{scene_id}:generate")
async def generate_scene(
    project_id: str,
    scene_id: str,
    feedback: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    pipeline: ScenePipeline = Depends(get_pipeline),
):
    payload = None
    if image is not None and image.filename:
        payload = load_image(await _read_upload(image), image.filename)
    project = await pipeline.generate_scene(project_id, scene_id, feedback=feedback, image=payload)
    return _dump(project)
