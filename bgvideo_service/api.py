"""
FastAPI layer exposing the upload -> render -> persist pipeline.

Endpoints:
 - GET /health
 - POST /upload
 - POST /upload-url
 - POST /create-video
 - GET /files/{key}   (signed links of the local storage backend)
 - static: / (client bundle), /videos, /uploads
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from threading import Lock
from typing import Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, HttpUrl

from . import config
from .composition import VideoComposer
from .errors import NotFound, PipelineError
from .pipeline import Pipeline, resolve_image_source
from .storage import LocalObjectStore, build_object_store

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

_PIPELINE: Optional[Pipeline] = None
_PIPELINE_LOCK = Lock()


def get_pipeline() -> Pipeline:
    """Build the shared pipeline on first use; fails fast on bad storage config."""
    global _PIPELINE
    if _PIPELINE is None:
        with _PIPELINE_LOCK:
            if _PIPELINE is None:
                _PIPELINE = Pipeline(
                    store=build_object_store(settings),
                    composer=VideoComposer(settings),
                    settings=settings,
                )
    return _PIPELINE


@asynccontextmanager
async def lifespan(_: FastAPI):
    for directory in (settings.uploads_dir, settings.videos_dir, settings.temp_dir):
        directory.mkdir(parents=True, exist_ok=True)
    get_pipeline()
    logger.info("Server running at http://localhost:%s", settings.port)
    yield


app = FastAPI(title="Background Removal Video Service", version="0.1.0", lifespan=lifespan)


class UploadUrlRequest(BaseModel):
    url: HttpUrl


class CreateVideoRequest(BaseModel):
    imagePath: Optional[str] = None
    s3Key: Optional[str] = None
    text: Optional[str] = None


class UploadResponse(BaseModel):
    success: bool = True
    imagePath: str
    s3Key: str
    imageUrl: str


class CreateVideoResponse(BaseModel):
    success: bool = True
    videoUrl: str
    videoId: str


def _failure(message: str, exc: Exception, status_code: int = 500) -> JSONResponse:
    logger.error("%s: %s", message, exc, exc_info=exc)
    detail = exc.message if isinstance(exc, PipelineError) else str(exc) or message
    return JSONResponse(status_code=status_code, content={"success": False, "error": detail})


@app.exception_handler(PipelineError)
async def pipeline_error_handler(_: Request, exc: PipelineError):
    return _failure("Pipeline error", exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    message = "Invalid request: " + "; ".join(problems)
    logger.info("Rejected request: %s", message)
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/upload", response_model=UploadResponse)
async def upload(image: UploadFile = File(...), pipeline: Pipeline = Depends(get_pipeline)):
    try:
        data = await image.read()
        result = await run_in_threadpool(pipeline.ingest, data, image.filename, image.content_type)
    except Exception as exc:  # noqa: BLE001
        return _failure("Error processing image", exc)
    return UploadResponse(imagePath=result.image_path, s3Key=result.storage_key, imageUrl=result.access_url)


@app.post("/upload-url", response_model=UploadResponse)
async def upload_url(body: UploadUrlRequest, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        result = await run_in_threadpool(pipeline.ingest_url, str(body.url))
    except Exception as exc:  # noqa: BLE001
        return _failure("Error downloading image", exc)
    return UploadResponse(imagePath=result.image_path, s3Key=result.storage_key, imageUrl=result.access_url)


@app.post("/create-video", response_model=CreateVideoResponse)
async def create_video(body: CreateVideoRequest, pipeline: Pipeline = Depends(get_pipeline)):
    timeout = pipeline.settings.render_timeout_seconds
    try:
        source = resolve_image_source(s3_key=body.s3Key, image_path=body.imagePath)
        # The worker thread keeps its own cleanup guarantee if this wait gives up.
        result = await asyncio.wait_for(run_in_threadpool(pipeline.render, source, body.text), timeout=timeout)
    except asyncio.TimeoutError:
        return _failure("Error creating video", TimeoutError(f"Video rendering timed out after {timeout}s"))
    except Exception as exc:  # noqa: BLE001
        return _failure("Error creating video", exc)
    return CreateVideoResponse(videoUrl=result.access_url, videoId=result.render_id)


@app.get("/files/{key:path}")
def serve_file(key: str, expires: int, signature: str, pipeline: Pipeline = Depends(get_pipeline)):
    store = pipeline.store
    if not isinstance(store, LocalObjectStore):
        return JSONResponse(status_code=404, content={"success": False, "error": "Not found"})
    if not store.verify(key, expires, signature):
        return JSONResponse(status_code=403, content={"success": False, "error": "Link expired or invalid"})
    try:
        data = store.get(key)
    except NotFound as exc:
        return JSONResponse(status_code=404, content={"success": False, "error": exc.message})
    return Response(content=data, media_type=store.content_type(key))


app.mount("/videos", StaticFiles(directory=settings.videos_dir, check_dir=False), name="videos")
app.mount("/uploads", StaticFiles(directory=settings.uploads_dir, check_dir=False), name="uploads")
app.mount("/", StaticFiles(directory=settings.public_dir, html=True, check_dir=False), name="public")


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
