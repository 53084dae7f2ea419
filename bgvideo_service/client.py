"""
Capture client: acquire an image, remove its background locally, hand the
PNG to the server's `/upload`, and optionally request a video.

Progress and failures are reported through a single human-readable
`StatusLine`; the flow methods return `None` on failure instead of raising,
the same way a page would show an error and wait for the next action.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

import requests

from . import config
from .capture import CameraSession, CaptureFactory, fetch_url_source, read_file_source
from .errors import PipelineError
from .model_loader import ModelState, SegmentationService, get_segmentation_service
from .models import ImageAsset
from .removal import remove_background

logger = logging.getLogger(__name__)


class StatusLine:
    def __init__(self, on_change: Optional[Callable[[str], None]] = None):
        self.text = ""
        self._on_change = on_change

    def set(self, text: str) -> None:
        self.text = text
        logger.info("status: %s", text)
        if self._on_change is not None:
            self._on_change(text)


class UploadClient:
    """Thin HTTP client for the server's upload and render routes."""

    def __init__(self, base_url: str = "http://localhost:3000", session=None, timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    @staticmethod
    def _parse(resp) -> dict:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or not data.get("success"):
            raise RuntimeError(data.get("error") or f"Server responded with HTTP {resp.status_code}")
        return data

    def upload_image(self, png_bytes: bytes, filename: str = "processed-image.png") -> dict:
        resp = self.session.post(
            f"{self.base_url}/upload",
            files={"image": (filename, png_bytes, "image/png")},
            timeout=self.timeout,
        )
        return self._parse(resp)

    def create_video(self, s3_key: Optional[str] = None, image_path: Optional[str] = None, text: Optional[str] = None) -> dict:
        payload = {"s3Key": s3_key, "imagePath": image_path, "text": text}
        resp = self.session.post(
            f"{self.base_url}/create-video",
            json={k: v for k, v in payload.items() if v is not None},
            timeout=self.timeout,
        )
        return self._parse(resp)


def _describe(exc: Exception) -> str:
    return exc.message if isinstance(exc, PipelineError) else str(exc)


class CaptureSurface:
    def __init__(
        self,
        client: UploadClient,
        service: Optional[SegmentationService] = None,
        settings: Optional[config.Settings] = None,
        camera_factory: Optional[CaptureFactory] = None,
        status: Optional[StatusLine] = None,
        http: Optional[requests.Session] = None,
    ):
        self.client = client
        self.service = service or get_segmentation_service()
        self.settings = settings or config.get_settings()
        self.status = status or StatusLine()
        self._camera_factory = camera_factory
        self._http = http
        self._camera: Optional[CameraSession] = None

    async def load_model(self) -> bool:
        self.status.set("Loading model...")
        state = await asyncio.to_thread(self.service.load)
        if state is ModelState.READY:
            self.status.set("Ready")
            return True
        self.status.set("Error loading model")
        return False

    async def process_bytes(self, data: bytes) -> Optional[dict]:
        """Remove the background from `data` and upload the PNG."""
        try:
            asset = ImageAsset.from_bytes(data)
            self.status.set("Removing background...")
            processed = await remove_background(asset, service=self.service, settings=self.settings)
            self.status.set("Uploading image...")
            result = await asyncio.to_thread(self.client.upload_image, processed.to_png_bytes())
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error processing image: %s", exc)
            self.status.set(f"Error processing image: {_describe(exc)}")
            return None
        self.status.set("Image processed successfully!")
        return result

    async def from_file(self, path: Path) -> Optional[dict]:
        self.status.set("Processing image...")
        try:
            data = read_file_source(path)
        except PipelineError as exc:
            self.status.set(f"Error processing image: {exc.message}")
            return None
        return await self.process_bytes(data)

    async def from_url(self, url: str) -> Optional[dict]:
        self.status.set("Fetching image...")
        try:
            data = await asyncio.to_thread(
                fetch_url_source, url, self._http, self.settings.request_timeout_seconds
            )
        except PipelineError as exc:
            self.status.set(f"Error processing image: {exc.message}")
            return None
        return await self.process_bytes(data)

    def open_camera(self, device_index: int = 0) -> CameraSession:
        """Start a camera session, closing any session this surface still holds."""
        if self._camera is not None and self._camera.active:
            logger.info("Closing previous camera session before opening a new one")
            self._camera.stop()
        self.status.set("Accessing camera...")
        session = CameraSession(device_index=device_index, factory=self._camera_factory)
        self._camera = session
        session.open()
        self.status.set("Camera ready")
        return session

    def close_camera(self) -> None:
        if self._camera is not None:
            self._camera.stop()

    async def from_camera(self, device_index: int = 0) -> Optional[dict]:
        try:
            session = self.open_camera(device_index)
            data = session.capture()
        except PipelineError as exc:
            self.close_camera()
            self.status.set(f"Error accessing camera: {exc.message}")
            return None
        return await self.process_bytes(data)

    async def create_video(self, s3_key: Optional[str] = None, image_path: Optional[str] = None, text: Optional[str] = None) -> Optional[dict]:
        self.status.set("Creating video...")
        try:
            result = await asyncio.to_thread(self.client.create_video, s3_key, image_path, text)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error creating video: %s", exc)
            self.status.set(f"Error creating video: {_describe(exc)}")
            return None
        self.status.set("Video created successfully!")
        return result
