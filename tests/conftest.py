from io import BytesIO
from pathlib import Path
import time

from fastapi.testclient import TestClient
import numpy as np
from PIL import Image
import pytest
import requests
import torch

from bgvideo_service import config
from bgvideo_service.api import app, get_pipeline
from bgvideo_service.composition import VideoComposer
from bgvideo_service.model_loader import SegmentationService
from bgvideo_service.pipeline import Pipeline
from bgvideo_service.storage import LocalObjectStore


def make_image_bytes(size=(64, 48), color=(200, 30, 30), mode="RGB", fmt="PNG", subject=None) -> bytes:
    """Solid background, optionally with a solid `(box, color)` subject."""
    image = Image.new(mode, size, color)
    if subject is not None:
        box, subject_color = subject
        image.paste(subject_color, box)
    buf = BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class LowGreenMatte(torch.nn.Module):
    """Marks pixels whose green channel is below mid-grey as foreground."""

    def forward(self, x):
        return [[(x[:, 1:2] < 0).float()]]


class FakeResponse:
    def __init__(self, content=b"", status_code=200, headers=None):
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.response


class FakeRenderer:
    """Writes the overlay image bytes as the 'video' so outputs can be traced back to inputs."""

    def __init__(self, fail_with=None, partial=False, delay=0.0):
        self.fail_with = fail_with
        self.partial = partial
        self.delay = delay
        self.requests = []

    def __call__(self, request, settings):
        self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.partial:
            request.output_path.write_bytes(b"partial")
        if self.fail_with is not None:
            raise self.fail_with
        request.output_path.write_bytes(request.image_path.read_bytes())


@pytest.fixture
def settings(tmp_path: Path) -> config.Settings:
    assets = tmp_path / "assets"
    assets.mkdir()
    (assets / "video.mp4").write_bytes(b"template")
    (assets / "music.m4a").write_bytes(b"music")
    return config.Settings(
        _env_file=None,
        storage_backend="local",
        local_storage_dir=tmp_path / "store",
        url_signing_secret="test-secret",
        public_base_url="http://testserver",
        uploads_dir=tmp_path / "uploads",
        videos_dir=tmp_path / "videos",
        temp_dir=tmp_path / "temp",
        public_dir=tmp_path / "public",
        template_video_path=assets / "video.mp4",
        audio_track_path=assets / "music.m4a",
        segmentation_input_size=64,
        device="cpu",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(settings, clock) -> LocalObjectStore:
    return LocalObjectStore(
        root=settings.local_storage_dir,
        secret=settings.url_signing_secret,
        base_url=settings.public_base_url,
        clock=clock,
    )


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def composer(settings, renderer) -> VideoComposer:
    return VideoComposer(settings, renderer=renderer)


@pytest.fixture
def pipeline(store, composer, settings) -> Pipeline:
    return Pipeline(store=store, composer=composer, settings=settings)


@pytest.fixture
def segmentation(settings) -> SegmentationService:
    return SegmentationService(factory=lambda s, device: LowGreenMatte(), settings=settings)


@pytest.fixture
def client(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def frame() -> np.ndarray:
    image = np.full((72, 128, 3), 255, dtype=np.uint8)
    image[20:50, 40:90] = (0, 0, 255)
    return image
