"""
Pipeline orchestrator.

Two operations sit behind the HTTP handlers:

 - `ingest` stores an (already background-removed) image under
   `uploads/<unique name>` and returns its key plus a signed URL.
 - `render` resolves an `ImageSource`, materializes it into a per-render
   scratch file, composes the video, uploads it under `videos/`, and signs a
   URL for it. Scratch files named after the render id are removed on every
   exit path.

Every generated name carries a fresh uuid4, so overlapping requests never
share a key or a scratch file.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path, PurePosixPath
import time
from typing import Callable, Iterator, Optional
import uuid

from PIL import Image
import requests

from . import config
from .composition import VideoComposer
from .errors import FetchFailed, InvalidImage, InvalidSource, MissingSource, NotFound, RenderFailed
from .models import ByKey, ByPath, ImageAsset, ImageSource
from .storage import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_TYPE = "image/png"


@dataclass(frozen=True)
class IngestResult:
    storage_key: str
    access_url: str
    image_path: str


@dataclass(frozen=True)
class RenderResult:
    render_id: str
    storage_key: str
    access_url: str


def resolve_image_source(s3_key: Optional[str] = None, image_path: Optional[str] = None) -> ImageSource:
    """Pick the render source once: a storage key wins over a local path."""
    if s3_key:
        return ByKey(s3_key)
    if image_path:
        return ByPath(image_path)
    raise MissingSource("No image source provided (neither s3Key nor imagePath)")


def _new_id() -> str:
    return str(uuid.uuid4())


_FORMAT_EXTENSIONS = {"JPEG": ".jpg", "TIFF": ".tif"}


def _image_extension(image_format: Optional[str]) -> str:
    """File extension for a decoded image; the client's filename is never trusted."""
    if not image_format:
        return ".png"
    return _FORMAT_EXTENSIONS.get(image_format, f".{image_format.lower()}")


class Pipeline:
    def __init__(
        self,
        store: ObjectStore,
        composer: VideoComposer,
        settings: Optional[config.Settings] = None,
        http: Optional[requests.Session] = None,
        id_factory: Callable[[], str] = _new_id,
    ):
        self.store = store
        self.composer = composer
        self.settings = settings or config.get_settings()
        self._http = http or requests.Session()
        self._new_id = id_factory

    @property
    def uploads_dir(self) -> Path:
        return Path(self.settings.uploads_dir)

    @property
    def temp_dir(self) -> Path:
        return Path(self.settings.temp_dir)

    def _store_image(self, name: str, data: bytes, content_type: str) -> IngestResult:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        (self.uploads_dir / name).write_bytes(data)

        key = f"uploads/{name}"
        self.store.put(key, data, content_type)
        link = self.store.signed_url(key, self.settings.signed_url_ttl_seconds)
        logger.info("Ingested %s", key)
        return IngestResult(
            storage_key=key,
            access_url=link.url,
            image_path=str(PurePosixPath(self.uploads_dir.name) / name),
        )

    def ingest(self, image_bytes: bytes, filename: Optional[str] = None, content_type: Optional[str] = None) -> IngestResult:
        if not image_bytes:
            raise InvalidImage("Empty image upload")
        image_format = ImageAsset.from_bytes(image_bytes).image.format

        detected = Image.MIME.get(image_format or "")
        if detected:
            content_type = detected
        elif not content_type or not content_type.startswith("image/"):
            content_type = DEFAULT_IMAGE_TYPE
        name = f"{uuid.uuid4().hex}{_image_extension(image_format)}"
        logger.debug("ingest: %s decoded as %s", filename, image_format)
        return self._store_image(name, image_bytes, content_type)

    def ingest_url(self, url: str) -> IngestResult:
        try:
            resp = self._http.get(url, timeout=(5, self.settings.request_timeout_seconds))
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise FetchFailed(f"Could not download image: {exc}") from exc

        data = resp.content
        try:
            ImageAsset.from_bytes(data)
        except InvalidImage as exc:
            raise FetchFailed(f"URL did not return an image: {url}") from exc

        content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            content_type = "image/jpeg"
        return self._store_image(f"url-image-{uuid.uuid4().hex}.jpg", data, content_type)

    def resolve_local_path(self, image_path: str) -> Path:
        """
        Map an `imagePath` onto a file inside the uploads directory.

        Only relative paths are accepted; a leading uploads-directory component
        (as returned by `ingest`) is optional.
        """
        pure = PurePosixPath(image_path.replace("\\", "/"))
        if pure.is_absolute() or not pure.parts:
            raise InvalidSource(f"imagePath must be relative to the uploads directory: {image_path}")
        parts = pure.parts
        if parts[0] == self.uploads_dir.name:
            parts = parts[1:]
        if not parts or ".." in parts:
            raise InvalidSource(f"imagePath escapes the uploads directory: {image_path}")

        root = self.uploads_dir.resolve()
        candidate = root.joinpath(*parts).resolve()
        if not candidate.is_relative_to(root):
            raise InvalidSource(f"imagePath escapes the uploads directory: {image_path}")
        if not candidate.is_file():
            raise NotFound(f"Local image file not found: {image_path}")
        return candidate

    def _load_source(self, source: ImageSource) -> bytes:
        if isinstance(source, ByKey):
            return self.store.get(source.key)
        if isinstance(source, ByPath):
            return self.resolve_local_path(source.path).read_bytes()
        raise MissingSource("No image source provided (neither s3Key nor imagePath)")

    @contextmanager
    def _scratch(self, render_id: str, *paths: Path) -> Iterator[None]:
        try:
            yield
        finally:
            leftovers = set(paths)
            if self.temp_dir.is_dir():
                leftovers.update(self.temp_dir.glob(f"*{render_id}*"))
            for path in leftovers:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Failed to remove temporary file %s: %s", path, exc)

    def render(self, source: Optional[ImageSource], text: Optional[str] = None) -> RenderResult:
        if source is None:
            raise MissingSource("No image source provided (neither s3Key nor imagePath)")

        render_id = self._new_id()
        deadline = time.monotonic() + self.settings.render_timeout_seconds
        temp_image = self.temp_dir / f"temp-image-{render_id}.png"
        video_path = self.temp_dir / f"{render_id}.mp4"

        with self._scratch(render_id, temp_image, video_path):
            data = self._load_source(source)
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            ImageAsset.from_bytes(data).image.save(temp_image, format="PNG")

            request = self.composer.build_request(render_id, temp_image, video_path, text)
            rendered = self.composer.compose(request)
            if time.monotonic() > deadline:
                raise RenderFailed(f"Render {render_id} exceeded {self.settings.render_timeout_seconds}s")

            key = f"videos/{self.settings.video_key_prefix}{render_id}.mp4"
            self.store.put(key, rendered.path.read_bytes(), "video/mp4")
            link = self.store.signed_url(key, self.settings.signed_url_ttl_seconds)

        logger.info("Render %s stored as %s", render_id, key)
        return RenderResult(render_id=render_id, storage_key=key, access_url=link.url)
