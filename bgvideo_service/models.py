"""Value types passed between the pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .errors import InvalidImage


@dataclass(frozen=True)
class ImageAsset:
    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    @property
    def has_alpha(self) -> bool:
        return "A" in self.image.getbands()

    @classmethod
    def from_bytes(cls, data: bytes) -> "ImageAsset":
        try:
            image = Image.open(BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise InvalidImage("Invalid image data") from exc
        return cls(image=image)

    def to_png_bytes(self) -> bytes:
        buf = BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()


@dataclass(frozen=True)
class StoredObject:
    key: str
    content_type: str
    data: bytes = field(repr=False)


@dataclass(frozen=True)
class AccessLink:
    url: str
    key: str
    expires_at: datetime


@dataclass(frozen=True)
class ByKey:
    key: str


@dataclass(frozen=True)
class ByPath:
    path: str


ImageSource = Union[ByKey, ByPath]


@dataclass(frozen=True)
class RenderRequest:
    render_id: str
    template_path: Path
    audio_path: Path
    image_path: Path
    output_path: Path
    overlay_start: float
    overlay_position: Tuple[float, float]  # normalized (x, y) of the overlay's top-left corner
    overlay_size: Tuple[float, float]  # normalized (width, height) of the overlay box
    audio_volume: float = 1.0
    text: Optional[str] = None


@dataclass(frozen=True)
class RenderedVideo:
    render_id: str
    path: Path
