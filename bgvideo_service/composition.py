"""
Video composition stage.

Renders one fixed-length portrait clip: the template video cover-fitted to
the frame, the cut-out image contain-fitted into a normalized box that
appears at a configured offset, an optional caption, and one audio track.
Output geometry, frame rate and duration come from settings only.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
import time
from typing import Callable, Optional, Tuple

from . import config
from .errors import AssetMissing, PipelineError, RenderFailed
from .models import RenderedVideo, RenderRequest

logger = logging.getLogger(__name__)

Size = Tuple[int, int]
Renderer = Callable[[RenderRequest, config.Settings], None]


def cover_size(source: Size, frame: Size) -> Size:
    """Smallest scaled size of `source` that fully covers `frame`."""
    scale = max(frame[0] / source[0], frame[1] / source[1])
    width = math.ceil(source[0] * scale - 1e-6)
    height = math.ceil(source[1] * scale - 1e-6)
    return max(frame[0], width), max(frame[1], height)


def contain_size(source: Size, box: Size) -> Size:
    """Largest scaled size of `source` that fits inside `box`, at least 1x1."""
    scale = min(box[0] / source[0], box[1] / source[1])
    return max(1, int(source[0] * scale + 1e-6)), max(1, int(source[1] * scale + 1e-6))


def overlay_box(request: RenderRequest, frame: Size) -> Tuple[Size, Tuple[int, int]]:
    """Pixel size and top-left origin of the overlay box inside `frame`."""
    box = (max(1, round(frame[0] * request.overlay_size[0])), max(1, round(frame[1] * request.overlay_size[1])))
    origin = (round(frame[0] * request.overlay_position[0]), round(frame[1] * request.overlay_position[1]))
    return box, origin


def render_with_moviepy(request: RenderRequest, settings: config.Settings) -> None:
    from moviepy import AudioFileClip, CompositeVideoClip, ImageClip, TextClip, VideoFileClip
    from moviepy import vfx

    frame = (settings.video_width, settings.video_height)
    duration = settings.video_duration_seconds
    overlay_duration = max(duration - request.overlay_start, 0.0)
    clips = []
    try:
        background = VideoFileClip(str(request.template_path), audio=False)
        clips.append(background)
        if background.duration < duration:
            background = background.with_effects([vfx.Loop(duration=duration)])
        else:
            background = background.subclipped(0, duration)
        scaled = cover_size(background.size, frame)
        background = background.resized(new_size=scaled).cropped(
            x_center=scaled[0] / 2, y_center=scaled[1] / 2, width=frame[0], height=frame[1]
        )
        layers = [background.with_position("center")]

        box, origin = overlay_box(request, frame)
        overlay = ImageClip(str(request.image_path))
        clips.append(overlay)
        overlay = (
            overlay.resized(new_size=contain_size(overlay.size, box))
            .with_start(request.overlay_start)
            .with_duration(overlay_duration)
            .with_position(origin)
        )
        layers.append(overlay)

        if request.text:
            caption = TextClip(
                text=request.text,
                font_size=max(16, frame[0] // 16),
                color="white",
                stroke_color="black",
                stroke_width=2,
                method="caption",
                size=(int(frame[0] * 0.9), None),
            )
            clips.append(caption)
            layers.append(
                caption.with_start(request.overlay_start)
                .with_duration(overlay_duration)
                .with_position(("center", int(frame[1] * 0.78)))
            )

        audio = AudioFileClip(str(request.audio_path))
        clips.append(audio)
        audio = audio.subclipped(0, min(duration, audio.duration)).with_volume_scaled(request.audio_volume)

        video = CompositeVideoClip(layers, size=frame).with_duration(duration).with_audio(audio)
        clips.append(video)
        video.write_videofile(
            str(request.output_path),
            fps=settings.video_fps,
            codec="libx264",
            audio_codec="aac",
            temp_audiofile_path=str(request.output_path.parent),
            logger=None,
        )
    finally:
        for clip in reversed(clips):
            try:
                clip.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("compose: failed to close clip: %s", exc)


class VideoComposer:
    """Validates inputs, runs the renderer, and removes partial output on failure."""

    def __init__(self, settings: Optional[config.Settings] = None, renderer: Optional[Renderer] = None):
        self.settings = settings or config.get_settings()
        self._renderer = renderer or render_with_moviepy

    def build_request(self, render_id: str, image_path: Path, output_path: Path, text: Optional[str] = None) -> RenderRequest:
        s = self.settings
        return RenderRequest(
            render_id=render_id,
            template_path=Path(s.template_video_path),
            audio_path=Path(s.audio_track_path),
            image_path=Path(image_path),
            output_path=Path(output_path),
            overlay_start=s.overlay_start_seconds,
            overlay_position=(s.overlay_x, s.overlay_y),
            overlay_size=(s.overlay_width, s.overlay_height),
            audio_volume=s.audio_volume,
            text=text or None,
        )

    def compose(self, request: RenderRequest) -> RenderedVideo:
        for label, path in (
            ("template video", request.template_path),
            ("audio track", request.audio_path),
            ("foreground image", request.image_path),
        ):
            if not Path(path).is_file():
                raise AssetMissing(f"Missing {label}: {path}")

        started = time.monotonic()
        try:
            self._renderer(request, self.settings)
        except PipelineError:
            self._discard(request.output_path)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Render %s failed: %s", request.render_id, exc)
            self._discard(request.output_path)
            raise RenderFailed(f"Video rendering failed: {exc}") from exc

        if not request.output_path.is_file():
            raise RenderFailed("Video rendering produced no output file")
        logger.info("Rendered %s in %.1fs", request.render_id, time.monotonic() - started)
        return RenderedVideo(render_id=request.render_id, path=request.output_path)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("compose: failed to remove partial output %s: %s", path, exc)
