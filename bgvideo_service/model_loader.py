"""
Model loading utilities for the segmentation capability.

The loader:
 - pulls the pretrained matting model (RMBG-1.4 by default) through
   `transformers`,
 - keeps a single shared instance per process,
 - tracks an explicit unloaded / ready / unavailable state so callers can
   check readiness instead of tripping over a half-loaded model,
 - exposes `get_segmentation_service()` for inference callers and
   `reset_segmentation_service()` for test isolation.
"""

from __future__ import annotations

from enum import Enum
import logging
from threading import Lock
from typing import Callable, Optional

import torch

from . import config
from .errors import ModelUnavailable

logger = logging.getLogger(__name__)

ModelFactory = Callable[[config.Settings, torch.device], torch.nn.Module]


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    READY = "ready"
    UNAVAILABLE = "unavailable"


def select_device(preference: str = "auto") -> torch.device:
    """Prefer CUDA -> Apple MPS -> CPU unless a device is pinned in settings."""
    if preference and preference != "auto":
        return torch.device(preference)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


def _load_pretrained(settings: config.Settings, device: torch.device) -> torch.nn.Module:
    from transformers import AutoModelForImageSegmentation

    logger.info("Loading segmentation model %s", settings.segmentation_model_id)
    model = AutoModelForImageSegmentation.from_pretrained(
        settings.segmentation_model_id, trust_remote_code=True
    )
    model.to(device)
    model.eval()
    return model


def _extract_matte(output) -> torch.Tensor:
    """RMBG returns nested lists of side outputs; the finest matte comes first."""
    while isinstance(output, (list, tuple)):
        if not output:
            raise RuntimeError("Segmentation model returned an empty output")
        output = output[0]
    if not isinstance(output, torch.Tensor):
        raise RuntimeError(f"Unexpected segmentation output type: {type(output).__name__}")
    if output.dim() == 3:
        output = output.unsqueeze(1)
    return output


class SegmentationService:
    """Process-wide wrapper around the loaded matting model."""

    def __init__(self, factory: Optional[ModelFactory] = None, settings: Optional[config.Settings] = None):
        self._factory = factory or _load_pretrained
        self._settings = settings
        self._lock = Lock()
        self._model: Optional[torch.nn.Module] = None
        self._device: Optional[torch.device] = None
        self._state = ModelState.UNLOADED
        self._error: Optional[str] = None

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is ModelState.READY

    @property
    def device(self) -> torch.device:
        if self._device is None:
            settings = self._settings or config.get_settings()
            self._device = select_device(settings.device)
        return self._device

    @property
    def last_error(self) -> Optional[str]:
        return self._error

    def load(self) -> ModelState:
        """Load the model once; failures leave the service `unavailable`."""
        with self._lock:
            if self._state is ModelState.READY:
                return self._state
            settings = self._settings or config.get_settings()
            try:
                self._model = self._factory(settings, self.device)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Segmentation model failed to load: %s", exc)
                self._model = None
                self._state = ModelState.UNAVAILABLE
                self._error = str(exc)
            else:
                self._state = ModelState.READY
                self._error = None
                logger.info("Segmentation model ready on device: %s", self.device)
        return self._state

    def ensure_ready(self) -> None:
        if self._state is ModelState.UNLOADED:
            self.load()
        if self._state is not ModelState.READY:
            detail = f": {self._error}" if self._error else ""
            raise ModelUnavailable(f"Segmentation model is unavailable{detail}")

    def predict(self, tensor: torch.Tensor) -> torch.Tensor:
        """Return a (B, 1, H, W) matte for a preprocessed batch."""
        self.ensure_ready()
        with torch.no_grad():
            output = self._model(tensor)
        return _extract_matte(output)

    def reset(self) -> None:
        with self._lock:
            self._model = None
            self._device = None
            self._state = ModelState.UNLOADED
            self._error = None


_SERVICE: Optional[SegmentationService] = None
_SERVICE_LOCK = Lock()


def get_segmentation_service() -> SegmentationService:
    """Return the process-wide segmentation service, creating it lazily."""
    global _SERVICE
    if _SERVICE is not None:
        return _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = SegmentationService()
    return _SERVICE


def reset_segmentation_service(service: Optional[SegmentationService] = None) -> None:
    """Drop the shared service (or install `service` in its place)."""
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is not None:
            _SERVICE.reset()
        _SERVICE = service
