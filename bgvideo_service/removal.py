"""
Background removal stage.

`remove_background` is the main entry point used by the capture client and
local scripts. It keeps orchestration simple:
image -> preprocessing -> matting model -> mask resize -> RGBA image out.
The input asset is never mutated.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from . import config
from .model_loader import SegmentationService, get_segmentation_service
from .models import ImageAsset
from .postprocessing import compose_rgba, matte_to_mask
from .preprocessing import preprocess_image

logger = logging.getLogger(__name__)


def remove_background_sync(
    asset: ImageAsset,
    service: Optional[SegmentationService] = None,
    settings: Optional[config.Settings] = None,
) -> ImageAsset:
    """
    Cut the foreground subject out of `asset`.

    Raises:
        ModelUnavailable: when the segmentation model could not be loaded.
    """
    settings = settings or config.get_settings()
    service = service or get_segmentation_service()
    service.ensure_ready()

    preprocessed = preprocess_image(
        asset.image,
        input_size=settings.segmentation_input_size,
        mean=settings.segmentation_image_mean,
        std=settings.segmentation_image_std,
        device=service.device,
    )
    logger.debug("removal: input %sx%s -> tensor %s", asset.width, asset.height, tuple(preprocessed.tensor.shape))

    matte = service.predict(preprocessed.tensor)
    mask = matte_to_mask(matte, preprocessed.orig_size)
    return ImageAsset(image=compose_rgba(preprocessed.original_image, mask))


async def remove_background(
    asset: ImageAsset,
    service: Optional[SegmentationService] = None,
    settings: Optional[config.Settings] = None,
) -> ImageAsset:
    """Run `remove_background_sync` off the event loop."""
    return await asyncio.to_thread(remove_background_sync, asset, service, settings)


def process_image_bytes(
    image_bytes: bytes,
    service: Optional[SegmentationService] = None,
    settings: Optional[config.Settings] = None,
) -> bytes:
    """
    Full pipeline from encoded image bytes to RGBA PNG bytes.

    Raises:
        InvalidImage: when the input cannot be decoded.
        ModelUnavailable: when the segmentation model could not be loaded.
    """
    asset = ImageAsset.from_bytes(image_bytes)
    return remove_background_sync(asset, service=service, settings=settings).to_png_bytes()
