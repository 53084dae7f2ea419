"""Turn a raw model matte into an alpha channel at the source resolution."""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
from PIL import Image
import torch
import torch.nn.functional as F

logger = logging.getLogger(__name__)

_FLAT_RANGE = 1e-6


def matte_to_mask(matte: torch.Tensor, size: Tuple[int, int]) -> Image.Image:
    """
    Resize a (B, 1, h, w) matte to `size` (width, height) and scale to [0, 255].

    The prediction is min-max normalized first, the same way the model card's
    reference postprocessing does it. A flat prediction is only clamped.
    """
    width, height = size
    resized = F.interpolate(matte.float(), size=(height, width), mode="bilinear", align_corners=False)
    alpha = resized[0, 0].detach().cpu().numpy()

    lo, hi = float(alpha.min()), float(alpha.max())
    if hi - lo > _FLAT_RANGE:
        alpha = (alpha - lo) / (hi - lo)
    else:
        logger.debug("postprocess: flat matte (%.4f), skipping normalization", lo)
    alpha = np.clip(alpha, 0.0, 1.0)

    alpha_u8 = np.clip(alpha * 255.0 + 0.5, 0, 255).astype(np.uint8)
    return Image.fromarray(alpha_u8)


def compose_rgba(rgb_image: Image.Image, mask: Image.Image) -> Image.Image:
    """Attach `mask` as the alpha channel of a copy of `rgb_image`."""
    if mask.size != rgb_image.size:
        mask = mask.resize(rgb_image.size, Image.BILINEAR)
    out = rgb_image.convert("RGB")
    out.putalpha(mask)
    return out
