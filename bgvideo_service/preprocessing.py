"""
Image preprocessing for the segmentation model.

The resize target and normalization constants come from configuration and
match the processor the matting model was trained with: a fixed square
resize, rescale to [0, 1], then `(x - mean) / std` per channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image
import torch


@dataclass
class PreprocessResult:
    tensor: torch.Tensor
    original_image: Image.Image
    orig_size: Tuple[int, int]  # (width, height)


def preprocess_image(
    image: Image.Image,
    input_size: int,
    mean: float,
    std: float,
    device: torch.device,
) -> PreprocessResult:
    rgb = image.convert("RGB")
    resized = rgb.resize((input_size, input_size), Image.BILINEAR)

    im_np = np.asarray(resized).astype("float32") / 255.0
    im_np = (im_np - mean) / std
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

    tensor = torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(device)
    return PreprocessResult(tensor=tensor, original_image=rgb, orig_size=rgb.size)
