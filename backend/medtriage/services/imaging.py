from __future__ import annotations

import logging
from io import BytesIO
from typing import Tuple

import torch
from PIL import Image, UnidentifiedImageError
from torchvision import transforms

from medtriage.core.errors import InvalidImageError

logger = logging.getLogger(__name__)


def _load_image(data: bytes) -> Image.Image:
    """Read raw bytes into a RGB PIL image.

    ``convert("RGB")`` expands grayscale scans to three channels and drops
    any alpha channel.
    """
    with BytesIO(data) as buf:
        img = Image.open(buf)
        return img.convert("RGB")


def preprocess_image(image_bytes: bytes, input_shape: Tuple[int, int, int]) -> torch.Tensor:
    """Decode, resize and scale an upload into a (1, 3, H, W) tensor in [0, 1]."""
    height, width, channels = input_shape
    if channels != 3:
        raise ValueError(f"Only 3-channel models are supported, got {channels}")

    try:
        image = _load_image(image_bytes)
    except (UnidentifiedImageError, OSError) as exc:
        logger.info("Rejected undecodable image (%d bytes): %s", len(image_bytes), exc)
        raise InvalidImageError("Could not read the provided image. Please upload a valid JPG/PNG file.") from exc

    transform = transforms.Compose(
        [
            transforms.Resize((height, width)),
            transforms.ToTensor(),
        ]
    )
    try:
        return transform(image).unsqueeze(0)
    finally:
        image.close()
