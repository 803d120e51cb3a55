"""Conversion of decoded latents into 8-bit rasters."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import torch
from PIL import Image

from .errors import DecodeError

if TYPE_CHECKING:
    from .model import GenerationModel, ModelHandle

logger = logging.getLogger(__name__)


class ImageDecoder:
    """Decode unpacked latents to an ``(H, W, 3)`` uint8 raster.

    The generative decode (latents -> float pixels in [0, 1]) is delegated to
    the model.  This class owns only the post-processing: drop the batch
    axis, move channels last, scale by 255 and cast to uint8.  The cast
    truncates toward zero, so 0.5 becomes 127, not 128.
    """

    def __init__(self, model: GenerationModel) -> None:
        self._model = model

    def decode(self, handle: ModelHandle, latents: torch.Tensor) -> np.ndarray:
        """Decode latents and convert them to a raster.

        Args:
            handle: Loaded model handle
            latents: Unpacked latents of shape ``(1, 16, H/8, W/8)``

        Returns:
            uint8 array of shape ``(H, W, 3)``

        Raises:
            DecodeError: If the model decode fails or returns something that
                is not a single RGB image
        """
        try:
            decoded = self._model.decode(handle, latents)
        except Exception as e:
            logger.error("Model decode failed: %s", e)
            raise DecodeError(f"Model decode failed: {e}") from e

        if decoded.dim() != 4 or decoded.shape[0] != 1 or decoded.shape[1] != 3:
            raise DecodeError(
                f"Expected decoded pixels of shape (1, 3, H, W), got {tuple(decoded.shape)}"
            )

        pixels = decoded.squeeze(0).permute(1, 2, 0)
        raster = (pixels.float().clamp(0, 1) * 255).to(torch.uint8)
        return raster.cpu().numpy()


def to_image(raster: np.ndarray) -> Image.Image:
    """Wrap a ``(H, W, 3)`` uint8 raster in a PIL image."""
    return Image.fromarray(raster)
