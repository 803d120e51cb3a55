"""Latent layout transforms.

FLUX transformers work on *packed* latents: the 16-channel VAE latent grid
(``H/8 x W/8``) is cut into 2x2 patches and every patch is flattened into a
64-wide token, giving a tensor of shape ``(1, H/16 * W/16, 64)``.  The VAE
decoder needs the usual channel-first layout ``(1, 16, H/8, W/8)``.

The reshape/permute/reshape sequence below is the layout contract of the
model family.  It is not self-describing: a differently ordered permutation
produces a tensor of the same shape and a scrambled image, so keep it
exactly as is.
"""

import logging

import torch

from .errors import ShapeError

logger = logging.getLogger(__name__)

LATENT_CHANNELS = 16
PATCH_SIZE = 2
PACKED_CHANNELS = LATENT_CHANNELS * PATCH_SIZE * PATCH_SIZE
PIXELS_PER_TOKEN = 16  # VAE downsampling (8) times patch size (2)


def unpack_latents(latents: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Unpack ``(1, H/16 * W/16, 64)`` latents into ``(1, 16, H/8, W/8)``.

    Args:
        latents: Packed latents from the final denoising step
        height: Image height in pixels (multiple of 16)
        width: Image width in pixels (multiple of 16)

    Returns:
        Channel-first latent tensor ready for the VAE decoder

    Raises:
        ShapeError: If height/width are not multiples of 16, or the tensor
            does not hold the expected number of elements
    """
    if height % PIXELS_PER_TOKEN != 0 or width % PIXELS_PER_TOKEN != 0:
        raise ShapeError(
            f"Height and width must be multiples of {PIXELS_PER_TOKEN}, got {height}x{width}"
        )

    row_blocks = height // PIXELS_PER_TOKEN
    col_blocks = width // PIXELS_PER_TOKEN

    expected = row_blocks * col_blocks * PACKED_CHANNELS
    if latents.numel() != expected:
        raise ShapeError(
            f"Packed latents of shape {tuple(latents.shape)} do not match "
            f"{height}x{width} (expected {expected} elements)"
        )

    # (batch, rowBlocks, colBlocks, channel, subRow, subCol)
    reshaped = latents.reshape(1, row_blocks, col_blocks, LATENT_CHANNELS, PATCH_SIZE, PATCH_SIZE)
    # -> (batch, channel, rowBlocks, subRow, colBlocks, subCol)
    transposed = reshaped.permute(0, 3, 1, 4, 2, 5)
    unpacked = transposed.reshape(
        1, LATENT_CHANNELS, row_blocks * PATCH_SIZE, col_blocks * PATCH_SIZE
    )

    logger.debug("Unpacked latents %s -> %s", tuple(latents.shape), tuple(unpacked.shape))
    return unpacked
