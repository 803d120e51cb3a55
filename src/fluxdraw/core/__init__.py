"""Core functionality for text-to-image generation.

This package provides the generation pipeline, leaf-first:

- **params**: ``ParameterSet`` (validated generation parameters) and
  ``LoadConfiguration`` (precision/quantization)
- **errors**: the ``GenerationError`` taxonomy
- **cancellation**: ``CancellationToken`` for cooperative cancellation
- **config**: ``FluxdrawConfig`` using Pydantic Settings, global ``config``
- **provisioner**: ``ModelProvisioner`` downloads weights with progress
- **model**: ``GenerationModel`` capability and ``FluxSchnellModel``
- **denoising**: ``DenoisingLoop`` step iterator with progress fractions
- **latents**: ``unpack_latents`` packed-to-channel-first transform
- **decoder**: ``ImageDecoder`` latents-to-uint8 raster conversion
- **controller**: ``GenerationController`` orchestrating a run

Usage Example
-------------
    import asyncio

    from fluxdraw.core import GenerationController, ParameterSet, config

    controller = GenerationController(config)
    params = ParameterSet.from_config(config, prompt="A cat sitting on a tree")
    raster = asyncio.run(controller.generate(params))
"""

from fluxdraw.core.cancellation import CancellationToken
from fluxdraw.core.config import FluxdrawConfig, config
from fluxdraw.core.controller import (
    GenerationController,
    GenerationObserver,
    GenerationState,
    ProgressSnapshot,
)
from fluxdraw.core.decoder import ImageDecoder, to_image
from fluxdraw.core.denoising import DenoisingLoop, DenoisingStep
from fluxdraw.core.errors import (
    Busy,
    DecodeError,
    DenoisingError,
    GenerationCancelled,
    GenerationError,
    InvalidParameter,
    ProvisioningError,
    ShapeError,
)
from fluxdraw.core.latents import unpack_latents
from fluxdraw.core.model import FluxSchnellModel, GenerationModel, ModelHandle
from fluxdraw.core.params import LoadConfiguration, ParameterSet
from fluxdraw.core.provisioner import ModelArtifacts, ModelProvisioner

__all__ = [
    "Busy",
    "CancellationToken",
    "DecodeError",
    "DenoisingError",
    "DenoisingLoop",
    "DenoisingStep",
    "FluxSchnellModel",
    "FluxdrawConfig",
    "GenerationCancelled",
    "GenerationController",
    "GenerationError",
    "GenerationModel",
    "GenerationObserver",
    "GenerationState",
    "ImageDecoder",
    "InvalidParameter",
    "LoadConfiguration",
    "ModelArtifacts",
    "ModelHandle",
    "ModelProvisioner",
    "ParameterSet",
    "ProgressSnapshot",
    "ProvisioningError",
    "ShapeError",
    "config",
    "to_image",
    "unpack_latents",
]
