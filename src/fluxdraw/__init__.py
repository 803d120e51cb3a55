"""fluxdraw - Text-to-image generation with step-level progress reporting."""

__version__ = "0.1.0"

from fluxdraw.core.config import FluxdrawConfig, config
from fluxdraw.core.controller import (
    GenerationController,
    GenerationObserver,
    GenerationState,
    ProgressSnapshot,
)
from fluxdraw.core.params import LoadConfiguration, ParameterSet

__all__ = [
    "FluxdrawConfig",
    "config",
    "GenerationController",
    "GenerationObserver",
    "GenerationState",
    "LoadConfiguration",
    "ParameterSet",
    "ProgressSnapshot",
]
