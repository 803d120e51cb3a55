"""Generation and model-loading parameters."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Literal

from .errors import InvalidParameter

if TYPE_CHECKING:
    from .config import FluxdrawConfig

# Parameter bounds.  Width and height must be multiples of 16 so the packed
# latent splits evenly into 2x2 sub-blocks of the 8x VAE grid.
MIN_DIMENSION = 256
MAX_DIMENSION = 1024
DIMENSION_MULTIPLE = 16
DIMENSION_STEP = 64  # Slider step offered to users
MIN_STEPS = 1
MAX_STEPS = 50
MIN_GUIDANCE = 1.0
MAX_GUIDANCE = 10.0
MAX_SEED = 2**32 - 1


@dataclass(frozen=True)
class ParameterSet:
    """Parameters for a single text-to-image generation.

    Created once per request and never mutated afterwards; use
    :func:`dataclasses.replace` to derive a modified copy.
    """

    prompt: str
    width: int
    height: int
    steps: int
    guidance: float
    seed: int | None = None

    @classmethod
    def from_config(cls, config: FluxdrawConfig, **overrides: Any) -> ParameterSet:
        """Assemble parameters from configured defaults plus explicit overrides.

        Overrides that are ``None`` fall back to the configured default.

        Args:
            config: Configuration providing ``default_*`` values
            **overrides: Any of the dataclass fields

        Returns:
            New (unvalidated) ParameterSet
        """
        params = cls(
            prompt=config.default_prompt,
            width=config.default_width,
            height=config.default_height,
            steps=config.default_steps,
            guidance=config.default_guidance,
        )
        explicit = {key: value for key, value in overrides.items() if value is not None}
        return replace(params, **explicit)

    def validate(self) -> None:
        """Validate generation parameters.

        Raises:
            InvalidParameter: If any parameter is invalid, with descriptive message
        """
        if not self.prompt or not self.prompt.strip():
            raise InvalidParameter("Prompt must not be empty")

        # Validate dimension ranges
        if self.width < MIN_DIMENSION or self.width > MAX_DIMENSION:
            raise InvalidParameter(
                f"Width must be {MIN_DIMENSION}-{MAX_DIMENSION}, got {self.width}"
            )
        if self.height < MIN_DIMENSION or self.height > MAX_DIMENSION:
            raise InvalidParameter(
                f"Height must be {MIN_DIMENSION}-{MAX_DIMENSION}, got {self.height}"
            )

        # Validate dimensions are multiples of 16
        if self.width % DIMENSION_MULTIPLE != 0:
            raise InvalidParameter(
                f"Width must be multiple of {DIMENSION_MULTIPLE}, got {self.width}"
            )
        if self.height % DIMENSION_MULTIPLE != 0:
            raise InvalidParameter(
                f"Height must be multiple of {DIMENSION_MULTIPLE}, got {self.height}"
            )

        # Validate inference steps
        if self.steps < MIN_STEPS or self.steps > MAX_STEPS:
            raise InvalidParameter(
                f"Inference steps must be {MIN_STEPS}-{MAX_STEPS}, got {self.steps}"
            )

        # Validate guidance
        if not MIN_GUIDANCE <= self.guidance <= MAX_GUIDANCE:
            raise InvalidParameter(
                f"Guidance must be {MIN_GUIDANCE}-{MAX_GUIDANCE}, got {self.guidance}"
            )

        # Validate seed
        if self.seed is not None and (self.seed < 0 or self.seed > MAX_SEED):
            raise InvalidParameter(f"Seed must be 0 to {MAX_SEED}, got {self.seed}")

    @property
    def latent_height(self) -> int:
        """Height of the unpacked latent grid (pixels / 8)."""
        return self.height // 16 * 2

    @property
    def latent_width(self) -> int:
        """Width of the unpacked latent grid (pixels / 8)."""
        return self.width // 16 * 2


@dataclass(frozen=True)
class LoadConfiguration:
    """How model weights are loaded.

    Hashable so it can key the loaded-model cache.  Affects model loading
    only, never the unpack or decode post-processing.
    """

    precision: Literal["full", "half"] = "half"
    quantize: bool = False

    def __post_init__(self) -> None:
        if self.precision not in ("full", "half"):
            raise InvalidParameter(f"Precision must be 'full' or 'half', got {self.precision!r}")
