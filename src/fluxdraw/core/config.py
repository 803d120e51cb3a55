"""Configuration management for fluxdraw.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the FLUXDRAW_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (FLUXDRAW_* prefix)
2. .env file in the project root
3. Default values defined in FluxdrawConfig

Example .env file:
    FLUXDRAW_MODEL_ID=black-forest-labs/FLUX.1-schnell
    FLUXDRAW_DEVICE=cuda
    FLUXDRAW_PRECISION=half
    FLUXDRAW_QUANTIZE=false

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.

Usage Example
-------------
    from fluxdraw.core.config import config

    print(config.model_id)
    print(config.load_configuration())

FLUX.1-schnell Constraints
--------------------------
- Distilled for very few steps: 4 is the recommended default
- Text sequence length is capped at 256 tokens
- Does not use guidance embeddings; the guidance value is accepted and
  validated but only guidance-distilled variants (FLUX.1-dev) consume it
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .params import LoadConfiguration


class FluxdrawConfig(BaseSettings):
    """Main configuration for fluxdraw.

    Values are loaded from environment variables with the FLUXDRAW_ prefix,
    with fallback to defaults defined here. ``models_dir`` and
    ``outputs_dir`` are created if they don't exist.

    Attributes
    ----------
    Model Settings:
        model_id : str
            HuggingFace repository of the diffusion model
        model_revision : str | None
            Optional branch, tag or commit of the repository
        hf_token : str | None
            Token for gated or private repositories
        precision : Literal["full", "half"]
            Float precision used to load weights
        half_dtype : Literal["bfloat16", "float16"]
            Concrete dtype used when precision is "half"
        quantize : bool
            Load the transformer quantized to 4 bits
        device : str
            Device for inference (cuda, mps, or cpu)

    Generation Defaults:
        default_prompt, default_width, default_height, default_steps,
        default_guidance

    Paths:
        models_dir : Path
            Cache directory for downloaded weights
        outputs_dir : Path
            Directory where finished images are saved

    Server Settings:
        server_host, server_port, log_level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FLUXDRAW_",
        case_sensitive=False,
    )

    # Model settings
    model_id: str = Field(
        default="black-forest-labs/FLUX.1-schnell",
        description="HuggingFace model ID for text-to-image generation",
    )
    model_revision: str | None = Field(
        default=None,
        description="Optional revision (branch, tag or commit) of the model repository",
    )
    hf_token: str | None = Field(
        default=None,
        description="HuggingFace token for gated repositories",
    )
    precision: Literal["full", "half"] = Field(
        default="half",
        description="Float precision used to load the weights",
    )
    half_dtype: Literal["bfloat16", "float16"] = Field(
        default="bfloat16",
        description="Torch dtype used for half precision",
    )
    quantize: bool = Field(
        default=False,
        description="Quantize the transformer to 4 bits (requires bitsandbytes)",
    )
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/mps/cpu)",
    )
    max_sequence_length: int = Field(
        default=256,
        description="Maximum T5 prompt length in tokens (256 for schnell)",
        ge=1,
        le=512,
    )

    # Performance
    enable_model_cpu_offload: bool = Field(
        default=False,
        description="Enable CPU offloading for memory-constrained setups",
    )
    compile_model: bool = Field(
        default=False,
        description="Compile the transformer with torch.compile (slower first run)",
    )

    # Generation defaults
    default_prompt: str = Field(default="A cat sitting on a tree")
    default_width: int = Field(default=512, ge=256, le=1024)
    default_height: int = Field(default=512, ge=256, le=1024)
    default_steps: int = Field(default=4, ge=1, le=50)
    default_guidance: float = Field(default=3.5, ge=1.0, le=10.0)

    # Paths
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache models",
    )
    outputs_dir: Path = Field(
        default=Path("outputs"),
        description="Directory to save generated images",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root logging level for the server",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories."""
        super().__init__(**kwargs)

        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)

    def load_configuration(self) -> LoadConfiguration:
        """Build the model load configuration from these settings."""
        return LoadConfiguration(precision=self.precision, quantize=self.quantize)


# Global configuration instance
config = FluxdrawConfig()
