"""Generation model capability and the FLUX.1 implementation.

This module defines :class:`GenerationModel`, the capability the rest of the
pipeline consumes, and :class:`FluxSchnellModel`, which implements it on top
of the HuggingFace diffusers ``FluxPipeline`` components.

Capability
----------
- ``load(artifacts, load_config) -> ModelHandle``: load weights once per
  ``(model_id, load_config)`` and cache the handle for reuse.
- ``denoise(handle, params) -> Iterator[(index, latents)]``: a lazy,
  finite sequence with one packed latent per denoising step.
- ``decode(handle, latents) -> Tensor``: VAE decode of unpacked latents
  into float pixels in [0, 1] with shape ``(1, 3, H, W)``.
- ``unload()``: release every cached handle.

Step-level control
------------------
``FluxPipeline.__call__`` runs the whole denoising loop internally.  To expose
each step to the caller (progress, cancellation, discarding intermediates)
:class:`FluxSchnellModel` reuses the pipeline's components (prompt encoder,
latent preparation, transformer, scheduler and VAE) and performs the loop
in a generator.  The scheduler keeps a step cursor, so every ``denoise()``
call gets its own scheduler instance built from the pipeline's config; the
cached handle is never mutated.

Usage
-----
::

    from fluxdraw.core.config import config
    from fluxdraw.core.model import FluxSchnellModel

    model = FluxSchnellModel(config)
    handle = model.load(artifacts, config.load_configuration())
    for index, latents in model.denoise(handle, params):
        ...
    pixels = model.decode(handle, unpacked)

    model.unload()
"""

from __future__ import annotations

import gc
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .config import FluxdrawConfig
from .params import LoadConfiguration, ParameterSet

if TYPE_CHECKING:
    import torch

    from .provisioner import ModelArtifacts

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Dtype string → torch dtype mapping.
# Lazily constructed so that ``torch`` is not imported at module level.
# ---------------------------------------------------------------------------
_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string → ``torch.dtype`` mapping.

    Returns:
        Dictionary mapping ``"bfloat16"``, ``"float16"``, and ``"float32"``
        to their corresponding ``torch.dtype`` values.
    """
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


@dataclass(frozen=True)
class ModelHandle:
    """Opaque reference to a loaded model.

    Shared read-only by every generation request once loaded.

    Attributes:
        model_id: HuggingFace identifier of the loaded weights.
        load_config: Precision/quantization the weights were loaded with.
        pipeline: The loaded backend object (a diffusers pipeline for
            :class:`FluxSchnellModel`).
        device: Device the computation runs on.
    """

    model_id: str
    load_config: LoadConfiguration
    pipeline: Any
    device: str


class GenerationModel(ABC):
    """Abstract capability consumed by the generation pipeline.

    Implementations must make ``load`` idempotent per
    ``(model_id, load_config)`` and must not keep per-run state on the
    handle.  Denoising runs against one model are not interleaveable;
    callers (or the implementation) serialize them.
    """

    @abstractmethod
    def load(self, artifacts: ModelArtifacts, load_config: LoadConfiguration) -> ModelHandle:
        """Load (or reuse) the model stored at *artifacts*."""

    @abstractmethod
    def denoise(
        self, handle: ModelHandle, params: ParameterSet
    ) -> Iterator[tuple[int, torch.Tensor]]:
        """Yield ``(step_index, packed_latents)`` once per denoising step."""

    @abstractmethod
    def decode(self, handle: ModelHandle, latents: torch.Tensor) -> torch.Tensor:
        """Decode unpacked latents to ``(1, 3, H, W)`` floats in [0, 1]."""

    @abstractmethod
    def unload(self) -> None:
        """Release every loaded handle."""


class FluxSchnellModel(GenerationModel):
    """FLUX.1 text-to-image model backed by diffusers.

    Loaded handles are cached per ``(model_id, load_config)`` so that every
    request after the first reuses the weights already in memory.  Loading
    and denoising are guarded by locks: concurrent ``load`` calls never load
    the same weights twice, and two denoising runs never share the
    transformer at the same time.

    Attributes:
        _config (FluxdrawConfig):
            Application configuration: device, dtype, paths and
            performance flags.
        _handles (dict):
            Loaded handles keyed by ``(model_id, load_config)``.
    """

    def __init__(self, config: FluxdrawConfig) -> None:
        self._config = config
        self._handles: dict[tuple[str, LoadConfiguration], ModelHandle] = {}
        self._load_lock = threading.Lock()
        self._run_lock = threading.Lock()

    # -- Loading ------------------------------------------------------------

    def load(self, artifacts: ModelArtifacts, load_config: LoadConfiguration) -> ModelHandle:
        """Load the FLUX pipeline from a local snapshot.

        The pipeline is loaded with:
        - ``torch_dtype`` float32 for ``precision="full"``, otherwise
          ``config.half_dtype``
        - a 4-bit NF4 transformer when ``load_config.quantize`` is set
        - sequential CPU offloading if ``config.enable_model_cpu_offload``
        - ``torch.compile`` on the transformer if ``config.compile_model``

        Args:
            artifacts: Local snapshot from the provisioner.
            load_config: Precision and quantization settings.

        Returns:
            The cached or newly loaded handle.

        Raises:
            RuntimeError: If the model cannot be loaded (out of memory,
                incompatible files, missing quantization backend, etc.).
        """
        key = (artifacts.model_id, load_config)

        with self._load_lock:
            # --- Short-circuit: same model already loaded ------------------
            cached = self._handles.get(key)
            if cached is not None:
                logger.info("Model '%s' is already loaded, reusing.", artifacts.model_id)
                return cached

            import torch
            from diffusers import FluxPipeline

            dtype_name = self._config.half_dtype if load_config.precision == "half" else "float32"
            torch_dtype = _get_dtype_map()[dtype_name]

            logger.info(
                "Loading model '%s' (dtype=%s, quantize=%s, device=%s).",
                artifacts.model_id,
                dtype_name,
                load_config.quantize,
                self._config.device,
            )

            try:
                pipeline_kwargs: dict = {"torch_dtype": torch_dtype}
                if load_config.quantize:
                    pipeline_kwargs["transformer"] = self._load_quantized_transformer(
                        artifacts, torch_dtype
                    )

                pipeline = FluxPipeline.from_pretrained(str(artifacts.local_path), **pipeline_kwargs)

                if self._config.enable_model_cpu_offload:
                    pipeline.enable_sequential_cpu_offload()
                    logger.info("Sequential CPU offloading enabled.")
                else:
                    pipeline = pipeline.to(self._config.device)

                if self._config.compile_model:
                    pipeline.transformer = torch.compile(pipeline.transformer, mode="reduce-overhead")
                    logger.info("Transformer compiled with torch.compile.")

            except Exception:
                logger.exception("Failed to load model '%s'.", artifacts.model_id)
                raise

            handle = ModelHandle(
                model_id=artifacts.model_id,
                load_config=load_config,
                pipeline=pipeline,
                device=self._config.device,
            )
            self._handles[key] = handle
            logger.info("Model '%s' loaded successfully.", artifacts.model_id)
            return handle

    def _load_quantized_transformer(self, artifacts: ModelArtifacts, torch_dtype: Any) -> Any:
        """Load the FLUX transformer quantized to 4-bit NF4 via bitsandbytes."""
        from diffusers import BitsAndBytesConfig, FluxTransformer2DModel

        quantization_config = BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch_dtype,
        )
        logger.info("Loading 4-bit quantized transformer.")
        return FluxTransformer2DModel.from_pretrained(
            str(artifacts.local_path),
            subfolder="transformer",
            quantization_config=quantization_config,
            torch_dtype=torch_dtype,
        )

    # -- Denoising ----------------------------------------------------------

    def denoise(
        self, handle: ModelHandle, params: ParameterSet
    ) -> Iterator[tuple[int, torch.Tensor]]:
        """Run the FLUX flow-matching loop one step per iteration.

        Holds the run lock for as long as the generator is alive, so a second
        run against this model blocks until the first is exhausted or closed.

        Args:
            handle: Handle returned by :meth:`load`.
            params: Validated generation parameters.

        Yields:
            ``(step_index, packed_latents)`` with latents of shape
            ``(1, H/16 * W/16, 64)``.
        """
        import numpy as np
        import torch
        from diffusers.pipelines.flux.pipeline_flux import calculate_shift, retrieve_timesteps

        pipe = handle.pipeline
        device = pipe._execution_device

        with self._run_lock:
            generator = None
            if params.seed is not None:
                generator = torch.Generator(device="cpu").manual_seed(params.seed)

            logger.info(
                "Denoising: %dx%d, %d steps, guidance=%.1f, seed=%s.",
                params.width,
                params.height,
                params.steps,
                params.guidance,
                params.seed,
            )

            with torch.no_grad():
                prompt_embeds, pooled_prompt_embeds, text_ids = pipe.encode_prompt(
                    prompt=params.prompt,
                    prompt_2=None,
                    device=device,
                    num_images_per_prompt=1,
                    max_sequence_length=self._config.max_sequence_length,
                )

                num_channels_latents = pipe.transformer.config.in_channels // 4
                latents, latent_image_ids = pipe.prepare_latents(
                    1,
                    num_channels_latents,
                    params.height,
                    params.width,
                    prompt_embeds.dtype,
                    device,
                    generator,
                )

                # Fresh scheduler per run: its step cursor stays local to
                # this generator.
                scheduler = type(pipe.scheduler).from_config(pipe.scheduler.config)
                sigmas = np.linspace(1.0, 1 / params.steps, params.steps)
                mu = calculate_shift(
                    latents.shape[1],
                    scheduler.config.get("base_image_seq_len", 256),
                    scheduler.config.get("max_image_seq_len", 4096),
                    scheduler.config.get("base_shift", 0.5),
                    scheduler.config.get("max_shift", 1.15),
                )
                timesteps, _ = retrieve_timesteps(
                    scheduler, params.steps, device, sigmas=sigmas, mu=mu
                )

                guidance = None
                if pipe.transformer.config.guidance_embeds:
                    guidance = torch.full([1], params.guidance, device=device, dtype=torch.float32)
                    guidance = guidance.expand(latents.shape[0])

            for i, t in enumerate(timesteps):
                with torch.no_grad():
                    timestep = t.expand(latents.shape[0]).to(latents.dtype)
                    noise_pred = pipe.transformer(
                        hidden_states=latents,
                        timestep=timestep / 1000,
                        guidance=guidance,
                        pooled_projections=pooled_prompt_embeds,
                        encoder_hidden_states=prompt_embeds,
                        txt_ids=text_ids,
                        img_ids=latent_image_ids,
                        return_dict=False,
                    )[0]
                    latents = scheduler.step(noise_pred, t, latents, return_dict=False)[0]
                yield i, latents

    # -- Decoding -----------------------------------------------------------

    def decode(self, handle: ModelHandle, latents: torch.Tensor) -> torch.Tensor:
        """Decode unpacked latents with the FLUX VAE.

        Args:
            handle: Handle returned by :meth:`load`.
            latents: Unpacked latents of shape ``(1, 16, H/8, W/8)``.

        Returns:
            Float pixels in [0, 1], shape ``(1, 3, H, W)``.
        """
        import torch

        vae = handle.pipeline.vae
        with torch.no_grad():
            latents = (latents / vae.config.scaling_factor) + vae.config.shift_factor
            image = vae.decode(latents.to(vae.dtype), return_dict=False)[0]
        return (image / 2 + 0.5).clamp(0, 1)

    # -- Teardown -----------------------------------------------------------

    def unload(self) -> None:
        """Drop every cached handle and free GPU memory.

        Safe to call when nothing is loaded (no-op).
        """
        with self._load_lock:
            if not self._handles:
                return

            logger.info("Unloading %d model handle(s).", len(self._handles))
            self._handles.clear()
            gc.collect()

            try:
                import torch

                if torch.cuda.is_available():
                    torch.cuda.empty_cache()
                    torch.cuda.synchronize()
                    logger.info("CUDA cache cleared after unloading.")
            except ImportError:
                # torch not installed, nothing to clean up.
                pass

    @property
    def is_loaded(self) -> bool:
        """Whether at least one handle is cached."""
        return bool(self._handles)
