"""Test doubles for the generation pipeline.

Kept in a plain module so test files can subclass them; ``conftest.py``
exposes ready-made instances as fixtures.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import numpy as np
import torch

from fluxdraw.core.controller import GenerationObserver
from fluxdraw.core.model import GenerationModel, ModelHandle
from fluxdraw.core.params import LoadConfiguration, ParameterSet
from fluxdraw.core.provisioner import ModelArtifacts


class FakeModel(GenerationModel):
    """In-memory model producing deterministic tensors.

    Each denoising step adds 1.0 to an all-zero packed latent, and decode
    returns a constant pixel value, so results are easy to predict.

    Args:
        fail_at_step: Raise inside the denoising generator at this step.
        step_hook: Called with the step index before each step is produced.
        gate: If set, every step waits on this event (up to 5 seconds).
        decode_value: Value of every decoded pixel.
        load_error: Raised by ``load``.
        decode_error: Raised by ``decode``.
    """

    def __init__(
        self,
        fail_at_step: int | None = None,
        step_hook: Callable[[int], None] | None = None,
        gate: threading.Event | None = None,
        decode_value: float = 0.5,
        load_error: Exception | None = None,
        decode_error: Exception | None = None,
    ) -> None:
        self.fail_at_step = fail_at_step
        self.step_hook = step_hook
        self.gate = gate
        self.decode_value = decode_value
        self.load_error = load_error
        self.decode_error = decode_error

        self.handles: dict[tuple[str, LoadConfiguration], ModelHandle] = {}
        self.load_calls = 0
        self.denoise_closed = False
        self.unloaded = False

    def load(self, artifacts: ModelArtifacts, load_config: LoadConfiguration) -> ModelHandle:
        self.load_calls += 1
        if self.load_error is not None:
            raise self.load_error
        key = (artifacts.model_id, load_config)
        if key not in self.handles:
            self.handles[key] = ModelHandle(
                model_id=artifacts.model_id,
                load_config=load_config,
                pipeline=object(),
                device="cpu",
            )
        return self.handles[key]

    def denoise(self, handle: ModelHandle, params: ParameterSet):
        tokens = (params.height // 16) * (params.width // 16)
        latents = torch.zeros(1, tokens, 64)
        try:
            for i in range(params.steps):
                if self.gate is not None:
                    self.gate.wait(timeout=5)
                if self.step_hook is not None:
                    self.step_hook(i)
                if i == self.fail_at_step:
                    raise RuntimeError("transformer exploded")
                latents = latents + 1
                yield i, latents
        finally:
            self.denoise_closed = True

    def decode(self, handle: ModelHandle, latents: torch.Tensor) -> torch.Tensor:
        if self.decode_error is not None:
            raise self.decode_error
        _, _, height, width = latents.shape
        return torch.full((1, 3, height * 8, width * 8), self.decode_value)

    def unload(self) -> None:
        self.handles.clear()
        self.unloaded = True


class FakeProvisioner:
    """Provisioner double reporting a fixed progress sequence."""

    def __init__(
        self,
        fractions: tuple[float, ...] = (0.5, 1.0),
        error: Exception | None = None,
    ) -> None:
        self.fractions = fractions
        self.error = error
        self.calls: list[str] = []

    def ensure_available(self, model_id, on_progress, cancel_token=None) -> ModelArtifacts:
        self.calls.append(model_id)
        for fraction in self.fractions:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            on_progress(fraction)
        if self.error is not None:
            raise self.error
        return ModelArtifacts(model_id=model_id, local_path=Path("/nonexistent/snapshot"))


class RecordingObserver(GenerationObserver):
    """Observer that records every event and the thread it arrived on."""

    def __init__(self) -> None:
        self.progress: list[float] = []
        self.completed: list[np.ndarray] = []
        self.errors: list[tuple[str, str]] = []
        self.cancelled = 0
        self.threads: set[int] = set()

    def on_progress(self, fraction: float) -> None:
        self.threads.add(threading.get_ident())
        self.progress.append(fraction)

    def on_complete(self, image: np.ndarray) -> None:
        self.threads.add(threading.get_ident())
        self.completed.append(image)

    def on_error(self, kind: str, message: str) -> None:
        self.threads.add(threading.get_ident())
        self.errors.append((kind, message))

    def on_cancelled(self) -> None:
        self.threads.add(threading.get_ident())
        self.cancelled += 1

