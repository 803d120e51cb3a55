"""Step-by-step denoising with progress accounting."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import torch

from .cancellation import CancellationToken
from .errors import DenoisingError, GenerationError
from .model import GenerationModel, ModelHandle
from .params import ParameterSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DenoisingStep:
    """One element of a denoising run.

    Attributes:
        index: Zero-based step counter.
        latents: Packed latents after this step.
        progress: ``(index + 1) / steps``, clamped to [0, 1].
    """

    index: int
    latents: torch.Tensor
    progress: float


class DenoisingLoop:
    """Lazy, finite, single-use sequence of denoising steps.

    Wraps the model's ``denoise`` generator and adds what the caller needs
    around it: a cancellation check before each step is computed, progress
    fractions, and uniform :class:`DenoisingError` reporting.  The step
    cursor lives in the iterator; nothing is stored on the model handle.

    Only the final latent is needed for decoding, but progress is reported
    for every step.

    Example:
        >>> loop = DenoisingLoop(model, handle, params, cancel_token)
        >>> final = loop.run(on_progress=print)
        0.25
        0.5
        0.75
        1.0
    """

    def __init__(
        self,
        model: GenerationModel,
        handle: ModelHandle,
        params: ParameterSet,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._model = model
        self._handle = handle
        self._params = params
        self._cancel_token = cancel_token
        self._started = False

    @property
    def num_steps(self) -> int:
        return self._params.steps

    def progress_at(self, index: int) -> float:
        """Progress fraction after consuming step *index*."""
        return min(max((index + 1) / self.num_steps, 0.0), 1.0)

    def __iter__(self) -> Iterator[DenoisingStep]:
        if self._started:
            raise DenoisingError("A denoising loop can only be iterated once")
        self._started = True
        return self._steps()

    def _steps(self) -> Iterator[DenoisingStep]:
        steps = self.num_steps
        source = None
        try:
            try:
                source = iter(self._model.denoise(self._handle, self._params))
            except GenerationError:
                raise
            except Exception as e:
                raise DenoisingError(f"Failed to start denoising: {e}") from e

            for expected in range(steps):
                if self._cancel_token is not None:
                    self._cancel_token.raise_if_cancelled()

                try:
                    index, latents = next(source)
                except StopIteration:
                    raise DenoisingError(
                        f"Model stopped after {expected} of {steps} denoising steps"
                    ) from None
                except GenerationError:
                    raise
                except Exception as e:
                    logger.error("Denoising step %d failed: %s", expected, e)
                    raise DenoisingError(f"Denoising step {expected} failed: {e}") from e

                if index != expected:
                    raise DenoisingError(
                        f"Model produced step {index} where step {expected} was expected"
                    )

                yield DenoisingStep(index=index, latents=latents, progress=self.progress_at(index))
        finally:
            # Release the model's per-run resources (locks, scheduler state)
            # even when the consumer stops early.
            if source is not None and hasattr(source, "close"):
                source.close()

    def run(self, on_progress: Callable[[float], None] | None = None) -> torch.Tensor:
        """Consume every step and return the final latents.

        Args:
            on_progress: Called with the progress fraction after every step.

        Returns:
            Packed latents of the last step.

        Raises:
            DenoisingError: If any step fails.
            GenerationCancelled: If the token is cancelled between steps.
        """
        final = None
        for step in self:
            final = step.latents
            if on_progress is not None:
                on_progress(step.progress)
            logger.debug("Denoising step %d/%d done.", step.index + 1, self.num_steps)
        return final
