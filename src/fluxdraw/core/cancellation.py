"""Cooperative cancellation for generation runs."""

import threading

from .errors import GenerationCancelled


class CancellationToken:
    """Thread-safe cancellation flag shared between a caller and a run.

    The run checks the token at its suspension points (provisioning progress
    callbacks, before each denoising step, at stage boundaries) and stops
    with :class:`GenerationCancelled` once it is set.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation.  Idempotent."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`GenerationCancelled` if cancellation was requested."""
        if self._event.is_set():
            raise GenerationCancelled("Generation was cancelled")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
