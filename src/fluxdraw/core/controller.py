"""Generation orchestration.

:class:`GenerationController` sequences one text-to-image run:

    IDLE → PROVISIONING → LOADING → DENOISING → UNPACKING → DECODING → DONE

with ``FAILED`` reachable from every non-terminal state and ``CANCELLED``
reached when the run's cancellation token fires.

Concurrency
-----------
The run is an asyncio task.  All blocking work (download, model load, the
denoising steps, decode) runs in a worker thread through
``asyncio.to_thread`` so the event loop stays responsive.

The worker never calls the observer directly.  Progress is handed to the
event loop with ``loop.call_soon_threadsafe`` and observer callbacks always
run on the event-loop thread.  The observable state is a frozen
:class:`ProgressSnapshot` that is replaced atomically, so readers on any
thread see a consistent state, progress and result.

Single flight
-------------
Only one run may be active per controller.  :meth:`GenerationController.start`
raises :class:`~fluxdraw.core.errors.Busy` while a run is in progress instead
of queueing the request.

Progress
--------
Observers receive one overall fraction that never decreases within a run.
Each stage owns a fixed span of it; the denoising stage maps its per-step
fractions ``1/n … n/n`` onto its span.  The stage-local fraction is kept in
``ProgressSnapshot.stage_progress``.

Usage
-----
::

    controller = GenerationController(config)
    params = ParameterSet.from_config(config, prompt="A cat sitting on a tree")
    raster = await controller.generate(params, observer)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass, replace

import numpy as np

from .cancellation import CancellationToken
from .config import FluxdrawConfig
from .decoder import ImageDecoder
from .denoising import DenoisingLoop
from .errors import Busy, GenerationCancelled, GenerationError, InvalidParameter
from .latents import unpack_latents
from .model import FluxSchnellModel, GenerationModel
from .params import ParameterSet
from .provisioner import ModelProvisioner

logger = logging.getLogger(__name__)


class GenerationState(str, enum.Enum):
    """States of a generation run."""

    IDLE = "idle"
    PROVISIONING = "provisioning"
    LOADING = "loading"
    DENOISING = "denoising"
    UNPACKING = "unpacking"
    DECODING = "decoding"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationState.DONE, GenerationState.FAILED, GenerationState.CANCELLED)


# Span of the overall progress bar owned by each stage.
_STAGE_SPANS: dict[GenerationState, tuple[float, float]] = {
    GenerationState.PROVISIONING: (0.0, 0.10),
    GenerationState.LOADING: (0.10, 0.15),
    GenerationState.DENOISING: (0.15, 0.95),
    GenerationState.UNPACKING: (0.95, 0.97),
    GenerationState.DECODING: (0.97, 1.0),
}


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable view of the controller's state.

    Attributes:
        state: Current state of the run.
        progress: Overall fraction in [0, 1]; non-decreasing within a run.
        stage_progress: Fraction of the current stage.
        running: True between entering PROVISIONING and a terminal state.
        image: The finished raster (only in DONE).
        error: The error that ended the run (FAILED or CANCELLED).
    """

    state: GenerationState = GenerationState.IDLE
    progress: float = 0.0
    stage_progress: float = 0.0
    running: bool = False
    image: np.ndarray | None = None
    error: BaseException | None = None


class GenerationObserver:
    """Receives run events on the event-loop thread.

    Subclass and override the hooks you need; the defaults do nothing.
    """

    def on_progress(self, fraction: float) -> None:
        """Called whenever overall progress advances."""

    def on_complete(self, image: np.ndarray) -> None:
        """Called once with the ``(H, W, 3)`` uint8 raster of a finished run."""

    def on_error(self, kind: str, message: str) -> None:
        """Called once when a run fails or its parameters are rejected."""

    def on_cancelled(self) -> None:
        """Called once when a run stops because it was cancelled."""


class GenerationController:
    """Runs text-to-image generations one at a time.

    Attributes:
        _config (FluxdrawConfig):
            Application configuration (model ID, load settings).
        _model (GenerationModel):
            Model capability; its handles are cached across runs.
        _provisioner (ModelProvisioner):
            Weight provisioning with progress.
        _decoder (ImageDecoder):
            Latent-to-raster conversion.
    """

    def __init__(
        self,
        config: FluxdrawConfig,
        model: GenerationModel | None = None,
        provisioner: ModelProvisioner | None = None,
        decoder: ImageDecoder | None = None,
    ) -> None:
        self._config = config
        self._model = model or FluxSchnellModel(config)
        self._provisioner = provisioner or ModelProvisioner(config)
        self._decoder = decoder or ImageDecoder(self._model)

        self._lock = threading.Lock()
        self._snapshot = ProgressSnapshot()
        self._cancel_token: CancellationToken | None = None

    # -- Observable state ---------------------------------------------------

    @property
    def snapshot(self) -> ProgressSnapshot:
        """The latest published snapshot."""
        with self._lock:
            return self._snapshot

    @property
    def state(self) -> GenerationState:
        return self.snapshot.state

    @property
    def is_running(self) -> bool:
        return self.snapshot.running

    @property
    def model(self) -> GenerationModel:
        return self._model

    # -- Public interface ---------------------------------------------------

    def start(
        self,
        params: ParameterSet,
        observer: GenerationObserver | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> asyncio.Task:
        """Validate *params* and schedule a run on the running event loop.

        Must be called from a coroutine or callback on the event loop.  On
        return the controller is already in PROVISIONING with progress 0.0.

        Args:
            params: Generation parameters.
            observer: Receives progress, completion and error events.
            cancel_token: Token to cancel this run; one is created if omitted.

        Returns:
            The task running the generation.  Its result is the raster.

        Raises:
            InvalidParameter: If *params* fail validation (also reported to
                the observer; controller state is left untouched).
            Busy: If another run is active.
        """
        observer = observer or GenerationObserver()
        loop = asyncio.get_running_loop()

        try:
            params.validate()
        except InvalidParameter as e:
            logger.warning("Rejected generation request: %s", e)
            observer.on_error(e.kind, str(e))
            raise

        cancel_token = cancel_token or CancellationToken()
        with self._lock:
            if self._snapshot.running:
                raise Busy(f"A generation is already running ({self._snapshot.state.value})")
            self._cancel_token = cancel_token
            self._snapshot = ProgressSnapshot(state=GenerationState.PROVISIONING, running=True)

        logger.info(
            "Starting generation: %dx%d, %d steps, prompt=%r.",
            params.width,
            params.height,
            params.steps,
            params.prompt,
        )
        loop.call_soon(observer.on_progress, 0.0)
        return loop.create_task(self._run(params, observer, cancel_token, loop))

    async def generate(
        self,
        params: ParameterSet,
        observer: GenerationObserver | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> np.ndarray:
        """Run a generation to completion.

        Returns:
            The ``(H, W, 3)`` uint8 raster.

        Raises:
            InvalidParameter, Busy: As for :meth:`start`.
            GenerationError: The error that ended the run.
        """
        return await self.start(params, observer, cancel_token)

    def cancel(self) -> bool:
        """Cancel the active run.

        Returns:
            True if a run was active and has been asked to stop.
        """
        with self._lock:
            if not self._snapshot.running or self._cancel_token is None:
                return False
            token = self._cancel_token
        token.cancel()
        logger.info("Cancellation requested.")
        return True

    # -- Run ----------------------------------------------------------------

    async def _run(
        self,
        params: ParameterSet,
        observer: GenerationObserver,
        cancel_token: CancellationToken,
        loop: asyncio.AbstractEventLoop,
    ) -> np.ndarray:
        def report(stage: GenerationState):
            # Runs on the worker thread: publish, then hand the event to the loop.
            def _report(fraction: float) -> None:
                # A worker left behind by a cancelled task must not touch a newer run.
                if cancel_token.is_cancelled:
                    return
                overall = self._advance(stage, fraction)
                if overall is not None:
                    loop.call_soon_threadsafe(observer.on_progress, overall)

            return _report

        try:
            # --- Provisioning ----------------------------------------------
            artifacts = await asyncio.to_thread(
                self._provisioner.ensure_available,
                self._config.model_id,
                report(GenerationState.PROVISIONING),
                cancel_token,
            )

            # --- Loading ---------------------------------------------------
            self._enter(GenerationState.LOADING, cancel_token, observer)
            handle = await asyncio.to_thread(
                self._model.load, artifacts, self._config.load_configuration()
            )
            report(GenerationState.LOADING)(1.0)

            # --- Denoising -------------------------------------------------
            self._enter(GenerationState.DENOISING, cancel_token, observer)
            denoising = DenoisingLoop(self._model, handle, params, cancel_token)
            latents = await asyncio.to_thread(denoising.run, report(GenerationState.DENOISING))

            # --- Unpacking -------------------------------------------------
            self._enter(GenerationState.UNPACKING, cancel_token, observer)
            unpacked = await asyncio.to_thread(unpack_latents, latents, params.height, params.width)

            # --- Decoding --------------------------------------------------
            self._enter(GenerationState.DECODING, cancel_token, observer)
            raster = await asyncio.to_thread(self._decoder.decode, handle, unpacked)

        except GenerationCancelled as e:
            self._finish(GenerationState.CANCELLED, error=e)
            logger.info("Generation cancelled.")
            observer.on_cancelled()
            raise
        except asyncio.CancelledError:
            # The task was cancelled from outside (e.g. ``asyncio.wait_for``).
            # The worker thread cannot be interrupted; the token stops it at
            # its next check.
            cancel_token.cancel()
            self._finish(
                GenerationState.CANCELLED, error=GenerationCancelled("Generation was cancelled")
            )
            logger.info("Generation task cancelled.")
            observer.on_cancelled()
            raise
        except Exception as e:
            self._finish(GenerationState.FAILED, error=e)
            kind = e.kind if isinstance(e, GenerationError) else type(e).__name__
            logger.error("Generation failed (%s): %s", kind, e)
            observer.on_error(kind, str(e))
            raise

        self._finish(GenerationState.DONE, image=raster)
        logger.info("Generation finished: %s raster.", raster.shape)
        observer.on_progress(1.0)
        observer.on_complete(raster)
        return raster

    # -- State transitions --------------------------------------------------

    def _enter(
        self,
        state: GenerationState,
        cancel_token: CancellationToken,
        observer: GenerationObserver,
    ) -> None:
        """Move to *state* at the start of its progress span."""
        cancel_token.raise_if_cancelled()
        start, _ = _STAGE_SPANS[state]
        with self._lock:
            previous = self._snapshot
            progress = max(previous.progress, start)
            self._snapshot = replace(previous, state=state, progress=progress, stage_progress=0.0)
        logger.debug("Generation state %s -> %s.", previous.state.value, state.value)
        if progress > previous.progress:
            observer.on_progress(progress)

    def _advance(self, stage: GenerationState, fraction: float) -> float | None:
        """Record stage progress; return the new overall progress if it grew."""
        start, end = _STAGE_SPANS[stage]
        fraction = min(max(fraction, 0.0), 1.0)
        overall = start + (end - start) * fraction
        with self._lock:
            previous = self._snapshot
            if previous.state != stage:
                return None
            grew = overall > previous.progress
            self._snapshot = replace(
                previous,
                progress=max(previous.progress, overall),
                stage_progress=fraction,
            )
        return overall if grew else None

    def _finish(
        self,
        state: GenerationState,
        image: np.ndarray | None = None,
        error: BaseException | None = None,
    ) -> None:
        with self._lock:
            previous = self._snapshot
            self._snapshot = ProgressSnapshot(
                state=state,
                progress=1.0 if state is GenerationState.DONE else previous.progress,
                stage_progress=1.0 if state is GenerationState.DONE else previous.stage_progress,
                running=False,
                image=image,
                error=error,
            )
            self._cancel_token = None
