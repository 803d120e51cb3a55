"""fluxdraw — FastAPI Application.

This module defines the FastAPI application exposing a
:class:`~fluxdraw.core.controller.GenerationController`, and the ``main()``
CLI function that launches the uvicorn server.

Architecture
------------
- **Generation** runs as a background asyncio task owned by the controller;
  ``POST /api/generate`` returns as soon as the run has started.
- **Progress** is polled with ``GET /api/progress``, which serialises the
  controller's latest immutable snapshot.
- **Single flight**: a generate request while a run is active gets
  ``409 Conflict``.
- **Results** are served from memory as PNG and also saved under
  ``config.outputs_dir``.

Endpoints
---------
========  ====================  ========================================
Method    Path                  Purpose
========  ====================  ========================================
GET       ``/api/config``       Version, defaults and parameter bounds
POST      ``/api/generate``     Start a generation run
GET       ``/api/progress``     Current state and progress
POST      ``/api/cancel``       Cancel the active run
GET       ``/api/result``       PNG of the last finished image
========  ====================  ========================================

Usage
-----
CLI (installed entry point)::

    fluxdraw

Direct invocation::

    python -m fluxdraw.api.main
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import numpy as np
from fastapi import FastAPI, HTTPException
from fastapi.responses import Response

from fluxdraw import __version__
from fluxdraw.api.models import GenerateRequest, ProgressResponse
from fluxdraw.core import params as bounds
from fluxdraw.core.config import FluxdrawConfig, config
from fluxdraw.core.controller import GenerationController, GenerationObserver
from fluxdraw.core.decoder import to_image
from fluxdraw.core.errors import Busy, InvalidParameter
from fluxdraw.core.params import ParameterSet

logger = logging.getLogger(__name__)


class SavingObserver(GenerationObserver):
    """Saves finished images to the outputs directory and logs failures.

    PNG encoding and the disk write run in the loop's default executor, so
    ``on_complete`` returns at once and progress polling is not held up.  A
    failed save is logged; the run itself stays DONE.

    Attributes:
        outputs_dir: Directory receiving ``fluxdraw_<timestamp>[_seed<n>].png``.
        seed: Seed of the run, used in the filename.
        saved_path: Where the image was written, once the save has finished.
        save_future: The pending save, once the run is done.
    """

    def __init__(self, outputs_dir: Path, seed: int | None = None) -> None:
        self.outputs_dir = outputs_dir
        self.seed = seed
        self.saved_path: Path | None = None
        self.save_future: asyncio.Future | None = None

    def on_complete(self, image: np.ndarray) -> None:
        loop = asyncio.get_running_loop()
        self.save_future = loop.run_in_executor(None, self._save, image)

    def _save(self, image: np.ndarray) -> Path | None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        seed_suffix = f"_seed{self.seed}" if self.seed is not None else ""
        output_path = self.outputs_dir / f"fluxdraw_{timestamp}{seed_suffix}.png"

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            to_image(image).save(output_path, format="PNG")
        except Exception as e:
            logger.error("Failed to save image to %s: %s", output_path, e, exc_info=True)
            return None

        self.saved_path = output_path
        logger.info("Image saved to: %s", output_path)
        return output_path

    def on_error(self, kind: str, message: str) -> None:
        logger.warning("Generation ended with %s: %s", kind, message)


def _consume_result(task: asyncio.Task) -> None:
    """Retrieve the outcome of a background run so failures are not left unobserved.

    The controller has already published the failure in its snapshot and to
    the observer; here it is only logged.
    """
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.info("Background generation ended with %s.", type(error).__name__)


def create_app(
    controller: GenerationController | None = None,
    app_config: FluxdrawConfig | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        controller: Controller to expose.  A controller backed by
            :class:`~fluxdraw.core.model.FluxSchnellModel` is created from
            *app_config* when omitted.
        app_config: Configuration; defaults to the global ``config``.

    Returns:
        The configured application.
    """
    app_config = app_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the controller on startup and unload the model on shutdown.

        No model is loaded at startup; loading happens on the first
        ``POST /api/generate`` call.
        """
        app.state.controller = controller or GenerationController(app_config)
        app.state.background_tasks = set()
        logger.info("GenerationController initialised (no model loaded yet).")

        yield  # Application runs here.

        active: GenerationController = app.state.controller
        active.cancel()
        # Outcomes were already published to the snapshot and logged.
        await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
        active.model.unload()
        logger.info("Model unloaded on shutdown.")

    app = FastAPI(
        title="fluxdraw",
        description="Text-to-image generation with progress reporting.",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/api/config")
    async def get_config() -> dict:
        """Return the version, generation defaults and parameter bounds."""
        return {
            "version": __version__,
            "model_id": app_config.model_id,
            "defaults": {
                "prompt": app_config.default_prompt,
                "width": app_config.default_width,
                "height": app_config.default_height,
                "steps": app_config.default_steps,
                "guidance": app_config.default_guidance,
            },
            "bounds": {
                "dimension": {
                    "min": bounds.MIN_DIMENSION,
                    "max": bounds.MAX_DIMENSION,
                    "step": bounds.DIMENSION_STEP,
                    "multiple_of": bounds.DIMENSION_MULTIPLE,
                },
                "steps": {"min": bounds.MIN_STEPS, "max": bounds.MAX_STEPS},
                "guidance": {"min": bounds.MIN_GUIDANCE, "max": bounds.MAX_GUIDANCE},
                "seed": {"min": 0, "max": bounds.MAX_SEED},
            },
        }

    @app.post("/api/generate", status_code=202)
    async def generate(req: GenerateRequest) -> ProgressResponse:
        """Start a generation run in the background.

        Returns:
            The controller snapshot right after the run started.

        Raises:
            HTTPException: 400 for invalid parameters, 409 while another
                run is active.
        """
        controller: GenerationController = app.state.controller
        params = ParameterSet.from_config(app_config, **req.model_dump())
        observer = SavingObserver(app_config.outputs_dir, seed=params.seed)

        try:
            task = controller.start(params, observer)
        except InvalidParameter as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Busy as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

        # Keep a strong reference until the task finishes.
        app.state.background_tasks.add(task)
        task.add_done_callback(app.state.background_tasks.discard)
        task.add_done_callback(_consume_result)

        return ProgressResponse.from_snapshot(controller.snapshot)

    @app.get("/api/progress")
    async def get_progress() -> ProgressResponse:
        """Return the controller's current snapshot."""
        controller: GenerationController = app.state.controller
        return ProgressResponse.from_snapshot(controller.snapshot)

    @app.post("/api/cancel")
    async def cancel() -> dict:
        """Ask the active run to stop at its next checkpoint."""
        controller: GenerationController = app.state.controller
        return {"cancelled": controller.cancel()}

    @app.get("/api/result")
    async def get_result() -> Response:
        """Return the last finished image as PNG.

        Raises:
            HTTPException: 404 if the last run has not produced an image.
        """
        controller: GenerationController = app.state.controller
        image = controller.snapshot.image
        if image is None:
            raise HTTPException(status_code=404, detail="No image available")

        buffer = io.BytesIO()
        to_image(image).save(buffer, format="PNG")
        return Response(content=buffer.getvalue(), media_type="image/png")

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~fluxdraw.core.config.config`
    (``FLUXDRAW_SERVER_HOST``, ``FLUXDRAW_SERVER_PORT``,
    ``FLUXDRAW_LOG_LEVEL``).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``fluxdraw`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "fluxdraw.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
