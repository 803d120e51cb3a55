"""Pydantic request and response models for the fluxdraw API.

These models define the JSON schema for the API endpoints.  FastAPI uses
them for request parsing, serialisation, and OpenAPI documentation.

Range checks live in :meth:`fluxdraw.core.params.ParameterSet.validate` so
that the API and library callers share one set of rules; the request model
only enforces types.

Models
------
GenerateRequest
    Payload for ``POST /api/generate``.
ProgressResponse
    Snapshot of the controller returned by ``GET /api/progress`` and
    ``POST /api/generate``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from fluxdraw.core.controller import ProgressSnapshot


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Every field is optional; omitted fields fall back to the configured
    defaults (``FLUXDRAW_DEFAULT_*``).

    Attributes:
        prompt: Text prompt describing the image.
        width: Image width in pixels (256–1024, multiple of 16).
        height: Image height in pixels (256–1024, multiple of 16).
        steps: Number of denoising steps (1–50).
        guidance: Guidance scale (1.0–10.0).
        seed: Random seed.  ``None`` means non-deterministic.
    """

    prompt: str | None = Field(
        default=None,
        description="Text prompt describing the desired image.",
    )
    width: int | None = Field(
        default=None,
        description="Image width in pixels.",
    )
    height: int | None = Field(
        default=None,
        description="Image height in pixels.",
    )
    steps: int | None = Field(
        default=None,
        description="Number of denoising steps.",
    )
    guidance: float | None = Field(
        default=None,
        description="Guidance scale.",
    )
    seed: int | None = Field(
        default=None,
        description="Random seed.  None = non-deterministic.",
    )


class ProgressResponse(BaseModel):
    """Serialisable view of a :class:`ProgressSnapshot`.

    Attributes:
        state: Controller state (``idle``, ``denoising``, ``done``, ...).
        progress: Overall progress in [0, 1].
        stage_progress: Progress of the current stage in [0, 1].
        running: Whether a run is active.
        has_image: Whether a finished image is available.
        error_kind: Error class name when the run failed or was cancelled.
        error: Error message when the run failed or was cancelled.
    """

    state: str
    progress: float
    stage_progress: float
    running: bool
    has_image: bool = False
    error_kind: str | None = None
    error: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: ProgressSnapshot) -> ProgressResponse:
        error = snapshot.error
        return cls(
            state=snapshot.state.value,
            progress=snapshot.progress,
            stage_progress=snapshot.stage_progress,
            running=snapshot.running,
            has_image=snapshot.image is not None,
            error_kind=type(error).__name__ if error is not None else None,
            error=str(error) if error is not None else None,
        )
