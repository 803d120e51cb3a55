"""Model weight provisioning with progress reporting.

:class:`ModelProvisioner` makes sure the weights of a HuggingFace model
repository are present in the local cache before the model is loaded.

Progress
--------
``huggingface_hub.snapshot_download`` drives several progress bars through
the ``tqdm_class`` it is given: one counting finished files and two counting
bytes.  The byte bars start with a total of zero that only grows as each file
starts downloading, so their own ``n / total`` reaches 1.0 as soon as the
first small file is done.

The provisioner therefore lists the repository up front, sums the sizes of
the files matching ``_ALLOW_PATTERNS`` and divides the bytes reported on the
reconstruction bar (``huggingface_hub.snapshot_download``) by that sum.  The
other bars only check for cancellation.  Reported fractions are clamped to
[0, 1], never decrease, and the sequence always ends with ``1.0`` on success.

A model that is already cached is returned immediately after a single
``on_progress(1.0)`` call.

Cancellation
------------
The optional :class:`~fluxdraw.core.cancellation.CancellationToken` is
checked on every progress update; a cancelled token aborts the download with
:class:`~fluxdraw.core.errors.GenerationCancelled`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from huggingface_hub import HfApi, snapshot_download
from huggingface_hub.errors import LocalEntryNotFoundError
from huggingface_hub.hf_api import RepoFile
from huggingface_hub.utils import filter_repo_objects
from huggingface_hub.utils import tqdm as hf_tqdm
from tqdm.auto import tqdm

from .cancellation import CancellationToken
from .config import FluxdrawConfig
from .errors import GenerationCancelled, ProvisioningError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# Only the files a diffusers pipeline needs; skips the single-file
# checkpoint that FLUX repositories ship next to the diffusers layout.
_ALLOW_PATTERNS = ["*.json", "*.txt", "*.model", "*/*.safetensors", "*/*.json", "*/*.txt", "*/*.model"]

# Name huggingface_hub gives the bar fed with bytes written to the cache.
_BYTES_BAR_NAME = "huggingface_hub.snapshot_download"


@dataclass(frozen=True)
class ModelArtifacts:
    """Local copy of a model repository."""

    model_id: str
    local_path: Path


class _ProgressReporter:
    """Turns raw progress counts into a clamped, non-decreasing fraction stream."""

    def __init__(self, on_progress: ProgressCallback, cancel_token: CancellationToken | None):
        self._on_progress = on_progress
        self._cancel_token = cancel_token
        self._last = 0.0
        self._started = False
        self._lock = threading.Lock()

    def check_cancelled(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.raise_if_cancelled()

    def report(self, fraction: float) -> None:
        self.check_cancelled()

        fraction = min(max(fraction, 0.0), 1.0)
        with self._lock:
            if self._started and fraction <= self._last:
                return
            self._started = True
            self._last = fraction
        self._on_progress(fraction)

    def finish(self) -> None:
        self.report(1.0)


def _progress_bar_class(reporter: _ProgressReporter, total_bytes: int) -> type[tqdm]:
    """Build a tqdm class that forwards download progress to *reporter*.

    ``snapshot_download`` instantiates the class itself, so the reporter and
    the expected byte count are bound through a closure rather than
    constructor arguments.  Subclassing huggingface_hub's ``tqdm`` makes the
    hub pass each bar's ``name``, which is how the byte bar is recognised.

    Args:
        reporter: Receives ``bytes_done / total_bytes``.
        total_bytes: Size of every file the download will fetch.  With zero
            no byte progress is reported; completion still comes from
            :meth:`_ProgressReporter.finish`.
    """
    lock = threading.Lock()
    done = 0

    class _ReportingTqdm(hf_tqdm):
        def __init__(self, *args, **kwargs):
            counts_bytes = kwargs.get("name") == _BYTES_BAR_NAME
            kwargs["disable"] = True
            super().__init__(*args, **kwargs)
            self._counts_bytes = counts_bytes

        def update(self, n=1):
            # tqdm does not advance ``n`` while disabled, so count ourselves.
            super().update(n)
            if not (self._counts_bytes and total_bytes):
                reporter.check_cancelled()
                return
            nonlocal done
            with lock:
                done += n or 0
                fraction = done / total_bytes
            reporter.report(fraction)

    return _ReportingTqdm


class ModelProvisioner:
    """Ensures model weights are available in the local HuggingFace cache.

    Attributes:
        _config (FluxdrawConfig):
            Configuration providing ``models_dir``, ``model_revision`` and
            ``hf_token``.
    """

    def __init__(self, config: FluxdrawConfig) -> None:
        self._config = config

    def ensure_available(
        self,
        model_id: str,
        on_progress: ProgressCallback,
        cancel_token: CancellationToken | None = None,
    ) -> ModelArtifacts:
        """Download or locate the weights of *model_id*.

        Args:
            model_id: HuggingFace repository ID,
                e.g. ``"black-forest-labs/FLUX.1-schnell"``.
            on_progress: Called with fractions in [0, 1], non-decreasing,
                ending with 1.0 on success.  Called from the thread running
                this method.
            cancel_token: Optional token checked on every progress update.

        Returns:
            The local snapshot location.

        Raises:
            ProvisioningError: On network or filesystem failure.
            GenerationCancelled: If the token was cancelled.
        """
        reporter = _ProgressReporter(on_progress, cancel_token)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        # --- Short-circuit: already cached ---------------------------------
        try:
            local_path = snapshot_download(
                repo_id=model_id,
                revision=self._config.model_revision,
                cache_dir=str(self._config.models_dir),
                allow_patterns=_ALLOW_PATTERNS,
                local_files_only=True,
            )
        except LocalEntryNotFoundError:
            logger.info("Model '%s' is not cached, downloading.", model_id)
        else:
            logger.info("Model '%s' found in cache at %s.", model_id, local_path)
            reporter.finish()
            return ModelArtifacts(model_id=model_id, local_path=Path(local_path))

        # --- Download ------------------------------------------------------
        try:
            total_bytes = self._download_size(model_id)
            logger.info("Downloading %d bytes for model '%s'.", total_bytes, model_id)
            local_path = snapshot_download(
                repo_id=model_id,
                revision=self._config.model_revision,
                cache_dir=str(self._config.models_dir),
                allow_patterns=_ALLOW_PATTERNS,
                token=self._config.hf_token,
                tqdm_class=_progress_bar_class(reporter, total_bytes),
            )
        except GenerationCancelled:
            logger.info("Download of '%s' cancelled.", model_id)
            raise
        except Exception as e:
            logger.error("Failed to provision model '%s': %s", model_id, e)
            raise ProvisioningError(f"Failed to provision model '{model_id}': {e}") from e

        reporter.finish()
        logger.info("Model '%s' downloaded to %s.", model_id, local_path)
        return ModelArtifacts(model_id=model_id, local_path=Path(local_path))

    def _download_size(self, model_id: str) -> int:
        """Sum the sizes of the repository files matching ``_ALLOW_PATTERNS``."""
        api = HfApi(token=self._config.hf_token)
        entries = [
            entry
            for entry in api.list_repo_tree(
                model_id, recursive=True, revision=self._config.model_revision
            )
            if isinstance(entry, RepoFile)
        ]
        files = filter_repo_objects(entries, allow_patterns=_ALLOW_PATTERNS, key=lambda f: f.path)
        return sum(f.size or 0 for f in files)
