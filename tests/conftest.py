"""Shared pytest fixtures for fluxdraw tests."""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from fluxdraw.core.config import FluxdrawConfig
from fluxdraw.core.controller import GenerationController
from fluxdraw.core.params import ParameterSet
from tests.fakes import FakeModel, FakeProvisioner, RecordingObserver


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> FluxdrawConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        FluxdrawConfig instance for testing
    """
    return FluxdrawConfig(
        _env_file=None,
        models_dir=str(temp_dir / "models"),
        outputs_dir=str(temp_dir / "outputs"),
        device="cpu",  # Use CPU for tests
        precision="full",
    )


@pytest.fixture
def valid_params() -> ParameterSet:
    """The reference request: a cat on a tree, 512x512, 4 steps, guidance 3.5."""
    return ParameterSet(
        prompt="A cat sitting on a tree",
        width=512,
        height=512,
        steps=4,
        guidance=3.5,
    )


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def fake_provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def controller(
    test_config: FluxdrawConfig, fake_model: FakeModel, fake_provisioner: FakeProvisioner
) -> GenerationController:
    """Controller wired to the fake model and provisioner."""
    return GenerationController(test_config, model=fake_model, provisioner=fake_provisioner)


@pytest.fixture
def test_client(test_config: FluxdrawConfig, controller: GenerationController):
    """Create a FastAPI TestClient around the fake-backed controller.

    The client is used as a context manager so the application lifespan
    (controller setup, model unload) runs.
    """
    from fastapi.testclient import TestClient

    from fluxdraw.api.main import create_app

    app = create_app(controller=controller, app_config=test_config)
    with TestClient(app) as client:
        yield client
