"""Tests for fluxdraw.core.controller — run orchestration.

The controller is driven with ``asyncio.run`` against the in-memory
``FakeModel`` and ``FakeProvisioner``, so every test exercises the real
worker-thread handoff without touching model weights.
"""

from __future__ import annotations

import asyncio
import dataclasses
import threading

import numpy as np
import pytest

from fluxdraw.core.cancellation import CancellationToken
from fluxdraw.core.config import FluxdrawConfig
from fluxdraw.core.controller import (
    GenerationController,
    GenerationObserver,
    GenerationState,
    ProgressSnapshot,
)
from fluxdraw.core.errors import (
    Busy,
    DecodeError,
    DenoisingError,
    GenerationCancelled,
    InvalidParameter,
    ProvisioningError,
)
from fluxdraw.core.params import ParameterSet
from tests.fakes import FakeModel, FakeProvisioner, RecordingObserver


async def _wait_for_state(controller: GenerationController, state: GenerationState) -> None:
    for _ in range(500):
        if controller.state is state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"Controller never reached {state.value}")


class TestInitialState:
    """A new controller is idle."""

    def test_idle_snapshot(self, controller: GenerationController):
        assert controller.snapshot == ProgressSnapshot()
        assert controller.state is GenerationState.IDLE
        assert controller.is_running is False

    def test_cancel_when_idle(self, controller: GenerationController):
        assert controller.cancel() is False

    @pytest.mark.parametrize(
        "state,terminal",
        [
            (GenerationState.IDLE, False),
            (GenerationState.DENOISING, False),
            (GenerationState.DONE, True),
            (GenerationState.FAILED, True),
            (GenerationState.CANCELLED, True),
        ],
    )
    def test_terminal_states(self, state, terminal):
        assert state.is_terminal is terminal


class TestSuccessfulRun:
    """The reference request runs to DONE."""

    def test_produces_raster(
        self,
        controller: GenerationController,
        valid_params: ParameterSet,
        observer: RecordingObserver,
    ):
        raster = asyncio.run(controller.generate(valid_params, observer))

        assert raster.shape == (512, 512, 3)
        assert raster.dtype == np.uint8
        assert (raster == 127).all()

        snapshot = controller.snapshot
        assert snapshot.state is GenerationState.DONE
        assert snapshot.progress == 1.0
        assert snapshot.running is False
        assert snapshot.image is raster
        assert snapshot.error is None

        assert len(observer.completed) == 1
        assert observer.completed[0] is raster
        assert observer.errors == []
        assert observer.cancelled == 0

    def test_progress_runs_from_zero_to_one(
        self,
        controller: GenerationController,
        valid_params: ParameterSet,
        observer: RecordingObserver,
    ):
        asyncio.run(controller.generate(valid_params, observer))

        progress = observer.progress
        assert progress[0] == 0.0
        assert progress[-1] == 1.0
        assert all(a < b for a, b in zip(progress, progress[1:]))
        # Start, provisioning, loading, one per denoising step, decoding, done.
        assert len(progress) >= valid_params.steps + 4

    def test_progress_precedes_completion(
        self, controller: GenerationController, valid_params: ParameterSet
    ):
        events = []

        class OrderObserver(GenerationObserver):
            def on_progress(self, fraction):
                events.append(("progress", fraction))

            def on_complete(self, image):
                events.append(("complete", None))

        asyncio.run(controller.generate(valid_params, OrderObserver()))

        assert events[-1] == ("complete", None)
        assert events[-2] == ("progress", 1.0)
        assert [kind for kind, _ in events].count("complete") == 1

    def test_events_delivered_on_loop_thread(
        self,
        controller: GenerationController,
        valid_params: ParameterSet,
        observer: RecordingObserver,
    ):
        asyncio.run(controller.generate(valid_params, observer))
        assert observer.threads == {threading.get_ident()}

    def test_start_enters_provisioning(
        self, controller: GenerationController, valid_params: ParameterSet
    ):
        async def scenario():
            task = controller.start(valid_params)
            snapshot = controller.snapshot
            await task
            return snapshot

        snapshot = asyncio.run(scenario())
        assert snapshot.state is GenerationState.PROVISIONING
        assert snapshot.progress == 0.0
        assert snapshot.running is True

    def test_model_reused_across_runs(
        self,
        controller: GenerationController,
        fake_model: FakeModel,
        fake_provisioner: FakeProvisioner,
        valid_params: ParameterSet,
    ):
        async def scenario():
            await controller.generate(valid_params)
            await controller.generate(dataclasses.replace(valid_params, width=256))

        asyncio.run(scenario())

        assert len(fake_model.handles) == 1
        assert fake_provisioner.calls == [
            "black-forest-labs/FLUX.1-schnell",
            "black-forest-labs/FLUX.1-schnell",
        ]
        assert controller.snapshot.image.shape == (512, 256, 3)

    def test_new_run_resets_progress(
        self, controller: GenerationController, valid_params: ParameterSet
    ):
        async def scenario():
            await controller.generate(valid_params)
            task = controller.start(valid_params)
            snapshot = controller.snapshot
            await task
            return snapshot

        snapshot = asyncio.run(scenario())
        assert snapshot.progress == 0.0
        assert snapshot.image is None


class TestInvalidParameters:
    """Rejected parameters never start a run."""

    def test_rejected_before_any_work(
        self,
        controller: GenerationController,
        fake_provisioner: FakeProvisioner,
        valid_params: ParameterSet,
        observer: RecordingObserver,
    ):
        bad = dataclasses.replace(valid_params, width=300)

        with pytest.raises(InvalidParameter):
            asyncio.run(controller.generate(bad, observer))

        assert observer.errors == [("InvalidParameter", "Width must be multiple of 16, got 300")]
        assert fake_provisioner.calls == []
        assert controller.state is GenerationState.IDLE
        assert controller.is_running is False


class TestBusy:
    """Only one run at a time."""

    def test_second_start_rejected(
        self, test_config: FluxdrawConfig, valid_params: ParameterSet
    ):
        gate = threading.Event()
        controller = GenerationController(
            test_config, model=FakeModel(gate=gate), provisioner=FakeProvisioner()
        )
        second = RecordingObserver()

        async def scenario():
            task = controller.start(valid_params)
            await _wait_for_state(controller, GenerationState.DENOISING)
            before = controller.snapshot

            with pytest.raises(Busy):
                controller.start(valid_params, second)

            after = controller.snapshot
            gate.set()
            await task
            return before, after

        before, after = asyncio.run(scenario())

        assert after is before
        assert second.progress == []
        assert controller.state is GenerationState.DONE


class TestFailures:
    """Errors from any stage end the run in FAILED."""

    @pytest.mark.parametrize(
        "model_kwargs,provisioner_kwargs,error_type,kind",
        [
            ({}, {"error": ProvisioningError("network down")}, ProvisioningError, "ProvisioningError"),
            ({"load_error": RuntimeError("CUDA out of memory")}, {}, RuntimeError, "RuntimeError"),
            ({"fail_at_step": 1}, {}, DenoisingError, "DenoisingError"),
            ({"decode_error": RuntimeError("VAE exploded")}, {}, DecodeError, "DecodeError"),
        ],
    )
    def test_failure_reported(
        self,
        test_config: FluxdrawConfig,
        valid_params: ParameterSet,
        observer: RecordingObserver,
        model_kwargs,
        provisioner_kwargs,
        error_type,
        kind,
    ):
        controller = GenerationController(
            test_config,
            model=FakeModel(**model_kwargs),
            provisioner=FakeProvisioner(**provisioner_kwargs),
        )

        with pytest.raises(error_type):
            asyncio.run(controller.generate(valid_params, observer))

        snapshot = controller.snapshot
        assert snapshot.state is GenerationState.FAILED
        assert snapshot.running is False
        assert snapshot.image is None
        assert isinstance(snapshot.error, error_type)

        assert len(observer.errors) == 1
        assert observer.errors[0][0] == kind
        assert observer.completed == []

    def test_progress_not_reset_by_failure(
        self, test_config: FluxdrawConfig, valid_params: ParameterSet, observer: RecordingObserver
    ):
        controller = GenerationController(
            test_config, model=FakeModel(fail_at_step=2), provisioner=FakeProvisioner()
        )

        with pytest.raises(DenoisingError):
            asyncio.run(controller.generate(valid_params, observer))

        assert controller.snapshot.progress == observer.progress[-1]
        assert 0.15 < controller.snapshot.progress < 0.95

    def test_controller_usable_after_failure(
        self, test_config: FluxdrawConfig, valid_params: ParameterSet
    ):
        model = FakeModel(fail_at_step=0)
        controller = GenerationController(test_config, model=model, provisioner=FakeProvisioner())

        with pytest.raises(DenoisingError):
            asyncio.run(controller.generate(valid_params))

        model.fail_at_step = None
        asyncio.run(controller.generate(valid_params))
        assert controller.state is GenerationState.DONE


class TestCancellation:
    """Cancelled runs end in CANCELLED without an image."""

    def test_cancel_during_denoising(
        self, test_config: FluxdrawConfig, valid_params: ParameterSet, observer: RecordingObserver
    ):
        computed = []

        def step_hook(index):
            computed.append(index)
            if index == 1:
                assert controller.cancel() is True

        controller = GenerationController(
            test_config, model=FakeModel(step_hook=step_hook), provisioner=FakeProvisioner()
        )

        with pytest.raises(GenerationCancelled):
            asyncio.run(controller.generate(valid_params, observer))

        assert computed == [0, 1]
        snapshot = controller.snapshot
        assert snapshot.state is GenerationState.CANCELLED
        assert snapshot.running is False
        assert snapshot.image is None
        assert isinstance(snapshot.error, GenerationCancelled)

        assert observer.cancelled == 1
        assert observer.errors == []
        assert observer.completed == []

    def test_cancelled_token_stops_before_provisioning(
        self,
        controller: GenerationController,
        fake_provisioner: FakeProvisioner,
        valid_params: ParameterSet,
        observer: RecordingObserver,
    ):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(GenerationCancelled):
            asyncio.run(controller.generate(valid_params, observer, token))

        assert controller.state is GenerationState.CANCELLED
        assert observer.progress == [0.0]

    def test_run_after_cancellation(
        self, controller: GenerationController, valid_params: ParameterSet
    ):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationCancelled):
            asyncio.run(controller.generate(valid_params, cancel_token=token))

        asyncio.run(controller.generate(valid_params))
        assert controller.state is GenerationState.DONE

    def test_task_cancelled_by_timeout_releases_controller(
        self, test_config: FluxdrawConfig, valid_params: ParameterSet, observer: RecordingObserver
    ):
        """A caller giving up through ``asyncio.wait_for`` ends the run as CANCELLED."""
        gate = threading.Event()
        controller = GenerationController(
            test_config, model=FakeModel(gate=gate), provisioner=FakeProvisioner()
        )

        async def scenario():
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(controller.generate(valid_params, observer), timeout=0.2)
            after_timeout = controller.snapshot
            gate.set()
            raster = await controller.generate(valid_params)
            return after_timeout, raster

        after_timeout, raster = asyncio.run(scenario())

        assert after_timeout.state is GenerationState.CANCELLED
        assert after_timeout.running is False
        assert isinstance(after_timeout.error, GenerationCancelled)
        assert observer.cancelled == 1
        assert observer.errors == []
        assert observer.completed == []

        assert raster.shape == (512, 512, 3)
        assert controller.state is GenerationState.DONE
        assert controller.snapshot.progress == 1.0
