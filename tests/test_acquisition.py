import logging
import threading

import numpy as np
import pytest

from lightsheet_calibration.acquisition import (
    AcquisitionQueue,
    FrameState,
    ImageStack,
    StackRecycler,
    play_queue,
    released_on_exit,
)
from lightsheet_calibration.config import AcquisitionConfig
from lightsheet_calibration.interfaces import AcquisitionTimeout


def test_queue_checks_detection_z_per_arm() -> None:
    queue = AcquisitionQueue(number_of_detection_arms=2)
    queue.add_frame(FrameState(detection_z=(0.0, 0.1)))
    queue.add_frame(FrameState(capture=False))

    with pytest.raises(ValueError, match="one value per detection arm"):
        queue.add_frame(FrameState(detection_z=(0.0,)))

    assert len(queue) == 2
    assert queue.number_of_captured_frames == 1


def test_stack_release_is_idempotent() -> None:
    calls = []
    stack = ImageStack(np.zeros((2, 4, 4)), on_release=lambda: calls.append(1))

    stack.release()
    stack.release()

    assert calls == [1]
    assert stack.released
    with pytest.raises(RuntimeError, match="already been released"):
        _ = stack.planes


def test_empty_stack() -> None:
    stack = ImageStack.empty(detection_arm_index=1)

    assert stack.is_empty
    assert stack.number_of_planes == 0
    assert stack.duplicate().is_empty


def test_duplicate_holds_a_recycler_buffer_until_released() -> None:
    recycler = StackRecycler(1, timeout_s=0.05)
    stack = ImageStack(np.ones((1, 3, 3)))

    first = stack.duplicate(recycler)
    assert recycler.in_use == 1
    with pytest.raises(AcquisitionTimeout):
        stack.duplicate(recycler)

    first.release()
    assert recycler.in_use == 0
    second = stack.duplicate(recycler)
    assert np.array_equal(second.planes, stack.planes)
    second.release()


def test_recycler_blocks_until_a_buffer_is_freed() -> None:
    recycler = StackRecycler(1)
    stack = ImageStack(np.ones((1, 2, 2)))
    held = stack.duplicate(recycler)
    done = threading.Event()

    def worker() -> None:
        stack.duplicate(recycler).release()
        done.set()

    t = threading.Thread(target=worker)
    t.start()
    assert not done.wait(0.05)

    held.release()
    t.join(timeout=2.0)
    assert done.is_set()


def test_released_on_exit_releases_on_error() -> None:
    stacks = [ImageStack(np.zeros((1, 2, 2))), ImageStack(np.zeros((1, 2, 2)))]

    with pytest.raises(KeyError):
        with released_on_exit(stacks):
            raise KeyError("boom")

    assert all(s.released for s in stacks)


class _Gateway:
    def __init__(self, fail: bool) -> None:
        self.fail = fail
        self.timeouts: list[float] = []

    def build_queue(self) -> AcquisitionQueue:
        return AcquisitionQueue(number_of_detection_arms=1)

    def execute(self, queue: AcquisitionQueue, timeout_s: float) -> list[ImageStack]:
        self.timeouts.append(timeout_s)
        if self.fail:
            raise AcquisitionTimeout("late")
        return [ImageStack(np.zeros((queue.number_of_captured_frames, 2, 2)))]


def test_play_queue_uses_frame_budget(caplog: pytest.LogCaptureFixture) -> None:
    config = AcquisitionConfig(base_timeout_s=10.0, per_frame_timeout_s=1.0)
    gateway = _Gateway(fail=False)
    queue = gateway.build_queue()
    for _ in range(5):
        queue.add_frame(FrameState())

    stacks = play_queue(gateway, queue, config)

    assert stacks is not None and stacks[0].number_of_planes == 5
    assert gateway.timeouts == [15.0]

    gateway.fail = True
    with caplog.at_level(logging.ERROR):
        assert play_queue(gateway, queue, config) is None
    assert "Acquisition of 5 frames failed" in caplog.text
