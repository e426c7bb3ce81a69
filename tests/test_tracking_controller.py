import numpy as np
import pytest

from camera_async import CAMERA_ERROR_MESSAGES, CameraError
from pose_state import NEUTRAL_POSE
from tracking_controller import (HISTORY_LEN, InvalidTransition, TrackingController,
                                 TrackingStatus as S, is_valid_transition)
from helpers import FakeClock, FakeOpener, FakeProvider, make_face, wait_for

FRAME = np.zeros((8, 8, 3), np.uint8)


def make_controller(provider=None, opener=None, clock=None, **kwargs):
    return TrackingController(provider or FakeProvider(), camera_opener=opener or FakeOpener(),
                              clock=clock or FakeClock(), **kwargs)


def assert_valid_history(history):
    history = list(history)
    for src, dst in zip(history, history[1:]):
        assert is_valid_transition(src, dst), f"{src.value} -> {dst.value}"


def test_idle_cannot_go_straight_to_tracking():
    assert not is_valid_transition(S.IDLE, S.TRACKING)
    assert not is_valid_transition(S.IDLE, S.NO_FACE)
    assert not is_valid_transition(S.ERROR, S.TRACKING)
    assert is_valid_transition(S.IDLE, S.INITIALIZING)


def test_illegal_edge_raises():
    ctl = make_controller()
    with pytest.raises(InvalidTransition):
        ctl._transition(S.TRACKING)
    assert ctl.status is S.IDLE


def test_start_passes_through_initializing_before_tracking():
    provider = FakeProvider(default=make_face())
    ctl = make_controller(provider)
    assert ctl.status is S.IDLE

    assert ctl.start(background=False)
    assert ctl.status is S.INITIALIZING
    assert provider.init_calls == 1

    assert ctl.step()
    assert ctl.status is S.TRACKING
    assert list(ctl.history) == [S.IDLE, S.INITIALIZING, S.TRACKING]


def test_stays_initializing_until_first_face():
    provider = FakeProvider()
    clock = FakeClock()
    ctl = make_controller(provider, clock=clock)
    ctl.start(background=False)
    for _ in range(3):
        clock.advance(1.0)
        assert not ctl.step()
    assert ctl.status is S.INITIALIZING


def test_no_face_after_grace_window():
    provider = FakeProvider(default=make_face())
    clock = FakeClock()
    ctl = make_controller(provider, clock=clock)
    ctl.start(background=False)
    ctl.step()
    assert ctl.status is S.TRACKING

    provider.default = None
    clock.advance(1.0)
    ctl.step()
    assert ctl.status is S.TRACKING
    clock.advance(1.5)
    ctl.step()
    assert ctl.status is S.NO_FACE
    assert_valid_history(ctl.history)


def test_failing_detector_counts_as_missing_face():
    provider = FakeProvider(default=make_face())
    clock = FakeClock()
    ctl = make_controller(provider, clock=clock)
    ctl.start(background=False)
    ctl.step()
    assert ctl.status is S.TRACKING

    provider.error = RuntimeError("inference failed")
    for _ in range(30):
        clock.advance(0.1)
        ctl.process_frame(FRAME)
    assert ctl.status is S.NO_FACE
    assert ctl.dropped_frames == 30


def test_stalled_camera_counts_as_missing_face():
    provider = FakeProvider(default=make_face())
    opener = FakeOpener()
    clock = FakeClock()
    ctl = make_controller(provider, opener, clock)
    ctl.start(background=False)
    ctl.step()

    opener.cameras[0].stalled = True
    clock.advance(1.0)
    assert not ctl.step()
    assert ctl.status is S.TRACKING
    clock.advance(1.5)
    ctl.step()
    assert ctl.status is S.NO_FACE
    assert_valid_history(ctl.history)


def test_history_is_bounded():
    provider = FakeProvider(default=make_face())
    clock = FakeClock()
    ctl = make_controller(provider, clock=clock)
    ctl.start(background=False)
    for _ in range(HISTORY_LEN):
        provider.default = make_face()
        ctl.step()
        provider.default = None
        clock.advance(3.0)
        ctl.step()
    assert len(ctl.history) == HISTORY_LEN
    assert ctl.history[-1] is S.NO_FACE
    assert_valid_history(ctl.history)


def test_momentary_loss_does_not_flicker():
    provider = FakeProvider(default=make_face())
    clock = FakeClock()
    ctl = make_controller(provider, clock=clock)
    ctl.start(background=False)
    ctl.step()
    for _ in range(5):
        provider.default = None
        clock.advance(0.3)
        ctl.step()
        provider.default = make_face()
        clock.advance(0.3)
        ctl.step()
    assert S.NO_FACE not in ctl.history


def test_no_face_resumes_on_next_detection():
    provider = FakeProvider(default=make_face())
    clock = FakeClock()
    ctl = make_controller(provider, clock=clock)
    ctl.start(background=False)
    ctl.step()
    provider.default = None
    clock.advance(2.5)
    ctl.step()
    assert ctl.status is S.NO_FACE

    provider.default = make_face()
    ctl.step()
    assert ctl.status is S.TRACKING
    assert_valid_history(ctl.history)


def test_pose_is_kept_while_face_is_missing():
    provider = FakeProvider(default=make_face(mouth_gap=0.04))
    ctl = make_controller(provider)
    ctl.start(background=False)
    ctl.step()
    ctl.step()
    pose = ctl.pose
    provider.default = None
    ctl.step()
    assert ctl.pose is pose


def test_pose_converges_to_detected_expression():
    provider = FakeProvider(default=make_face(eye_gap=0.0005, mouth_gap=0.04))
    ctl = make_controller(provider)
    ctl.start(background=False)
    for _ in range(6):
        ctl.step()
    assert ctl.pose.left_eye_open < 0.1
    assert ctl.pose.right_eye_open < 0.1
    assert ctl.pose.mouth_open > 0.9
    assert ctl.snapshot()["expression"] == "blink"


def test_permission_denied_is_terminal_until_restart():
    opener = FakeOpener(error=CameraError("NotAllowedError"))
    ctl = make_controller(opener=opener)

    assert not ctl.start()
    assert ctl.status is S.ERROR
    assert "denied" in ctl.error.lower()
    assert ctl.active_tracks == 0

    for _ in range(3):
        assert not ctl.step()
    assert opener.calls == 1

    opener.error = None
    assert ctl.start(background=False)
    assert opener.calls == 2
    assert ctl.status is S.INITIALIZING
    assert ctl.error is None
    assert_valid_history(ctl.history)


@pytest.mark.parametrize("name", ["NotAllowedError", "NotFoundError", "NotReadableError"])
def test_camera_failures_map_to_their_message(name):
    ctl = make_controller(opener=FakeOpener(error=CameraError(name)))
    ctl.start()
    assert ctl.status is S.ERROR
    assert ctl.error == CAMERA_ERROR_MESSAGES[name]


def test_insecure_context_fails_without_requesting_camera():
    opener = FakeOpener()
    ctl = make_controller(opener=opener)
    assert not ctl.start(secure_context=False)
    assert ctl.status is S.ERROR
    assert ctl.error == CAMERA_ERROR_MESSAGES["SecurityError"]
    assert opener.calls == 0


def test_model_load_failure_releases_camera():
    provider = FakeProvider(init_error=RuntimeError("model download failed"))
    opener = FakeOpener()
    ctl = make_controller(provider, opener)
    assert not ctl.start()
    assert ctl.status is S.ERROR
    assert "model download failed" in ctl.error
    assert opener.cameras[0].released
    assert ctl.active_tracks == 0


def test_detection_error_drops_the_frame():
    provider = FakeProvider(error=RuntimeError("bad frame"))
    ctl = make_controller(provider)
    ctl.start(background=False)
    assert not ctl.step()
    assert not ctl.step()
    assert ctl.dropped_frames == 2
    assert ctl.status is S.INITIALIZING
    assert ctl.pose is NEUTRAL_POSE


def test_start_while_running_is_a_noop():
    opener = FakeOpener()
    ctl = make_controller(opener=opener)
    assert ctl.start(background=False)
    assert not ctl.start(background=False)
    assert opener.calls == 1


def test_stop_releases_camera_and_resets_pose():
    provider = FakeProvider(default=make_face(eye_gap=0.0, mouth_gap=0.04))
    opener = FakeOpener()
    ctl = make_controller(provider, opener)
    ctl.start(background=False)
    ctl.step()
    assert ctl.pose != NEUTRAL_POSE
    assert ctl.active_tracks == 1

    ctl.stop()
    assert ctl.active_tracks == 0
    assert opener.cameras[0].released
    assert ctl.status is S.IDLE
    assert ctl.pose == NEUTRAL_POSE
    assert not ctl.running


def test_stop_can_keep_last_pose():
    provider = FakeProvider(default=make_face(mouth_gap=0.04))
    ctl = make_controller(provider, reset_pose_on_stop=False)
    ctl.start(background=False)
    ctl.step()
    pose = ctl.pose
    ctl.stop()
    assert ctl.pose is pose


def test_results_after_stop_are_ignored():
    provider = FakeProvider(default=make_face())
    ctl = make_controller(provider)
    ctl.start(background=False)
    ctl.stop()
    assert not ctl.process_frame(FRAME)
    assert ctl.status is S.IDLE
    assert ctl.pose == NEUTRAL_POSE


def test_stop_from_error_returns_to_idle():
    ctl = make_controller(opener=FakeOpener(error=CameraError("NotFoundError")))
    ctl.start()
    ctl.stop()
    assert ctl.status is S.IDLE
    assert_valid_history(ctl.history)


def test_background_loop_tracks_until_stopped():
    provider = FakeProvider(default=make_face())
    opener = FakeOpener()
    ctl = make_controller(provider, opener)
    assert ctl.start()
    assert wait_for(lambda: ctl.status is S.TRACKING)

    ctl.stop()
    assert ctl.active_tracks == 0
    assert not ctl.running
    reads = opener.cameras[0].reads
    assert wait_for(lambda: opener.cameras[0].reads == reads, timeout=0.1)
    assert ctl.status is S.IDLE


def test_close_disposes_provider():
    provider = FakeProvider()
    ctl = make_controller(provider)
    ctl.start(background=False)
    ctl.close()
    assert provider.disposed
    assert ctl.active_tracks == 0
