import math

import pytest

from face_features import (LEFT_EYE, RIGHT_EYE, Landmark, derive_pose, eye_open_ratio,
                           head_rotation, mouth_open_ratio)
from helpers import N_LANDMARKS, make_face


def test_open_eyes_and_closed_mouth():
    face = make_face()
    assert eye_open_ratio(face, LEFT_EYE) == 1.0
    assert eye_open_ratio(face, RIGHT_EYE) == 1.0
    assert mouth_open_ratio(face) == 0.0


def test_nearly_closed_eye_reads_near_zero():
    face = make_face(eye_gap=0.0005)
    assert eye_open_ratio(face, LEFT_EYE) <= 0.1
    assert eye_open_ratio(face, RIGHT_EYE) <= 0.1


def test_half_open_eye_scales_with_calibration():
    # v/h = 0.1 -> 0.45 with k=4.5
    face = make_face(eye_gap=0.006)
    assert eye_open_ratio(face, LEFT_EYE) == pytest.approx(0.45)
    assert eye_open_ratio(face, LEFT_EYE, k=6.0) == pytest.approx(0.6)


@pytest.mark.parametrize("k", [5.0, 6.0, 8.0])
def test_mouth_open_forty_percent_of_width_is_wide_open(k):
    face = make_face(mouth_gap=0.04)
    assert mouth_open_ratio(face, k=k) > 0.8


@pytest.mark.parametrize("eye_gap,mouth_gap", [(0.0, 0.0), (0.02, 0.01), (0.5, 0.9), (3.0, 3.0)])
def test_ratios_stay_in_unit_range(eye_gap, mouth_gap):
    face = make_face(eye_gap=eye_gap, mouth_gap=mouth_gap)
    for value in (eye_open_ratio(face, LEFT_EYE), eye_open_ratio(face, RIGHT_EYE),
                  mouth_open_ratio(face)):
        assert 0.0 <= value <= 1.0


def test_coincident_points_give_neutral_values():
    face = [Landmark(0.5, 0.5, 0.0)] * N_LANDMARKS
    assert eye_open_ratio(face, LEFT_EYE) == 1.0
    assert mouth_open_ratio(face) == 0.0
    assert head_rotation(face) == (0.0, 0.0)


def test_truncated_landmark_set_gives_neutral_values():
    face = make_face(eye_gap=0.0, mouth_gap=0.04)[:50]
    assert eye_open_ratio(face, LEFT_EYE) == 1.0
    assert mouth_open_ratio(face) == 0.0
    assert head_rotation(face) == (0.0, 0.0)


def test_negative_index_is_treated_as_out_of_range():
    face = make_face(eye_gap=0.0)
    assert eye_open_ratio(face, (-1, 160, 158, 133, 153, 144)) == 1.0


def test_nan_coordinates_give_neutral_values():
    face = make_face(mouth_gap=0.04)
    face[144] = Landmark(math.nan, math.nan, 0.0)
    face[14] = Landmark(math.nan, 0.7, 0.0)
    face[1] = Landmark(math.inf, 0.55, 0.0)
    assert eye_open_ratio(face, LEFT_EYE) == 1.0
    assert mouth_open_ratio(face) == 0.0
    assert head_rotation(face) == (0.0, 0.0)


def test_garbage_input_never_raises():
    assert eye_open_ratio(None, LEFT_EYE) == 1.0
    assert mouth_open_ratio([object()] * N_LANDMARKS) == 0.0
    assert head_rotation("not landmarks") == (0.0, 0.0)


def test_yaw_follows_nose_offset_from_eye_midpoint():
    rot_x, rot_y = head_rotation(make_face(nose_dx=0.01))
    assert rot_y == pytest.approx(4.0)
    assert rot_x == pytest.approx(0.0, abs=1e-9)
    assert head_rotation(make_face(nose_dx=-0.01))[1] == pytest.approx(-4.0)


def test_pitch_is_zero_at_rest_and_tracks_nose_height():
    assert head_rotation(make_face())[0] == pytest.approx(0.0, abs=1e-9)
    assert head_rotation(make_face(nose_dy=0.02))[0] == pytest.approx(-6.0)
    assert head_rotation(make_face(nose_dy=-0.02), pitch_k=100.0)[0] == pytest.approx(2.0)


def test_derive_pose_collects_all_signals():
    pose = derive_pose(make_face(eye_gap=0.006, right_eye_gap=0.03, mouth_gap=0.01, nose_dx=0.02))
    assert pose.left_eye_open == pytest.approx(0.45)
    assert pose.right_eye_open == 1.0
    assert pose.mouth_open == pytest.approx(0.5)
    assert pose.head_rotation_y == pytest.approx(8.0)
