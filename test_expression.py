"""
表情推定とシワブーストのテスト
"""

import numpy as np
import pytest

from conftest import H, W, make_landmarks
from facefx.expression import (
    ExpressionState,
    build_forehead_boost,
    build_wrinkle_boost_map,
    estimate_expression,
)
from facefx.types import FaceRegions, MOUTH_LEFT, MOUTH_RIGHT


def _widen_mouth(landmarks, dx_px):
    pts = landmarks.copy()
    pts[MOUTH_LEFT, 0] -= dx_px / W
    pts[MOUTH_RIGHT, 0] += dx_px / W
    return pts


def test_neutral_face_has_low_smile(landmarks):
    ex = estimate_expression(landmarks, (W, H))
    assert ex.eye_span == pytest.approx(134.0, abs=1.5)
    assert ex.smile < 0.2
    assert ex.squint == 0.0


def test_wide_mouth_increases_smile(landmarks):
    neutral = estimate_expression(landmarks, (W, H))
    smiling = estimate_expression(_widen_mouth(landmarks, 20), (W, H))
    assert smiling.smile > neutral.smile
    assert smiling.smile == pytest.approx(1.0)


def test_empty_landmarks_give_neutral_state():
    ex = estimate_expression(None, (W, H))
    assert ex == ExpressionState()
    boost = build_wrinkle_boost_map(None, (W, H), 0.5, 0.5)
    assert not np.any(boost)


def test_boost_map_peaks_at_mouth_corners(landmarks):
    pts = _widen_mouth(landmarks, 20)
    ex = estimate_expression(pts, (W, H))
    boost = build_wrinkle_boost_map(pts, (W, H), 0.8, 0.0, ex)
    (lx, ly), (rx, ry) = ex.mouth_corners
    assert boost[ly, lx] > 0.3
    assert boost[ry, rx] > 0.3
    assert boost[50, 50] == 0.0
    assert boost.max() <= 1.0


def test_zero_boosts_give_zero_map(landmarks):
    pts = _widen_mouth(landmarks, 20)
    assert not np.any(build_wrinkle_boost_map(pts, (W, H), 0.0, 0.0))


def test_squint_from_narrow_eyes():
    pts = make_landmarks()
    # 目の上下の点を中心線に寄せる
    from facefx.types import EYE_L_BOTTOM, EYE_L_TOP, EYE_R_BOTTOM, EYE_R_TOP
    for top, bottom in ((EYE_L_TOP, EYE_L_BOTTOM), (EYE_R_TOP, EYE_R_BOTTOM)):
        mid = 0.5 * (pts[top, 1] + pts[bottom, 1])
        pts[top, 1] = mid - 1.0 / H
        pts[bottom, 1] = mid + 1.0 / H
    ex = estimate_expression(pts, (W, H))
    assert ex.squint > 0.5


def test_forehead_boost_only_above_eyes(frame_bgr, regions):
    import cv2
    lab = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2LAB)
    l_f = lab[:, :, 0].astype(np.float32) / 255.0
    detail = l_f - cv2.GaussianBlur(l_f, (13, 13), 6.0)
    fb = build_forehead_boost(frame_bgr, regions, detail, 6.0, 1.0)
    eye_top = int(min(regions.left_eye[:, 1].min(), regions.right_eye[:, 1].min()))
    assert not np.any(fb[eye_top - 8:, :])
    assert fb[135:176, 280:360].max() > 0.1
    assert fb.max() <= 1.0


def test_forehead_boost_disabled(frame_bgr, regions):
    detail = np.zeros((H, W), np.float32)
    assert not np.any(build_forehead_boost(frame_bgr, regions, detail, 6.0, 0.0))
    assert not np.any(build_forehead_boost(frame_bgr, FaceRegions.empty(), detail, 6.0, 1.0))
