"""
唇の色補正と歯のホワイトニングのテスト
"""

import cv2
import numpy as np

from conftest import H, MOUTH_CENTER, W
from facefx.config import LipParams, TeethParams
from facefx.lip_refiner import apply_lip_refiner, build_lip_mask
from facefx.teeth_whitener import apply_teeth_whitener, build_teeth_mask
from facefx.types import FaceRegions


def _lab_at(img, x, y):
    return cv2.cvtColor(img, cv2.COLOR_BGR2LAB)[y, x].astype(int)


def test_lip_mask_covers_lips_not_mouth_opening(landmarks):
    mask = build_lip_mask(landmarks, (W, H), band_grow_px=0.0, feather_px=0.0)
    mx, my = MOUTH_CENTER
    assert mask[my - 9, mx] == 255  # 上唇
    assert mask[my + 9, mx] == 255  # 下唇
    assert mask[my, mx] == 0        # 口の中
    assert mask[my, mx + 60] == 0


def test_lip_mask_feather_softens_edges(landmarks):
    hard = build_lip_mask(landmarks, (W, H), 4.0, 0.0)
    soft = build_lip_mask(landmarks, (W, H), 4.0, 6.0)
    assert set(np.unique(hard)) <= {0, 255}
    assert len(np.unique(soft)) > 2


def test_lip_alpha_zero_is_identity(frame_bgr, regions, landmarks):
    out = apply_lip_refiner(frame_bgr, regions, landmarks, LipParams(enabled=True, alpha=0.0))
    np.testing.assert_array_equal(out, frame_bgr)


def test_lip_refiner_moves_color_toward_target(frame_bgr, regions, landmarks):
    params = LipParams(enabled=True, alpha=1.0, color_rgb=(0.2, 0.2, 0.9),
                       feather_px=0.0)
    out = apply_lip_refiner(frame_bgr, regions, landmarks, params)
    mx, my = MOUTH_CENTER
    before = _lab_at(frame_bgr, mx, my - 9)
    after = _lab_at(out, mx, my - 9)
    # 青へ寄せると b* が下がる
    assert after[2] < before[2] - 10


def test_lip_lightness_shift(frame_bgr, regions, landmarks):
    params = LipParams(enabled=True, alpha=1.0, lightness=1.0, feather_px=0.0)
    out = apply_lip_refiner(frame_bgr, regions, landmarks, params)
    mx, my = MOUTH_CENTER
    assert _lab_at(out, mx, my + 9)[0] > _lab_at(frame_bgr, mx, my + 9)[0] + 10


def test_lip_refiner_without_lips_is_identity(frame_bgr, landmarks):
    out = apply_lip_refiner(frame_bgr, FaceRegions.empty(), landmarks,
                            LipParams(enabled=True, alpha=1.0))
    np.testing.assert_array_equal(out, frame_bgr)


def test_teeth_mask_is_inside_inner_lips(regions):
    mask = build_teeth_mask(regions, (W, H), shrink_px=3.0)
    mx, my = MOUTH_CENTER
    assert mask[my, mx] > 200
    assert mask[my + 12, mx] == 0


def test_teeth_strength_zero_is_identity(frame_bgr, regions):
    out = apply_teeth_whitener(frame_bgr, regions, TeethParams(enabled=True, strength=0.0))
    np.testing.assert_array_equal(out, frame_bgr)


def test_teeth_whitening_reduces_yellow(frame_bgr, regions):
    out = apply_teeth_whitener(frame_bgr, regions, TeethParams(enabled=True, strength=1.0))
    mx, my = MOUTH_CENTER
    before = _lab_at(frame_bgr, mx, my)
    after = _lab_at(out, mx, my)
    assert abs(after[2] - 128) < abs(before[2] - 128)
    assert after[0] >= before[0]
