"""
肌スムージング (周波数分離 / バイラテラル / 縮小 ROI) のテスト
"""

import cv2
import numpy as np
import pytest

from conftest import FACE_CENTER, H, W
from facefx.config import SkinParams, WrinkleParams
from facefx.errors import DegenerateGeometryError
from facefx.skin_smoother import (
    apply_skin_smoothing,
    combine_wrinkle_masks,
    face_roi,
    line_width_range,
    smooth_skin_advanced,
    smooth_skin_basic,
    smooth_skin_scaled,
)
from facefx.types import FaceRegions


def _forehead_contrast(img):
    l_ch = cv2.cvtColor(img, cv2.COLOR_BGR2LAB)[:, :, 0].astype(np.float32)
    return float(l_ch[140:172, 285:355].std())


def _background_diff(a, b):
    return int(np.abs(a[:60].astype(int) - b[:60].astype(int)).max())


def test_zero_amount_is_identity(frame_bgr, regions, landmarks):
    skin = SkinParams(enabled=True, amount=0.0)
    out = apply_skin_smoothing(frame_bgr, regions, landmarks, skin, WrinkleParams())
    np.testing.assert_array_equal(out, frame_bgr)


def test_disabled_is_identity(frame_bgr, regions, landmarks):
    out = apply_skin_smoothing(frame_bgr, regions, landmarks,
                               SkinParams(enabled=False, amount=1.0), WrinkleParams())
    np.testing.assert_array_equal(out, frame_bgr)
    assert out is not frame_bgr


def test_advanced_smooths_face_and_keeps_background(frame_bgr, regions, landmarks):
    skin = SkinParams(enabled=True, amount=0.8)
    out = smooth_skin_advanced(frame_bgr, regions, landmarks, skin, WrinkleParams())
    assert out.shape == frame_bgr.shape and out.dtype == np.uint8
    assert _forehead_contrast(out) < _forehead_contrast(frame_bgr)
    assert _background_diff(out, frame_bgr) <= 4  # Lab 変換の丸め誤差のみ


def test_wrinkle_gain_softens_more(frame_bgr, regions, landmarks):
    skin = SkinParams(enabled=True, amount=0.3)
    plain = smooth_skin_advanced(frame_bgr, regions, landmarks, skin,
                                 WrinkleParams(enabled=False))
    boosted = smooth_skin_advanced(frame_bgr, regions, landmarks, skin,
                                   WrinkleParams(enabled=True, gain=3.0, keep_ratio=0.5))
    assert _forehead_contrast(boosted) <= _forehead_contrast(plain)


def _l_detail(img, radius):
    l_f = cv2.cvtColor(img, cv2.COLOR_BGR2LAB)[:, :, 0].astype(np.float32) / 255.0
    k = int(round(radius)) * 2 + 1
    base = cv2.GaussianBlur(l_f, (k, k), radius)
    return l_f, base, l_f - base


def test_preview_only_touches_wrinkles(frame_bgr, regions, landmarks):
    skin = SkinParams(enabled=True, amount=0.8)
    preview = smooth_skin_advanced(frame_bgr, regions, landmarks, skin,
                                   WrinkleParams(preview=True))
    assert preview.shape == frame_bgr.shape
    assert _background_diff(preview, frame_bgr) <= 4

    l_in, base, detail = _l_detail(frame_bgr, skin.radius_px)
    l_out = _l_detail(preview, skin.radius_px)[0]

    # 明るい細部は減衰しない (Lab 往復の丸めのみ)
    pos = detail > 2.0 / 255.0
    assert pos.any()
    assert np.abs(l_out - l_in)[pos].max() <= 4.0 / 255.0

    # 額のシワ (暗い細部) はベースに近づく
    neg = np.zeros_like(pos)
    neg[138:172, 280:360] = detail[138:172, 280:360] < -4.0 / 255.0
    assert neg.any()
    moved = (l_out - l_in)[neg]
    assert moved.mean() > 1.0 / 255.0
    assert np.all(l_out[neg] <= base[neg] + 4.0 / 255.0)


def test_preview_ignores_smoothing_amount(frame_bgr, regions, landmarks):
    # プレビューではベースのスムージング量が結果に影響しない
    a = smooth_skin_advanced(frame_bgr, regions, landmarks,
                             SkinParams(enabled=True, amount=0.3), WrinkleParams(preview=True))
    b = smooth_skin_advanced(frame_bgr, regions, landmarks,
                             SkinParams(enabled=True, amount=1.0), WrinkleParams(preview=True))
    np.testing.assert_array_equal(a, b)


def test_basic_bilateral(frame_bgr, regions):
    out = smooth_skin_basic(frame_bgr, regions, 1.0)
    cx, cy = FACE_CENTER
    patch = (slice(cy - 20, cy + 20), slice(cx - 20, cx + 20))
    assert out[patch].astype(np.float32).std() < frame_bgr[patch].astype(np.float32).std()
    assert _background_diff(out, frame_bgr) == 0
    np.testing.assert_array_equal(smooth_skin_basic(frame_bgr, regions, 0.0), frame_bgr)


def test_dispatch_uses_basic_when_not_advanced(frame_bgr, regions, landmarks):
    skin = SkinParams(enabled=True, advanced=False, amount=0.6)
    out = apply_skin_smoothing(frame_bgr, regions, landmarks, skin, WrinkleParams())
    np.testing.assert_array_equal(out, smooth_skin_basic(frame_bgr, regions, 0.6))


def test_scaled_path_is_close_to_full(frame_bgr, regions, landmarks):
    skin = SkinParams(enabled=True, amount=0.6)
    wr = WrinkleParams()
    full = smooth_skin_advanced(frame_bgr, regions, landmarks, skin, wr)
    scaled = smooth_skin_scaled(frame_bgr, regions, landmarks, skin, wr, 0.6)
    assert scaled.shape == frame_bgr.shape
    face = cv2.ellipse(np.zeros((H, W), np.uint8), FACE_CENTER, (90, 120), 0, 0, 360, 255, -1) > 0
    diff = np.abs(full.astype(np.float32) - scaled.astype(np.float32))[face]
    assert diff.mean() < 8.0
    # ROI の外は触らない
    assert _background_diff(scaled, frame_bgr) == 0


def test_scaled_falls_back_for_tiny_frame():
    img = np.full((6, 6, 3), 180, dtype=np.uint8)
    tiny = FaceRegions(face_oval=np.array([[1, 1], [4, 1], [4, 4], [1, 4]], np.int32))
    skin = SkinParams(enabled=True, amount=0.6)
    out = smooth_skin_scaled(img, tiny, None, skin, WrinkleParams(), 0.5)
    assert out.shape == img.shape


def test_face_roi_bounds(regions):
    x, y, w, h = face_roi(regions, (W, H), 20)
    assert x >= 0 and y >= 0 and x + w <= W and y + h <= H
    assert w > 200 and h > 280
    with pytest.raises(DegenerateGeometryError):
        face_roi(FaceRegions.empty(), (W, H), 20)


def test_combine_wrinkle_masks_weights():
    line = np.full((2, 2), 0.5, np.float32)
    local = np.full((2, 2), 0.5, np.float32)
    # keep=0.02 → w_line 0.4, w_local 0.6
    np.testing.assert_allclose(combine_wrinkle_masks(line, local, 0.02), 0.5, atol=1e-6)
    # keep=0.80 → w_line 1.3, w_local 0.0
    np.testing.assert_allclose(combine_wrinkle_masks(line, local, 0.80), 0.65, atol=1e-6)


def test_line_width_range_from_radius():
    lo, hi = line_width_range(SkinParams(radius_px=6.0), WrinkleParams(custom_scales=False))
    assert (lo, hi) == (3.0, 7.5)
    lo, hi = line_width_range(SkinParams(), WrinkleParams(min_width_px=2, max_width_px=5))
    assert (lo, hi) == (2.0, 5.0)


def test_scaled_line_widths_are_not_floored():
    wr = WrinkleParams(min_width_px=2.0, max_width_px=8.0)
    lo, hi = line_width_range(SkinParams(), wr, width_scale=0.4)
    assert lo == pytest.approx(0.8)
    assert hi == pytest.approx(3.2)
    # パラメータ自体は変更しない
    assert wr.min_width_px == 2.0
