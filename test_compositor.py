"""
BackgroundCompositor のテスト
"""

import cv2
import numpy as np
import pytest

from facefx.compositor import BackgroundCompositor
from facefx.config import BackgroundMode, BackgroundParams
from facefx.errors import InputShapeError


def _frame(h=120, w=160, seed=1):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, (h, w, 3), dtype=np.uint8)


def test_none_mode_is_exact_passthrough():
    comp = BackgroundCompositor()
    frame = _frame()
    mask = np.full(frame.shape[:2], 128, dtype=np.uint8)
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.NONE))
    np.testing.assert_array_equal(out, cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))


def test_missing_mask_is_passthrough():
    comp = BackgroundCompositor()
    frame = _frame()
    out = comp.composite(frame, None, BackgroundParams(mode=BackgroundMode.BLUR))
    np.testing.assert_array_equal(out, frame[:, :, ::-1])


@pytest.mark.parametrize("scale", [1.0, 0.5])
@pytest.mark.parametrize("feather", [0.0, 2.0])
@pytest.mark.parametrize(
    "mode", [BackgroundMode.BLUR, BackgroundMode.IMAGE, BackgroundMode.SOLID]
)
def test_full_foreground_mask_keeps_frame(mode, feather, scale):
    comp = BackgroundCompositor()
    frame = _frame()
    mask = np.full(frame.shape[:2], 255, dtype=np.uint8)
    bg = np.zeros((30, 40, 3), dtype=np.uint8)
    bg[:] = (255, 0, 255)
    params = BackgroundParams(mode=mode, feather_px=feather, solid_rgb=(0.0, 1.0, 0.0))
    out = comp.composite(frame, mask, params, bg_image=bg, scale=scale)
    diff = np.abs(out.astype(int) - frame[:, :, ::-1].astype(int))
    assert diff.max() <= 1


def test_blur_keeps_person_and_smooths_background():
    comp = BackgroundCompositor()
    h, w = 200, 200
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[::2, :] = 255  # 縞模様の背景
    frame[70:130, 70:130] = (0, 0, 255)
    mask = np.zeros((h, w), dtype=np.uint8)
    mask[60:140, 60:140] = 255

    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.BLUR,
                                                       blur_strength=25, feather_px=0.0))
    # 人物の中心は元の色 (RGB で赤)
    assert tuple(out[100, 100]) == (255, 0, 0)
    # 背景の縞は平均化される
    corner = out[5:30, 5:30].astype(np.float32)
    assert corner.std() < 20.0
    assert 100 < corner.mean() < 160


def test_blur_scenario_matches_gaussian_background():
    comp = BackgroundCompositor()
    h, w = 480, 640
    frame = _frame(h, w, seed=7)
    mask = np.zeros((h, w), dtype=np.uint8)
    cv2.ellipse(mask, (w // 2, h // 2), (120, 170), 0, 0, 360, 255, -1)
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.BLUR,
                                                       blur_strength=25, feather_px=2.0))
    # 中心は入力のまま
    cy, cx = h // 2, w // 2
    diff_c = np.abs(out[cy, cx].astype(int) - frame[cy, cx, ::-1].astype(int))
    assert diff_c.max() <= 1
    # 隅は通常のガウシアンぼかしと一致する
    ref = cv2.GaussianBlur(frame, (25, 25), 0)
    for y, x in [(0, 0), (10, 10), (h - 1, w - 1), (20, w - 30)]:
        diff = np.abs(out[y, x].astype(int) - ref[y, x, ::-1].astype(int))
        assert diff.max() <= 2, (y, x)


def test_blur_does_not_bleed_person_color():
    comp = BackgroundCompositor()
    h, w = 200, 200
    frame = np.full((h, w, 3), 200, dtype=np.uint8)
    frame[60:140, 60:140] = (0, 0, 0)
    mask = np.zeros((h, w), dtype=np.uint8)
    mask[60:140, 60:140] = 255
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.BLUR,
                                                       blur_strength=41, feather_px=0.0))
    # 人物のすぐ外側も背景色のまま (黒がにじまない)
    assert out[100, 50].min() >= 195


def test_solid_background_color():
    comp = BackgroundCompositor()
    frame = _frame()
    mask = np.zeros(frame.shape[:2], dtype=np.uint8)
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.SOLID,
                                                       solid_rgb=(0.0, 1.0, 0.0),
                                                       feather_px=0.0))
    assert np.all(out == np.array([0, 255, 0], dtype=np.uint8))


def test_image_background_is_resized_and_cached():
    comp = BackgroundCompositor()
    frame = _frame()
    bg = np.zeros((30, 40, 3), dtype=np.uint8)
    bg[:] = (255, 0, 0)
    mask = np.zeros(frame.shape[:2], dtype=np.uint8)
    params = BackgroundParams(mode=BackgroundMode.IMAGE, feather_px=0.0)

    out = comp.composite(frame, mask, params, bg_image=bg)
    assert out.shape == frame.shape
    assert np.all(out == np.array([0, 0, 255], dtype=np.uint8))

    comp.composite(frame, mask, params, bg_image=bg)
    assert comp.cache_misses == 1
    assert comp.cache_hits == 1

    comp.invalidate_cache()
    comp.composite(frame, mask, params, bg_image=bg)
    assert comp.cache_misses == 2


def test_image_cache_sees_changes_off_the_sample_grid():
    comp = BackgroundCompositor()
    frame = _frame(64, 64)
    mask = np.zeros((64, 64), dtype=np.uint8)
    bg1 = np.zeros((64, 64, 3), dtype=np.uint8)
    bg2 = bg1.copy()
    bg2[1:15, 1:15] = 255

    first = comp.composite_image(frame, mask, bg1)
    assert first[1:15, 1:15].max() == 0
    second = comp.composite_image(frame, mask, bg2)
    assert np.all(second[1:15, 1:15] == 255)
    assert comp.cache_misses == 2


def test_bgra_and_gray_backgrounds_are_accepted():
    comp = BackgroundCompositor()
    frame = _frame()
    mask = np.zeros(frame.shape[:2], dtype=np.uint8)
    bgra = np.zeros((30, 40, 4), dtype=np.uint8)
    bgra[:] = (255, 0, 0, 128)
    out = comp.composite_image(frame, mask, bgra)
    assert np.all(out == np.array([0, 0, 255], dtype=np.uint8))

    gray = np.full((30, 40), 77, dtype=np.uint8)
    out = comp.composite_image(frame, mask, gray)
    assert np.all(out == 77)

    with pytest.raises(InputShapeError):
        comp.composite_image(frame, mask, np.zeros((4, 4, 2), dtype=np.uint8))


def test_image_mode_without_image_is_passthrough():
    comp = BackgroundCompositor()
    frame = _frame()
    mask = np.zeros(frame.shape[:2], dtype=np.uint8)
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.IMAGE))
    np.testing.assert_array_equal(out, frame[:, :, ::-1])


def test_show_mask_overrides_mode():
    comp = BackgroundCompositor()
    frame = _frame()
    mask = np.zeros(frame.shape[:2], dtype=np.uint8)
    mask[:, :80] = 255
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.BLUR),
                         show_mask=True)
    assert out.shape == frame.shape
    assert np.all(out[:, :80] == 255)
    assert np.all(out[:, 80:] == 0)


def test_mask_is_resized_to_frame():
    comp = BackgroundCompositor()
    frame = _frame(120, 160)
    mask = np.full((60, 80), 255, dtype=np.uint8)
    out = comp.composite(frame, mask, BackgroundParams(mode=BackgroundMode.SOLID,
                                                       feather_px=0.0))
    assert out.shape == (120, 160, 3)


def test_float_mask_is_scaled():
    comp = BackgroundCompositor()
    mask = np.array([[0.0, 0.5], [1.0, 0.25]], dtype=np.float32)
    decoded = comp.decode_mask(mask)
    assert decoded.dtype == np.uint8
    assert decoded.tolist() == [[0, 128], [255, 64]]


def test_rgba_channel_choice_is_sticky():
    comp = BackgroundCompositor()
    m = np.zeros((10, 10, 4), dtype=np.uint8)
    m[:, :, 1] = 200  # G が最大
    m[:, :, 3] = 205  # A は +10 に届かない
    np.testing.assert_array_equal(comp.decode_mask(m), m[:, :, 1])
    assert comp.rgba_channel == 1

    # 2 フレーム目で分布が変わっても最初の選択を維持
    m2 = np.zeros((10, 10, 4), dtype=np.uint8)
    m2[:, :, 3] = 250
    np.testing.assert_array_equal(comp.decode_mask(m2), m2[:, :, 1])

    comp.reset_mask_channel()
    comp.decode_mask(m2)
    assert comp.rgba_channel == 3


def test_unknown_mask_format_is_reinterpreted():
    comp = BackgroundCompositor()
    m = np.ones((4, 4, 2), dtype=np.float64)
    decoded = comp.decode_mask(m)
    assert decoded.shape == (4, 4)
    assert np.all(decoded == 255)


def test_empty_mask_raises():
    comp = BackgroundCompositor()
    with pytest.raises(InputShapeError):
        comp.decode_mask(np.zeros((0, 0), dtype=np.uint8))


@pytest.mark.parametrize("mode", [BackgroundMode.BLUR, BackgroundMode.SOLID])
def test_scaled_path_matches_size_and_keeps_person(mode):
    comp = BackgroundCompositor()
    frame = np.full((200, 200, 3), 90, dtype=np.uint8)
    mask = np.zeros((200, 200), dtype=np.uint8)
    mask[50:150, 50:150] = 255
    params = BackgroundParams(mode=mode, feather_px=2.0, solid_rgb=(1.0, 1.0, 1.0))
    out = comp.composite(frame, mask, params, scale=0.5)
    assert out.shape == (200, 200, 3)
    assert np.abs(out[100, 100].astype(int) - 90).max() <= 2


@pytest.mark.skipif(not cv2.ocl.haveOpenCL(), reason="OpenCL が利用できない環境")
def test_opencl_blur_close_to_cpu():
    comp = BackgroundCompositor()
    frame = _frame(100, 100)
    mask = np.zeros((100, 100), dtype=np.uint8)
    mask[30:70, 30:70] = 255
    params = BackgroundParams(mode=BackgroundMode.BLUR, feather_px=2.0)
    cpu = comp.composite(frame, mask, params)
    gpu = comp.composite(frame, mask, params, use_opencl=True)
    assert np.abs(cpu.astype(int) - gpu.astype(int)).mean() < 2.0
