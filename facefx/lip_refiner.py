"""
facefx/lip_refiner.py
=====================
唇の色補正 (リップティント)。

上唇・下唇をそれぞれ「外周の弧 + 内周の弧 (逆順)」の多角形として塗り、
外周−内周の単一リングで生じる継ぎ目を避ける。
Lab 空間で a*/b* を目標色へブレンドし、必要なら L* を加減する。
"""

from __future__ import annotations

from typing import Sequence

import cv2
import numpy as np

from facefx.colorspace import rgb_color_to_lab, to_u8
from facefx.config import LipParams
from facefx.regions import feather_mask, fill_region, landmarks_to_pixels
from facefx.types import (
    LIPS_INNER_ARC_A,
    LIPS_INNER_ARC_B,
    LIPS_OUTER_ARC_A,
    LIPS_OUTER_ARC_B,
    FaceRegions,
    ImageBGR,
    LandmarksLike,
    MaskImage,
    Polygon,
    as_landmark_array,
)

# lightness = ±1.0 のときの L* 変化量 (8bit Lab 単位)
MAX_LIGHTNESS_SHIFT = 25.0


def _half_lip_polygon(
    pts: np.ndarray,
    outer_arc: Sequence[int],
    inner_arc: Sequence[int],
    frame_size: tuple[int, int],
) -> Polygon:
    outer = landmarks_to_pixels(pts, outer_arc, frame_size)
    inner = landmarks_to_pixels(pts, inner_arc, frame_size)
    return np.concatenate([outer, inner[::-1]], axis=0)


def build_lip_mask(
    landmarks: LandmarksLike,
    frame_size: tuple[int, int],
    band_grow_px: float = 4.0,
    feather_px: float = 6.0,
) -> MaskImage:
    """上下の唇マスク (0-255) を生成する。

    Args:
        landmarks: 正規化ランドマーク
        frame_size: (W, H)
        band_grow_px: 上下の継ぎ目を埋める膨張量 (> 0.5 で有効)
        feather_px: 境界ぼかし (> 0.5 で有効)
    """
    w, h = frame_size
    pts = as_landmark_array(landmarks)
    mask = np.zeros((h, w), dtype=np.uint8)
    for outer_arc, inner_arc in ((LIPS_OUTER_ARC_A, LIPS_INNER_ARC_A),
                                 (LIPS_OUTER_ARC_B, LIPS_INNER_ARC_B)):
        fill_region(mask, _half_lip_polygon(pts, outer_arc, inner_arc, frame_size), 255)

    if band_grow_px > 0.5:
        k = max(1, int(round(band_grow_px)))
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
        mask = cv2.dilate(mask, kernel)
    if feather_px > 0.5:
        mask = feather_mask(mask, int(round(feather_px)))
    return mask


def apply_lip_refiner(
    image: ImageBGR,
    regions: FaceRegions,
    landmarks: LandmarksLike,
    lips: LipParams,
) -> ImageBGR:
    """唇を目標色へ寄せる。

    計算式:
        m   = mask / 255 × alpha
        a'  = a × (1 − m) + a_target × m
        b'  = b × (1 − m) + b_target × m
        L'  = L + clamp(lightness, −1, 1) × 25 × m

    Args:
        image: 入力画像 (BGR, uint8)
        regions: 顔パーツ多角形 (lips_outer がなければ何もしない)
        landmarks: 正規化ランドマーク
        lips: 唇パラメータ

    Returns:
        補正済み画像 (BGR, uint8)。alpha = 0 なら入力のコピー。
    """
    strength = min(max(lips.alpha, 0.0), 1.0)
    if strength <= 0.0 or not regions.has("lips_outer"):
        return image.copy()

    h, w = image.shape[:2]
    mask = build_lip_mask(landmarks, (w, h), lips.band_grow_px, lips.feather_px)
    m = mask.astype(np.float32) * (strength / 255.0)

    _, target_a, target_b = rgb_color_to_lab(lips.color_rgb)
    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB).astype(np.float32)
    lab[:, :, 1] = lab[:, :, 1] * (1.0 - m) + target_a * m
    lab[:, :, 2] = lab[:, :, 2] * (1.0 - m) + target_b * m

    d_l = min(max(lips.lightness, -1.0), 1.0) * MAX_LIGHTNESS_SHIFT
    if abs(d_l) > 1e-3:
        lab[:, :, 0] = lab[:, :, 0] + d_l * m

    return cv2.cvtColor(to_u8(lab), cv2.COLOR_LAB2BGR)
