"""
facefx/skin_weight.py
=====================
「レタッチしてよい肌」を表すピクセル単位の重みマップ生成。

顔輪郭 (唇・目を除く) の内側で、
  - 輪郭からの距離による滑らかなフェードイン
  - 勾配の強い部分 (毛穴・産毛などのテクスチャ) の減衰
を掛け合わせる。顔の外側は常に 0。
"""

from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from facefx.regions import face_skin_mask
from facefx.types import FaceRegions, ImageBGR, WeightMap


# 高テクスチャ部でも効果が消えないよう保証する最低重み
MIN_FACE_WEIGHT = 0.15


def gradient_magnitude(gray: np.ndarray, sigma: float = 1.0) -> np.ndarray:
    """Sobel (3x3) 勾配強度をガウシアンで平滑化して返す (float32)。"""
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    mag = cv2.magnitude(gx, gy)
    return cv2.GaussianBlur(mag, (0, 0), sigma)


def robust_scale(values: np.ndarray, region: Optional[np.ndarray] = None) -> float:
    """平均の 3 倍 (下限 8) を正規化スケールとして返す。"""
    if region is not None:
        sel = values[region]
        mean = float(sel.mean()) if sel.size else 0.0
    else:
        mean = float(values.mean()) if values.size else 0.0
    return max(8.0, mean * 3.0 + 1e-3)


def build_skin_weight_map(
    regions: FaceRegions,
    frame_size: tuple[int, int],
    edge_feather_px: float,
    texture_thresh: float,
    hint_bgr: Optional[ImageBGR] = None,
) -> WeightMap:
    """肌の重みマップ (0.0-1.0) を生成する。

    処理:
        1. 顔輪郭 − 唇 − 目 を 2 値マスク化
        2. 距離変換 / edge_feather_px (上限 1) → 輪郭付近のフェード
        3. ヒント画像の勾配強度を顔内平均の 3 倍 (下限 8) で正規化
        4. テクスチャ減衰  wtex = 1 / (1 + mag / texture_thresh)
        5. weight = max(edge × wtex, 0.15 × face)
        6. 平均が 0.02 未満ならテクスチャ減衰を無効化 (edge のみ)

    Args:
        regions: 顔パーツ多角形
        frame_size: (W, H)
        edge_feather_px: 輪郭フェード幅 (px)
        texture_thresh: テクスチャ保持しきい値 (0.01-1.0, 大きいほど減衰が弱い)
        hint_bgr: 勾配計算に使うフレーム (None なら勾配 0 とみなす)

    Returns:
        shape: (H, W), dtype: float32
    """
    w, h = frame_size
    base = face_skin_mask(regions, frame_size)
    base_f = base.astype(np.float32) / 255.0

    dist = cv2.distanceTransform(base, cv2.DIST_L2, 3)
    ef = max(1.0, float(edge_feather_px))
    weight_edge = np.minimum(dist / ef, 1.0).astype(np.float32) * base_f

    if hint_bgr is not None and hint_bgr.size:
        gray = cv2.cvtColor(hint_bgr, cv2.COLOR_BGR2GRAY)
    else:
        gray = np.zeros((h, w), dtype=np.uint8)
    mag = gradient_magnitude(gray)
    mag_n = mag / robust_scale(mag, base > 0)

    t = min(max(float(texture_thresh), 0.01), 1.0)
    wtex = np.minimum(1.0 / (1.0 + mag_n / t), 1.0)

    weight = np.maximum(weight_edge * wtex, MIN_FACE_WEIGHT * base_f)
    if float(weight.mean()) < 0.02:
        return weight_edge
    return weight.astype(np.float32)
