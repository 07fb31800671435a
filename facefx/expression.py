"""
facefx/expression.py
====================
ランドマークから表情 (笑顔・目の細まり) を推定し、
表情ジワが出やすい位置にブーストを加えるマップを生成する。

  - 笑顔     → 口角 (ほうれい線) に円形ブースト
  - 目の細まり → 目尻 (カラスの足跡) に円形ブースト
  - 額       → 眉より上の水平線 (縦方向勾配 × 暗部) を強調
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import cv2
import numpy as np

from facefx.regions import fill_region
from facefx.skin_weight import robust_scale
from facefx.types import (
    EYE_L_BOTTOM,
    EYE_L_INNER,
    EYE_L_OUTER,
    EYE_L_TOP,
    EYE_R_BOTTOM,
    EYE_R_INNER,
    EYE_R_OUTER,
    EYE_R_TOP,
    MOUTH_LEFT,
    MOUTH_RIGHT,
    FaceRegions,
    ImageBGR,
    LandmarksLike,
    WeightMap,
    as_landmark_array,
)


@dataclass
class ExpressionState:
    """ランドマークから推定した表情量。

    Attributes:
        smile: 笑顔度 (0.0-1.0)
        squint: 目の細まり度 (0.0-1.0)
        eye_span: 両目尻間の距離 (px)
        mouth_corners: 左右の口角 (px)
        eye_corners: 左右の目尻 (px)
    """
    smile: float = 0.0
    squint: float = 0.0
    eye_span: float = 0.0
    mouth_corners: tuple[tuple[int, int], tuple[int, int]] = ((0, 0), (0, 0))
    eye_corners: tuple[tuple[int, int], tuple[int, int]] = ((0, 0), (0, 0))

    @property
    def disc_radius(self) -> int:
        """ブースト円の半径 (目尻間距離の 8%, 下限 3px)。"""
        return max(3, int(round(0.08 * self.eye_span)))


def _clamp01(v: float) -> float:
    return min(max(v, 0.0), 1.0)


def estimate_expression(
    landmarks: LandmarksLike,
    frame_size: tuple[int, int],
) -> ExpressionState:
    """口幅/目幅の比と目の開き具合から笑顔度・細まり度を推定する。

    計算式:
        smile_ratio = 口幅 / 目尻間距離       (無表情 ≈ 0.35, 笑顔 ≈ 0.55)
        aperture    = mean(目の高さ / 目の幅)  (通常 ≈ 0.22)
        smile  = clamp((smile_ratio − 0.35) / 0.20)
        squint = clamp((0.22 − aperture) / 0.12)
    """
    pts = as_landmark_array(landmarks)
    w, h = frame_size
    if len(pts) == 0:
        return ExpressionState()

    def pt(idx: int) -> tuple[int, int]:
        p = pts[min(max(idx, 0), len(pts) - 1)]
        return (
            min(max(int(round(float(p[0]) * w)), 0), w - 1),
            min(max(int(round(float(p[1]) * h)), 0), h - 1),
        )

    def dist(a: tuple[int, int], b: tuple[int, int]) -> float:
        return math.hypot(a[0] - b[0], a[1] - b[1])

    mouth_l, mouth_r = pt(MOUTH_LEFT), pt(MOUTH_RIGHT)
    eye_lo, eye_li = pt(EYE_L_OUTER), pt(EYE_L_INNER)
    eye_ro, eye_ri = pt(EYE_R_OUTER), pt(EYE_R_INNER)

    eye_span = dist(eye_lo, eye_ro)
    mouth_w = dist(mouth_l, mouth_r)
    left_w, right_w = dist(eye_lo, eye_li), dist(eye_ro, eye_ri)
    left_h = abs(pt(EYE_L_TOP)[1] - pt(EYE_L_BOTTOM)[1])
    right_h = abs(pt(EYE_R_TOP)[1] - pt(EYE_R_BOTTOM)[1])
    aperture = 0.5 * (left_h / max(1.0, left_w) + right_h / max(1.0, right_w))

    smile_ratio = mouth_w / eye_span if eye_span > 1.0 else 0.0
    return ExpressionState(
        smile=_clamp01((smile_ratio - 0.35) / 0.20),
        squint=_clamp01((0.22 - aperture) / 0.12),
        eye_span=eye_span,
        mouth_corners=(mouth_l, mouth_r),
        eye_corners=(eye_lo, eye_ro),
    )


def _disc_pair(
    frame_size: tuple[int, int],
    centers: tuple[tuple[int, int], tuple[int, int]],
    radius: int,
) -> np.ndarray:
    w, h = frame_size
    m = np.zeros((h, w), dtype=np.uint8)
    for c in centers:
        cv2.circle(m, c, radius, 255, cv2.FILLED, cv2.LINE_AA)
    m = cv2.GaussianBlur(m, (0, 0), radius * 0.5)
    return m.astype(np.float32) / 255.0


def build_wrinkle_boost_map(
    landmarks: LandmarksLike,
    frame_size: tuple[int, int],
    smile_boost: float,
    squint_boost: float,
    expression: ExpressionState | None = None,
) -> WeightMap:
    """口角・目尻にぼかした円形ブーストを置いたマップ (0.0-1.0)。

    目尻は細まり度と笑顔度の半分の大きい方で駆動する
    (笑うと目尻にもシワが出るため)。
    """
    w, h = frame_size
    boost = np.zeros((h, w), dtype=np.float32)
    ex = expression or estimate_expression(landmarks, frame_size)
    if ex.eye_span <= 0.0:
        return boost
    r = ex.disc_radius

    if smile_boost > 0.0 and ex.smile > 0.0:
        boost += _disc_pair(frame_size, ex.mouth_corners, r) * (smile_boost * ex.smile)

    eff_squint = max(ex.squint, 0.5 * ex.smile)
    if squint_boost > 0.0 and eff_squint > 0.0:
        boost += _disc_pair(frame_size, ex.eye_corners, r) * (squint_boost * eff_squint)

    return np.minimum(boost, 1.0)


def build_forehead_boost(
    frame_bgr: ImageBGR,
    regions: FaceRegions,
    detail: np.ndarray,
    radius_px: float,
    forehead_boost: float,
    margin_px: float = 8.0,
) -> WeightMap:
    """額の水平ジワを強調するブーストマップ (0.0-1.0)。

    眉より上 (目の最上点 − margin) の顔領域で、
    縦方向勾配 |gy| と負のディテール (暗部) の積を取る。

    Args:
        detail: L チャンネルの高周波成分 (L − base, 0-1 スケール)
    """
    h, w = frame_bgr.shape[:2]
    if forehead_boost <= 0.0 or not regions.has("face_oval"):
        return np.zeros((h, w), dtype=np.float32)

    min_eye_y = h
    for eye in (regions.left_eye, regions.right_eye):
        if len(eye):
            min_eye_y = min(min_eye_y, int(eye[:, 1].min()))
    cut = max(0, min(h - 1, min_eye_y - int(round(max(0.0, float(margin_px))))))

    band = np.zeros((h, w), dtype=np.uint8)
    fill_region(band, regions.face_oval, 255)
    band[cut:] = 0

    gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    gy_abs = np.abs(cv2.GaussianBlur(gy, (0, 0), 1.0))
    gy_n = np.minimum(gy_abs / robust_scale(gy_abs, band > 0), 1.0)

    dark = cv2.GaussianBlur(
        np.maximum(0.0, -detail).astype(np.float32), (0, 0), max(1.0, radius_px * 0.5)
    )
    dark_n = np.minimum(dark / 0.12, 1.0)

    band_f = band.astype(np.float32) / 255.0
    return np.minimum(1.0, gy_n * dark_n * band_f * forehead_boost).astype(np.float32)
