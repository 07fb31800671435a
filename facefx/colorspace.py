"""
facefx/colorspace.py
====================
色空間変換ユーティリティ。

設計原則:
  1. 輝度と色情報を分離: Lab 色空間で L / a* / b* を個別に操作
  2. float32 パイプライン: 演算は float32、最後にのみ uint8 へ変換
  3. uint8 への変換は丸め＋飽和 (OpenCV の convertTo と同じ挙動)
"""

from __future__ import annotations

import cv2
import numpy as np
from facefx.types import ImageBGR, ImageRGB


def to_u8(x: np.ndarray) -> np.ndarray:
    """float 配列を丸めて 0-255 に飽和させ uint8 に変換する。"""
    return np.clip(np.rint(x), 0, 255).astype(np.uint8)


def bgr_to_lab(image: ImageBGR) -> np.ndarray:
    """BGR (uint8) → Lab (float32, 各チャンネル 0-255 スケール)。"""
    return cv2.cvtColor(image, cv2.COLOR_BGR2LAB).astype(np.float32)


def lab_to_bgr(lab: np.ndarray) -> ImageBGR:
    """Lab (float32) → BGR (uint8)。"""
    return cv2.cvtColor(to_u8(lab), cv2.COLOR_LAB2BGR)


def bgr_to_rgb(image: ImageBGR) -> ImageRGB:
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def rgb_color_to_lab(rgb: tuple[float, float, float]) -> tuple[float, float, float]:
    """0-1 の RGB 色を 8bit Lab 値 (L, a, b) に変換する。

    Args:
        rgb: (R, G, B) 各 0.0-1.0

    Returns:
        (L, a, b): OpenCV 8bit Lab スケール (a/b は 128 が無彩色)
    """
    r, g, b = (min(max(float(c), 0.0), 1.0) for c in rgb)
    patch = np.array([[[b * 255.0, g * 255.0, r * 255.0]]], dtype=np.float32)
    lab = cv2.cvtColor(to_u8(patch), cv2.COLOR_BGR2LAB)[0, 0]
    return float(lab[0]), float(lab[1]), float(lab[2])


def rgb_color_to_bgr_u8(rgb: tuple[float, float, float]) -> tuple[int, int, int]:
    """0-1 の RGB 色を OpenCV 用 BGR (0-255) タプルに変換する。"""
    r, g, b = (min(max(float(c), 0.0), 1.0) for c in rgb)
    return (int(round(b * 255)), int(round(g * 255)), int(round(r * 255)))
