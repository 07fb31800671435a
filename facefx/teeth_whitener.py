"""
facefx/teeth_whitener.py
========================
歯のホワイトニング。

内唇の多角形を縮めたマスク内で、Lab の b* (黄み) を中立 128 へ寄せ、
L* をわずかに持ち上げる。
"""

from __future__ import annotations

import cv2
import numpy as np

from facefx.config import TeethParams
from facefx.regions import feather_mask, fill_region
from facefx.types import FaceRegions, ImageBGR, MaskImage


def build_teeth_mask(
    regions: FaceRegions,
    frame_size: tuple[int, int],
    shrink_px: float = 3.0,
) -> MaskImage:
    """内唇を塗りつぶし、唇へのにじみを避けるため shrink_px だけ収縮させる。"""
    w, h = frame_size
    mask = np.zeros((h, w), dtype=np.uint8)
    fill_region(mask, regions.lips_inner, 255)
    if shrink_px > 0.5:
        k = max(1, int(round(shrink_px)))
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
        mask = cv2.erode(mask, kernel)
    return feather_mask(mask, 5)


def apply_teeth_whitener(
    image: ImageBGR,
    regions: FaceRegions,
    teeth: TeethParams,
) -> ImageBGR:
    """歯を白くする。

    マスクが 0 でない画素のみ:
        b' = 128 + (b − 128) × (1 − 0.35 × strength)
        L' = L × (1 + 0.15 × strength)

    Returns:
        補正済み画像 (BGR, uint8)。strength = 0 なら入力のコピー。
    """
    s = min(max(teeth.strength, 0.0), 1.0)
    if s <= 0.0 or not regions.has("lips_inner"):
        return image.copy()

    h, w = image.shape[:2]
    inside = build_teeth_mask(regions, (w, h), teeth.margin_px) > 0
    if not np.any(inside):
        return image.copy()

    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
    b = lab[:, :, 2].astype(np.float32)
    l_ch = lab[:, :, 0].astype(np.float32)
    b_new = 128.0 + (b - 128.0) * (1.0 - 0.35 * s)
    l_new = l_ch * (1.0 + 0.15 * s)
    lab[:, :, 2] = np.where(inside, np.clip(b_new, 0, 255).astype(np.uint8), lab[:, :, 2])
    lab[:, :, 0] = np.where(inside, np.clip(l_new, 0, 255).astype(np.uint8), lab[:, :, 0])
    return cv2.cvtColor(lab, cv2.COLOR_LAB2BGR)
