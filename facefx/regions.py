"""
facefx/regions.py
=================
正規化ランドマーク → ピクセル座標の顔パーツ多角形への変換。

ランドマーク供給元ごとの座標系の違い (左右/上下反転・xy 入れ替え) を補正し、
後段の全ステージが共有する FaceRegions と顔マスクを生成する。
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import cv2
import numpy as np

from facefx.errors import InputShapeError, RegionExtractionError
from facefx.types import (
    FACE_OVAL_IDX,
    LEFT_EYE_IDX,
    LIPS_INNER_IDX,
    LIPS_OUTER_IDX,
    MIN_LANDMARKS,
    RIGHT_EYE_IDX,
    FaceRegions,
    LandmarksLike,
    MaskImage,
    NormalizedRect,
    Polygon,
    as_landmark_array,
)

logger = logging.getLogger(__name__)


def _check_size(frame_size: tuple[int, int]) -> tuple[int, int]:
    w, h = int(frame_size[0]), int(frame_size[1])
    if w <= 0 or h <= 0:
        raise InputShapeError(f"フレームサイズが不正です: {w}x{h}")
    return w, h


def landmarks_to_pixels(
    pts: np.ndarray,
    indices: Sequence[int],
    frame_size: tuple[int, int],
    flip_x: bool = False,
    flip_y: bool = False,
    swap_xy: bool = False,
) -> Polygon:
    """指定インデックスのランドマークをピクセル座標に変換する。

    範囲外のインデックスは読み飛ばす。座標は丸めた上で画像内にクランプ。

    Args:
        pts: (N, 2) 正規化座標
        indices: 取り出すランドマーク番号
        frame_size: (W, H)

    Returns:
        shape: (M, 2), dtype: int32
    """
    w, h = frame_size
    idx = [k for k in indices if 0 <= k < len(pts)]
    if not idx:
        return np.zeros((0, 2), dtype=np.int32)
    sel = pts[idx].astype(np.float64)
    nx, ny = sel[:, 0], sel[:, 1]
    if swap_xy:
        nx, ny = ny, nx
    if flip_x:
        nx = 1.0 - nx
    if flip_y:
        ny = 1.0 - ny
    x = np.clip(np.rint(nx * w), 0, w - 1)
    y = np.clip(np.rint(ny * h), 0, h - 1)
    return np.stack([x, y], axis=1).astype(np.int32)


def _hull_order(poly: Polygon) -> Polygon:
    if len(poly) < 4:
        return poly
    hull_idx = cv2.convexHull(poly, clockwise=False, returnPoints=False)
    return poly[hull_idx.ravel()].astype(np.int32)


def extract_face_regions(
    landmarks: LandmarksLike,
    frame_size: tuple[int, int],
    flip_x: bool = False,
    flip_y: bool = False,
    swap_xy: bool = False,
) -> FaceRegions:
    """ランドマークから顔パーツ多角形を構築する。

    凸包は face_oval のみに適用し、唇と目は解剖学的な形を保つため
    ランドマーク順のまま残す。

    Args:
        landmarks: 正規化ランドマーク (200 点以上)
        frame_size: (W, H)
        flip_x / flip_y / swap_xy: 座標系の補正

    Returns:
        FaceRegions

    Raises:
        RegionExtractionError: ランドマーク数不足またはフレームサイズ不正
    """
    pts = as_landmark_array(landmarks)
    if len(pts) < MIN_LANDMARKS:
        raise RegionExtractionError(
            f"ランドマーク数が不足しています: {len(pts)} < {MIN_LANDMARKS}"
        )
    try:
        size = _check_size(frame_size)
    except InputShapeError as exc:
        raise RegionExtractionError(str(exc)) from exc

    def poly(indices: Sequence[int]) -> Polygon:
        return landmarks_to_pixels(pts, indices, size, flip_x, flip_y, swap_xy)

    return FaceRegions(
        face_oval=_hull_order(poly(FACE_OVAL_IDX)),
        lips_outer=poly(LIPS_OUTER_IDX),
        lips_inner=poly(LIPS_INNER_IDX),
        left_eye=poly(LEFT_EYE_IDX),
        right_eye=poly(RIGHT_EYE_IDX),
    )


def safe_extract_face_regions(
    landmarks: LandmarksLike | None,
    frame_size: tuple[int, int],
    flip_x: bool = False,
    flip_y: bool = False,
    swap_xy: bool = False,
) -> tuple[bool, FaceRegions]:
    """例外を送出しない extract_face_regions。

    Returns:
        (成功フラグ, FaceRegions)。失敗時は全領域が空の FaceRegions。
        顔輪郭または唇外周が得られなかった場合も失敗扱い。
    """
    try:
        regions = extract_face_regions(landmarks, frame_size, flip_x, flip_y, swap_xy)
    except RegionExtractionError as exc:
        logger.debug("顔領域の抽出をスキップ: %s", exc)
        return False, FaceRegions.empty()
    ok = len(regions.face_oval) > 0 and len(regions.lips_outer) > 0
    return ok, regions


def correct_landmark_axes(
    landmarks: LandmarksLike,
    flip_x: bool = False,
    flip_y: bool = False,
    swap_xy: bool = False,
) -> np.ndarray:
    """座標系の補正 (xy 入れ替え → 反転) を正規化座標に直接適用する。

    Returns:
        shape: (N, 2), dtype: float32
    """
    pts = as_landmark_array(landmarks).copy()
    if swap_xy:
        pts = pts[:, ::-1].copy()
    if flip_x:
        pts[:, 0] = 1.0 - pts[:, 0]
    if flip_y:
        pts[:, 1] = 1.0 - pts[:, 1]
    return pts


def transform_landmarks_with_rect(
    landmarks: LandmarksLike,
    rect: NormalizedRect,
    frame_size: tuple[int, int],
) -> np.ndarray:
    """ROI 基準のランドマークをフレーム全体の正規化座標に再投影する。

    ROI 中心からのオフセットをピクセル単位で回転させ、フレーム比に戻す。

    Returns:
        shape: (N, 2), dtype: float32
    """
    w, h = _check_size(frame_size)
    pts = as_landmark_array(landmarks).astype(np.float64)
    if rect.width <= 0 or rect.height <= 0:
        raise InputShapeError(f"ROI サイズが不正です: {rect.width}x{rect.height}")
    ox = (pts[:, 0] - 0.5) * rect.width * w
    oy = (pts[:, 1] - 0.5) * rect.height * h
    c, s = math.cos(rect.rotation), math.sin(rect.rotation)
    rx = ox * c - oy * s
    ry = ox * s + oy * c
    out = np.stack([rect.x_center + rx / w, rect.y_center + ry / h], axis=1)
    return out.astype(np.float32)


# ============================================================
# マスク生成
# ============================================================

def fill_region(mask: MaskImage, poly: Polygon, value: int) -> None:
    """3 点以上ある多角形のみを塗りつぶす (in-place)。"""
    if len(poly) >= 3:
        cv2.fillPoly(mask, [poly.reshape(-1, 1, 2)], int(value))


def face_skin_mask(
    regions: FaceRegions,
    frame_size: tuple[int, int],
    fill: int = 255,
) -> MaskImage:
    """顔輪郭から唇・両目を除いた肌領域マスクを生成。

    Returns:
        shape: (H, W), dtype: uint8, 値: 0 or fill
    """
    w, h = frame_size
    mask = np.zeros((h, w), dtype=np.uint8)
    fill_region(mask, regions.face_oval, fill)
    for poly in (regions.lips_outer, regions.left_eye, regions.right_eye):
        fill_region(mask, poly, 0)
    return mask


def feather_mask(mask: MaskImage, ksize: int) -> MaskImage:
    """マスクの境界をガウシアンでぼかす。ksize <= 1 ならそのまま返す。"""
    if ksize <= 1:
        return mask
    k = int(ksize) | 1
    return cv2.GaussianBlur(mask, (k, k), 0)
