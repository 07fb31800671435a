"""
facefx/types.py
===============
エフェクトパイプライン全体で使用するデータ型を一元定義。

画像はすべて numpy 配列 (OpenCV 互換) で扱い、
各ステージは入力を変更せず新しい配列を返す。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Union
import numpy as np
from numpy.typing import NDArray


# ============================================================
# 基本画像型
# ============================================================

# BGR画像 (カメラ/OpenCV標準): shape: (H, W, 3), dtype: uint8
ImageBGR = NDArray[np.uint8]

# RGB画像 (表示/テクスチャ転送用): shape: (H, W, 3), dtype: uint8
ImageRGB = NDArray[np.uint8]

# グレースケール画像: shape: (H, W), dtype: uint8
ImageGray = NDArray[np.uint8]

# マスク画像: shape: (H, W), dtype: uint8, 値域: 0-255
MaskImage = NDArray[np.uint8]

# 重みマップ: shape: (H, W), dtype: float32, 値域: 0.0-1.0
WeightMap = NDArray[np.float32]

# ピクセル座標の多角形: shape: (N, 2), dtype: int32
Polygon = NDArray[np.int32]


# ============================================================
# MediaPipe ランドマーク型
# ============================================================

@dataclass
class LandmarkPoint:
    """正規化された単一ランドマーク座標。

    Attributes:
        x: 水平位置 (0.0=左端, 1.0=右端)
        y: 垂直位置 (0.0=上端, 1.0=下端)
        z: 深度 (相対値)
    """
    x: float
    y: float
    z: float = 0.0

    def to_pixel(self, img_w: int, img_h: int) -> tuple[int, int]:
        """正規化座標を丸めたピクセル座標に変換する (画像内にクランプ)。"""
        px = min(max(int(round(self.x * img_w)), 0), img_w - 1)
        py = min(max(int(round(self.y * img_h)), 0), img_h - 1)
        return (px, py)


@dataclass
class FaceLandmarks:
    """1つの顔から検出されたランドマーク群 (通常 478 点)。

    Attributes:
        points: LandmarkPoint のリスト
                インデックスは MediaPipe Face Mesh の定義に準拠
    """
    points: list[LandmarkPoint] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.points)

    def to_array(self) -> NDArray[np.float32]:
        """shape: (N, 3), dtype: float32 の配列として返す。"""
        if not self.points:
            return np.zeros((0, 3), dtype=np.float32)
        return np.array(
            [[p.x, p.y, p.z] for p in self.points], dtype=np.float32
        )

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "FaceLandmarks":
        arr = np.asarray(arr, dtype=np.float32)
        z = arr[:, 2] if arr.shape[1] > 2 else np.zeros(len(arr), np.float32)
        return cls(points=[
            LandmarkPoint(float(x), float(y), float(zz))
            for x, y, zz in zip(arr[:, 0], arr[:, 1], z)
        ])


# パイプラインが受け付けるランドマーク表現
LandmarksLike = Union[FaceLandmarks, Sequence[LandmarkPoint], np.ndarray]


def as_landmark_array(landmarks: LandmarksLike | None) -> NDArray[np.float32]:
    """任意のランドマーク表現を (N, 2) の正規化座標配列にそろえる。"""
    if landmarks is None:
        return np.zeros((0, 2), dtype=np.float32)
    if isinstance(landmarks, FaceLandmarks):
        return landmarks.to_array()[:, :2]
    if isinstance(landmarks, np.ndarray):
        arr = landmarks.astype(np.float32, copy=False)
        if arr.ndim != 2 or arr.shape[1] < 2:
            return np.zeros((0, 2), dtype=np.float32)
        return arr[:, :2]
    if len(landmarks) == 0:
        return np.zeros((0, 2), dtype=np.float32)
    return np.array([[p.x, p.y] for p in landmarks], dtype=np.float32)


@dataclass
class NormalizedRect:
    """ランドマークの基準となる回転付き顔 ROI (正規化座標)。

    Attributes:
        x_center, y_center: ROI 中心 (0.0-1.0)
        width, height: ROI サイズ (フレーム比)
        rotation: 回転角 (ラジアン)
    """
    x_center: float = 0.5
    y_center: float = 0.5
    width: float = 1.0
    height: float = 1.0
    rotation: float = 0.0


# ============================================================
# 顔パーツ インデックス定義
# MediaPipe Face Mesh の 478 点から主要パーツを抽出
# ============================================================

# フェイスライン (顔の外周)
FACE_OVAL_IDX = [
    10, 338, 297, 332, 284, 251, 389, 356,
    454, 323, 361, 288, 397, 365, 379, 378,
    400, 377, 152, 148, 176, 149, 150, 136,
    172, 58, 132, 93, 234, 127, 162, 21,
    54, 103, 67, 109,
]

# 唇の外周
LIPS_OUTER_IDX = [
    61, 146, 91, 181, 84, 17, 314, 405, 321, 375,
    291, 409, 270, 269, 267, 0, 37, 39, 40, 185,
]

# 唇の内周
LIPS_INNER_IDX = [
    78, 95, 88, 178, 87, 14, 317, 402, 318, 324,
    308, 415, 310, 311, 312, 13, 82, 81, 80, 191,
]

# 画像左側の目 (被写体の右目)
LEFT_EYE_IDX = [
    33, 7, 163, 144, 145, 153, 154, 155, 133,
    173, 157, 158, 159, 160, 161, 246,
]

# 画像右側の目 (被写体の左目)
RIGHT_EYE_IDX = [
    263, 249, 390, 373, 374, 380, 381, 382, 362,
    398, 384, 385, 386, 387, 388, 466,
]

# 上下の唇を別々の多角形にするための弧 (口角 61 → 291)
LIPS_OUTER_ARC_A = [61, 146, 91, 181, 84, 17, 314, 405, 321, 375, 291]
LIPS_OUTER_ARC_B = [61, 185, 40, 39, 37, 0, 267, 269, 270, 409, 291]
LIPS_INNER_ARC_A = [78, 95, 88, 178, 87, 14, 317, 402, 318, 324, 308]
LIPS_INNER_ARC_B = [78, 191, 80, 81, 82, 13, 312, 311, 310, 415, 308]

# 表情推定用キーポイント
MOUTH_LEFT = 61
MOUTH_RIGHT = 291
EYE_L_OUTER = 33
EYE_L_INNER = 133
EYE_R_OUTER = 263
EYE_R_INNER = 362
EYE_L_TOP = 159
EYE_L_BOTTOM = 145
EYE_R_TOP = 386
EYE_R_BOTTOM = 374

# 顔エフェクトに必要な最小ランドマーク数
MIN_LANDMARKS = 200


# ============================================================
# 顔領域
# ============================================================

REGION_NAMES = ("face_oval", "lips_outer", "lips_inner", "left_eye", "right_eye")


def _empty_poly() -> Polygon:
    return np.zeros((0, 2), dtype=np.int32)


@dataclass
class FaceRegions:
    """ピクセル座標に変換された顔パーツの多角形。

    3 点未満の領域は「存在しない」扱いとなり、後段でスキップされる。
    face_oval のみ凸包順、唇/目はランドマーク順のまま保持する。
    """
    face_oval: Polygon = field(default_factory=_empty_poly)
    lips_outer: Polygon = field(default_factory=_empty_poly)
    lips_inner: Polygon = field(default_factory=_empty_poly)
    left_eye: Polygon = field(default_factory=_empty_poly)
    right_eye: Polygon = field(default_factory=_empty_poly)

    @classmethod
    def empty(cls) -> "FaceRegions":
        return cls()

    def has(self, name: str) -> bool:
        return len(getattr(self, name)) >= 3

    @property
    def is_empty(self) -> bool:
        return not any(self.has(n) for n in REGION_NAMES)

    def shifted(self, dx: int, dy: int) -> "FaceRegions":
        """全領域を (dx, dy) だけ平行移動したコピーを返す。"""
        offset = np.array([dx, dy], dtype=np.int32)
        return FaceRegions(**{
            n: (getattr(self, n) + offset).astype(np.int32) for n in REGION_NAMES
        })

    def scaled(self, s: float) -> "FaceRegions":
        """全領域を原点基準で s 倍したコピーを返す (座標は丸め)。"""
        return FaceRegions(**{
            n: np.rint(getattr(self, n).astype(np.float32) * s).astype(np.int32)
            for n in REGION_NAMES
        })


# ============================================================
# パイプライン状態
# ============================================================

@dataclass
class PipelineStatus:
    """表示オーバーレイ向けの読み取り専用ステータス。"""
    processing_scale: float = 1.0
    current_fps: float = 0.0
    average_fps: float = 0.0
    target_fps: float = 14.0
    opencl_active: bool = False
    auto_scale_enabled: bool = False
    frames_processed: int = 0
