"""
テスト共通フィクスチャ
======================
MediaPipe を使わずに、既知の位置に顔パーツを描いた合成フレームと
それに対応する 478 点ランドマークを生成する。
"""

import math

import cv2
import numpy as np
import pytest

from facefx.types import (
    FACE_OVAL_IDX,
    LEFT_EYE_IDX,
    LIPS_INNER_IDX,
    LIPS_OUTER_IDX,
    RIGHT_EYE_IDX,
)

W, H = 640, 480
FACE_CENTER = (320, 250)
FACE_AXES = (110, 150)
EYE_CENTERS = ((275, 215), (365, 215))
EYE_AXES = (22, 8)
MOUTH_CENTER = (320, 320)
LIPS_OUTER_AXES = (25, 12)
LIPS_INNER_AXES = (18, 4)
SKIN_BGR = (150, 175, 220)


def _ring(center, axes, angles_deg):
    cx, cy = center
    ax, ay = axes
    return [
        (cx + ax * math.cos(math.radians(a)), cy + ay * math.sin(math.radians(a)))
        for a in angles_deg
    ]


def make_landmarks() -> np.ndarray:
    """(478, 3) の正規化ランドマーク。未使用の点は顔中心に置く。"""
    px = np.zeros((478, 2), dtype=np.float64)
    px[:] = FACE_CENTER

    def put(indices, points):
        for idx, (x, y) in zip(indices, points):
            px[idx] = (x, y)

    put(FACE_OVAL_IDX, _ring(FACE_CENTER, FACE_AXES, [-90 + i * 10 for i in range(36)]))
    # 画像左の目は 目尻(左端) → 下 → 目頭 → 上、右の目はその鏡像
    put(LEFT_EYE_IDX, _ring(EYE_CENTERS[0], EYE_AXES, [180 - k * 22.5 for k in range(16)]))
    put(RIGHT_EYE_IDX, _ring(EYE_CENTERS[1], EYE_AXES, [k * 22.5 for k in range(16)]))
    # 唇は 左口角 → 下 → 右口角 → 上
    put(LIPS_OUTER_IDX, _ring(MOUTH_CENTER, LIPS_OUTER_AXES, [180 - k * 18 for k in range(20)]))
    put(LIPS_INNER_IDX, _ring(MOUTH_CENTER, LIPS_INNER_AXES, [180 - k * 18 for k in range(20)]))

    out = np.zeros((478, 3), dtype=np.float32)
    out[:, 0] = px[:, 0] / W
    out[:, 1] = px[:, 1] / H
    return out


def make_frame(seed: int = 0) -> np.ndarray:
    """グラデーション背景の上に肌色の顔・シワ・目・唇を描いた BGR フレーム。"""
    rng = np.random.default_rng(seed)
    xs = np.linspace(40, 200, W, dtype=np.float32)
    ys = np.linspace(60, 160, H, dtype=np.float32)
    frame = np.zeros((H, W, 3), dtype=np.float32)
    frame[:, :, 0] = xs[None, :]
    frame[:, :, 1] = ys[:, None]
    frame[:, :, 2] = 120.0
    frame = frame.astype(np.uint8)

    cv2.ellipse(frame, FACE_CENTER, FACE_AXES, 0, 0, 360, SKIN_BGR, -1)

    wrinkle_bgr = tuple(int(c * 0.75) for c in SKIN_BGR)
    # 額の横ジワ
    for y in (140, 155, 170):
        cv2.line(frame, (270, y), (370, y), wrinkle_bgr, 2, cv2.LINE_AA)
    # 目尻のシワ
    for dy in (-6, 0, 6):
        cv2.line(frame, (250, 215 + dy), (232, 210 + 2 * dy), wrinkle_bgr, 1, cv2.LINE_AA)
        cv2.line(frame, (390, 215 + dy), (408, 210 + 2 * dy), wrinkle_bgr, 1, cv2.LINE_AA)

    noise = rng.normal(0.0, 4.0, frame.shape)
    frame = np.clip(frame.astype(np.float32) + noise, 0, 255).astype(np.uint8)

    for c in EYE_CENTERS:
        cv2.ellipse(frame, c, EYE_AXES, 0, 0, 360, (40, 40, 40), -1)
    cv2.ellipse(frame, MOUTH_CENTER, LIPS_OUTER_AXES, 0, 0, 360, (90, 70, 180), -1)
    cv2.ellipse(frame, MOUTH_CENTER, LIPS_INNER_AXES, 0, 0, 360, (150, 200, 215), -1)
    return frame


def make_person_mask() -> np.ndarray:
    """顔楕円の内側を 255 とする人物マスク (uint8)。"""
    mask = np.zeros((H, W), dtype=np.uint8)
    cv2.ellipse(mask, FACE_CENTER, FACE_AXES, 0, 0, 360, 255, -1)
    return mask


@pytest.fixture
def frame_bgr() -> np.ndarray:
    return make_frame()


@pytest.fixture
def landmarks() -> np.ndarray:
    return make_landmarks()


@pytest.fixture
def person_mask() -> np.ndarray:
    return make_person_mask()


@pytest.fixture
def regions(landmarks):
    from facefx.regions import extract_face_regions
    return extract_face_regions(landmarks, (W, H))
