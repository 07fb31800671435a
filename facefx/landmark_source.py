"""
facefx/landmark_source.py
=========================
MediaPipe Tasks API による顔ランドマーク (478 点) と人物セグメンテーションマスクの取得。

パイプラインへの入力 (ランドマーク + マスク) を静止画・動画フレームから生成する。
モデルファイルは初回使用時に models/ へダウンロードする。
"""

from __future__ import annotations

import logging
import os
import urllib.request
from typing import Optional

import cv2
import mediapipe as mp
import numpy as np
from mediapipe.tasks.python import BaseOptions
from mediapipe.tasks.python.vision import (
    FaceLandmarker,
    FaceLandmarkerOptions,
    ImageSegmenter,
    ImageSegmenterOptions,
    RunningMode,
)

from facefx.errors import InputShapeError
from facefx.types import FaceLandmarks, ImageBGR, LandmarkPoint

logger = logging.getLogger(__name__)

_MODEL_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "models")
_LANDMARKER_FILENAME = "face_landmarker.task"
_LANDMARKER_URL = (
    "https://storage.googleapis.com/mediapipe-models/"
    "face_landmarker/face_landmarker/float16/latest/face_landmarker.task"
)
_SEGMENTER_FILENAME = "selfie_segmenter.tflite"
_SEGMENTER_URL = (
    "https://storage.googleapis.com/mediapipe-models/"
    "image_segmenter/selfie_segmenter/float16/latest/selfie_segmenter.tflite"
)


def _ensure_model(filename: str, url: str, model_dir: str = _MODEL_DIR) -> str:
    """モデルファイルが存在しなければダウンロードしてパスを返す。"""
    path = os.path.join(model_dir, filename)
    if os.path.exists(path):
        return path

    os.makedirs(model_dir, exist_ok=True)
    logger.info("モデルをダウンロード中... (%s)", url)
    req = urllib.request.Request(url, headers={"User-Agent": "Mozilla/5.0"})
    with urllib.request.urlopen(req) as resp:
        data = resp.read()
    with open(path, "wb") as f:
        f.write(data)
    logger.info("ダウンロード完了: %s (%.1f MB)", filename, len(data) / (1024 * 1024))
    return path


def _read_model(path: str) -> bytes:
    # MediaPipe の C++ バックエンドは非 ASCII パスを開けないためバイト列で渡す
    with open(path, "rb") as f:
        return f.read()


class LandmarkSource:
    """顔ランドマークと人物マスクをまとめて取得する検出器。

    使用例:
        with LandmarkSource() as source:
            landmarks, mask = source.detect(frame_bgr)
            rgb = pipeline.process_frame(frame_bgr, mask, landmarks, params)

    landmarks は FaceLandmarks (顔がなければ None)、
    mask は (H, W) float32 の人物確率 (セグメンテーション無効時は None)。
    """

    def __init__(
        self,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
        enable_segmentation: bool = True,
        video: bool = False,
        model_dir: str = _MODEL_DIR,
    ):
        """
        Args:
            min_detection_confidence: 顔検出の最小信頼度 (0.0-1.0)
            min_tracking_confidence: 顔存在の最小信頼度 (0.0-1.0)
            enable_segmentation: 人物マスクも推定するか
            video: True で VIDEO モード (detect に timestamp_ms が必要)
            model_dir: モデルファイルの保存先
        """
        self._mode = RunningMode.VIDEO if video else RunningMode.IMAGE
        self._last_ts = -1

        landmarker_path = _ensure_model(_LANDMARKER_FILENAME, _LANDMARKER_URL, model_dir)
        options = FaceLandmarkerOptions(
            base_options=BaseOptions(model_asset_buffer=_read_model(landmarker_path)),
            running_mode=self._mode,
            num_faces=1,
            min_face_detection_confidence=min_detection_confidence,
            min_face_presence_confidence=min_tracking_confidence,
            min_tracking_confidence=min_tracking_confidence,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False,
        )
        self._landmarker: Optional[FaceLandmarker] = FaceLandmarker.create_from_options(options)

        self._segmenter: Optional[ImageSegmenter] = None
        if enable_segmentation:
            segmenter_path = _ensure_model(_SEGMENTER_FILENAME, _SEGMENTER_URL, model_dir)
            seg_options = ImageSegmenterOptions(
                base_options=BaseOptions(model_asset_buffer=_read_model(segmenter_path)),
                running_mode=self._mode,
                output_confidence_masks=True,
                output_category_mask=False,
            )
            self._segmenter = ImageSegmenter.create_from_options(seg_options)

    # ------ コンテキストマネージャ ------
    def __enter__(self) -> "LandmarkSource":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """MediaPipe リソースを解放。"""
        if self._landmarker:
            self._landmarker.close()
            self._landmarker = None
        if self._segmenter:
            self._segmenter.close()
            self._segmenter = None

    # ------ メイン検出 ------
    def detect(
        self,
        frame_bgr: ImageBGR,
        timestamp_ms: Optional[int] = None,
    ) -> tuple[Optional[FaceLandmarks], Optional[np.ndarray]]:
        """BGR フレームからランドマークと人物マスクを取得する。

        Args:
            frame_bgr: BGR 画像 (H, W, 3), uint8
            timestamp_ms: VIDEO モードでのフレーム時刻 (単調増加)

        Returns:
            (FaceLandmarks または None, マスクまたは None)

        Raises:
            InputShapeError: フレームが 3ch uint8 でない
            RuntimeError: close() 済み
        """
        if self._landmarker is None:
            raise RuntimeError("LandmarkSource は既に close() されています")
        if frame_bgr is None or frame_bgr.ndim != 3 or frame_bgr.shape[2] != 3:
            raise InputShapeError("フレームは (H, W, 3) の BGR 画像である必要があります")

        rgb = np.ascontiguousarray(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB))
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

        if self._mode == RunningMode.VIDEO:
            ts = self._next_timestamp(timestamp_ms)
            result = self._landmarker.detect_for_video(mp_image, ts)
            seg = self._segmenter.segment_for_video(mp_image, ts) if self._segmenter else None
        else:
            result = self._landmarker.detect(mp_image)
            seg = self._segmenter.segment(mp_image) if self._segmenter else None

        landmarks = None
        if result.face_landmarks:
            landmarks = FaceLandmarks(points=[
                LandmarkPoint(x=lm.x, y=lm.y, z=lm.z) for lm in result.face_landmarks[0]
            ])

        mask = None
        if seg is not None and seg.confidence_masks:
            # selfie_segmenter は 1 クラス (人物の確率)
            mask = np.array(seg.confidence_masks[-1].numpy_view(), dtype=np.float32)
            if mask.ndim == 3:
                mask = mask[:, :, 0]
        return landmarks, mask

    def _next_timestamp(self, timestamp_ms: Optional[int]) -> int:
        ts = self._last_ts + 1 if timestamp_ms is None else int(timestamp_ms)
        # VIDEO モードのタイムスタンプは狭義単調増加でなければならない
        ts = max(ts, self._last_ts + 1)
        self._last_ts = ts
        return ts
