"""
facefx/pipeline.py
==================
1 フレーム分のエフェクト処理をまとめるパイプライン。

処理順:
    ランドマーク (ROI 再投影・座標補正)
      → 顔領域抽出
      → 肌スムージング → 唇 → 歯
      → 背景合成 (マスク + フレーム)
      → RGB 出力

各ステージは失敗してもそのステージだけを飛ばし、必ずフレームを返す。
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Callable, Optional

import cv2
import numpy as np
from PIL import Image

from facefx.auto_scale import AdaptiveScaleController
from facefx.compositor import BackgroundCompositor
from facefx.config import BackgroundMode, EffectParameters, EngineConfig
from facefx.errors import EffectsError, InputShapeError
from facefx.lip_refiner import apply_lip_refiner
from facefx.regions import (
    correct_landmark_axes,
    safe_extract_face_regions,
    transform_landmarks_with_rect,
)
from facefx.skin_smoother import apply_skin_smoothing
from facefx.teeth_whitener import apply_teeth_whitener
from facefx.types import (
    ImageBGR,
    ImageRGB,
    LandmarksLike,
    NormalizedRect,
    PipelineStatus,
    as_landmark_array,
)

logger = logging.getLogger(__name__)

# ステージ内で捕捉してスキップ扱いにする例外
_STAGE_ERRORS = (EffectsError, cv2.error)


def load_background_image(path: str) -> ImageBGR:
    """背景画像を読み込んで BGR 配列で返す (Pillow 経由)。"""
    with Image.open(path) as img:
        rgb = np.array(img.convert("RGB"))
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def init_opencl(requested: bool) -> bool:
    """OpenCL を要求どおりに切り替え、実際に有効かどうかを返す。"""
    available = cv2.ocl.haveOpenCL()
    cv2.ocl.setUseOpenCL(bool(requested and available))
    active = bool(requested and available and cv2.ocl.useOpenCL())
    if requested and not available:
        logger.info("OpenCL は利用できません。CPU で処理します")
    elif active:
        logger.info("OpenCL を有効化しました")
    return active


class EffectsPipeline:
    """顔エフェクト＋背景合成のフレーム処理器。

    使用例:
        pipeline = EffectsPipeline(EngineConfig(auto_scale=True))
        params = apply_preset("Natural")
        rgb = pipeline.process_frame(frame_bgr, mask, landmarks, params)
        pipeline.update_fps(measured_fps)

    コンテキストマネージャ対応:
        with EffectsPipeline() as pipeline:
            ...
    """

    def __init__(
        self,
        engine: Optional[EngineConfig] = None,
        compositor: Optional[BackgroundCompositor] = None,
        scaler: Optional[AdaptiveScaleController] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.engine = engine or EngineConfig()
        self.compositor = compositor or BackgroundCompositor()
        self.scaler = scaler or AdaptiveScaleController(
            initial_scale=self.engine.initial_scale,
            target_fps=self.engine.target_fps,
            enabled=self.engine.auto_scale,
        )
        self._clock = clock
        self._opencl_active = init_opencl(self.engine.enable_opencl)
        self._bg_image: Optional[ImageBGR] = None
        self._bg_image_path: Optional[str] = None
        self._last_size: Optional[tuple[int, int]] = None
        self._frames = 0
        self._stage_ms: dict[str, float] = defaultdict(float)

    # ------ コンテキストマネージャ ------
    def __enter__(self) -> "EffectsPipeline":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """キャッシュを解放し、OpenCL を無効に戻す。"""
        self.compositor.invalidate_cache()
        self._bg_image = None
        self._bg_image_path = None
        if self._opencl_active:
            cv2.ocl.setUseOpenCL(False)
            self._opencl_active = False

    # ------ 背景画像 ------
    def set_background_image(self, image_bgr: Optional[np.ndarray]) -> None:
        """背景画像を差し替える。グレー / BGRA は 3ch BGR に揃えて保持する。"""
        if image_bgr is not None:
            image_bgr = self.compositor.as_bgr_background(image_bgr)
        self._bg_image = image_bgr
        self._bg_image_path = None
        self.compositor.invalidate_cache()

    def _background_image(self, params: EffectParameters) -> Optional[ImageBGR]:
        path = params.background.image_path
        if path and path != self._bg_image_path:
            try:
                self._bg_image = load_background_image(path)
            except OSError as exc:
                logger.warning("背景画像を読み込めません (%s): %s", path, exc)
                self._bg_image = None
            self._bg_image_path = path
            self.compositor.invalidate_cache()
        return self._bg_image

    # ------ FPS / ステータス ------
    def effective_scale(self, params: EffectParameters) -> float:
        """自動スケール有効時はコントローラの値、それ以外は設定値。"""
        if self.scaler.enabled:
            return self.scaler.scale
        return params.skin.adv_scale

    def update_fps(self, fps: float) -> bool:
        return self.scaler.update(fps)

    def set_camera_fps(self, camera_fps: float) -> None:
        self.scaler.update_target_from_camera(camera_fps)

    def status(self, params: Optional[EffectParameters] = None) -> PipelineStatus:
        return PipelineStatus(
            processing_scale=self.effective_scale(params or EffectParameters()),
            current_fps=self.scaler.current_fps,
            average_fps=self.scaler.average_fps,
            target_fps=self.scaler.target_fps,
            opencl_active=self._opencl_active,
            auto_scale_enabled=self.scaler.enabled,
            frames_processed=self._frames,
        )

    # ------ ステージ実行 ------
    def _run_stage(self, name: str, fallback, fn, *args):
        t0 = self._clock()
        try:
            return fn(*args)
        except _STAGE_ERRORS as exc:
            logger.warning("[%s] ステージをスキップ: %s", name, exc)
            return fallback
        finally:
            self._stage_ms[name] += (self._clock() - t0) * 1000.0

    def _log_performance(self) -> None:
        if not self.engine.perf_logging or self._frames % self.engine.perf_log_interval:
            return
        n = self.engine.perf_log_interval
        summary = ", ".join(f"{k}={v / n:.2f}ms" for k, v in sorted(self._stage_ms.items()))
        logger.info(
            "パフォーマンス (直近 %d フレーム平均): %s | scale=%.3f fps=%.1f",
            n, summary, self.scaler.scale, self.scaler.average_fps,
        )
        self._stage_ms.clear()

    def _validate_frame(self, frame_bgr: np.ndarray) -> ImageBGR:
        frame = np.asarray(frame_bgr)
        if frame.size == 0 or frame.ndim not in (2, 3):
            raise InputShapeError(f"フレームの形状が不正です: {frame.shape}")
        if frame.dtype != np.uint8:
            raise InputShapeError(f"フレームは uint8 である必要があります: {frame.dtype}")
        if frame.ndim == 2:
            return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
        if frame.shape[2] != 3:
            raise InputShapeError(f"チャンネル数が不正です: {frame.shape[2]}")
        return frame

    # ------ 顔エフェクト ------
    def _prepare_landmarks(
        self,
        landmarks: LandmarksLike,
        frame_size: tuple[int, int],
        roi_rect: Optional[NormalizedRect],
    ) -> np.ndarray:
        pts = as_landmark_array(landmarks)
        if roi_rect is not None and self.engine.apply_roi_rotation:
            pts = transform_landmarks_with_rect(pts, roi_rect, frame_size)
        return correct_landmark_axes(
            pts, self.engine.flip_x, self.engine.flip_y, self.engine.swap_xy
        )

    def apply_face_effects(
        self,
        frame_bgr: ImageBGR,
        landmarks: LandmarksLike,
        params: EffectParameters,
        roi_rect: Optional[NormalizedRect] = None,
    ) -> ImageBGR:
        """肌 → 唇 → 歯 の順に顔エフェクトを適用した BGR 画像を返す。"""
        h, w = frame_bgr.shape[:2]
        pts = self._run_stage(
            "landmarks", None, self._prepare_landmarks, landmarks, (w, h), roi_rect
        )
        if pts is None:
            return frame_bgr
        ok, regions = safe_extract_face_regions(pts, (w, h))
        if not ok:
            return frame_bgr

        out = frame_bgr
        if params.skin.enabled:
            out = self._run_stage(
                "skin", out, apply_skin_smoothing,
                out, regions, pts, params.skin, params.wrinkle,
                self.effective_scale(params), self._opencl_active,
            )
        if params.lips.enabled:
            out = self._run_stage(
                "lips", out, apply_lip_refiner, out, regions, pts, params.lips
            )
        if params.teeth.enabled:
            out = self._run_stage(
                "teeth", out, apply_teeth_whitener, out, regions, params.teeth
            )
        return out

    # ------ メイン ------
    def process_frame(
        self,
        frame_bgr: ImageBGR,
        mask: Optional[np.ndarray],
        landmarks: Optional[LandmarksLike],
        params: EffectParameters,
        roi_rect: Optional[NormalizedRect] = None,
    ) -> ImageRGB:
        """1 フレームを処理して RGB 画像を返す。例外は送出しない。

        Args:
            frame_bgr: カメラフレーム (BGR, uint8)
            mask: セグメンテーションマスク (None なら背景合成なし)
            landmarks: 正規化ランドマーク (None なら顔エフェクトなし)
            params: エフェクト設定
            roi_rect: ランドマークの基準 ROI (apply_roi_rotation 時のみ使用)

        Returns:
            合成済み画像 (RGB, uint8)
        """
        try:
            frame = self._validate_frame(frame_bgr)
        except InputShapeError as exc:
            logger.warning("フレームを処理できません: %s", exc)
            w, h = self._last_size or (1, 1)
            return np.zeros((h, w, 3), dtype=np.uint8)

        h, w = frame.shape[:2]
        self._last_size = (w, h)
        out = frame

        face_wanted = params.skin.enabled or params.lips.enabled or params.teeth.enabled
        if self.engine.enable_face_effects and landmarks is not None and face_wanted:
            out = self.apply_face_effects(out, landmarks, params, roi_rect)

        passthrough = cv2.cvtColor(out, cv2.COLOR_BGR2RGB)
        background_wanted = (
            self.engine.show_mask or params.background.mode != BackgroundMode.NONE
        )
        if self.engine.enable_background_effects and mask is not None and background_wanted:
            rgb = self._run_stage(
                "background", passthrough, self.compositor.composite,
                out, mask, params.background, self._background_image(params),
                self._opencl_active, self.effective_scale(params), self.engine.show_mask,
            )
        else:
            rgb = passthrough

        self._frames += 1
        self._log_performance()
        return rgb
