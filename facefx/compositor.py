"""
facefx/compositor.py
====================
セグメンテーションマスクによる背景合成 (ぼかし / 画像 / 単色)。

- マスクは 1ch uint8 / 1ch float / 4ch uint8 を受け付け、8bit 1ch に正規化
- ぼかし背景は「マスク正規化ぼかし」 blur(F·bg) / blur(bg) で人物の色のにじみを防ぐ
- 縮小解像度での高速パス、背景バッファのキャッシュ、OpenCL (cv2.UMat) パスを持つ
- 出力は常に RGB

チャンネル選択とキャッシュはインスタンスが保持し、ロックで保護する。
"""

from __future__ import annotations

import logging
import threading
import zlib
from typing import Optional

import cv2
import numpy as np

from facefx.colorspace import rgb_color_to_bgr_u8, to_u8
from facefx.config import BackgroundMode, BackgroundParams, odd_kernel
from facefx.errors import AmbiguousMaskFormatError, InputShapeError
from facefx.types import ImageBGR, ImageRGB, MaskImage

logger = logging.getLogger(__name__)

_CHANNEL_NAMES = "BGRA"
# アルファチャンネルを選ぶには色チャンネルの最大平均をこれだけ上回る必要がある
_ALPHA_BIAS = 10.0
_EPS = 1e-6
_MAX_CACHE_ENTRIES = 4


def _clamp_scale(scale: float) -> float:
    return min(max(float(scale), 0.4), 1.0)


def _is_full_scale(scale: float) -> bool:
    return abs(scale - 1.0) < 1e-3


def _downscale(image: np.ndarray, scale: float) -> np.ndarray:
    interp = cv2.INTER_LINEAR if scale >= 0.85 else cv2.INTER_AREA
    return cv2.resize(image, None, fx=scale, fy=scale, interpolation=interp)


def _feathered_alpha(mask_u8: MaskImage, feather_px: float) -> np.ndarray:
    """マスクを 0-1 の float にし、feather_px > 0.5 なら境界をぼかす。"""
    alpha = mask_u8.astype(np.float32) / 255.0
    if feather_px > 0.5:
        fks = int(max(1.0, feather_px)) * 2 + 1
        alpha = cv2.GaussianBlur(alpha, (fks, fks), 0)
    return alpha


def _blend(frame_bgr: ImageBGR, bg: np.ndarray, alpha: np.ndarray) -> ImageBGR:
    """out = F × α + BG × (1 − α) (float 演算, uint8 出力)。"""
    a3 = alpha[:, :, None]
    frame_f = frame_bgr.astype(np.float32) / 255.0
    bg_f = bg.astype(np.float32) / 255.0 if bg.dtype == np.uint8 else bg
    return to_u8((frame_f * a3 + bg_f * (1.0 - a3)) * 255.0)


def _blend_umat(frame_bgr: ImageBGR, bg: np.ndarray, alpha: np.ndarray) -> ImageBGR:
    """_blend と同じ合成を OpenCL デバイス上で行う。"""
    if bg.dtype != frame_bgr.dtype:
        frame_src = frame_bgr.astype(np.float32) / 255.0
    else:
        frame_src = frame_bgr
    a = np.ascontiguousarray(alpha, dtype=np.float32)
    out = cv2.blendLinear(
        cv2.UMat(frame_src), cv2.UMat(np.ascontiguousarray(bg)),
        cv2.UMat(a), cv2.UMat(np.ascontiguousarray(1.0 - a)),
    ).get()
    if out.dtype != np.uint8:
        out = to_u8(out * 255.0)
    return out


def _masked_blur(frame_f: np.ndarray, bg_mask: np.ndarray, k: int) -> np.ndarray:
    """背景部分だけの正規化ぼかし blur(F·bg) / (blur(bg) + ε)。"""
    bg3 = bg_mask[:, :, None]
    num = cv2.GaussianBlur(frame_f * bg3, (k, k), 0)
    den = cv2.GaussianBlur(bg_mask, (k, k), 0) + _EPS
    return num / den[:, :, None]


def _masked_blur_umat(frame_f: np.ndarray, bg_mask: np.ndarray, k: int) -> cv2.UMat:
    # ガウシアンの重み和は 1 なので blur(bg) + ε == blur(bg + ε)
    bg3 = np.ascontiguousarray(np.repeat(bg_mask[:, :, None], 3, axis=2))
    num = cv2.GaussianBlur(cv2.multiply(cv2.UMat(frame_f), cv2.UMat(bg3)), (k, k), 0)
    den = cv2.GaussianBlur(cv2.UMat(bg3 + _EPS), (k, k), 0)
    return cv2.divide(num, den)


class BackgroundCompositor:
    """背景合成器。セッションごとに 1 つ生成して使い回す。

    使用例:
        comp = BackgroundCompositor()
        rgb = comp.composite(frame_bgr, mask, params.background, scale=0.8)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rgba_channel: Optional[int] = None
        self._logged_channel = False
        self._image_cache: dict[tuple, np.ndarray] = {}
        self._solid_cache: dict[tuple, np.ndarray] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    # ------ マスク ------
    @property
    def rgba_channel(self) -> Optional[int]:
        """4ch マスクで選択済みのチャンネル (0=B, 1=G, 2=R, 3=A)。"""
        return self._rgba_channel

    def reset_mask_channel(self) -> None:
        with self._lock:
            self._rgba_channel = None
            self._logged_channel = False

    def decode_mask(self, mask: np.ndarray) -> MaskImage:
        """任意形式のマスクを 8bit 1ch (0-255) に変換する。

        - uint8 1ch   → そのまま
        - float 1ch   → ×255
        - uint8 4ch   → 平均が最大のチャンネル (初回に決定し以降固定)
        - それ以外   → 先頭チャンネルを float とみなして再解釈

        Raises:
            InputShapeError: マスクが空
        """
        m = np.asarray(mask)
        if m.ndim < 2 or m.size == 0 or m.shape[0] == 0 or m.shape[1] == 0:
            raise InputShapeError(f"マスクの形状が不正です: {m.shape}")
        if m.ndim == 3 and m.shape[2] == 1:
            m = m[:, :, 0]
        try:
            return self._decode_known(m)
        except AmbiguousMaskFormatError as exc:
            logger.debug("%s: float として再解釈します", exc)
            return self._reinterpret(m)

    def _decode_known(self, m: np.ndarray) -> MaskImage:
        if m.ndim == 2 and m.dtype == np.uint8:
            return m.copy()
        if m.ndim == 2 and np.issubdtype(m.dtype, np.floating):
            return to_u8(m.astype(np.float32) * 255.0)
        if m.ndim == 3 and m.shape[2] == 4 and m.dtype == np.uint8:
            return self._pick_rgba_channel(m)
        raise AmbiguousMaskFormatError(
            f"解釈できないマスク形式: shape={m.shape}, dtype={m.dtype}"
        )

    def _pick_rgba_channel(self, m: np.ndarray) -> MaskImage:
        means = [float(m[:, :, c].mean()) for c in range(4)]
        with self._lock:
            if self._rgba_channel is None:
                best = int(np.argmax(means[:3]))
                if means[3] > means[best] + _ALPHA_BIAS:
                    best = 3
                self._rgba_channel = best
            best = self._rgba_channel
            if not self._logged_channel:
                logger.info(
                    "4ch マスク means[B,G,R,A]=%.1f,%.1f,%.1f,%.1f chosen=%s",
                    *means, _CHANNEL_NAMES[best],
                )
                self._logged_channel = True
        return m[:, :, best].copy()

    @staticmethod
    def _reinterpret(m: np.ndarray) -> MaskImage:
        ch = m[:, :, 0] if m.ndim == 3 else m
        f = ch.astype(np.float32)
        if f.size and float(f.max()) <= 1.0:
            f = f * 255.0
        return to_u8(f)

    @staticmethod
    def resize_mask_to_frame(mask_u8: MaskImage, frame_size: tuple[int, int]) -> MaskImage:
        """フレームサイズ (W, H) と異なればバイリニアでリサイズ。"""
        w, h = frame_size
        if mask_u8.shape[:2] == (h, w):
            return mask_u8
        return cv2.resize(mask_u8, (w, h), interpolation=cv2.INTER_LINEAR)

    @staticmethod
    def visualize_mask(mask_u8: MaskImage) -> ImageRGB:
        return cv2.cvtColor(mask_u8, cv2.COLOR_GRAY2RGB)

    # ------ キャッシュ ------
    def invalidate_cache(self) -> None:
        with self._lock:
            self._image_cache.clear()
            self._solid_cache.clear()

    @staticmethod
    def as_bgr_background(image: np.ndarray) -> ImageBGR:
        """背景画像を 3ch uint8 BGR に揃える (グレー / BGRA を受け付ける)。"""
        bg = np.asarray(image)
        if bg.size == 0 or bg.ndim not in (2, 3):
            raise InputShapeError(f"背景画像の形状が不正です: {bg.shape}")
        if bg.dtype != np.uint8:
            bg = to_u8(bg * 255.0 if float(bg.max()) <= 1.0 else bg)
        if bg.ndim == 2:
            return cv2.cvtColor(bg, cv2.COLOR_GRAY2BGR)
        if bg.shape[2] == 4:
            return cv2.cvtColor(bg, cv2.COLOR_BGRA2BGR)
        if bg.shape[2] != 3:
            raise InputShapeError(f"背景画像のチャンネル数が不正です: {bg.shape[2]}")
        return bg

    def _cached_image(self, bg_bgr: ImageBGR, size: tuple[int, int]) -> ImageBGR:
        bg_bgr = self.as_bgr_background(bg_bgr)
        # キーは画像全体のハッシュ
        digest = zlib.crc32(np.ascontiguousarray(bg_bgr).tobytes())
        key = (size, bg_bgr.shape, digest)
        with self._lock:
            hit = self._image_cache.get(key)
            if hit is not None:
                self.cache_hits += 1
                return hit
            self.cache_misses += 1
            resized = cv2.resize(bg_bgr, size, interpolation=cv2.INTER_LINEAR)
            if len(self._image_cache) >= _MAX_CACHE_ENTRIES:
                self._image_cache.clear()
            self._image_cache[key] = resized
            return resized

    def _cached_solid(self, bgr: tuple[int, int, int], size: tuple[int, int]) -> ImageBGR:
        key = (size, bgr)
        with self._lock:
            hit = self._solid_cache.get(key)
            if hit is not None:
                self.cache_hits += 1
                return hit
            self.cache_misses += 1
            w, h = size
            solid = np.empty((h, w, 3), dtype=np.uint8)
            solid[:] = bgr
            if len(self._solid_cache) >= _MAX_CACHE_ENTRIES:
                self._solid_cache.clear()
            self._solid_cache[key] = solid
            return solid

    # ============================================================
    # ぼかし背景
    # ============================================================

    def composite_blur(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        blur_strength: int = 25,
        feather_px: float = 2.0,
    ) -> ImageRGB:
        """人物以外をマスク正規化ぼかしした RGB 画像を返す。"""
        alpha = _feathered_alpha(mask_u8, feather_px)
        frame_f = frame_bgr.astype(np.float32) / 255.0
        bg_only = _masked_blur(frame_f, 1.0 - alpha, odd_kernel(blur_strength))
        return cv2.cvtColor(_blend(frame_bgr, bg_only, alpha), cv2.COLOR_BGR2RGB)

    def composite_blur_accel(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        blur_strength: int = 25,
        feather_px: float = 2.0,
        use_opencl: bool = False,
        scale: float = 1.0,
    ) -> ImageRGB:
        """縮小解像度 / OpenCL で背景ぼかしを計算する高速版。

        ぼかしは scale 倍の解像度 (カーネルも同倍率) で行い、
        拡大後に元解像度のマスクで合成する。
        """
        scale = _clamp_scale(scale)
        if not use_opencl and _is_full_scale(scale):
            return self.composite_blur(frame_bgr, mask_u8, blur_strength, feather_px)

        h, w = frame_bgr.shape[:2]
        k = odd_kernel(blur_strength)
        alpha = _feathered_alpha(mask_u8, feather_px)
        if _is_full_scale(scale):
            small_frame, small_alpha, ks = frame_bgr, alpha, k
        else:
            small_frame = _downscale(frame_bgr, scale)
            sh, sw = small_frame.shape[:2]
            small_alpha = cv2.resize(alpha, (sw, sh), interpolation=cv2.INTER_LINEAR)
            ks = max(1, int(round(k * scale))) | 1

        small_f = small_frame.astype(np.float32) / 255.0
        if use_opencl:
            bg_u = _masked_blur_umat(small_f, 1.0 - small_alpha, ks)
            if small_frame.shape[:2] != (h, w):
                bg_u = cv2.resize(bg_u, (w, h), interpolation=cv2.INTER_LINEAR)
            bg_only = bg_u.get()
            comp = _blend_umat(frame_bgr, bg_only, alpha)
        else:
            bg_only = _masked_blur(small_f, 1.0 - small_alpha, ks)
            if small_frame.shape[:2] != (h, w):
                bg_only = cv2.resize(bg_only, (w, h), interpolation=cv2.INTER_LINEAR)
            comp = _blend(frame_bgr, bg_only, alpha)
        return cv2.cvtColor(comp, cv2.COLOR_BGR2RGB)

    # ============================================================
    # 画像 / 単色背景
    # ============================================================

    def composite_image(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        bg_bgr: ImageBGR,
        feather_px: float = 0.0,
    ) -> ImageRGB:
        h, w = frame_bgr.shape[:2]
        bg = self._cached_image(bg_bgr, (w, h))
        alpha = _feathered_alpha(mask_u8, feather_px)
        return cv2.cvtColor(_blend(frame_bgr, bg, alpha), cv2.COLOR_BGR2RGB)

    def composite_solid(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        rgb: tuple[float, float, float],
        feather_px: float = 0.0,
    ) -> ImageRGB:
        h, w = frame_bgr.shape[:2]
        bg = self._cached_solid(rgb_color_to_bgr_u8(rgb), (w, h))
        alpha = _feathered_alpha(mask_u8, feather_px)
        return cv2.cvtColor(_blend(frame_bgr, bg, alpha), cv2.COLOR_BGR2RGB)

    def _composite_flat_accel(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        background_for_size,
        feather_px: float,
        use_opencl: bool,
        scale: float,
    ) -> ImageRGB:
        """背景バッファを縮小解像度で用意し、拡大して元解像度で合成する (画像/単色共通)。

        人物側は縮小しないので、全面前景マスクでは入力フレームがそのまま残る。
        """
        h, w = frame_bgr.shape[:2]
        alpha = _feathered_alpha(mask_u8, feather_px)
        if _is_full_scale(scale):
            bg = background_for_size((w, h))
        else:
            sw = max(1, int(round(w * scale)))
            sh = max(1, int(round(h * scale)))
            bg = cv2.resize(background_for_size((sw, sh)), (w, h),
                            interpolation=cv2.INTER_LINEAR)
        blend = _blend_umat if use_opencl else _blend
        return cv2.cvtColor(blend(frame_bgr, bg, alpha), cv2.COLOR_BGR2RGB)

    def composite_image_accel(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        bg_bgr: ImageBGR,
        feather_px: float = 0.0,
        use_opencl: bool = False,
        scale: float = 1.0,
    ) -> ImageRGB:
        scale = _clamp_scale(scale)
        if not use_opencl and _is_full_scale(scale):
            return self.composite_image(frame_bgr, mask_u8, bg_bgr, feather_px)
        return self._composite_flat_accel(
            frame_bgr, mask_u8,
            lambda size: self._cached_image(bg_bgr, size),
            feather_px, use_opencl, scale,
        )

    def composite_solid_accel(
        self,
        frame_bgr: ImageBGR,
        mask_u8: MaskImage,
        rgb: tuple[float, float, float],
        feather_px: float = 0.0,
        use_opencl: bool = False,
        scale: float = 1.0,
    ) -> ImageRGB:
        scale = _clamp_scale(scale)
        if not use_opencl and _is_full_scale(scale):
            return self.composite_solid(frame_bgr, mask_u8, rgb, feather_px)
        bgr = rgb_color_to_bgr_u8(rgb)
        return self._composite_flat_accel(
            frame_bgr, mask_u8,
            lambda size: self._cached_solid(bgr, size),
            feather_px, use_opencl, scale,
        )

    # ============================================================
    # ディスパッチ
    # ============================================================

    def composite(
        self,
        frame_bgr: ImageBGR,
        mask: Optional[np.ndarray],
        background: BackgroundParams,
        bg_image: Optional[ImageBGR] = None,
        use_opencl: bool = False,
        scale: float = 1.0,
        show_mask: bool = False,
    ) -> ImageRGB:
        """背景モードに応じて合成し、RGB 画像を返す。

        show_mask は全モードより優先してマスクを可視化する。
        マスクがない、または IMAGE モードで画像がない場合は素通し。
        """
        h, w = frame_bgr.shape[:2]
        if mask is None:
            return cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)

        mask_u8 = self.resize_mask_to_frame(self.decode_mask(mask), (w, h))
        if show_mask:
            return self.visualize_mask(mask_u8)

        mode = background.mode
        if mode == BackgroundMode.BLUR:
            return self.composite_blur_accel(
                frame_bgr, mask_u8, background.blur_strength,
                background.feather_px, use_opencl, scale,
            )
        if mode == BackgroundMode.IMAGE and bg_image is not None and bg_image.size:
            return self.composite_image_accel(
                frame_bgr, mask_u8, bg_image,
                background.feather_px, use_opencl, scale,
            )
        if mode == BackgroundMode.SOLID:
            return self.composite_solid_accel(
                frame_bgr, mask_u8, background.solid_rgb,
                background.feather_px, use_opencl, scale,
            )
        return cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
