"""
facefx/skin_smoother.py
=======================
Lab 周波数分離によるシワ対応の肌スムージング。

L チャンネルを「ベース (ガウシアン)」と「ディテール (L − ベース)」に分け、
  - 正のディテール (ハイライト・毛穴) は軽く
  - 負のディテール (影・シワの谷) は重み/シワマップに応じて強く
減衰させてから再合成する。目・眉・唇の鮮明さは保たれる。

簡易モード (advanced=False) ではバイラテラルフィルタ＋肌マスクのみ。
"""

from __future__ import annotations

import dataclasses
import logging

import cv2
import numpy as np

from facefx.colorspace import to_u8
from facefx.config import SkinParams, WrinkleParams
from facefx.errors import DegenerateGeometryError
from facefx.expression import (
    build_forehead_boost,
    build_wrinkle_boost_map,
    estimate_expression,
)
from facefx.regions import face_skin_mask, feather_mask
from facefx.skin_weight import build_skin_weight_map, gradient_magnitude, robust_scale
from facefx.types import FaceRegions, ImageBGR, LandmarksLike, WeightMap, as_landmark_array
from facefx.wrinkle_detector import build_wrinkle_line_mask

logger = logging.getLogger(__name__)

# ROI 縮小処理が成立する最小サイズ (px)
MIN_ROI_SIZE = 8


# ============================================================
# 1. 簡易スムージング (バイラテラル)
# ============================================================

def smooth_skin_basic(
    image: ImageBGR,
    regions: FaceRegions,
    amount: float = 0.5,
    use_opencl: bool = False,
) -> ImageBGR:
    """肌領域のみにバイラテラルフィルタを適用する。

    Args:
        image: 入力画像 (BGR, uint8)
        regions: 顔パーツ多角形 (唇・目は除外される)
        amount: 補正強度 (0.0=無補正, 1.0=最大スムージング)
        use_opencl: True なら cv2.UMat 経由で OpenCL デバイス上で処理

    Returns:
        スムージング済み画像 (BGR, uint8)
    """
    s = min(max(amount, 0.0), 1.0)
    if s <= 0.0 or not regions.has("face_oval"):
        return image.copy()

    # d: 近傍径 9 固定
    # sigmaColor: 25 → 100
    # sigmaSpace: 9 → 30
    d = 9
    sigma_color = 25.0 + 75.0 * s
    sigma_space = 9.0 + 21.0 * s

    h, w = image.shape[:2]
    mask = feather_mask(face_skin_mask(regions, (w, h), fill=220), 15)
    alpha = mask.astype(np.float32) / 255.0

    if use_opencl:
        src = cv2.UMat(image)
        smoothed = cv2.bilateralFilter(src, d, sigma_color, sigma_space)
        w_keep = cv2.UMat(np.ascontiguousarray(1.0 - alpha))
        w_smooth = cv2.UMat(np.ascontiguousarray(alpha))
        out = cv2.blendLinear(src, smoothed, w_keep, w_smooth)
        return out.get()

    smoothed = cv2.bilateralFilter(image, d, sigma_color, sigma_space)
    a3 = alpha[:, :, None]
    result = image.astype(np.float32) * (1.0 - a3) + smoothed.astype(np.float32) * a3
    return to_u8(result)


# ============================================================
# 2. シワ推定の補助
# ============================================================

def local_wrinkle_estimate(
    gray: np.ndarray,
    detail: np.ndarray,
    radius_px: float,
) -> WeightMap:
    """負のディテール (暗部) と勾配強度の小さい方を取る軽量なシワ推定。

    暗部は 0.12 (L の 12%) で飽和、勾配は画面平均の 3 倍 (下限 8) で正規化。
    """
    sigma = max(1.0, radius_px * 0.5)
    grad = gradient_magnitude(gray, sigma)
    grad_n = np.minimum(grad / robust_scale(grad), 1.0)
    dark = cv2.GaussianBlur(np.maximum(0.0, -detail).astype(np.float32), (0, 0), sigma)
    dark_n = np.minimum(dark / 0.12, 1.0)
    return np.minimum(dark_n, grad_n).astype(np.float32)


def combine_wrinkle_masks(
    line_mask: np.ndarray,
    local_mask: np.ndarray,
    keep_ratio: float,
) -> WeightMap:
    """線状マスクと局所マスクを感度に応じて合成する。

    keep_ratio が大きいほど線状マスクを重視する:
        s      = clamp(keep_ratio, 0.02, 0.80)
        s_norm = (s − 0.02) / 0.78
        w_line  = 0.4 + 0.9 × s_norm     → [0.4, 1.3]
        w_local = 0.6 × (1 − s_norm)     → [0.6, 0.0]
    """
    s = min(max(float(keep_ratio), 0.02), 0.80)
    s_norm = (s - 0.02) / 0.78
    w_line = 0.4 + 0.9 * s_norm
    w_local = 0.6 * (1.0 - s_norm)
    return np.minimum(1.0, line_mask * w_line + local_mask * w_local).astype(np.float32)


def line_width_range(
    skin: SkinParams,
    wrinkle: WrinkleParams,
    width_scale: float = 1.0,
) -> tuple[float, float]:
    """検出する線幅の範囲。custom_scales でなければ半径から決める。

    width_scale は縮小処理の倍率で、指定線幅に掛ける (1px 未満も許す)。
    """
    r = float(skin.radius_px)
    if wrinkle.custom_scales:
        s_min = wrinkle.min_width_px * width_scale
        s_max = wrinkle.max_width_px * width_scale
    else:
        s_min, s_max = max(1.5, r * 0.5), max(3.0, r * 1.25)
    if s_max < s_min:
        s_min, s_max = s_max, s_min
    return s_min, s_max


def wrinkle_attenuation(
    image: ImageBGR,
    regions: FaceRegions,
    landmarks: np.ndarray,
    detail: np.ndarray,
    weight: WeightMap,
    skin: SkinParams,
    wrinkle: WrinkleParams,
    forehead_margin_px: float = 8.0,
    width_scale: float = 1.0,
) -> WeightMap:
    """表情ブースト × シワマスクによる追加減衰量 (ゲイン適用前)。"""
    h, w = image.shape[:2]
    size = (w, h)
    radius = float(skin.radius_px)

    ex = estimate_expression(landmarks, size)
    boost = build_wrinkle_boost_map(
        landmarks, size, wrinkle.smile_boost, wrinkle.squint_boost, ex
    )
    forehead = build_forehead_boost(
        image, regions, detail, radius, wrinkle.forehead_boost, forehead_margin_px
    )
    boost = np.minimum(1.0, boost + forehead)

    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    local = local_wrinkle_estimate(gray, detail, radius)
    s_min, s_max = line_width_range(skin, wrinkle, width_scale)
    line = build_wrinkle_line_mask(
        image, regions, s_min, s_max,
        suppress_lower_face=wrinkle.suppress_lower_face,
        lower_face_ratio=wrinkle.lower_face_ratio,
        ignore_glasses=wrinkle.ignore_glasses,
        glasses_margin_px=wrinkle.glasses_margin_px,
        keep_ratio=wrinkle.keep_ratio,
        use_skin_gate=wrinkle.use_skin_gate,
        mask_gain=wrinkle.mask_gain,
    )
    wrinkle_mask = combine_wrinkle_masks(line, local, wrinkle.keep_ratio)

    # 表情がなくてもベースラインの感度を確保
    boost_any = np.minimum(1.0, boost + max(0.0, wrinkle.baseline_boost))
    face_gate = (weight > 1e-6).astype(np.float32)
    return (boost_any * wrinkle_mask * face_gate).astype(np.float32)


# ============================================================
# 3. 周波数分離スムージング
# ============================================================

def smooth_skin_advanced(
    image: ImageBGR,
    regions: FaceRegions,
    landmarks: LandmarksLike | None,
    skin: SkinParams,
    wrinkle: WrinkleParams,
    forehead_margin_px: float = 8.0,
    width_scale: float = 1.0,
) -> ImageBGR:
    """Lab L チャンネルの周波数分離によるスムージング。

    計算式:
        base   = GaussianBlur(L, 2·round(r)+1, σ=r)
        detail = L − base
        atten  = weight·amount + gain·boost_final     (上限 1)
        pos    = weight·amount·0.15
        neg    = min(cap, atten)
        L_out  = base + max(detail,0)·(1−pos) + min(detail,0)·(1−neg)

    プレビュー時は atten = gain·boost_final のみ、pos = 0 とし、
    シワ減衰だけを可視化する。

    Args:
        image: 入力画像 (BGR, uint8)
        regions: 顔パーツ多角形
        landmarks: 正規化ランドマーク (None なら表情/シワ補正なし)
        skin: 肌パラメータ
        wrinkle: シワパラメータ
        forehead_margin_px: 額ブーストの眉からの余白
        width_scale: 指定線幅に掛ける倍率 (縮小 ROI 処理用)

    Returns:
        補正済み画像 (BGR, uint8)
    """
    amount = min(max(skin.amount, 0.0), 1.0)
    if amount <= 0.0 or not regions.has("face_oval"):
        return image.copy()

    h, w = image.shape[:2]
    radius = float(skin.radius_px)
    weight = build_skin_weight_map(
        regions, (w, h), skin.edge_feather_px, skin.texture_keep, image
    )

    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
    l_f = lab[:, :, 0].astype(np.float32) / 255.0

    k = max(1, int(round(radius)) * 2 + 1)
    base = cv2.GaussianBlur(l_f, (k, k), radius)
    detail = l_f - base

    atten = weight * amount
    preview = False
    pts = as_landmark_array(landmarks)
    if wrinkle.enabled and len(pts):
        boost_final = wrinkle_attenuation(
            image, regions, pts, detail, weight, skin, wrinkle, forehead_margin_px,
            width_scale,
        )
        if wrinkle.preview:
            # base はぼかしたまま使い、シワ減衰分だけを見せる
            preview = True
            atten = np.minimum(1.0, wrinkle.gain * boost_final)
        else:
            atten = np.minimum(1.0, atten + wrinkle.gain * boost_final)

    detail_pos = np.maximum(detail, 0.0)
    detail_neg = np.minimum(detail, 0.0)
    if preview:
        pos_atten = np.zeros_like(atten)
    else:
        pos_atten = weight * (amount * 0.15)
    cap = min(max(wrinkle.neg_atten_cap, 0.4), 1.0)
    neg_atten = np.minimum(cap, atten)

    out_l = base + detail_pos * (1.0 - pos_atten) + detail_neg * (1.0 - neg_atten)
    lab[:, :, 0] = to_u8(np.clip(out_l, 0.0, 1.0) * 255.0)
    return cv2.cvtColor(lab, cv2.COLOR_LAB2BGR)


# ============================================================
# 4. 縮小 ROI による高速化
# ============================================================

def face_roi(
    regions: FaceRegions,
    frame_size: tuple[int, int],
    pad: int,
) -> tuple[int, int, int, int]:
    """顔輪郭の外接矩形を pad だけ広げ、フレーム内に収めた ROI。

    Raises:
        DegenerateGeometryError: ROI が 8x8 未満
    """
    w, h = frame_size
    if not regions.has("face_oval"):
        raise DegenerateGeometryError("顔輪郭がありません")
    bx, by, bw, bh = cv2.boundingRect(regions.face_oval)
    x0, y0 = max(0, bx - pad), max(0, by - pad)
    x1, y1 = min(w, bx + bw + pad), min(h, by + bh + pad)
    if x1 - x0 < MIN_ROI_SIZE or y1 - y0 < MIN_ROI_SIZE:
        raise DegenerateGeometryError(f"ROI が小さすぎます: {x1 - x0}x{y1 - y0}")
    return x0, y0, x1 - x0, y1 - y0


def reinject_detail(
    upsampled: ImageBGR,
    original: ImageBGR,
    regions: FaceRegions,
    edge_feather_px: float,
    detail_preserve: float,
) -> ImageBGR:
    """元解像度の高周波成分を顔マスク内に一部戻す (アンシャープ的)。

    hi  = roi − GaussianBlur(roi, σ=0.8)
    out = up + hi × mask × dp
    """
    dp = min(max(float(detail_preserve), 0.0), 0.5)
    if dp <= 1e-3:
        return upsampled
    h, w = original.shape[:2]
    mask = face_skin_mask(regions, (w, h))
    fk = max(3, int(round(edge_feather_px)) | 1)
    mask = cv2.GaussianBlur(mask, (fk, fk), 0)
    mask_f = (mask.astype(np.float32) / 255.0)[:, :, None]

    base = cv2.GaussianBlur(original, (0, 0), 0.8)
    hi = (original.astype(np.float32) - base.astype(np.float32)) / 255.0
    out = upsampled.astype(np.float32) / 255.0 + hi * mask_f * dp
    return to_u8(np.clip(out, 0.0, 1.0) * 255.0)


def smooth_skin_scaled(
    image: ImageBGR,
    regions: FaceRegions,
    landmarks: LandmarksLike | None,
    skin: SkinParams,
    wrinkle: WrinkleParams,
    scale: float,
) -> ImageBGR:
    """顔周辺 ROI を縮小して処理し、LANCZOS4 で拡大して貼り戻す。

    半径・フェード幅・メガネ余白・線幅・額余白も同じ倍率で縮める。
    ROI が小さすぎる場合は等倍処理にフォールバックする。
    """
    if min(max(skin.amount, 0.0), 1.0) <= 0.0 or not regions.has("face_oval"):
        return image.copy()

    h, w = image.shape[:2]
    sc = min(max(float(scale), 0.4), 1.0)
    pad = max(MIN_ROI_SIZE, int(round(skin.edge_feather_px + skin.radius_px * 2.0)))
    try:
        x, y, rw, rh = face_roi(regions, (w, h), pad)
    except DegenerateGeometryError as exc:
        logger.debug("ROI 縮小処理をスキップし等倍で処理: %s", exc)
        return smooth_skin_advanced(image, regions, landmarks, skin, wrinkle)

    fr_roi = regions.shifted(-x, -y)
    fr_small = fr_roi.scaled(sc)

    pts = as_landmark_array(landmarks)
    if len(pts):
        px = pts[:, 0] * w
        py = pts[:, 1] * h
        pts = np.stack([(px - x) / rw, (py - y) / rh], axis=1).astype(np.float32)

    roi = image[y:y + rh, x:x + rw]
    target = (max(1, int(round(rw * sc))), max(1, int(round(rh * sc))))
    small = cv2.resize(roi, target, interpolation=cv2.INTER_AREA)

    skin_s = dataclasses.replace(
        skin,
        radius_px=skin.radius_px * sc,
        edge_feather_px=skin.edge_feather_px * sc,
    )
    # 線幅は WrinkleParams の下限 (1px) で丸めず width_scale で渡す
    wrinkle_s = dataclasses.replace(
        wrinkle, glasses_margin_px=wrinkle.glasses_margin_px * sc
    )
    small_out = smooth_skin_advanced(
        small, fr_small, pts, skin_s, wrinkle_s,
        forehead_margin_px=8.0 * sc, width_scale=sc,
    )

    up = cv2.resize(small_out, (rw, rh), interpolation=cv2.INTER_LANCZOS4)
    up = reinject_detail(up, roi, fr_roi, skin.edge_feather_px, skin.detail_preserve)

    result = image.copy()
    result[y:y + rh, x:x + rw] = up
    return result


def apply_skin_smoothing(
    image: ImageBGR,
    regions: FaceRegions,
    landmarks: LandmarksLike | None,
    skin: SkinParams,
    wrinkle: WrinkleParams,
    processing_scale: float = 1.0,
    use_opencl: bool = False,
) -> ImageBGR:
    """設定に応じて簡易/周波数分離/縮小 ROI のいずれかで処理する。"""
    if not skin.enabled:
        return image.copy()
    if not skin.advanced:
        return smooth_skin_basic(image, regions, skin.amount, use_opencl)
    if processing_scale < 0.999:
        return smooth_skin_scaled(image, regions, landmarks, skin, wrinkle, processing_scale)
    return smooth_skin_advanced(image, regions, landmarks, skin, wrinkle)
