"""
facefx/wrinkle_detector.py
==========================
シワ (細く暗い線状構造) の局所応答マップ生成。

処理の流れ:
  1. 顔マスク (唇・目を除く)
  2. YCrCb による肌色ゲート (任意)
  3. Lab L チャンネルへのマルチスケール・ブラックハット
  4. 構造テンソルのコヒーレンス (線状 > 斑点状)
  5. 解剖学的ゲート (顔下部のヒゲ領域・メガネ帯)
  6. 上位 keep_ratio の応答のみを残すヒストグラムしきい値
"""

from __future__ import annotations

import cv2
import numpy as np

from facefx.colorspace import to_u8
from facefx.regions import face_skin_mask
from facefx.types import FaceRegions, ImageBGR, MaskImage, WeightMap


# ============================================================
# 個別の応答・ゲート
# ============================================================

def skin_color_gate(image: ImageBGR) -> MaskImage:
    """YCrCb のしきい値による肌色マスク (0-255, 平滑化＋クロージング済み)。

    典型的な肌の範囲: Cr ∈ [135, 180], Cb ∈ [85, 135]
    """
    ycrcb = cv2.cvtColor(image, cv2.COLOR_BGR2YCrCb)
    cr_ok = cv2.inRange(ycrcb[:, :, 1], 135, 180)
    cb_ok = cv2.inRange(ycrcb[:, :, 2], 85, 135)
    skin = cv2.bitwise_and(cr_ok, cb_ok)
    skin = cv2.GaussianBlur(skin, (0, 0), 1.5)
    ker = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
    return cv2.morphologyEx(skin, cv2.MORPH_CLOSE, ker)


def line_widths(min_px: float, max_px: float, steps: int = 3) -> list[float]:
    """min/max の間を等間隔に分割した線幅リスト。"""
    lo = max(0.0, float(min_px))
    hi = max(lo, float(max_px))
    return [lo + (hi - lo) * i / max(1, steps - 1) for i in range(steps)]


def multiscale_blackhat(
    l_channel: np.ndarray,
    min_px: float,
    max_px: float,
    steps: int = 3,
) -> np.ndarray:
    """複数スケールのブラックハットの画素ごとの最大値 (0-1, float32)。

    細い線を優先するため、大きいスケールほど重みを最大 25% 下げる。
    """
    widths = line_widths(min_px, max_px, steps)
    lo, hi = widths[0], widths[-1]
    acc = np.zeros(l_channel.shape[:2], dtype=np.float32)
    for s in widths:
        k = max(3, int(round(s * 2)) | 1)
        elem = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
        bh = cv2.morphologyEx(l_channel, cv2.MORPH_BLACKHAT, elem)
        w = 1.0 - 0.25 * (s - lo) / max(1e-3, hi - lo)
        acc = np.maximum(acc, bh.astype(np.float32) / 255.0 * w)
    return acc


def structure_coherence(gray: np.ndarray, sigma: float = 1.5) -> np.ndarray:
    """構造テンソルのコヒーレンス (λ1−λ2)/(λ1+λ2) を 0-1 で返す。"""
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    jxx = cv2.GaussianBlur(gx * gx, (0, 0), sigma)
    jyy = cv2.GaussianBlur(gy * gy, (0, 0), sigma)
    jxy = cv2.GaussianBlur(gx * gy, (0, 0), sigma)
    d = np.sqrt((jxx - jyy) ** 2 + 4.0 * jxy * jxy)
    trace = jxx + jyy
    lam1 = 0.5 * (trace + d)
    lam2 = 0.5 * (trace - d)
    coh = (lam1 - lam2) / (lam1 + lam2 + 1e-6)
    return np.clip(coh, 0.0, 1.0).astype(np.float32)


def anatomical_gate(
    regions: FaceRegions,
    frame_size: tuple[int, int],
    suppress_lower_face: bool = True,
    lower_face_ratio: float = 0.45,
    ignore_glasses: bool = True,
    glasses_margin_px: float = 12.0,
) -> np.ndarray:
    """顔下部 (ヒゲ) とメガネ帯を 0 にするゲート (float32, 0-1)。

    顔下部: 口の平均高さ + ratio × (顎 − 口) より下を除外。
    メガネ: 両目のバウンディングボックスを margin だけ広げて除外し、
            境界を σ=2 でぼかす。
    """
    w, h = frame_size
    gate = np.ones((h, w), dtype=np.float32)

    if suppress_lower_face and regions.has("face_oval") and regions.has("lips_outer"):
        mouth_y = int(round(float(regions.lips_outer[:, 1].mean())))
        chin_y = int(regions.face_oval[:, 1].max())
        ratio = min(max(float(lower_face_ratio), 0.2), 0.8)
        cut_y = mouth_y + int(round(ratio * (chin_y - mouth_y)))
        gate[:] = 0.0
        gate[:max(0, cut_y)] = 1.0

    eyes = [p for p in (regions.left_eye, regions.right_eye) if len(p) >= 3]
    if ignore_glasses and eyes:
        pts = np.concatenate(eyes, axis=0)
        x, y, bw, bh = cv2.boundingRect(pts)
        m = int(round(max(0.0, float(glasses_margin_px))))
        x0, y0 = max(0, x - m), max(0, y - m)
        x1 = min(w, x0 + bw + 2 * m)
        y1 = min(h, y0 + bh + 2 * m)
        gate[y0:y1, x0:x1] = 0.0
        gate = cv2.GaussianBlur(gate, (0, 0), 2.0)

    return gate


def keep_top_responses(
    response: np.ndarray,
    region: np.ndarray,
    keep_ratio: float,
) -> np.ndarray:
    """応答の上位 keep_ratio (質量比) のみを残す。

    region 内の 8bit 応答の 256 ビンヒストグラムを上から累積し、
    keep_ratio に達したビンをしきい値とする。しきい値を超える画素を
    σ=0.75 でぼかしたソフトマスクを応答に掛ける。

    Args:
        response: 応答マップ (float32, 0-1)
        region: ヒストグラム計測領域 (bool)
        keep_ratio: 残す割合 (0.02-0.5)
    """
    keep = min(max(float(keep_ratio), 0.02), 0.5)
    if not np.any(region):
        return response
    wr8 = to_u8(response * 255.0)
    hist = np.bincount(wr8[region].ravel(), minlength=256)
    target = hist.sum() * keep
    cum = np.cumsum(hist[::-1])
    thr_bin = 255 - int(np.searchsorted(cum, target))
    _, strong = cv2.threshold(wr8, float(thr_bin), 255, cv2.THRESH_BINARY)
    strong = cv2.GaussianBlur(strong, (0, 0), 0.75)
    return (response * (strong.astype(np.float32) / 255.0)).astype(np.float32)


# ============================================================
# メイン
# ============================================================

def build_wrinkle_line_mask(
    frame_bgr: ImageBGR,
    regions: FaceRegions,
    min_width_px: float = 2.0,
    max_width_px: float = 8.0,
    suppress_lower_face: bool = True,
    lower_face_ratio: float = 0.45,
    ignore_glasses: bool = True,
    glasses_margin_px: float = 12.0,
    keep_ratio: float = 0.35,
    use_skin_gate: bool = False,
    mask_gain: float = 2.0,
) -> WeightMap:
    """シワの線状応答マップ (0.0-1.0) を生成する。

    Args:
        frame_bgr: 入力フレーム (BGR, uint8)
        regions: 顔パーツ多角形
        min_width_px / max_width_px: 検出する線幅の範囲 (px)
        suppress_lower_face / lower_face_ratio: 顔下部の除外
        ignore_glasses / glasses_margin_px: メガネ帯の除外
        keep_ratio: 残す応答の割合 (小さいほど疎)
        use_skin_gate: YCrCb 肌色ゲートを使うか
        mask_gain: 応答の増幅率 (>1 のときのみ有効)

    Returns:
        shape: (H, W), dtype: float32。顔の肌領域外は 0。
    """
    h, w = frame_bgr.shape[:2]
    size = (w, h)

    base_f = face_skin_mask(regions, size).astype(np.float32) / 255.0
    if use_skin_gate:
        skin_f = skin_color_gate(frame_bgr).astype(np.float32) / 255.0
    else:
        skin_f = np.ones((h, w), dtype=np.float32)

    l_channel = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2LAB)[:, :, 0]
    acc = multiscale_blackhat(l_channel, min_width_px, max_width_px)

    gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    coh = structure_coherence(gray)

    gate = anatomical_gate(
        regions, size,
        suppress_lower_face, lower_face_ratio,
        ignore_glasses, glasses_margin_px,
    )

    wr = acc * coh * base_f * skin_f * gate
    wr = cv2.GaussianBlur(wr, (0, 0), 1.0)
    wr = np.clip(wr, 0.0, 1.0)

    region = to_u8(base_f * skin_f * gate * 255.0) > 0
    wr = keep_top_responses(wr, region, keep_ratio)

    if mask_gain > 1.0:
        wr = np.minimum(1.0, wr * float(mask_gain))
    return wr.astype(np.float32)
