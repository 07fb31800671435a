"""
facefx CLI
==========
静止画または動画ファイルに顔エフェクトと背景合成をかけて書き出す。

例:
    python app.py --input portrait.jpg --output out.jpg --preset Natural
    python app.py --input call.mp4 --output out.mp4 --bg-mode blur --auto-scale
    python app.py --input portrait.jpg --output mask.png --show-mask
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

import cv2
import numpy as np
from PIL import Image

from facefx.config import EffectParameters, load_config, setup_logging
from facefx.landmark_source import LandmarkSource
from facefx.pipeline import EffectsPipeline

logger = logging.getLogger("facefx.cli")

_IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff"}


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Face-aware video effects")
    p.add_argument("--input", required=True, help="Input image or video path")
    p.add_argument("--output", required=True, help="Output image or video path")
    # Config
    p.add_argument("--config", default=None, help="Optional YAML config path")
    p.add_argument("--preset", default=None,
                   help="Preset name (Default/Natural/Studio/Glam/Meeting)")
    p.add_argument("--bg-mode", default=None, help="Background mode: none/blur/image/solid")
    p.add_argument("--bg-image", default=None, help="Background image for --bg-mode image")
    p.add_argument("--show-mask", action="store_true", help="Output the segmentation mask")
    p.add_argument("--auto-scale", action="store_true",
                   help="Adapt processing scale to the measured FPS (video only)")
    p.add_argument("--opencl", action="store_true", help="Use OpenCL (cv2.UMat) if available")
    p.add_argument("--log-level", default=None, help="Override log level (e.g., INFO, DEBUG)")
    return p.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """CLI 引数を load_config 用の上書き辞書に変換する。"""
    engine: Dict[str, Any] = {}
    background: Dict[str, Any] = {}
    if args.show_mask:
        engine["show_mask"] = True
    if args.auto_scale:
        engine["auto_scale"] = True
    if args.opencl:
        engine["enable_opencl"] = True
    if args.log_level:
        engine["log_level"] = args.log_level
    if args.bg_mode:
        background["mode"] = args.bg_mode
    if args.bg_image:
        background["image_path"] = args.bg_image
        background.setdefault("mode", "image")

    overrides: Dict[str, Any] = {}
    if engine:
        overrides["engine"] = engine
    if args.preset:
        overrides["preset"] = args.preset
    if background:
        overrides["effects"] = {"background": background}
    return overrides


def is_image_path(path: str) -> bool:
    return Path(path).suffix.lower() in _IMAGE_SUFFIXES


def process_image(
    pipeline: EffectsPipeline,
    params: EffectParameters,
    input_path: str,
    output_path: str,
) -> None:
    with Image.open(input_path) as img:
        rgb = np.array(img.convert("RGB"))
    frame_bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)

    with LandmarkSource() as source:
        landmarks, mask = source.detect(frame_bgr)
    if landmarks is None:
        logger.warning("顔が検出されませんでした: %s", input_path)

    out_rgb = pipeline.process_frame(frame_bgr, mask, landmarks, params)
    Image.fromarray(out_rgb).save(output_path)
    logger.info("保存しました: %s", output_path)


def process_video(
    pipeline: EffectsPipeline,
    params: EffectParameters,
    input_path: str,
    output_path: str,
) -> None:
    cap = cv2.VideoCapture(input_path)
    if not cap.isOpened():
        raise OSError(f"動画を開けません: {input_path}")

    fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
    w = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    h = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
    pipeline.set_camera_fps(fps)
    writer = cv2.VideoWriter(output_path, cv2.VideoWriter_fourcc(*"mp4v"), fps, (w, h))

    frames = 0
    t_start = time.perf_counter()
    try:
        with LandmarkSource(video=True) as source:
            while True:
                ok, frame = cap.read()
                if not ok:
                    break
                t0 = time.perf_counter()
                ts_ms = int(frames * 1000.0 / fps)
                landmarks, mask = source.detect(frame, ts_ms)
                out_rgb = pipeline.process_frame(frame, mask, landmarks, params)
                writer.write(cv2.cvtColor(out_rgb, cv2.COLOR_RGB2BGR))

                dt = time.perf_counter() - t0
                if dt > 0:
                    pipeline.update_fps(1.0 / dt)
                frames += 1
    finally:
        cap.release()
        writer.release()

    elapsed = time.perf_counter() - t_start
    status = pipeline.status(params)
    logger.info(
        "完了: %d フレーム (%.1f 秒), 平均 %.1f fps, scale=%.3f",
        frames, elapsed, status.average_fps, status.processing_scale,
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    engine, params = load_config(args.config, build_overrides(args))
    setup_logging(engine.log_level)

    with EffectsPipeline(engine) as pipeline:
        if is_image_path(args.input):
            process_image(pipeline, params, args.input, args.output)
        else:
            process_video(pipeline, params, args.input, args.output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
