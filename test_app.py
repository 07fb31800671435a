"""
CLI 引数 → 設定変換のテスト
"""

from app import build_overrides, is_image_path, parse_args
from facefx.config import BackgroundMode, load_config


def test_overrides_from_cli():
    args = parse_args([
        "--input", "in.mp4", "--output", "out.mp4",
        "--preset", "Meeting", "--bg-image", "beach.jpg", "--auto-scale",
        "--log-level", "debug",
    ])
    overrides = build_overrides(args)
    engine, params = load_config(None, overrides)
    assert engine.auto_scale is True
    assert engine.log_level == "DEBUG"
    assert params.teeth.enabled  # Meeting プリセット
    assert params.background.mode == BackgroundMode.IMAGE
    assert params.background.image_path == "beach.jpg"


def test_explicit_bg_mode_wins_over_image():
    args = parse_args(["--input", "a.png", "--output", "b.png",
                       "--bg-mode", "solid", "--bg-image", "x.png"])
    _, params = load_config(None, build_overrides(args))
    assert params.background.mode == BackgroundMode.SOLID


def test_no_flags_means_no_overrides():
    args = parse_args(["--input", "a.png", "--output", "b.png"])
    assert build_overrides(args) == {}


def test_image_detection():
    assert is_image_path("photo.JPG")
    assert not is_image_path("clip.mp4")
