"""
facefx/config.py
================
エフェクトパラメータ・プリセット・エンジン設定・YAML 読み込み。

各パラメータ群は frozen dataclass で、生成時に値を有効範囲へクランプする。
範囲外の数値は例外にせず丸め込み、数値として解釈できない値のみ
ConfigOutOfRangeError を送出する。
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field, fields
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml

from facefx.errors import ConfigOutOfRangeError

logger = logging.getLogger(__name__)


# ============================================================
# クランプ用ヘルパー
# ============================================================

def _num(value: Any, name: str) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigOutOfRangeError(f"{name}: 数値ではありません ({value!r})") from exc


def _clamp(value: Any, name: str, lo: Optional[float] = None,
           hi: Optional[float] = None) -> float:
    v = _num(value, name)
    if lo is not None:
        v = max(v, lo)
    if hi is not None:
        v = min(v, hi)
    return v


def _rgb(value: Any, name: str) -> tuple[float, float, float]:
    try:
        r, g, b = value
    except (TypeError, ValueError) as exc:
        raise ConfigOutOfRangeError(f"{name}: RGB 3 要素が必要です ({value!r})") from exc
    return (
        _clamp(r, name, 0.0, 1.0),
        _clamp(g, name, 0.0, 1.0),
        _clamp(b, name, 0.0, 1.0),
    )


def _set(obj: Any, name: str, value: Any) -> None:
    object.__setattr__(obj, name, value)


def odd_kernel(value: Any) -> int:
    """ガウシアンカーネルサイズを 1 以上の奇数にそろえる (24 → 25)。"""
    k = max(1, int(round(_num(value, "blur_strength"))))
    return k | 1


# ============================================================
# パラメータ群
# ============================================================

class BackgroundMode(IntEnum):
    NONE = 0
    BLUR = 1
    IMAGE = 2
    SOLID = 3

    @classmethod
    def parse(cls, value: Any) -> "BackgroundMode":
        if isinstance(value, BackgroundMode):
            return value
        if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError as exc:
                raise ConfigOutOfRangeError(f"bg_mode: 不明なモード {value!r}") from exc
        return cls(int(_clamp(value, "bg_mode", 0, 3)))


@dataclass(frozen=True)
class BackgroundParams:
    mode: BackgroundMode = BackgroundMode.NONE
    blur_strength: int = 25
    feather_px: float = 2.0
    solid_rgb: tuple[float, float, float] = (0.0, 0.0, 0.0)
    image_path: Optional[str] = None

    def __post_init__(self) -> None:
        _set(self, "mode", BackgroundMode.parse(self.mode))
        _set(self, "blur_strength", odd_kernel(self.blur_strength))
        _set(self, "feather_px", _clamp(self.feather_px, "feather_px", 0.0))
        _set(self, "solid_rgb", _rgb(self.solid_rgb, "solid_rgb"))
        if self.image_path is not None:
            _set(self, "image_path", str(self.image_path))


@dataclass(frozen=True)
class SkinParams:
    enabled: bool = False
    advanced: bool = True
    amount: float = 0.5
    radius_px: float = 6.0
    texture_keep: float = 0.35
    edge_feather_px: float = 12.0
    adv_scale: float = 1.0
    detail_preserve: float = 0.18

    def __post_init__(self) -> None:
        _set(self, "enabled", bool(self.enabled))
        _set(self, "advanced", bool(self.advanced))
        _set(self, "amount", _clamp(self.amount, "amount", 0.0, 1.0))
        _set(self, "radius_px", _clamp(self.radius_px, "radius_px", 1.0))
        _set(self, "texture_keep", _clamp(self.texture_keep, "texture_keep", 0.0, 1.0))
        _set(self, "edge_feather_px", _clamp(self.edge_feather_px, "edge_feather_px", 0.0))
        _set(self, "adv_scale", _clamp(self.adv_scale, "adv_scale", 0.4, 1.0))
        _set(self, "detail_preserve",
             _clamp(self.detail_preserve, "detail_preserve", 0.0, 0.5))


@dataclass(frozen=True)
class WrinkleParams:
    enabled: bool = True
    gain: float = 1.5
    smile_boost: float = 0.5
    squint_boost: float = 0.5
    forehead_boost: float = 0.8
    suppress_lower_face: bool = True
    lower_face_ratio: float = 0.45
    ignore_glasses: bool = True
    glasses_margin_px: float = 12.0
    keep_ratio: float = 0.35
    custom_scales: bool = True
    min_width_px: float = 2.0
    max_width_px: float = 8.0
    use_skin_gate: bool = False
    mask_gain: float = 2.0
    baseline_boost: float = 0.5
    neg_atten_cap: float = 0.9
    preview: bool = False

    def __post_init__(self) -> None:
        for name in ("enabled", "suppress_lower_face", "ignore_glasses",
                     "custom_scales", "use_skin_gate", "preview"):
            _set(self, name, bool(getattr(self, name)))
        for name in ("gain", "smile_boost", "squint_boost", "forehead_boost",
                     "glasses_margin_px", "baseline_boost"):
            _set(self, name, _clamp(getattr(self, name), name, 0.0))
        _set(self, "lower_face_ratio",
             _clamp(self.lower_face_ratio, "lower_face_ratio", 0.25, 0.65))
        _set(self, "keep_ratio", _clamp(self.keep_ratio, "keep_ratio", 0.02, 0.5))
        _set(self, "min_width_px", _clamp(self.min_width_px, "min_width_px", 1.0))
        _set(self, "max_width_px",
             _clamp(self.max_width_px, "max_width_px", self.min_width_px))
        _set(self, "mask_gain", _clamp(self.mask_gain, "mask_gain", 0.5))
        _set(self, "neg_atten_cap", _clamp(self.neg_atten_cap, "neg_atten_cap", 0.4, 1.0))


@dataclass(frozen=True)
class LipParams:
    enabled: bool = False
    alpha: float = 0.5
    color_rgb: tuple[float, float, float] = (0.8, 0.1, 0.3)
    feather_px: float = 6.0
    lightness: float = 0.0
    band_grow_px: float = 4.0

    def __post_init__(self) -> None:
        _set(self, "enabled", bool(self.enabled))
        _set(self, "alpha", _clamp(self.alpha, "alpha", 0.0, 1.0))
        _set(self, "color_rgb", _rgb(self.color_rgb, "color_rgb"))
        _set(self, "feather_px", _clamp(self.feather_px, "feather_px", 0.0))
        _set(self, "lightness", _clamp(self.lightness, "lightness", -1.0, 1.0))
        _set(self, "band_grow_px", _clamp(self.band_grow_px, "band_grow_px", 0.0))


@dataclass(frozen=True)
class TeethParams:
    enabled: bool = False
    strength: float = 0.5
    margin_px: float = 3.0

    def __post_init__(self) -> None:
        _set(self, "enabled", bool(self.enabled))
        _set(self, "strength", _clamp(self.strength, "strength", 0.0, 1.0))
        _set(self, "margin_px", _clamp(self.margin_px, "margin_px", 0.0))


_GROUPS = {
    "background": BackgroundParams,
    "skin": SkinParams,
    "wrinkle": WrinkleParams,
    "lips": LipParams,
    "teeth": TeethParams,
}


@dataclass(frozen=True)
class EffectParameters:
    """1 フレーム分のエフェクト設定一式 (不変)。"""
    background: BackgroundParams = field(default_factory=BackgroundParams)
    skin: SkinParams = field(default_factory=SkinParams)
    wrinkle: WrinkleParams = field(default_factory=WrinkleParams)
    lips: LipParams = field(default_factory=LipParams)
    teeth: TeethParams = field(default_factory=TeethParams)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "EffectParameters":
        """ネストした辞書 (YAML 由来) からパラメータを構築する。

        未知のキーは警告を出して無視する。
        """
        groups: Dict[str, Any] = {}
        for group_name, group_cls in _GROUPS.items():
            raw = (data or {}).get(group_name) or {}
            if not isinstance(raw, Mapping):
                raise ConfigOutOfRangeError(f"{group_name}: 辞書が必要です")
            known = {f.name for f in fields(group_cls)}
            kwargs = {}
            for k, v in raw.items():
                if k in known:
                    kwargs[k] = tuple(v) if isinstance(v, list) else v
                else:
                    logger.warning("未知の設定キーを無視: %s.%s", group_name, k)
            groups[group_name] = group_cls(**kwargs)
        for k in (data or {}):
            if k not in _GROUPS:
                logger.warning("未知の設定グループを無視: %s", k)
        return cls(**groups)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["background"]["mode"] = int(self.background.mode)
        return out

    def replace(self, **overrides: Mapping[str, Any]) -> "EffectParameters":
        """グループ単位の部分上書きを適用したコピーを返す。

        例: params.replace(skin={"amount": 0.8})
        """
        data = self.to_dict()
        _deep_merge(data, overrides)
        return EffectParameters.from_mapping(data)


# ============================================================
# プリセット
# ============================================================

PRESET_NAMES = ["Default", "Natural", "Studio", "Glam", "Meeting"]

_WRINKLE_COMMON = {
    "enabled": True, "suppress_lower_face": True, "lower_face_ratio": 0.45,
    "ignore_glasses": True, "custom_scales": True, "min_width_px": 2.0,
    "neg_atten_cap": 0.9, "preview": False,
}

PRESETS: Dict[str, Dict[str, Any]] = {
    "Default": {
        "background": {"mode": 0, "blur_strength": 25, "feather_px": 2.0},
        "skin": {"enabled": False, "advanced": True, "amount": 0.45, "radius_px": 6.0,
                 "texture_keep": 0.35, "edge_feather_px": 12.0,
                 "adv_scale": 1.0, "detail_preserve": 0.18},
        "wrinkle": dict(_WRINKLE_COMMON, gain=1.5, smile_boost=0.5, squint_boost=0.5,
                        forehead_boost=0.8, glasses_margin_px=12.0, keep_ratio=0.35,
                        max_width_px=8.0, use_skin_gate=False, mask_gain=2.0,
                        baseline_boost=0.5),
        "lips": {"enabled": False},
        "teeth": {"enabled": False},
    },
    "Natural": {
        "background": {"mode": 1, "blur_strength": 21, "feather_px": 2.0},
        "skin": {"enabled": True, "advanced": True, "amount": 0.35, "radius_px": 5.0,
                 "texture_keep": 0.50, "edge_feather_px": 12.0,
                 "adv_scale": 0.9, "detail_preserve": 0.20},
        "wrinkle": dict(_WRINKLE_COMMON, gain=1.2, smile_boost=0.4, squint_boost=0.4,
                        forehead_boost=0.7, glasses_margin_px=10.0, keep_ratio=0.30,
                        max_width_px=8.0, use_skin_gate=True, mask_gain=1.8,
                        baseline_boost=0.35),
        "lips": {"enabled": False},
        "teeth": {"enabled": False},
    },
    "Studio": {
        "background": {"mode": 1, "blur_strength": 31, "feather_px": 2.5},
        "skin": {"enabled": True, "advanced": True, "amount": 0.5, "radius_px": 6.0,
                 "texture_keep": 0.40, "edge_feather_px": 14.0,
                 "adv_scale": 0.88, "detail_preserve": 0.22},
        "wrinkle": dict(_WRINKLE_COMMON, gain=1.6, smile_boost=0.55, squint_boost=0.5,
                        forehead_boost=0.9, glasses_margin_px=12.0, keep_ratio=0.38,
                        max_width_px=9.0, use_skin_gate=True, mask_gain=2.2,
                        baseline_boost=0.5),
        "lips": {"enabled": False},
        "teeth": {"enabled": False},
    },
    "Glam": {
        "background": {"mode": 1, "blur_strength": 27, "feather_px": 2.0},
        "skin": {"enabled": True, "advanced": True, "amount": 0.65, "radius_px": 7.0,
                 "texture_keep": 0.30, "edge_feather_px": 16.0,
                 "adv_scale": 0.85, "detail_preserve": 0.25},
        "wrinkle": dict(_WRINKLE_COMMON, gain=1.4, smile_boost=0.55, squint_boost=0.55,
                        forehead_boost=1.0, glasses_margin_px=12.0, keep_ratio=0.40,
                        max_width_px=10.0, use_skin_gate=True, mask_gain=2.2,
                        baseline_boost=0.55),
        "lips": {"enabled": True, "alpha": 0.35, "feather_px": 6.0, "band_grow_px": 4.0,
                 "lightness": 0.05, "color_rgb": (0.86, 0.24, 0.40)},
        "teeth": {"enabled": True, "strength": 0.35, "margin_px": 3.0},
    },
    "Meeting": {
        "background": {"mode": 1, "blur_strength": 23, "feather_px": 2.0},
        "skin": {"enabled": True, "advanced": True, "amount": 0.40, "radius_px": 5.0,
                 "texture_keep": 0.55, "edge_feather_px": 12.0,
                 "adv_scale": 0.9, "detail_preserve": 0.20},
        "wrinkle": dict(_WRINKLE_COMMON, gain=1.2, smile_boost=0.45, squint_boost=0.45,
                        forehead_boost=0.8, glasses_margin_px=12.0, keep_ratio=0.32,
                        max_width_px=8.0, use_skin_gate=True, mask_gain=2.0,
                        baseline_boost=0.4),
        "lips": {"enabled": False},
        "teeth": {"enabled": True, "strength": 0.25, "margin_px": 3.0},
    },
}


def apply_preset(preset: str | int,
                 base: Optional[EffectParameters] = None) -> EffectParameters:
    """プリセットを base に重ねた新しいパラメータを返す。

    プリセットに含まれない項目 (単色背景の色・背景画像など) は base の値を引き継ぐ。

    Args:
        preset: プリセット名 (大文字小文字を区別しない) またはインデックス 0-4
        base: 上書き元 (None ならデフォルト)
    """
    if isinstance(preset, int):
        if not 0 <= preset < len(PRESET_NAMES):
            raise KeyError(f"プリセット番号が範囲外です: {preset}")
        name = PRESET_NAMES[preset]
    else:
        matches = [n for n in PRESET_NAMES if n.lower() == str(preset).lower()]
        if not matches:
            raise KeyError(f"不明なプリセット: {preset}")
        name = matches[0]
    data = (base or EffectParameters()).to_dict()
    _deep_merge(data, copy.deepcopy(PRESETS[name]))
    logger.info("プリセットを適用: %s", name)
    return EffectParameters.from_mapping(data)


# ============================================================
# エンジン設定
# ============================================================

@dataclass(frozen=True)
class EngineConfig:
    """パイプライン全体の動作設定 (フレームごとには変わらないもの)。"""
    enable_opencl: bool = False
    enable_face_effects: bool = True
    enable_background_effects: bool = True
    show_mask: bool = False
    flip_x: bool = False
    flip_y: bool = False
    swap_xy: bool = False
    apply_roi_rotation: bool = False
    auto_scale: bool = False
    target_fps: float = 14.0
    initial_scale: float = 1.0
    perf_logging: bool = False
    perf_log_interval: int = 100
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.type in ("bool", bool):
                _set(self, f.name, bool(getattr(self, f.name)))
        _set(self, "target_fps", _clamp(self.target_fps, "target_fps", 5.0, 60.0))
        _set(self, "initial_scale", _clamp(self.initial_scale, "initial_scale", 0.4, 1.0))
        _set(self, "perf_log_interval",
             int(_clamp(self.perf_log_interval, "perf_log_interval", 1)))
        _set(self, "log_level", str(self.log_level).upper())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for k, v in (data or {}).items():
            if k in known:
                kwargs[k] = v
            else:
                logger.warning("未知のエンジン設定を無視: %s", k)
        return cls(**kwargs)


# ============================================================
# YAML 読み込み
# ============================================================

def _deep_merge(base: MutableMapping[str, Any],
                override: Mapping[str, Any]) -> MutableMapping[str, Any]:
    for k, v in override.items():
        if k in base and isinstance(base[k], MutableMapping) and isinstance(v, Mapping):
            _deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def load_yaml(path: str | Path | None) -> Dict[str, Any]:
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        logger.warning("YAML 設定が見つかりません: %s", p)
        return {}
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML のトップレベルは辞書である必要があります")
    return data


def load_config(
    path: str | Path | None,
    overrides: Mapping[str, Any] | None = None,
) -> tuple[EngineConfig, EffectParameters]:
    """YAML (+ CLI 上書き) からエンジン設定とエフェクト設定を構築する。

    YAML の構造:
        engine:  {enable_opencl: true, auto_scale: true, ...}
        preset:  Natural          # 任意。effects より先に適用される
        effects: {skin: {amount: 0.6}, background: {mode: blur}, ...}
    """
    cfg: Dict[str, Any] = {"engine": {}, "preset": None, "effects": {}}
    _deep_merge(cfg, load_yaml(path))
    if overrides:
        _deep_merge(cfg, dict(overrides))

    engine = EngineConfig.from_mapping(cfg.get("engine"))
    params = EffectParameters()
    if cfg.get("preset") is not None:
        params = apply_preset(cfg["preset"], params)
    effects = cfg.get("effects") or {}
    if effects:
        params = params.replace(**effects)
    return engine, params


def setup_logging(level: str | int = "INFO") -> None:
    """ルートロガーを共通フォーマットで設定する。

    レベル名 (str) または数値レベルを受け付ける。
    """
    if isinstance(level, str):
        lvl = logging.getLevelName(level.upper())
        if not isinstance(lvl, int):
            lvl = logging.INFO
    else:
        lvl = int(level)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
