"""
facefx/errors.py
================
エフェクト処理の例外定義。

いずれも EffectsPipeline 内で捕捉され、該当ステージのみスキップされる。
呼び出し側 (映像ループ) まで伝播することはない。
"""

from __future__ import annotations


class EffectsError(Exception):
    """facefx の全例外の基底クラス。"""


class InputShapeError(EffectsError, ValueError):
    """入力の形状が不正 (ランドマーク不足・サイズ 0 のフレーム/マスク等)。"""


class RegionExtractionError(InputShapeError):
    """ランドマークから顔領域を構築できなかった。"""


class DegenerateGeometryError(EffectsError):
    """縮小処理用 ROI が小さすぎる (8x8 未満)。等倍処理にフォールバックする。"""


class AmbiguousMaskFormatError(EffectsError):
    """マスクのチャンネル数/型の組み合わせが解釈できない。"""


class ConfigOutOfRangeError(EffectsError, ValueError):
    """設定値が数値として解釈できない。

    数値の範囲外は例外にせずクランプするため、
    この例外は型が不正な場合にのみ送出される。
    """
