"""
facefx/auto_scale.py
====================
FPS に応じて処理解像度スケールをゆっくり調整するフィードバック制御。

  - 直近 10 サンプルの平均 FPS を目標と比較
  - 10 サンプル以上、かつ前回調整から 5 秒以上経過したときのみ判断
  - 差が 2 fps を超えたら ±0.1% (差が 6 fps 超なら ±0.2%) だけ動かす
  - スケールは [0.4, 1.0] にクランプし、0.05% 以下の変化は適用しない
  - 調整後は履歴の新しい半分を残して連続性を保つ
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

HISTORY_SIZE = 10
MIN_SAMPLES = 10
ADJUST_INTERVAL_S = 5.0
DEADBAND_FPS = 2.0
LARGE_GAP_FPS = 6.0
STEP_SMALL = 0.001
STEP_LARGE = 0.002
MIN_CHANGE = 0.0005
SCALE_MIN = 0.4
SCALE_MAX = 1.0
TARGET_MIN = 5.0
TARGET_MAX = 60.0


def target_fps_for_camera(camera_fps: float) -> float:
    """カメラの FPS から目標 FPS を決める: min(cam, 15) − 1 (下限 5)。"""
    return max(min(float(camera_fps), 15.0) - 1.0, TARGET_MIN)


class AdaptiveScaleController:
    """処理スケールの自動調整器。

    使用例:
        ctl = AdaptiveScaleController(target_fps=14.0)
        ctl.set_enabled(True)
        for frame in frames:
            ...
            ctl.update(measured_fps)
            scale = ctl.scale
    """

    def __init__(
        self,
        initial_scale: float = 1.0,
        target_fps: float = 14.0,
        enabled: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            initial_scale: 初期スケール (0.4-1.0)
            target_fps: 目標 FPS (5-60)
            enabled: 初期状態で有効にするか
            clock: 秒を返す単調時計 (テスト用に差し替え可能)
        """
        self._lock = threading.Lock()
        self._clock = clock
        self._scale = min(max(float(initial_scale), SCALE_MIN), SCALE_MAX)
        self._target = min(max(float(target_fps), TARGET_MIN), TARGET_MAX)
        self._history: deque[float] = deque(maxlen=HISTORY_SIZE)
        self._current_fps = 0.0
        self._enabled = False
        self._last_adjust = clock()
        if enabled:
            self.set_enabled(True)

    # ------ 状態 ------
    @property
    def scale(self) -> float:
        return self._scale

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def target_fps(self) -> float:
        return self._target

    @property
    def current_fps(self) -> float:
        return self._current_fps

    @property
    def average_fps(self) -> float:
        with self._lock:
            if not self._history:
                return 0.0
            return sum(self._history) / len(self._history)

    @property
    def history(self) -> list[float]:
        with self._lock:
            return list(self._history)

    # ------ 設定 ------
    def set_enabled(self, enabled: bool) -> None:
        """有効化時は履歴とタイマーをリセットする。状態が同じなら何もしない。"""
        with self._lock:
            if self._enabled == enabled:
                return
            self._enabled = enabled
            if enabled:
                self._history.clear()
                self._last_adjust = self._clock()
                logger.info("自動スケール有効 (目標 %.1f fps)", self._target)

    def set_target_fps(self, target_fps: float) -> None:
        new_target = min(max(float(target_fps), TARGET_MIN), TARGET_MAX)
        with self._lock:
            if abs(self._target - new_target) < 0.1:
                return
            self._target = new_target

    def update_target_from_camera(self, camera_fps: float) -> None:
        self.set_target_fps(target_fps_for_camera(camera_fps))

    def set_scale(self, scale: float) -> None:
        """スケールを手動で設定する (クランプ付き)。"""
        with self._lock:
            self._scale = min(max(float(scale), SCALE_MIN), SCALE_MAX)

    # ------ 更新 ------
    def update(self, fps: float) -> bool:
        """FPS サンプルを追加し、条件を満たせばスケールを調整する。

        Returns:
            スケールを変更したら True
        """
        with self._lock:
            if not self._enabled:
                return False
            self._current_fps = float(fps)
            self._history.append(float(fps))
            if len(self._history) < MIN_SAMPLES:
                return False

            now = self._clock()
            if now - self._last_adjust < ADJUST_INTERVAL_S:
                return False

            avg = sum(self._history) / len(self._history)
            diff = self._target - avg
            if abs(diff) <= DEADBAND_FPS:
                return False

            # 目標より遅い (diff > 0) なら縮小、速ければ拡大
            step = STEP_LARGE if abs(diff) > LARGE_GAP_FPS else STEP_SMALL
            delta = -step if diff > 0 else step
            new_scale = min(max(self._scale + delta, SCALE_MIN), SCALE_MAX)
            if abs(new_scale - self._scale) <= MIN_CHANGE:
                return False

            logger.debug(
                "スケール調整 %.4f → %.4f (平均 %.1f fps, 目標 %.1f fps)",
                self._scale, new_scale, avg, self._target,
            )
            self._scale = new_scale
            self._last_adjust = now
            keep = list(self._history)[len(self._history) // 2:]
            self._history.clear()
            self._history.extend(keep)
            return True
