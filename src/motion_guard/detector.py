from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

# MOG2 labels shadows 127 and foreground 255
_SHADOW_VALUE = 127
_FOREGROUND_VALUE = 255


@dataclass(frozen=True)
class FrameSignal:
    pixel_change_percent: float = 0.0
    motion_level: float = 0.0
    has_shadow: bool = False
    has_lighting_change: bool = False


class FrameAnalyzer:
    """Turn raw frames into the per-frame signal fed to the motion validator."""

    def __init__(
        self,
        blur_kernel_size: int = 21,
        learning_rate: float = -1.0,
        lighting_change_delta: float = 25.0,
    ) -> None:
        self._blur_kernel_size = blur_kernel_size
        self._learning_rate = learning_rate
        self._lighting_change_delta = lighting_change_delta
        self._bg_subtractor = cv2.createBackgroundSubtractorMOG2(detectShadows=True)
        self._kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (5, 5))
        self._previous: np.ndarray | None = None

    def analyze(self, frame: np.ndarray) -> FrameSignal:
        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        k = self._blur_kernel_size
        blurred = cv2.GaussianBlur(gray, (k, k), 0)

        lr = self._learning_rate
        raw_mask = self._bg_subtractor.apply(blurred, learningRate=lr if lr >= 0 else -1)

        previous = self._previous
        self._previous = blurred
        if previous is None:
            return FrameSignal()

        shadow_pixels = int(np.count_nonzero(raw_mask == _SHADOW_VALUE))

        fg_mask = np.where(raw_mask == _FOREGROUND_VALUE, 255, 0).astype(np.uint8)
        # Erode to remove noise, dilate to fill gaps
        fg_mask = cv2.erode(fg_mask, self._kernel, iterations=1)
        fg_mask = cv2.dilate(fg_mask, self._kernel, iterations=2)
        foreground_pixels = int(np.count_nonzero(fg_mask))

        total = fg_mask.size
        diff = cv2.absdiff(blurred, previous)
        # Mean change inside the foreground mask only
        level = float(np.mean(diff[fg_mask > 0])) if foreground_pixels else 0.0
        brightness_shift = abs(float(np.mean(blurred)) - float(np.mean(previous)))

        return FrameSignal(
            pixel_change_percent=foreground_pixels / total * 100.0,
            motion_level=level / 255.0 * 100.0,
            has_shadow=shadow_pixels > foreground_pixels,
            has_lighting_change=brightness_shift > self._lighting_change_delta,
        )

    def reset(self) -> None:
        self._bg_subtractor = cv2.createBackgroundSubtractorMOG2(detectShadows=True)
        self._previous = None
