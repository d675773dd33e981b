import numpy as np

from motion_guard.detector import FrameAnalyzer, FrameSignal


def _static_frame(value: int = 128, size: tuple[int, int] = (240, 320)) -> np.ndarray:
    """Create a uniform grayscale frame."""
    return np.full(size, value, dtype=np.uint8)


def _frame_with_object(
    bg_value: int = 128,
    obj_value: int = 255,
    obj_rect: tuple[int, int, int, int] = (50, 50, 80, 80),
    size: tuple[int, int] = (240, 320),
) -> np.ndarray:
    """Create a frame with a bright rectangular object on a uniform background."""
    frame = np.full(size, bg_value, dtype=np.uint8)
    y, x, h, w = obj_rect
    frame[y : y + h, x : x + w] = obj_value
    return frame


def _trained_analyzer(bg: np.ndarray, frames: int = 50) -> FrameAnalyzer:
    analyzer = FrameAnalyzer()
    for _ in range(frames):
        analyzer.analyze(bg)
    return analyzer


class TestFrameAnalyzer:
    def test_first_frame_only_primes_the_model(self):
        analyzer = FrameAnalyzer()
        assert analyzer.analyze(_static_frame()) == FrameSignal()

    def test_static_scene_reports_no_change(self):
        """Identical frames should produce no pixel change and no motion level."""
        analyzer = _trained_analyzer(_static_frame())

        signal = analyzer.analyze(_static_frame())

        assert signal.pixel_change_percent == 0
        assert signal.motion_level == 0
        assert signal.has_lighting_change is False

    def test_new_object_raises_pixel_change_and_level(self):
        """A large bright object on a learned background registers as change."""
        bg = _static_frame(value=50)
        analyzer = _trained_analyzer(bg)

        with_object = _frame_with_object(bg_value=50, obj_value=200, obj_rect=(50, 50, 60, 60))
        signal = analyzer.analyze(with_object)

        assert signal.pixel_change_percent > 1.0
        assert signal.motion_level > 0
        assert signal.has_lighting_change is False

    def test_global_brightness_jump_flags_lighting_change(self):
        """Lights switching on move the whole frame's mean brightness."""
        analyzer = _trained_analyzer(_static_frame(value=50))

        signal = analyzer.analyze(_static_frame(value=150))

        assert signal.has_lighting_change is True

    def test_accepts_colour_frames(self):
        analyzer = FrameAnalyzer()
        colour = np.zeros((240, 320, 3), dtype=np.uint8)
        analyzer.analyze(colour)
        signal = analyzer.analyze(colour)
        assert isinstance(signal, FrameSignal)

    def test_reset_forgets_previous_frame(self):
        analyzer = _trained_analyzer(_static_frame())
        analyzer.reset()
        assert analyzer.analyze(_static_frame(value=10)) == FrameSignal()
