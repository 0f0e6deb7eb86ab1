#!/usr/bin/env python3
"""
AI Background Filter for Live Video

Main entry point: runs the background filter over a webcam or video file.

Usage:
    python main.py --model ~/.config/obs-studio/plugins/obs-background-filter/data/models/u2net.onnx
    python main.py --source clip.mp4 --mode blur --output blurred.mp4 --headless

Keyboard Controls:
    M     - Cycle mode (replace -> blur -> none)
    Q     - Quit
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import cv2
import numpy as np
from loguru import logger

from bgfilter import BackgroundFilter, Frame, PixelFormat
from bgfilter.core.config import load_settings
from bgfilter.core.contracts import ModelDirectory, TrustTier
from bgfilter.core.errors import ConfigurationError
from bgfilter.compositing import from_working_colorspace, to_working_colorspace
from bgfilter.security import default_model_directories


FORMATS = {
    "i420": PixelFormat.I420,
    "nv12": PixelFormat.NV12,
    "rgba": PixelFormat.RGBA,
}

MODES = ("replace", "blur", "none")


# ============================================================
# LOGGING CONFIGURATION
# ============================================================

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure logging."""
    logger.remove()  # Remove default handler

    # Console output with colors
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>",
        colorize=True,
    )

    # File output
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {module}:{line} | {message}",
            rotation="10 MB",
            retention="7 days",
        )


# ============================================================
# WIRE FORMAT SIMULATION
# ============================================================

def pack_frame(bgr: np.ndarray, pixel_format: PixelFormat) -> Frame:
    """Pack a captured BGR image into a host wire frame."""
    h, w = bgr.shape[:2]
    # 4:2:0 formats need even dimensions
    if pixel_format != PixelFormat.RGBA:
        h, w = h - h % 2, w - w % 2
        bgr = bgr[:h, :w]

    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    packed = from_working_colorspace(rgb, pixel_format)
    return Frame(w, h, pixel_format, packed.buffer)


def parse_color(value: str) -> int:
    """Parse an RRGGBB (optionally #-prefixed) hex color."""
    return int(value.lstrip("#"), 16)


def unpack_frame(frame: Frame) -> np.ndarray:
    """Convert a wire frame back to BGR for display."""
    rgb = to_working_colorspace(frame).buffer
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


# ============================================================
# OUTPUT RENDERER
# ============================================================

class OutputRenderer:
    """Renders output to a window and/or a video file."""

    def __init__(
        self,
        window_name: str = "Background Filter",
        headless: bool = False,
        output_path: Optional[str] = None,
        fps: float = 30.0,
    ):
        self.window_name = window_name
        self.headless = headless
        self.output_path = output_path
        self.fps = fps
        self._writer: Optional[cv2.VideoWriter] = None

        if not headless:
            cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)

    def render(self, frame: np.ndarray, fps: float = 0, latency_ms: float = 0, mode: str = ""):
        """Render frame with overlay information."""
        if self.output_path:
            self._write(frame)

        if self.headless:
            return

        display_frame = frame.copy()
        self._draw_info_overlay(display_frame, fps, latency_ms, mode)
        cv2.imshow(self.window_name, display_frame)

    def _write(self, frame: np.ndarray):
        if self._writer is None:
            h, w = frame.shape[:2]
            fourcc = cv2.VideoWriter_fourcc(*"mp4v")
            self._writer = cv2.VideoWriter(self.output_path, fourcc, self.fps, (w, h))
            logger.info(f"Writing output to {self.output_path}")
        self._writer.write(frame)

    def _draw_info_overlay(self, frame: np.ndarray, fps: float, latency_ms: float, mode: str):
        """Draw information overlay on frame."""
        h, w = frame.shape[:2]

        overlay = frame.copy()
        cv2.rectangle(overlay, (10, 10), (260, 85), (0, 0, 0), -1)
        cv2.addWeighted(overlay, 0.6, frame, 0.4, 0, frame)

        color = (0, 255, 0)
        cv2.putText(frame, f"FPS: {fps:.1f}", (20, 35), cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 1)
        cv2.putText(frame, f"Latency: {latency_ms:.1f}ms", (20, 55), cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 1)
        cv2.putText(frame, f"Mode: {mode}", (20, 75), cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 1)

        help_text = "M:Mode  Q:Quit"
        cv2.putText(frame, help_text, (10, h - 10), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (200, 200, 200), 1)

    def close(self):
        """Close the renderer."""
        if self._writer is not None:
            self._writer.release()
        if not self.headless:
            cv2.destroyAllWindows()


# ============================================================
# MAIN APPLICATION
# ============================================================

class BackgroundFilterApp:
    """Main application class."""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.settings = self._build_settings(args)
        self.pixel_format = FORMATS[args.format]

        directories = list(default_model_directories())
        directories += [ModelDirectory(Path(d), TrustTier.USER) for d in args.models_dir or []]

        self.filter = BackgroundFilter(self.settings, allowed_directories=directories)
        self.renderer = OutputRenderer(headless=args.headless, output_path=args.output)
        self._mode = self._mode_from_settings(self.settings)

    def _build_settings(self, args: argparse.Namespace) -> Dict[str, Any]:
        """YAML settings, overridden by command-line flags."""
        config_path = args.config
        if config_path is None:
            # Try default location
            default_path = Path(__file__).parent / "config" / "settings.yaml"
            if default_path.exists():
                config_path = default_path

        settings = load_settings(config_path)

        if args.model:
            settings["model_path"] = args.model
        if args.checksum:
            settings["model_checksum"] = args.checksum
        if args.threshold is not None:
            settings["threshold"] = args.threshold
        if args.color is not None:
            settings["replacement_color"] = args.color
        if args.mode:
            settings.update(self._mode_settings(args.mode))

        return settings

    @staticmethod
    def _mode_settings(mode: str) -> Dict[str, bool]:
        return {
            "replace_background": mode == "replace",
            "blur_background": mode == "blur",
        }

    @staticmethod
    def _mode_from_settings(settings: Dict[str, Any]) -> str:
        if settings.get("replace_background", True):
            return "replace"
        if settings.get("blur_background", False):
            return "blur"
        return "none"

    def _cycle_mode(self):
        self._mode = MODES[(MODES.index(self._mode) + 1) % len(MODES)]
        self.settings.update(self._mode_settings(self._mode))
        self.filter.update(self.settings)
        logger.info(f"Mode: {self._mode}")

    def _open_source(self) -> cv2.VideoCapture:
        source = self.args.source
        capture = cv2.VideoCapture(int(source) if source.isdigit() else source)
        if not capture.isOpened():
            raise RuntimeError(f"Could not open video source: {source}")
        return capture

    def run(self) -> int:
        """Run the main application loop."""
        logger.info("Starting Background Filter")

        if not self.filter.is_ready:
            logger.warning("No model loaded, frames will pass through unmodified")

        try:
            capture = self._open_source()
        except RuntimeError as e:
            logger.error(str(e))
            return 1

        frame_count = 0
        start_time = time.time()

        try:
            while True:
                ok, bgr = capture.read()
                if not ok:
                    logger.info("End of stream")
                    break

                frame = pack_frame(bgr, self.pixel_format)
                frame = self.filter.process_frame(frame)

                frame_count += 1
                elapsed = time.time() - start_time
                fps = frame_count / elapsed if elapsed > 0 else 0

                self.renderer.render(
                    unpack_frame(frame),
                    fps=fps,
                    latency_ms=self.filter.stats.last_latency_ms,
                    mode=self._mode,
                )

                if self.args.max_frames and frame_count >= self.args.max_frames:
                    break

                if not self.args.headless:
                    key = cv2.waitKey(1) & 0xFF
                    if key == ord('q'):
                        break
                    if key == ord('m'):
                        self._cycle_mode()

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            capture.release()
            self.renderer.close()
            self.filter.destroy()

        stats = self.filter.stats
        logger.info(
            f"Processed {stats.frames_processed} frames, "
            f"passed through {stats.frames_passed_through}"
        )
        return 0


# ============================================================
# ENTRY POINT
# ============================================================

def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="AI background removal for live video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("--config", "-c", type=str, default=None, help="Path to YAML settings file")
    parser.add_argument("--model", "-m", type=str, default=None, help="Path to ONNX segmentation model")
    parser.add_argument("--checksum", type=str, default=None, help="Expected SHA-256 of the model")
    parser.add_argument(
        "--models-dir",
        action="append",
        default=None,
        help="Extra directory models may be loaded from (repeatable)",
    )
    parser.add_argument("--source", "-s", type=str, default="0", help="Webcam index or video file (default: 0)")
    parser.add_argument(
        "--format",
        type=str,
        default="i420",
        choices=sorted(FORMATS),
        help="Wire pixel format to simulate (default: i420)",
    )
    parser.add_argument("--mode", type=str, default=None, choices=MODES, help="Background mode")
    parser.add_argument("--color", type=parse_color, default=None, help="Replacement color as RRGGBB hex")
    parser.add_argument("--threshold", type=float, default=None, help="Segmentation threshold (0-1)")
    parser.add_argument("--output", "-o", type=str, default=None, help="Write processed video to this file")
    parser.add_argument("--headless", action="store_true", help="No display window")
    parser.add_argument("--max-frames", type=int, default=0, help="Stop after N frames (0 = no limit)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Log file path")

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.log_level, args.log_file)

    try:
        app = BackgroundFilterApp(args)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    sys.exit(app.run())


if __name__ == "__main__":
    main()
