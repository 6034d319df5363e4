"""
CaptureShield — Shared Utility Module
=====================================
Centralized helpers used by every analyzer and by the fusion layer.

Contains:
  A) Configuration loading (config.yaml, per-section overrides)
  B) Console logger factory
  C) Pixel helpers: RGB normalization, BT.601 luminance, bounded
     nearest-neighbour downsampling
  D) Timing helpers for soft latency targets

Part 1 of 6 — Foundations
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

import cv2
import numpy as np
import yaml


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, 'config.yaml')


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from config.yaml."""
    target = path or _config_path
    with open(target, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f)


CONFIG = load_config()


def section_config(section: str, overrides: Optional[dict] = None) -> dict:
    """Return a copy of one config section with caller overrides applied."""
    base = CONFIG.get(section) or {}
    return {**base, **(overrides or {})}


# ===================================================================
# Logging
# ===================================================================

def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Create a configured logger for CaptureShield modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    if level is None:
        level_name = str(CONFIG.get('logging', {}).get('level', 'INFO')).upper()
        level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)
    return logger


_log = setup_logger('CaptureUtils')


# ===================================================================
# Pixel Helpers
# ===================================================================

def to_rgb_float(image: np.ndarray) -> np.ndarray:
    """Convert an RGB/RGBA/gray image to float32 RGB in [0, 1].

    Unsigned integer input is divided by its dtype maximum (255 for uint8,
    65535 for uint16). Float input is assumed to already be in [0, 1] and
    is clipped. Signed integer and bool input is rejected. A fourth (alpha)
    channel is dropped.
    """
    arr = np.asarray(image)
    if arr.ndim == 2:
        arr = np.repeat(arr[:, :, None], 3, axis=2)
    elif arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise ValueError(f"Unsupported image shape {arr.shape}")
    arr = arr[:, :, :3]

    if np.issubdtype(arr.dtype, np.unsignedinteger):
        return arr.astype(np.float32) / np.float32(np.iinfo(arr.dtype).max)
    if np.issubdtype(arr.dtype, np.floating):
        return np.clip(arr.astype(np.float32), 0.0, 1.0)
    raise ValueError(f"Unsupported pixel dtype {arr.dtype}")


def luminance(rgb: np.ndarray) -> np.ndarray:
    """BT.601 luminance (0.299 R + 0.587 G + 0.114 B) of a float RGB image."""
    rgb = np.ascontiguousarray(rgb, dtype=np.float32)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)


def downsample_nearest(image: np.ndarray, target_max_dim: int,
                       min_dim: int = 1) -> np.ndarray:
    """Nearest-neighbour resize so that the longer side equals target_max_dim.

    The shorter side never drops below min_dim.
    """
    h, w = image.shape[:2]
    scale = target_max_dim / float(max(h, w))
    new_w = max(min_dim, int(w * scale))
    new_h = max(min_dim, int(h * scale))
    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_NEAREST)


def bound_image_size(image: np.ndarray, max_dim: int, target_dim: int,
                     min_dim: int = 1) -> np.ndarray:
    """Downsample only when either side exceeds max_dim."""
    h, w = image.shape[:2]
    if max(h, w) <= max_dim:
        return image
    _log.debug("Downsampling %dx%d image to max dimension %d", w, h, target_dim)
    return downsample_nearest(image, target_dim, min_dim)


# ===================================================================
# Timing
# ===================================================================

def elapsed_ms(start: float) -> float:
    """Milliseconds since a time.perf_counter() reading."""
    return (time.perf_counter() - start) * 1000.0


def warn_if_slow(logger: logging.Logger, label: str, took_ms: float,
                 limit_ms: float, target_ms: Optional[float] = None) -> None:
    """Log (never enforce) a soft latency overrun.

    Past limit_ms is a warning. Past target_ms but within the limit is
    logged at INFO.
    """
    if took_ms > limit_ms:
        logger.warning("%s exceeded target time: %.1fms > %.0fms", label, took_ms, limit_ms)
    elif target_ms is not None and took_ms > target_ms:
        logger.info("%s over target time: %.1fms > %.0fms", label, took_ms, target_ms)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used for computed_at fields."""
    return datetime.now(timezone.utc).isoformat()


def clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))
