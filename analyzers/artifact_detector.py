"""
CaptureShield — Artifact Detector (TASK 2.4)
============================================
Looks for three physical fingerprints of a recapture:

  1. PWM flicker   — rolling-shutter banding from a display's
                     brightness modulation (row-profile FFT).
  2. Specular      — a bright, unsaturated, rectangular glare patch
                     (glossy screen or laminated print).
  3. Halftone      — periodic ink dots of a printed image (tile
                     autocorrelation at 10-50 px pitch).

overall = 0.35 * pwm + 0.30 * specular + 0.35 * halftone
Artificial if any sub-score > 0.7 or overall > 0.6.

Part 2 of 6 — Signal Analyzers
"""

import threading
import time
from collections import namedtuple
from typing import Dict, List, Optional, Tuple

import numpy as np

from capture_analyzer import CaptureAnalyzer
from capture_types import AnalysisStatus, ArtifactAnalysisResult, CaptureFrame, DetectionMethod
from capture_utils import (
    bound_image_size, clamp01, elapsed_ms, luminance, section_config, setup_logger,
    to_rgb_float, warn_if_slow,
)

_log = setup_logger('ArtifactDet')

SubScore = namedtuple("SubScore", ["detected", "confidence"])


class ArtifactDetector(CaptureAnalyzer):
    name = "artifact_detector"
    method = DetectionMethod.ARTIFACTS

    def __init__(self, config: Optional[dict] = None):
        self.cfg = section_config('artifacts', config)
        self._setup_lock = threading.Lock()
        # (fft_size, rows) -> per-refresh-rate bin windows
        self._pwm_windows: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}

    def analyze_frame(self, frame: CaptureFrame) -> ArtifactAnalysisResult:
        return self.analyze(frame.pixels)

    def analyze(self, image) -> ArtifactAnalysisResult:
        start = time.perf_counter()
        cfg = self.cfg
        try:
            rgb = to_rgb_float(image)
        except (TypeError, ValueError) as e:
            return ArtifactAnalysisResult.unavailable(f"Unreadable image: {e}")

        h, w = rgb.shape[:2]
        min_dim = cfg['min_image_dimension']
        if h < min_dim or w < min_dim:
            return ArtifactAnalysisResult.unavailable(f"Image too small for artifact analysis ({w}x{h})")

        try:
            rgb = bound_image_size(rgb, cfg['max_image_dimension'],
                                   cfg['target_image_dimension'], min_dim)
            lum = luminance(rgb).astype(np.float64)
            pwm = self.detect_pwm_flicker(lum)
            specular = self.detect_specular_pattern(rgb, lum)
            halftone = self.detect_halftone(lum)
        except Exception as e:
            _log.error("Artifact analysis failed: %s", e, exc_info=True)
            return ArtifactAnalysisResult.error(str(e))

        overall = clamp01(pwm.confidence * cfg['pwm_weight']
                          + specular.confidence * cfg['specular_weight']
                          + halftone.confidence * cfg['halftone_weight'])
        high = cfg['high_confidence_threshold']
        any_high = max(pwm.confidence, specular.confidence, halftone.confidence) > high
        artificial = any_high or overall > cfg['combined_confidence_threshold']

        took = elapsed_ms(start)
        warn_if_slow(_log, "Artifact analysis", took, cfg['max_time_ms'])
        _log.debug("Artifacts: pwm=%.3f specular=%.3f halftone=%.3f overall=%.3f artificial=%s",
                   pwm.confidence, specular.confidence, halftone.confidence, overall, artificial)

        return ArtifactAnalysisResult(
            status=AnalysisStatus.SUCCESS,
            pwm_flicker_detected=pwm.detected,
            pwm_confidence=pwm.confidence,
            specular_pattern_detected=specular.detected,
            specular_confidence=specular.confidence,
            halftone_detected=halftone.detected,
            halftone_confidence=halftone.confidence,
            overall_confidence=overall,
            is_likely_artificial=bool(artificial),
            analysis_time_ms=took,
            algorithm_version=str(cfg['algorithm_version']),
        )

    def release(self):
        with self._setup_lock:
            self._pwm_windows.clear()

    # ------------------------------------------------------------------
    # PWM flicker
    # ------------------------------------------------------------------

    def _pwm_search_windows(self, fft_size: int, rows: int) -> List[Tuple[int, int]]:
        key = (fft_size, rows)
        with self._setup_lock:
            windows = self._pwm_windows.get(key)
            if windows is None:
                half_n = fft_size // 2
                windows = []
                for rate in self.cfg['refresh_rates']:
                    expected_bin = int((rate / 2.0) * fft_size / rows)
                    tol = max(1, int(expected_bin * self.cfg['pwm_frequency_tolerance']))
                    windows.append((max(2, expected_bin - tol), min(half_n - 1, expected_bin + tol)))
                self._pwm_windows[key] = windows
            return windows

    def detect_pwm_flicker(self, lum: np.ndarray) -> SubScore:
        cfg = self.cfg
        rows = lum.shape[0]
        profile = lum.mean(axis=1)
        profile = profile - profile.mean()

        fft_size = 1
        while fft_size < rows:
            fft_size *= 2
        half_n = fft_size // 2
        spectrum = np.abs(np.fft.fft(profile, n=fft_size))[:half_n]
        peak = spectrum.max() if spectrum.size else 0.0
        if peak <= 0:
            return SubScore(False, 0.0)
        spectrum = spectrum / peak

        noise = float(np.sort(spectrum)[spectrum.size // 2]) * cfg['pwm_noise_multiplier']

        bands, strength = 0, 0.0
        for lo, hi in self._pwm_search_windows(fft_size, rows):
            if lo >= hi:
                continue
            band_peak = float(spectrum[lo:hi].max())
            if band_peak > noise and band_peak > cfg['pwm_min_peak_magnitude']:
                bands += 1
                strength += band_peak

        detected = bands >= cfg['min_pwm_band_count']
        avg = strength / bands if bands else 0.0
        confidence = min(1.0, avg * bands / len(cfg['refresh_rates']))
        return SubScore(bool(detected), float(confidence))

    # ------------------------------------------------------------------
    # Specular highlights
    # ------------------------------------------------------------------

    def detect_specular_pattern(self, rgb: np.ndarray, lum: np.ndarray) -> SubScore:
        cfg = self.cfg
        max_rgb = rgb.max(axis=2)
        min_rgb = rgb.min(axis=2)
        with np.errstate(invalid='ignore', divide='ignore'):
            saturation = np.where(max_rgb > 0, (max_rgb - min_rgb) / max_rgb, 0.0)
        mask = (lum >= cfg['highlight_luminance_threshold']) & \
               (saturation <= cfg['highlight_saturation_threshold'])

        count = int(mask.sum())
        area_fraction = count / float(mask.size)
        if not (cfg['min_highlight_area_fraction'] <= area_fraction <= cfg['max_highlight_area_fraction']):
            return SubScore(False, 0.0)

        ys, xs = np.nonzero(mask)
        min_x, max_x, min_y, max_y = xs.min(), xs.max(), ys.min(), ys.max()
        if not (max_x > min_x and max_y > min_y):
            return SubScore(False, 0.0)

        box_w = int(max_x - min_x + 1)
        box_h = int(max_y - min_y + 1)
        rectangularity = count / float(box_w * box_h)
        aspect = max(box_w, box_h) / float(min(box_w, box_h))
        uniformity = self.edge_uniformity(mask[min_y:max_y + 1, min_x:max_x + 1])

        is_rect = rectangularity >= cfg['min_rectangularity']
        detected = is_rect and uniformity >= cfg['min_edge_uniformity']

        confidence = 0.0
        if is_rect:
            confidence += rectangularity * 0.4
        if aspect >= cfg['min_aspect_ratio']:
            confidence += 0.2
        confidence += uniformity * 0.4
        if area_fraction < 0.01 or area_fraction > 0.1:
            confidence *= 0.7
        return SubScore(bool(detected), clamp01(confidence))

    @staticmethod
    def edge_uniformity(box: np.ndarray) -> float:
        """Straightness of the four outline edges of a cropped highlight mask."""
        h, w = box.shape
        cols = box.any(axis=0)
        rows = box.any(axis=1)

        top = np.argmax(box, axis=0)[cols]
        bottom = (h - 1 - np.argmax(box[::-1, :], axis=0))[cols]
        left = np.argmax(box, axis=1)[rows]
        right = (w - 1 - np.argmax(box[:, ::-1], axis=1))[rows]

        def edge_var(edge: np.ndarray) -> float:
            return float(edge.var()) if edge.size > 1 else 0.0

        avg_var = (edge_var(top) + edge_var(bottom) + edge_var(left) + edge_var(right)) / 4.0
        span = max(w - 1, h - 1)
        if span <= 0:
            return 0.0
        return max(0.0, 1.0 - (avg_var / span) * 10.0)

    # ------------------------------------------------------------------
    # Halftone
    # ------------------------------------------------------------------

    def detect_halftone(self, lum: np.ndarray) -> SubScore:
        cfg = self.cfg
        tile = int(cfg['halftone_tile_size'])
        h, w = lum.shape
        stride_y = max(tile, h // 4)
        stride_x = max(tile, w // 4)

        scores = []
        analyzed = 0
        for y0 in range(0, h - tile, stride_y):
            for x0 in range(0, w - tile, stride_x):
                score = self.halftone_tile_score(lum[y0:y0 + tile, x0:x0 + tile])
                analyzed += 1
                if score > 0:
                    scores.append(score)

        detected = len(scores) >= cfg['min_halftone_tiles']
        avg = sum(scores) / len(scores) if scores else 0.0
        coverage = len(scores) / float(max(1, analyzed))
        confidence = min(1.0, avg * coverage * 2.0) if detected else avg * 0.5
        return SubScore(bool(detected), clamp01(confidence))

    def halftone_tile_score(self, tile: np.ndarray) -> float:
        """Row, column and diagonal periodicity of one tile, variance-normalized."""
        cfg = self.cfg
        size = tile.shape[0]
        centered = tile - tile.mean()
        variance = float(np.mean(centered * centered))
        if variance <= 0.001:
            return 0.0

        lags = range(int(cfg['halftone_min_lag']), min(int(cfg['halftone_max_lag']), size // 2))
        if len(lags) == 0:
            return 0.0

        row_corr = np.stack([(centered[:, :-lag] * centered[:, lag:]).mean(axis=1) for lag in lags])
        col_corr = np.stack([(centered[:-lag, :] * centered[lag:, :]).mean(axis=0) for lag in lags])
        diag_corr = np.array([(centered[:-lag, :-lag] * centered[lag:, lag:]).mean() for lag in lags])

        row_periodicity = float(np.abs(row_corr).max(axis=0).mean())
        col_periodicity = float(np.abs(col_corr).max(axis=0).mean())
        diag_periodicity = float(np.abs(diag_corr).max())

        normalized = (row_periodicity + col_periodicity + diag_periodicity) / 3.0 / variance
        threshold = cfg['halftone_tile_threshold']
        return normalized * 0.3 if normalized > threshold else 0.0
