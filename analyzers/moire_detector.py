"""
CaptureShield — Moiré Detector (TASK 2.2)
=========================================
Detects screen recapture via 2D Fast Fourier Transform (FFT).
Photographing a display makes its pixel grid beat against the sensor
grid, leaving sharp off-centre peaks in the spectrum:
  1. LCD RGB stripe     -> orthogonal peaks at a ~1:1 frequency ratio
  2. OLED pentile       -> orthogonal peaks at a ~sqrt(2) ratio
  3. High-refresh panel -> >= 2 harmonics of one fundamental

Method:
  - BT.601 luminance, downsample oversized captures.
  - Centre on a power-of-two square, Hann window, remove mean.
  - Log-magnitude spectrum, normalised to [0, 1], DC at centre.
  - Peak search inside the 50-300 cycles/width annulus.

Part 2 of 6 — Signal Analyzers
"""

import math
import threading
import time
from collections import namedtuple
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import ndimage
from scipy.signal import get_window

from capture_analyzer import CaptureAnalyzer
from capture_types import (
    AnalysisStatus, CaptureFrame, DetectionMethod, MoireAnalysisResult, MoirePeak, ScreenType,
)
from capture_utils import (
    bound_image_size, clamp01, elapsed_ms, luminance, section_config, setup_logger,
    to_rgb_float, warn_if_slow,
)

_log = setup_logger('MoireDetect')

# Per-FFT-size geometry reused across calls
_SpectrumSetup = namedtuple("_SpectrumSetup", ["radius", "interior", "ring", "ring_count"])


class MoireDetector(CaptureAnalyzer):
    name = "moire_detector"
    method = DetectionMethod.MOIRE

    def __init__(self, config: Optional[dict] = None):
        self.cfg = section_config('moire', config)
        self._setup_lock = threading.Lock()
        self._setups: Dict[int, _SpectrumSetup] = {}
        self._windows: Dict[int, np.ndarray] = {}

    def analyze_frame(self, frame: CaptureFrame) -> MoireAnalysisResult:
        return self.analyze(frame.pixels)

    def analyze(self, image) -> MoireAnalysisResult:
        """
        Analyze an RGB(A) image for screen moiré.

        Returns:
            MoireAnalysisResult. UNAVAILABLE for unreadable or undersized
            images, ERROR when the transform itself fails.
        """
        start = time.perf_counter()
        cfg = self.cfg
        try:
            rgb = to_rgb_float(image)
        except (TypeError, ValueError) as e:
            return MoireAnalysisResult.unavailable(f"Unreadable image: {e}")

        h, w = rgb.shape[:2]
        min_dim = cfg['min_image_dimension']
        if h < min_dim or w < min_dim:
            return MoireAnalysisResult.unavailable(f"Image too small for FFT analysis ({w}x{h})")

        try:
            gray = luminance(rgb)
            gray = bound_image_size(gray, cfg['max_image_dimension'], cfg['target_fft_size'], min_dim)
            spectrum, analyzed_width = self.compute_spectrum(gray)
            peaks = self.find_peaks(spectrum, analyzed_width)
        except Exception as e:
            _log.error("Moiré FFT analysis failed: %s", e, exc_info=True)
            return MoireAnalysisResult.error(f"FFT analysis failed: {e}")

        screen_type = self.classify_screen_type(peaks)
        detected, confidence = self.compute_confidence(peaks, screen_type)

        took = elapsed_ms(start)
        warn_if_slow(_log, "Moiré detection", took, cfg['max_time_ms'], cfg.get('target_time_ms'))
        _log.debug("Moiré: peaks=%d type=%s confidence=%.3f detected=%s",
                   len(peaks), screen_type, confidence, detected)

        return MoireAnalysisResult(
            status=AnalysisStatus.SUCCESS,
            detected=detected,
            confidence=confidence,
            peaks=peaks,
            screen_type=screen_type,
            analysis_time_ms=took,
            algorithm_version=str(cfg['algorithm_version']),
        )

    # ------------------------------------------------------------------
    # Transform setup cache
    # ------------------------------------------------------------------

    def _hann(self, length: int) -> np.ndarray:
        with self._setup_lock:
            window = self._windows.get(length)
            if window is None:
                window = get_window('hann', length, fftbins=True).astype(np.float64)
                self._windows[length] = window
            return window

    def _setup(self, size: int) -> _SpectrumSetup:
        with self._setup_lock:
            setup = self._setups.get(size)
            if setup is None:
                setup = self._build_setup(size)
                self._setups[size] = setup
            return setup

    @staticmethod
    def _build_setup(size: int) -> _SpectrumSetup:
        center = size // 2
        yy, xx = np.mgrid[0:size, 0:size]
        radius = np.sqrt((xx - center) ** 2 + (yy - center) ** 2)

        interior = np.zeros((size, size), dtype=bool)
        interior[2:size - 2, 2:size - 2] = True

        # 11x11 neighbourhood minus the 3x3 core, for prominence
        ring = np.ones((11, 11), dtype=np.float64)
        ring[4:7, 4:7] = 0.0
        ring_count = ndimage.correlate(np.ones((size, size)), ring, mode='constant', cval=0.0)
        return _SpectrumSetup(radius, interior, ring, ring_count)

    def clear_cache(self):
        with self._setup_lock:
            self._setups.clear()
            self._windows.clear()

    def release(self):
        self.clear_cache()

    # ------------------------------------------------------------------
    # Spectrum
    # ------------------------------------------------------------------

    def fft_size_for(self, width: int, height: int) -> int:
        target = min(max(width, height), int(self.cfg['target_fft_size']))
        size = 64
        while size < target:
            size *= 2
        return size

    def compute_spectrum(self, gray: np.ndarray) -> Tuple[np.ndarray, int]:
        """Return (normalized centred log-magnitude spectrum, analyzed width)."""
        h, w = gray.shape
        size = self.fft_size_for(w, h)

        # Oversized (but in-bounds) captures are centre-cropped to the FFT size
        if h > size or w > size:
            y0 = max(0, (h - size) // 2)
            x0 = max(0, (w - size) // 2)
            gray = gray[y0:y0 + size, x0:x0 + size]
            h, w = gray.shape

        windowed = gray.astype(np.float64) * np.outer(self._hann(h), self._hann(w))
        padded = np.zeros((size, size), dtype=np.float64)
        oy, ox = (size - h) // 2, (size - w) // 2
        padded[oy:oy + h, ox:ox + w] = windowed
        padded -= padded.mean()

        magnitude = np.log10(1.0 + np.abs(np.fft.fft2(padded)))
        peak = magnitude.max()
        if peak > 0:
            magnitude /= peak
        return np.fft.fftshift(magnitude), w

    # ------------------------------------------------------------------
    # Peaks
    # ------------------------------------------------------------------

    def find_peaks(self, spectrum: np.ndarray, analyzed_width: int) -> List[MoirePeak]:
        cfg = self.cfg
        size = spectrum.shape[0]
        setup = self._setup(size)
        center = size // 2

        freq_scale = analyzed_width / float(size)
        min_px = int(cfg['min_frequency'] / freq_scale)
        max_px = int(cfg['max_frequency'] / freq_scale)

        radius_px = setup.radius.astype(np.int64)
        in_band = (radius_px >= min_px) & (radius_px <= max_px)

        # Noise floor from the spectrum outside the moiré band (DC excluded)
        off_band = (setup.radius > cfg['dc_exclusion_radius']) & ~in_band
        if not off_band.any():
            off_band = setup.radius > cfg['dc_exclusion_radius']
        if not off_band.any():
            return []
        median_mag = float(np.sort(spectrum[off_band])[off_band.sum() // 2])
        noise_threshold = median_mag * cfg['noise_floor_multiplier']

        candidates = (
            setup.interior & in_band
            & (spectrum > noise_threshold)
            & (spectrum >= cfg['min_peak_magnitude'])
        )
        if not candidates.any():
            return []

        # Strict local maximum over the 5x5 neighbourhood
        footprint = np.ones((5, 5), dtype=bool)
        footprint[2, 2] = False
        neighbour_max = ndimage.maximum_filter(spectrum, footprint=footprint,
                                               mode='constant', cval=-np.inf)
        candidates &= spectrum > neighbour_max
        if not candidates.any():
            return []

        ring_sum = ndimage.correlate(spectrum, setup.ring, mode='constant', cval=0.0)
        local_avg = np.where(setup.ring_count > 0, ring_sum / np.maximum(setup.ring_count, 1), median_mag)

        peaks = []
        for y, x in zip(*np.nonzero(candidates)):
            mag = float(spectrum[y, x])
            avg = float(local_avg[y, x])
            prominence = mag / avg if avg > 0 else 0.0
            if prominence < cfg['min_peak_prominence']:
                continue
            dy, dx = int(y) - center, int(x) - center
            peaks.append(MoirePeak(
                frequency=float(setup.radius[y, x] * freq_scale),
                magnitude=mag,
                angle=float(math.atan2(dy, dx)),
                prominence=float(prominence),
            ))

        # sorted() is stable: equal magnitudes keep raster order
        peaks = sorted(peaks, key=lambda p: -p.magnitude)
        return peaks[:int(cfg['max_peaks_to_report'])]

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_screen_type(self, peaks: List[MoirePeak]) -> Optional[ScreenType]:
        """
        Screen-type decision table:

        peaks < 2                         -> None
        no horizontal + vertical pair     -> UNKNOWN
        f2/f1 within tol of 1.0           -> LCD
        f2/f1 within tol of sqrt(2)       -> OLED
        >= 2 integer harmonics of f1      -> HIGH_REFRESH
        otherwise                         -> UNKNOWN
        """
        cfg = self.cfg
        if len(peaks) < cfg['min_peaks_for_detection']:
            return None

        tol = cfg['angle_tolerance']
        has_horizontal = has_vertical = False
        for peak in peaks:
            angle_mod = math.fmod(abs(peak.angle), math.pi)
            if angle_mod < tol or abs(angle_mod - math.pi) < tol:
                has_horizontal = True
            if abs(angle_mod - math.pi / 2) < tol:
                has_vertical = True

        if not (has_horizontal and has_vertical):
            return ScreenType.UNKNOWN

        by_freq = sorted(peaks, key=lambda p: p.frequency)
        fundamental = by_freq[0].frequency
        if fundamental > 0:
            ratio = by_freq[1].frequency / fundamental
            ratio_tol = cfg['frequency_ratio_tolerance']
            if abs(ratio - cfg['lcd_frequency_ratio']) < ratio_tol:
                return ScreenType.LCD
            if abs(ratio - cfg['oled_frequency_ratio']) < ratio_tol:
                return ScreenType.OLED

            harmonics = 0
            for peak in by_freq[1:]:
                r = peak.frequency / fundamental
                if abs(r - round(r)) < cfg['harmonic_tolerance'] and round(r) >= 2:
                    harmonics += 1
            if harmonics >= cfg['min_harmonic_peaks']:
                return ScreenType.HIGH_REFRESH

        return ScreenType.UNKNOWN

    def compute_confidence(self, peaks: List[MoirePeak],
                           screen_type: Optional[ScreenType]) -> Tuple[bool, float]:
        cfg = self.cfg
        if not peaks:
            return False, 0.0

        confidence = min(len(peaks), 5) * 0.1
        avg_prominence = sum(p.prominence for p in peaks) / len(peaks)
        confidence += min(avg_prominence / 10.0, 0.3)
        confidence += peaks[0].magnitude * 0.2

        if screen_type is not None and screen_type is not ScreenType.UNKNOWN:
            confidence += cfg['screen_pattern_boost']
        if screen_type is ScreenType.UNKNOWN and len(peaks) >= 2:
            confidence -= cfg['ambiguous_penalty']

        confidence = clamp01(confidence)
        detected = (confidence >= cfg['min_detection_confidence']
                    and len(peaks) >= cfg['min_peaks_for_detection'])
        return bool(detected), confidence
