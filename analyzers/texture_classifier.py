"""
CaptureShield — Texture Classifier (TASK 2.3)
=============================================
Classifies the photographed surface from five image statistics:

  Feature           | Real scene | LCD/OLED | Print
  ------------------|------------|----------|---------
  color_variance    | high       | low      | low-mid
  edge_sharpness    | moderate   | high     | low
  periodicity       | none       | strong   | weak
  high_frequency    | high       | mid      | low
  color_uniformity  | low        | high     | mid

The class scores come from hand-tuned linear formulas
(HeuristicTextureScorer). A learned model can replace it by providing
the same `score(features) -> {TextureClass: float}` method.

Part 2 of 6 — Signal Analyzers
"""

import math
import time
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from capture_analyzer import CaptureAnalyzer
from capture_types import (
    AnalysisStatus, CaptureFrame, DetectionMethod, TEXTURE_CLASS_ORDER,
    TextureClass, TextureClassificationResult, TextureFeatures,
)
from capture_utils import (
    bound_image_size, clamp01, elapsed_ms, section_config, setup_logger,
    to_rgb_float, warn_if_slow,
)

_log = setup_logger('TextureCls')


class HeuristicTextureScorer:
    """Five features in, five class scores out."""

    def __init__(self, unknown_floor: float = 0.1):
        self.unknown_floor = unknown_floor

    def score(self, f: TextureFeatures) -> Dict[TextureClass, float]:
        cv, es, p = f.color_variance, f.edge_sharpness, f.periodicity
        hf, cu = f.high_frequency, f.color_uniformity

        real = (cv * 0.25
                + (1.0 - abs(es - 0.5) * 2.0) * 0.15
                + (1.0 - p) * 0.25
                + hf * 0.20
                + (1.0 - cu) * 0.15)

        lcd = (1.0 - cv) * 0.20 + es * 0.25 + p * 0.35 + cu * 0.20

        # Pentile layouts read like a softer LCD
        oled = ((1.0 - cv * 0.8) * 0.15 + es * 0.20 + p * 0.25 + cu * 0.15) * 0.85

        variance_score = (0.5 - cv) * 2.0 if cv < 0.5 else 0.0
        halftone_periodicity = p if 0.1 < p < 0.5 else 0.0
        mid_uniformity = 0.5 if 0.3 < cu < 0.7 else 0.0
        printed = (variance_score * 0.15
                   + (1.0 - es) * 0.25
                   + halftone_periodicity * 0.20
                   + (1.0 - hf) * 0.20
                   + mid_uniformity * 0.20)

        return {
            TextureClass.REAL_SCENE: clamp01(real),
            TextureClass.LCD_SCREEN: clamp01(lcd),
            TextureClass.OLED_SCREEN: clamp01(oled),
            TextureClass.PRINTED_PAPER: clamp01(printed),
            TextureClass.UNKNOWN: clamp01(self.unknown_floor),
        }


class TextureClassifier(CaptureAnalyzer):
    name = "texture_classifier"
    method = DetectionMethod.TEXTURE

    def __init__(self, config: Optional[dict] = None, scorer=None):
        self.cfg = section_config('texture', config)
        self.scorer = scorer or HeuristicTextureScorer(self.cfg['unknown_floor_score'])

    def analyze_frame(self, frame: CaptureFrame) -> TextureClassificationResult:
        return self.classify(frame.pixels)

    def classify(self, image) -> TextureClassificationResult:
        """
        Classify an RGB(A) image.

        Returns:
            TextureClassificationResult with the arg-max class, all five
            scores and the extracted features.
        """
        start = time.perf_counter()
        cfg = self.cfg
        try:
            rgb = to_rgb_float(image)
        except (TypeError, ValueError) as e:
            return TextureClassificationResult.unavailable(f"Unreadable image: {e}")

        h, w = rgb.shape[:2]
        min_dim = cfg['min_image_dimension']
        if h < min_dim or w < min_dim:
            return TextureClassificationResult.unavailable(
                f"Image too small for texture analysis ({w}x{h})")

        try:
            rgb = bound_image_size(rgb, cfg['max_image_dimension'], cfg['target_image_size'])
            features = self.extract_features(rgb)
            scores = self.score(features)
        except Exception as e:
            _log.error("Texture classification failed: %s", e, exc_info=True)
            return TextureClassificationResult.error(str(e))

        classification, confidence = self.determine_classification(scores)
        screen_score = max(scores[TextureClass.LCD_SCREEN], scores[TextureClass.OLED_SCREEN])
        threshold = cfg['recapture_confidence_threshold']
        recaptured = screen_score > threshold or scores[TextureClass.PRINTED_PAPER] > threshold

        took = elapsed_ms(start)
        warn_if_slow(_log, "Texture classification", took, cfg['max_time_ms'])
        _log.debug("Texture: %s (%.3f) recaptured=%s", classification.value, confidence, recaptured)

        return TextureClassificationResult(
            status=AnalysisStatus.SUCCESS,
            classification=classification,
            confidence=confidence,
            all_classifications=dict(scores),
            features=features,
            is_likely_recaptured=bool(recaptured),
            analysis_time_ms=took,
            algorithm_version=str(cfg['algorithm_version']),
        )

    def score(self, features: TextureFeatures) -> Dict[TextureClass, float]:
        """Five features in, five class scores out (delegates to the scorer)."""
        return self.scorer.score(features)

    def determine_classification(self, scores: Dict[TextureClass, float]) -> Tuple[TextureClass, float]:
        """Arg-max in fixed class order; weak winners collapse to UNKNOWN."""
        best_class, best_score = TextureClass.UNKNOWN, -1.0
        for cls in TEXTURE_CLASS_ORDER:
            value = scores.get(cls, 0.0)
            if value > best_score:
                best_class, best_score = cls, value

        if best_score < self.cfg['min_classification_confidence']:
            return TextureClass.UNKNOWN, clamp01(best_score)
        return best_class, clamp01(best_score)

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def extract_features(self, rgb: np.ndarray) -> TextureFeatures:
        rgb = rgb.astype(np.float64)
        gray = rgb.mean(axis=2)
        return TextureFeatures(
            color_variance=self.color_variance(rgb),
            edge_sharpness=self.edge_sharpness(gray),
            periodicity=self.periodicity(gray),
            high_frequency=self.high_frequency(gray),
            color_uniformity=self.color_uniformity(rgb),
        )

    @staticmethod
    def color_variance(rgb: np.ndarray) -> float:
        per_channel = rgb.reshape(-1, 3).var(axis=0)
        return float(min(1.0, per_channel.mean() * 4.0))

    @staticmethod
    def edge_sharpness(gray: np.ndarray) -> float:
        h, w = gray.shape
        step = max(1, min(w, h) // 100)
        gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
        sampled = np.hypot(gx, gy)[1:h - 1:step, 1:w - 1:step]
        if sampled.size == 0:
            return 0.0
        return float(min(1.0, sampled.mean()))

    def periodicity(self, gray: np.ndarray) -> float:
        """Mean strong autocorrelation of the centre row at screen-pixel lags."""
        cfg = self.cfg
        row = gray[gray.shape[0] // 2]
        width = row.size
        centered = row - row.mean()
        variance = float(np.mean(centered * centered))
        if variance <= 1e-4:
            return 0.0

        strong = []
        for lag in range(cfg['periodicity_min_lag'], cfg['periodicity_max_lag'] + 1):
            if lag >= width:
                break
            corr = float(np.dot(centered[:-lag], centered[lag:])) / ((width - lag) * variance)
            if corr > cfg['periodicity_correlation_threshold']:
                strong.append(corr)
        return float(min(1.0, sum(strong) / len(strong))) if strong else 0.0

    @staticmethod
    def high_frequency(gray: np.ndarray) -> float:
        h, w = gray.shape
        step = max(1, min(w, h) // 50)
        lap = np.abs(cv2.Laplacian(gray, cv2.CV_64F, ksize=1))
        sampled = lap[1:h - 1:step, 1:w - 1:step]
        centers = gray[1:h - 1:step, 1:w - 1:step]
        if sampled.size == 0 or float(np.abs(centers).sum()) == 0.0:
            return 0.0
        return float(min(1.0, sampled.mean() * 4.0))

    def color_uniformity(self, rgb: np.ndarray) -> float:
        """1 - mean normalized per-channel histogram entropy on a pixel sample."""
        bins = int(self.cfg['histogram_bins'])
        pixels = np.rint(rgb.reshape(-1, 3) * 255.0).astype(np.int64)
        step = max(1, pixels.shape[0] // int(self.cfg['max_uniformity_samples']))
        sample = np.clip(pixels[::step] * bins // 256, 0, bins - 1)

        entropies = []
        for ch in range(3):
            hist = np.bincount(sample[:, ch], minlength=bins).astype(np.float64)
            total = hist.sum()
            if total <= 0:
                entropies.append(0.0)
                continue
            p = hist[hist > 0] / total
            entropies.append(float(-(p * np.log2(p)).sum() / math.log2(bins)))
        return float(max(0.0, 1.0 - sum(entropies) / 3.0))
