"""
CaptureShield — Confidence Aggregator (TASK 4.1)
================================================
Fuses the four analyzer results into one authenticity score.

Pipeline:
  1. Normalize each result to a common scale (1.0 = authentic scene)
  2. Redistribute base weights over the methods that succeeded
  3. Weighted sum
  4. Cross-check the native verdicts (primary vs supporting, supporting
     vs supporting)
  5. +0.05 agreement boost, minus any cross-validation penalty
  6. Flags, confidence level, level caps

Base weights: LiDAR 0.55 (PRIMARY), moire / texture / artifacts 0.15 each.

Part 4 of 6 — Fusion
"""

import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from capture_types import (
    ALL_METHODS, ArtifactAnalysisResult, DepthAnalysisResult, DetectionMethod,
    MoireAnalysisResult, TextureClass, TextureClassificationResult,
)
from capture_utils import clamp01, elapsed_ms, section_config, setup_logger, warn_if_slow
from capture_fusion.results import (
    AggregatedConfidenceResult, AggregationStatus, ConfidenceFlag, ConfidenceLevel,
    CrossValidationResult, MethodResult, ValidationStatus,
)

_log = setup_logger('Aggregator')


def _usable(result) -> bool:
    return result is not None and result.is_success


class ConfidenceAggregator:
    """Weighted, cross-checked fusion of the detection methods.

    CROSS-CHECK TRUTH TABLE (native verdicts, "ok" = favours authentic):

    LiDAR real | any supporting ok != LiDAR real | -> primary_supporting_disagree
    -          | supporting verdicts not all equal | -> methods_disagree

    LEVEL (first match wins):

    VERY_HIGH  overall >= 0.90, all four available, agree, LiDAR real
    HIGH       overall >= 0.75, LiDAR real
    MEDIUM     overall >= 0.50
    LOW        overall >= 0.25
    SUSPICIOUS otherwise

    Caps: screen/print detected -> at most MEDIUM;
          any disagreement flag -> at most `disagreement_cap`.
    """

    def __init__(self, config: Optional[dict] = None):
        self.cfg = section_config('aggregation', config)
        self.base_weights: Dict[DetectionMethod, float] = {
            m: float(self.cfg['weights'][m.value]) for m in ALL_METHODS
        }
        self.disagreement_cap = ConfidenceLevel(self.cfg['disagreement_cap'])

    # ---------------------------------------------------------------
    # Normalization (shared with CrossValidator)
    # ---------------------------------------------------------------

    @staticmethod
    def normalize_depth(result: Optional[DepthAnalysisResult]) -> Optional[float]:
        """Real: 0.8 + variance/layer bonuses (max 1.0). Flat: 0.2, or 0.1 if very flat."""
        if not _usable(result):
            return None
        if result.is_likely_real_scene:
            variance_bonus = min(result.depth_variance / 2.0, 0.1)
            layer_bonus = min(result.depth_layers / 10.0, 0.1)
            return min(0.8 + variance_bonus + layer_bonus, 1.0)
        flatness_penalty = 0.1 if (result.depth_variance < 0.2 and result.depth_layers <= 2) else 0.0
        return max(0.2 - flatness_penalty, 0.0)

    @staticmethod
    def normalize_moire(result: Optional[MoireAnalysisResult]) -> Optional[float]:
        if not _usable(result):
            return None
        return clamp01(1.0 - result.confidence) if result.detected else 1.0

    @staticmethod
    def normalize_texture(result: Optional[TextureClassificationResult]) -> Optional[float]:
        if not _usable(result):
            return None
        if result.classification is TextureClass.REAL_SCENE:
            return clamp01(result.confidence)
        if result.is_likely_recaptured:
            return clamp01(1.0 - result.confidence)
        return 0.5

    @staticmethod
    def normalize_artifacts(result: Optional[ArtifactAnalysisResult]) -> Optional[float]:
        if not _usable(result):
            return None
        return clamp01(1.0 - result.overall_confidence) if result.is_likely_artificial else 1.0

    @classmethod
    def normalize_all(cls, depth=None, moire=None, texture=None,
                      artifacts=None) -> Dict[DetectionMethod, Optional[float]]:
        """Normalized score per method, None where the method is unusable."""
        return {
            DetectionMethod.LIDAR: cls.normalize_depth(depth),
            DetectionMethod.MOIRE: cls.normalize_moire(moire),
            DetectionMethod.TEXTURE: cls.normalize_texture(texture),
            DetectionMethod.ARTIFACTS: cls.normalize_artifacts(artifacts),
        }

    # ---------------------------------------------------------------
    # Weights
    # ---------------------------------------------------------------

    def redistribute_weights(self, available: Iterable[DetectionMethod]) -> Dict[DetectionMethod, float]:
        """Rescale base weights so the available methods sum to 1.0.

        Unavailable methods get 0. Returns all zeros when nothing is available.
        """
        available = set(available)
        total = sum(self.base_weights[m] for m in available)
        if total <= 0:
            return {m: 0.0 for m in ALL_METHODS}
        return {m: (self.base_weights[m] / total if m in available else 0.0)
                for m in ALL_METHODS}

    # ---------------------------------------------------------------
    # Aggregation
    # ---------------------------------------------------------------

    def aggregate(self,
                  depth: Optional[DepthAnalysisResult] = None,
                  moire: Optional[MoireAnalysisResult] = None,
                  texture: Optional[TextureClassificationResult] = None,
                  artifacts: Optional[ArtifactAnalysisResult] = None,
                  cross_validation: Optional[CrossValidationResult] = None,
                  ) -> AggregatedConfidenceResult:
        """Fuse analyzer results. Never raises for well-formed input.

        Only results with status SUCCESS take part. When cross_validation
        is given its penalty is applied and a FAIL verdict counts as a
        method disagreement.
        """
        start = time.perf_counter()
        scores = self.normalize_all(depth, moire, texture, artifacts)
        available = [m for m in ALL_METHODS if scores[m] is not None]

        if not available:
            _log.warning("No detection methods available for aggregation")
            return AggregatedConfidenceResult.unavailable(str(self.cfg['algorithm_version']))

        all_available = len(available) == len(ALL_METHODS)
        weights = self.redistribute_weights(available)
        _log.debug("Weights: %s", {m.value: round(w, 3) for m, w in weights.items()})

        verdicts = {
            DetectionMethod.LIDAR: "pass" if depth is not None and depth.is_likely_real_scene else "fail",
            DetectionMethod.MOIRE: "fail" if moire is not None and moire.detected else "pass",
            DetectionMethod.TEXTURE: "fail" if texture is not None and texture.is_likely_recaptured else "pass",
            DetectionMethod.ARTIFACTS: "fail" if artifacts is not None and artifacts.is_likely_artificial else "pass",
        }
        breakdown: Dict[DetectionMethod, MethodResult] = {}
        overall = 0.0
        for m in ALL_METHODS:
            if scores[m] is None:
                breakdown[m] = MethodResult.unavailable()
                continue
            contribution = scores[m] * weights[m]
            overall += contribution
            breakdown[m] = MethodResult(available=True, score=scores[m], weight=weights[m],
                                        contribution=contribution, status=verdicts[m])

        flags = self.cross_check(depth, moire, texture, artifacts)
        agree = not flags
        if cross_validation is not None:
            agree = agree and cross_validation.validation_status is ValidationStatus.PASS

        if agree and all_available:
            overall += self.cfg['agreement_boost']
            _log.debug("Applied agreement boost")

        if cross_validation is not None:
            overall -= cross_validation.overall_penalty
            if cross_validation.validation_status is ValidationStatus.FAIL:
                flags.append(ConfidenceFlag.METHODS_DISAGREE)
        overall = clamp01(overall)

        primary_valid = bool(_usable(depth) and depth.is_likely_real_scene)
        flags.extend(self.generate_flags(depth, moire, texture, artifacts, scores))
        flags = sorted(set(flags), key=lambda f: f.value)

        level = self.determine_level(overall, primary_valid, all_available, agree)
        if ConfidenceFlag.SCREEN_DETECTED in flags or ConfidenceFlag.PRINT_DETECTED in flags:
            level = level.capped_at(ConfidenceLevel.MEDIUM)
        if ConfidenceFlag.METHODS_DISAGREE in flags or ConfidenceFlag.PRIMARY_SUPPORTING_DISAGREE in flags:
            level = level.capped_at(self.disagreement_cap)

        result = AggregatedConfidenceResult(
            overall_confidence=overall,
            confidence_level=level,
            method_breakdown=breakdown,
            primary_signal_valid=primary_valid,
            supporting_signals_agree=agree,
            flags=flags,
            status=AggregationStatus.SUCCESS if all_available else AggregationStatus.PARTIAL,
            cross_validation=cross_validation,
            algorithm_version=str(self.cfg['algorithm_version']),
        )

        took = elapsed_ms(start)
        _log.info("Aggregation: overall=%.3f level=%s primary=%s agree=%s flags=%s (%.1fms)",
                  overall, level.value, primary_valid, agree, [f.value for f in flags], took)
        warn_if_slow(_log, "Aggregation", took, self.cfg['max_time_ms'], self.cfg.get('target_time_ms'))
        return replace(result, analysis_time_ms=took)

    # ---------------------------------------------------------------
    # Cross-check and flags
    # ---------------------------------------------------------------

    @staticmethod
    def native_verdicts(depth=None, moire=None, texture=None,
                        artifacts=None) -> Tuple[Optional[bool], List[bool]]:
        """(LiDAR says real, [supporting says authentic...]) over usable results."""
        lidar_real = depth.is_likely_real_scene if _usable(depth) else None
        supporting = []
        if _usable(moire):
            supporting.append(not moire.detected)
        if _usable(texture):
            supporting.append(texture.classification is TextureClass.REAL_SCENE
                              and not texture.is_likely_recaptured)
        if _usable(artifacts):
            supporting.append(not artifacts.is_likely_artificial)
        return lidar_real, supporting

    def cross_check(self, depth=None, moire=None, texture=None, artifacts=None) -> List[ConfidenceFlag]:
        lidar_real, supporting = self.native_verdicts(depth, moire, texture, artifacts)
        flags = []
        if lidar_real is not None and any(v != lidar_real for v in supporting):
            flags.append(ConfidenceFlag.PRIMARY_SUPPORTING_DISAGREE)
        if len(supporting) >= 2 and len(set(supporting)) > 1:
            flags.append(ConfidenceFlag.METHODS_DISAGREE)
        return flags

    def generate_flags(self, depth, moire, texture, artifacts,
                       scores: Dict[DetectionMethod, Optional[float]]) -> List[ConfidenceFlag]:
        cfg = self.cfg
        flags = []

        if _usable(depth) and not depth.is_likely_real_scene:
            flags.append(ConfidenceFlag.PRIMARY_SIGNAL_FAILED)

        if _usable(moire) and moire.detected and moire.confidence > cfg['screen_confidence_threshold']:
            flags.append(ConfidenceFlag.SCREEN_DETECTED)
        if _usable(texture) and texture.classification.is_screen:
            flags.append(ConfidenceFlag.SCREEN_DETECTED)

        if _usable(artifacts) and artifacts.halftone_detected \
                and artifacts.halftone_confidence > cfg['print_confidence_threshold']:
            flags.append(ConfidenceFlag.PRINT_DETECTED)
        if _usable(texture) and texture.classification is TextureClass.PRINTED_PAPER:
            flags.append(ConfidenceFlag.PRINT_DETECTED)

        if any(s is None for s in scores.values()):
            flags.append(ConfidenceFlag.PARTIAL_ANALYSIS)

        depth_score = scores[DetectionMethod.LIDAR]
        if depth_score is not None and depth.is_likely_real_scene \
                and depth_score < cfg['low_confidence_primary_threshold']:
            flags.append(ConfidenceFlag.LOW_CONFIDENCE_PRIMARY)

        low, high = cfg['ambiguous_low'], cfg['ambiguous_high']
        ambiguous = sum(1 for s in scores.values() if s is not None and low <= s <= high)
        if ambiguous >= 2:
            flags.append(ConfidenceFlag.AMBIGUOUS_RESULTS)

        return flags

    def determine_level(self, overall: float, primary_valid: bool,
                        all_available: bool, agree: bool) -> ConfidenceLevel:
        cfg = self.cfg
        if overall >= cfg['very_high_threshold'] and all_available and agree and primary_valid:
            return ConfidenceLevel.VERY_HIGH
        if overall >= cfg['high_threshold'] and primary_valid:
            return ConfidenceLevel.HIGH
        if overall >= cfg['medium_threshold']:
            return ConfidenceLevel.MEDIUM
        if overall >= cfg['low_threshold']:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.SUSPICIOUS
