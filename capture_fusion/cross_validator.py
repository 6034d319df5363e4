"""
CaptureShield — Cross Validator (TASK 4.2)
==========================================
Catches attacks that pass each check on its own but leave the
methods in a pattern a real capture never produces.

Checks:
  1. Pairwise consistency  — six method pairs with an expected
                             relationship; deviation > 0.5 is anomalous
  2. Confidence intervals  — per-method, wider near the 0.5 boundary
  3. Anomaly detectors     — contradiction, too-perfect agreement,
                             isolated outlier, boundary clustering,
                             correlation anomaly
  4. Temporal (video)      — per-method stability, sudden jumps,
                             oscillation

Penalty = sum of anomaly impacts (max 0.5).
Status  = FAIL on any HIGH or > 2 MEDIUM; WARN on any MEDIUM or > 1 LOW.

Stateless: safe to share between threads.

Part 4 of 6 — Fusion
"""

import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

import numpy as np

from capture_types import (
    ALL_METHODS, ArtifactAnalysisResult, DepthAnalysisResult, DetectionMethod,
    MoireAnalysisResult, TextureClassificationResult,
)
from capture_utils import clamp01, elapsed_ms, section_config, setup_logger, warn_if_slow
from capture_fusion.confidence_aggregator import ConfidenceAggregator
from capture_fusion.results import (
    AnomalyReport, AnomalySeverity, AnomalyType, ConfidenceInterval, CrossValidationResult,
    ExpectedRelationship, PairwiseConsistency, TemporalAnomaly, TemporalAnomalyType,
    TemporalConsistency, ValidationStatus,
)

_log = setup_logger('CrossValid')

Scores = Dict[DetectionMethod, Optional[float]]


@dataclass(frozen=True)
class DetectionFrame:
    """Per-frame analyzer results of a video or burst capture."""
    index: int
    timestamp: float = 0.0
    depth: Optional[DepthAnalysisResult] = None
    moire: Optional[MoireAnalysisResult] = None
    texture: Optional[TextureClassificationResult] = None
    artifacts: Optional[ArtifactAnalysisResult] = None

    def scores(self) -> Scores:
        return ConfidenceAggregator.normalize_all(self.depth, self.moire, self.texture, self.artifacts)


def _relationship(value: float) -> ExpectedRelationship:
    if value > 0:
        return ExpectedRelationship.POSITIVE
    if value < 0:
        return ExpectedRelationship.NEGATIVE
    return ExpectedRelationship.NEUTRAL


class CrossValidator:
    """Consistency checks over normalized method scores.

    EXPECTED PAIR RELATIONSHIPS (config.yaml):

    Pair                | Expected | Agreement measure
    --------------------|----------|------------------
    lidar / moire       |  -0.7    | |a - b|
    lidar / texture     |  +0.6    | 1 - |a - b|
    lidar / artifacts   |  -0.5    | |a - b|
    moire / texture     |  +0.4    | 1 - |a - b|
    moire / artifacts   |  +0.6    | 1 - |a - b|
    texture / artifacts |  -0.3    | |a - b|

    The agreement is rescaled to [-1, 1] before comparison.
    """

    def __init__(self, config: Optional[dict] = None,
                 aggregation_config: Optional[dict] = None):
        self.cfg = section_config('cross_validation', config)
        weights = section_config('aggregation', aggregation_config)['weights']
        self.base_weights = {m: float(weights[m.value]) for m in ALL_METHODS}
        self.pairs = [
            (DetectionMethod(a), DetectionMethod(b), float(v))
            for a, b, v in self.cfg['expected_relationships']
        ]
        self.severity_penalty = {
            AnomalySeverity.LOW: self.cfg['penalty_low'],
            AnomalySeverity.MEDIUM: self.cfg['penalty_medium'],
            AnomalySeverity.HIGH: self.cfg['penalty_high'],
        }

    # ---------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------

    def validate(self, depth: Optional[DepthAnalysisResult] = None,
                 moire: Optional[MoireAnalysisResult] = None,
                 texture: Optional[TextureClassificationResult] = None,
                 artifacts: Optional[ArtifactAnalysisResult] = None) -> CrossValidationResult:
        """Single-frame cross-validation of analyzer results."""
        start = time.perf_counter()
        scores = ConfidenceAggregator.normalize_all(depth, moire, texture, artifacts)
        result = self.validate_scores(scores)
        took = elapsed_ms(start)
        _log.info("Cross-validation: status=%s anomalies=%d penalty=%.3f (%.1fms)",
                  result.validation_status.value, len(result.anomalies),
                  result.overall_penalty, took)
        warn_if_slow(_log, "Cross-validation", took, self.cfg['target_time_ms'])
        return replace(result, analysis_time_ms=took)

    def validate_scores(self, scores: Scores) -> CrossValidationResult:
        """Cross-validate already-normalized scores (None = unavailable)."""
        if all(scores.get(m) is None for m in ALL_METHODS):
            return CrossValidationResult.unavailable(str(self.cfg['algorithm_version']))

        _log.debug("Normalized scores: %s",
                   {m.value: (None if s is None else round(s, 3)) for m, s in scores.items()})

        pairwise = self.compute_pairwise(scores)
        intervals = self.compute_intervals(scores)
        anomalies = self.detect_anomalies(scores, pairwise)
        return CrossValidationResult(
            validation_status=self.determine_status(anomalies),
            pairwise_consistencies=pairwise,
            temporal_consistency=None,
            confidence_intervals=intervals,
            aggregated_interval=self.aggregate_intervals(intervals),
            anomalies=anomalies,
            overall_penalty=self.compute_penalty(anomalies),
            algorithm_version=str(self.cfg['algorithm_version']),
        )

    def validate_sequence(self, frames: Sequence[DetectionFrame]) -> CrossValidationResult:
        """Multi-frame validation: last frame's checks plus temporal stability."""
        start = time.perf_counter()
        frames = list(frames)
        if not frames:
            _log.warning("Sequence validation called with no frames")
            return CrossValidationResult.unavailable(str(self.cfg['algorithm_version']))

        last = self.validate_scores(frames[-1].scores())
        temporal = self.analyze_temporal([f.scores() for f in frames])

        anomalies = list(last.anomalies)
        if temporal.anomalies:
            count = len(temporal.anomalies)
            affected = {a.method for a in temporal.anomalies}
            high = count >= self.cfg['temporal_high_severity_count']
            anomalies.append(AnomalyReport(
                anomaly_type=AnomalyType.CORRELATION_ANOMALY,
                severity=AnomalySeverity.HIGH if high else AnomalySeverity.MEDIUM,
                affected_methods=[m for m in ALL_METHODS if m in affected],
                details=f"Temporal instability: {count} anomalies detected",
                confidence_impact=clamp01(count * self.cfg['temporal_impact_per_anomaly']),
            ))

        result = replace(
            last,
            validation_status=self.determine_status(anomalies),
            temporal_consistency=temporal,
            anomalies=anomalies,
            overall_penalty=self.compute_penalty(anomalies),
        )

        took = elapsed_ms(start)
        _log.info("Sequence cross-validation: %d frames status=%s stability=%.3f (%.1fms)",
                  len(frames), result.validation_status.value, temporal.overall_stability, took)
        warn_if_slow(_log, "Sequence cross-validation", took, self.cfg['multi_frame_target_time_ms'])
        return replace(result, analysis_time_ms=took)

    # ---------------------------------------------------------------
    # Pairwise consistency
    # ---------------------------------------------------------------

    def compute_pairwise(self, scores: Scores) -> List[PairwiseConsistency]:
        """One entry per configured pair where both scores are available."""
        results = []
        threshold = self.cfg['pairwise_anomaly_threshold']
        for a, b, expected in self.pairs:
            sa, sb = scores.get(a), scores.get(b)
            if sa is None or sb is None:
                continue
            relationship = _relationship(expected)
            if relationship is ExpectedRelationship.POSITIVE:
                agreement = 1.0 - abs(sa - sb)
            elif relationship is ExpectedRelationship.NEGATIVE:
                agreement = abs(sa - sb)
            else:
                agreement = 0.5
            actual = (agreement - 0.5) * 2.0
            deviation = abs(actual - expected)
            results.append(PairwiseConsistency(
                method_a=a,
                method_b=b,
                expected_relationship=relationship,
                expected_agreement=expected,
                actual_agreement=actual,
                anomaly_score=deviation,
                is_anomaly=deviation > threshold,
            ))
        return results

    # ---------------------------------------------------------------
    # Confidence intervals
    # ---------------------------------------------------------------

    def compute_intervals(self, scores: Scores) -> Dict[DetectionMethod, ConfidenceInterval]:
        cfg = self.cfg
        intervals = {}
        for m in ALL_METHODS:
            point = scores.get(m)
            if point is None:
                continue
            width = cfg['interval_widths'][m.value]
            if cfg['mid_range_low'] <= point <= cfg['mid_range_high']:
                width *= 1.0 + cfg['mid_range_uncertainty_boost']
            half = width / 2.0
            intervals[m] = ConfidenceInterval(
                lower_bound=max(0.0, point - half),
                point_estimate=point,
                upper_bound=min(1.0, point + half),
            )
        return intervals

    def aggregate_intervals(self, intervals: Dict[DetectionMethod, ConfidenceInterval]) -> ConfidenceInterval:
        """Base-weight average of the per-method intervals."""
        total = sum(self.base_weights[m] for m in intervals)
        if not intervals or total <= 0:
            return ConfidenceInterval.empty()
        lower = sum(i.lower_bound * self.base_weights[m] for m, i in intervals.items()) / total
        point = sum(i.point_estimate * self.base_weights[m] for m, i in intervals.items()) / total
        upper = sum(i.upper_bound * self.base_weights[m] for m, i in intervals.items()) / total
        return ConfidenceInterval(lower, point, upper)

    # ---------------------------------------------------------------
    # Anomaly detection
    # ---------------------------------------------------------------

    def detect_anomalies(self, scores: Scores,
                         pairwise: Optional[List[PairwiseConsistency]] = None) -> List[AnomalyReport]:
        if pairwise is None:
            pairwise = self.compute_pairwise(scores)
        anomalies = []
        anomalies += self.detect_contradictions(scores)
        anomalies += self.detect_too_perfect(scores)
        anomalies += self.detect_isolated(scores)
        anomalies += self.detect_boundary_cluster(scores)
        anomalies += self.detect_correlation_anomaly(pairwise)
        return anomalies

    def _report(self, kind: AnomalyType, severity: AnomalySeverity,
                methods, details: str) -> AnomalyReport:
        return AnomalyReport(anomaly_type=kind, severity=severity,
                             affected_methods=list(methods), details=details,
                             confidence_impact=self.severity_penalty[severity])

    def detect_contradictions(self, scores: Scores) -> List[AnomalyReport]:
        low, high = self.cfg['contradiction_low'], self.cfg['contradiction_high']
        lidar = scores.get(DetectionMethod.LIDAR)
        texture = scores.get(DetectionMethod.TEXTURE)
        moire = scores.get(DetectionMethod.MOIRE)
        found = []
        if lidar is not None and texture is not None and lidar < low and texture > high:
            found.append(self._report(
                AnomalyType.CONTRADICTORY_SIGNALS, AnomalySeverity.HIGH,
                [DetectionMethod.LIDAR, DetectionMethod.TEXTURE],
                "LiDAR indicates flat surface but texture indicates real material"))
        if lidar is not None and moire is not None and lidar > high and moire < low:
            found.append(self._report(
                AnomalyType.CONTRADICTORY_SIGNALS, AnomalySeverity.HIGH,
                [DetectionMethod.LIDAR, DetectionMethod.MOIRE],
                "LiDAR indicates real scene but moire indicates screen"))
        return found

    def detect_too_perfect(self, scores: Scores) -> List[AnomalyReport]:
        values = [s for s in scores.values() if s is not None]
        if len(values) < self.cfg['min_scores_for_consensus']:
            return []
        spread = max(values) - min(values)
        if spread >= self.cfg['too_perfect_threshold']:
            return []
        return [self._report(
            AnomalyType.TOO_HIGH_AGREEMENT, AnomalySeverity.MEDIUM, ALL_METHODS,
            f"All methods agree within {spread:.3f} - suspiciously identical")]

    def detect_isolated(self, scores: Scores) -> List[AnomalyReport]:
        available = [(m, scores[m]) for m in ALL_METHODS if scores.get(m) is not None]
        if len(available) < self.cfg['min_scores_for_consensus']:
            return []
        mean = sum(s for _, s in available) / len(available)
        found = []
        for method, score in available:
            deviation = abs(score - mean)
            if deviation <= self.cfg['isolated_disagreement_threshold']:
                continue
            severe = deviation > self.cfg['isolated_high_severity_threshold']
            found.append(self._report(
                AnomalyType.ISOLATED_DISAGREEMENT,
                AnomalySeverity.HIGH if severe else AnomalySeverity.MEDIUM,
                [method], f"{method.value} differs by {deviation:.3f} from mean"))
        return found

    def detect_boundary_cluster(self, scores: Scores) -> List[AnomalyReport]:
        values = [s for s in scores.values() if s is not None]
        needed = self.cfg['min_boundary_cluster_count']
        if len(values) < needed:
            return []
        eps = self.cfg['boundary_cluster_threshold']
        count = sum(1 for s in values if any(abs(s - b) < eps for b in (0.0, 0.5, 1.0)))
        if count < needed:
            return []
        return [self._report(
            AnomalyType.BOUNDARY_CLUSTER, AnomalySeverity.MEDIUM, ALL_METHODS,
            f"{count} scores clustered at decision boundaries")]

    def detect_correlation_anomaly(self, pairwise: List[PairwiseConsistency]) -> List[AnomalyReport]:
        anomalous = [p for p in pairwise if p.is_anomaly]
        if not anomalous:
            return []
        affected = {p.method_a for p in anomalous} | {p.method_b for p in anomalous}
        high = len(anomalous) >= self.cfg['correlation_high_severity_count']
        return [self._report(
            AnomalyType.CORRELATION_ANOMALY,
            AnomalySeverity.HIGH if high else AnomalySeverity.MEDIUM,
            [m for m in ALL_METHODS if m in affected],
            f"{len(anomalous)} method pairs show unexpected correlations")]

    # ---------------------------------------------------------------
    # Temporal consistency
    # ---------------------------------------------------------------

    def analyze_temporal(self, frame_scores: Sequence[Scores]) -> TemporalConsistency:
        """Per-method stability across frames, with jump/oscillation detection."""
        cfg = self.cfg
        if len(frame_scores) == 1:
            only = frame_scores[0]
            return TemporalConsistency.single_frame(
                [m for m in ALL_METHODS if only.get(m) is not None])

        stability: Dict[DetectionMethod, float] = {}
        anomalies: List[TemporalAnomaly] = []
        for m in ALL_METHODS:
            series = [s[m] for s in frame_scores if s.get(m) is not None]
            if len(series) < 2:
                continue
            values = np.asarray(series, dtype=np.float64)
            variance = float(values.var())
            stability[m] = max(0.0, 1.0 - variance / cfg['max_expected_variance'])

            deltas = np.diff(values)
            for i, delta in enumerate(deltas, start=1):
                if abs(delta) > cfg['sudden_jump_threshold']:
                    anomalies.append(TemporalAnomaly(
                        frame_index=i, method=m, delta_score=float(abs(delta)),
                        anomaly_type=TemporalAnomalyType.SUDDEN_JUMP))

            if len(series) >= cfg['min_frames_for_oscillation']:
                flips = int(np.sum((deltas[:-1] * deltas[1:] < 0)
                                   & (np.abs(deltas[1:]) > cfg['oscillation_threshold'])))
                if flips >= len(series) // 2:
                    anomalies.append(TemporalAnomaly(
                        frame_index=len(series) - 1, method=m, delta_score=float(flips),
                        anomaly_type=TemporalAnomalyType.OSCILLATION))

        total = sum(self.base_weights[m] for m in stability)
        overall = (sum(v * self.base_weights[m] for m, v in stability.items()) / total
                   if total > 0 else 1.0)

        return TemporalConsistency(
            frame_count=len(frame_scores),
            stability_scores=stability,
            anomalies=anomalies,
            overall_stability=overall,
        )

    # ---------------------------------------------------------------
    # Outcome
    # ---------------------------------------------------------------

    def compute_penalty(self, anomalies: List[AnomalyReport]) -> float:
        return min(sum(a.confidence_impact for a in anomalies), self.cfg['max_overall_penalty'])

    def determine_status(self, anomalies: List[AnomalyReport]) -> ValidationStatus:
        counts = {s: 0 for s in AnomalySeverity}
        for a in anomalies:
            counts[a.severity] += 1
        if counts[AnomalySeverity.HIGH] > 0:
            return ValidationStatus.FAIL
        if counts[AnomalySeverity.MEDIUM] > self.cfg['max_medium_anomalies_for_warn']:
            return ValidationStatus.FAIL
        if counts[AnomalySeverity.MEDIUM] > 0:
            return ValidationStatus.WARN
        if counts[AnomalySeverity.LOW] > self.cfg['max_low_anomalies_for_pass']:
            return ValidationStatus.WARN
        return ValidationStatus.PASS
