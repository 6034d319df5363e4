"""
CaptureShield — Cross Validator Tests (TASK 4.2)
================================================
Pairwise consistency, intervals, anomaly detectors, temporal stability
and the pass/warn/fail decision.

Part 4 of 6 — Fusion
"""

import sys
import unittest
from pathlib import Path

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from capture_fusion import (
    AnomalyReport, AnomalySeverity, AnomalyType, CrossValidationResult, CrossValidator,
    DetectionFrame, ExpectedRelationship, TemporalAnomalyType, ValidationStatus,
)
from capture_types import AnalysisStatus, DepthAnalysisResult, DetectionMethod, MoireAnalysisResult

L, M, T, A = (DetectionMethod.LIDAR, DetectionMethod.MOIRE,
              DetectionMethod.TEXTURE, DetectionMethod.ARTIFACTS)


def scores(lidar=None, moire=None, texture=None, artifacts=None):
    return {L: lidar, M: moire, T: texture, A: artifacts}


def depth_frame(index, real):
    """Frame whose only signal is a depth result scoring 0.9 (real) or 0.2."""
    if real:
        depth = DepthAnalysisResult(status=AnalysisStatus.SUCCESS, depth_variance=0.0,
                                    depth_layers=1, is_likely_real_scene=True)
    else:
        depth = DepthAnalysisResult(status=AnalysisStatus.SUCCESS, depth_variance=0.4,
                                    depth_layers=2)
    return DetectionFrame(index=index, timestamp=index / 30.0, depth=depth)


class TestPairwise(unittest.TestCase):

    def setUp(self):
        self.validator = CrossValidator()

    def test_only_available_pairs(self):
        pairs = self.validator.compute_pairwise(scores(lidar=0.9, moire=0.8))
        self.assertEqual(len(pairs), 1)
        self.assertEqual((pairs[0].method_a, pairs[0].method_b), (L, M))
        self.assertEqual(pairs[0].expected_relationship, ExpectedRelationship.NEGATIVE)

    def test_negative_pair_deviation(self):
        pair = self.validator.compute_pairwise(scores(lidar=0.9, moire=0.1))[0]
        self.assertAlmostEqual(pair.actual_agreement, 0.6)
        self.assertAlmostEqual(pair.anomaly_score, 1.3)
        self.assertTrue(pair.is_anomaly)

    def test_positive_pair_in_line(self):
        pair = self.validator.compute_pairwise(scores(lidar=0.9, texture=0.85))[0]
        self.assertEqual(pair.expected_relationship, ExpectedRelationship.POSITIVE)
        self.assertAlmostEqual(pair.actual_agreement, 0.9)
        self.assertFalse(pair.is_anomaly)


class TestIntervals(unittest.TestCase):

    def setUp(self):
        self.validator = CrossValidator()

    def test_mid_range_interval_is_widened(self):
        interval = self.validator.compute_intervals(scores(lidar=0.5))[L]
        self.assertAlmostEqual(interval.lower_bound, 0.4625)
        self.assertAlmostEqual(interval.point_estimate, 0.5)
        self.assertAlmostEqual(interval.upper_bound, 0.5375)

    def test_interval_clipped_to_unit_range(self):
        interval = self.validator.compute_intervals(scores(moire=1.0))[M]
        self.assertAlmostEqual(interval.lower_bound, 0.95)
        self.assertEqual(interval.upper_bound, 1.0)

    def test_aggregate_interval_weighted(self):
        intervals = self.validator.compute_intervals(scores(lidar=0.9, moire=0.2))
        agg = self.validator.aggregate_intervals(intervals)
        self.assertAlmostEqual(agg.point_estimate, (0.9 * 0.55 + 0.2 * 0.15) / 0.70)
        self.assertLessEqual(agg.lower_bound, agg.point_estimate)
        self.assertGreaterEqual(agg.upper_bound, agg.point_estimate)

    def test_empty_aggregate(self):
        agg = self.validator.aggregate_intervals({})
        self.assertEqual(agg.width, 0.0)


class TestAnomalies(unittest.TestCase):

    def setUp(self):
        self.validator = CrossValidator()

    def test_depth_real_moire_screen_contradiction(self):
        result = self.validator.validate_scores(scores(lidar=0.9, moire=0.1))
        contradictions = result.anomalies_of(AnomalyType.CONTRADICTORY_SIGNALS)
        self.assertEqual(len(contradictions), 1)
        self.assertEqual(contradictions[0].severity, AnomalySeverity.HIGH)
        self.assertEqual(contradictions[0].affected_methods, [L, M])
        self.assertEqual(result.validation_status, ValidationStatus.FAIL)

    def test_flat_depth_real_texture_contradiction(self):
        found = self.validator.detect_contradictions(scores(lidar=0.1, texture=0.9))
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].affected_methods, [L, T])

    def test_too_perfect_agreement(self):
        result = self.validator.validate_scores(scores(0.95, 0.95, 0.96, 0.95))
        self.assertEqual(len(result.anomalies_of(AnomalyType.TOO_HIGH_AGREEMENT)), 1)
        self.assertEqual(len(result.anomalies_of(AnomalyType.CORRELATION_ANOMALY)), 1)
        self.assertEqual(result.validation_status, ValidationStatus.WARN)
        self.assertAlmostEqual(result.overall_penalty, 0.30)

    def test_isolated_outlier(self):
        found = self.validator.detect_isolated(scores(0.9, 0.9, 0.9, 0.1))
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].affected_methods, [A])
        self.assertEqual(found[0].severity, AnomalySeverity.HIGH)

    def test_boundary_cluster(self):
        found = self.validator.detect_boundary_cluster(scores(0.5, 1.0, 0.52, 0.99))
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].severity, AnomalySeverity.MEDIUM)

    def test_consensus_checks_need_three_scores(self):
        self.assertEqual(self.validator.detect_too_perfect(scores(0.5, 0.5)), [])
        self.assertEqual(self.validator.detect_isolated(scores(0.9, 0.1)), [])
        self.assertEqual(self.validator.detect_boundary_cluster(scores(0.5, 1.0)), [])

    def test_nothing_available(self):
        result = self.validator.validate_scores(scores())
        self.assertEqual(result.validation_status, ValidationStatus.PASS)
        self.assertEqual(result.overall_penalty, 0.0)
        self.assertEqual(result.anomalies, [])

    def test_validate_from_results(self):
        depth = DepthAnalysisResult(status=AnalysisStatus.SUCCESS, depth_variance=2.0,
                                    depth_layers=4, is_likely_real_scene=True)
        moire = MoireAnalysisResult(status=AnalysisStatus.SUCCESS, detected=False)
        result = self.validator.validate(depth=depth, moire=moire)
        self.assertEqual(set(result.confidence_intervals), {L, M})
        self.assertGreaterEqual(result.analysis_time_ms, 0.0)


class TestOutcome(unittest.TestCase):

    def setUp(self):
        self.validator = CrossValidator()

    def _reports(self, *severities):
        return [AnomalyReport(AnomalyType.BOUNDARY_CLUSTER, s, [L], "", 0.2) for s in severities]

    def test_status_rules(self):
        low, med, high = AnomalySeverity.LOW, AnomalySeverity.MEDIUM, AnomalySeverity.HIGH
        status = self.validator.determine_status
        self.assertEqual(status([]), ValidationStatus.PASS)
        self.assertEqual(status(self._reports(low)), ValidationStatus.PASS)
        self.assertEqual(status(self._reports(low, low)), ValidationStatus.WARN)
        self.assertEqual(status(self._reports(med)), ValidationStatus.WARN)
        self.assertEqual(status(self._reports(med, med)), ValidationStatus.WARN)
        self.assertEqual(status(self._reports(med, med, med)), ValidationStatus.FAIL)
        self.assertEqual(status(self._reports(high)), ValidationStatus.FAIL)

    def test_penalty_capped(self):
        self.assertAlmostEqual(self.validator.compute_penalty(self._reports(*[AnomalySeverity.LOW] * 4)), 0.5)
        self.assertAlmostEqual(self.validator.compute_penalty(self._reports(AnomalySeverity.LOW)), 0.2)


class TestTemporal(unittest.TestCase):

    def setUp(self):
        self.validator = CrossValidator()

    def test_oscillating_depth(self):
        frames = [scores(lidar=v) for v in (0.9, 0.2, 0.9, 0.2, 0.9)]
        temporal = self.validator.analyze_temporal(frames)
        self.assertEqual(temporal.frame_count, 5)
        self.assertEqual(temporal.stability_scores[L], 0.0)
        kinds = [a.anomaly_type for a in temporal.anomalies]
        self.assertEqual(kinds.count(TemporalAnomalyType.SUDDEN_JUMP), 4)
        self.assertEqual(kinds.count(TemporalAnomalyType.OSCILLATION), 1)

    def test_stable_series(self):
        frames = [scores(lidar=0.9, moire=1.0) for _ in range(4)]
        temporal = self.validator.analyze_temporal(frames)
        self.assertEqual(temporal.anomalies, [])
        self.assertAlmostEqual(temporal.overall_stability, 1.0)

    def test_single_frame_is_stable(self):
        temporal = self.validator.analyze_temporal([scores(lidar=0.9, texture=0.8)])
        self.assertEqual(temporal.frame_count, 1)
        self.assertEqual(temporal.stability_scores, {L: 1.0, T: 1.0})
        self.assertEqual(temporal.overall_stability, 1.0)

    def test_sequence_adds_temporal_report(self):
        frames = [depth_frame(i, real=(i % 2 == 0)) for i in range(5)]
        result = self.validator.validate_sequence(frames)
        self.assertIsNotNone(result.temporal_consistency)
        temporal_reports = [a for a in result.anomalies_of(AnomalyType.CORRELATION_ANOMALY)
                            if a.details.startswith("Temporal instability")]
        self.assertEqual(len(temporal_reports), 1)
        self.assertEqual(temporal_reports[0].severity, AnomalySeverity.HIGH)
        self.assertAlmostEqual(temporal_reports[0].confidence_impact, 0.25)
        self.assertEqual(result.validation_status, ValidationStatus.FAIL)

    def test_stable_sequence_passes(self):
        frames = [depth_frame(i, real=True) for i in range(3)]
        result = self.validator.validate_sequence(frames)
        self.assertEqual(result.validation_status, ValidationStatus.PASS)
        self.assertAlmostEqual(result.temporal_consistency.overall_stability, 1.0)

    def test_empty_sequence(self):
        result = self.validator.validate_sequence([])
        self.assertEqual(result.validation_status, ValidationStatus.PASS)
        self.assertIsNone(result.temporal_consistency)

    def test_temporal_anomaly_wire_key(self):
        frames = [depth_frame(i, real=(i % 2 == 0)) for i in range(5)]
        result = self.validator.validate_sequence(frames)
        wire = result.to_dict()["temporal_consistency"]["anomalies"]
        self.assertTrue(wire)
        self.assertEqual({a["type"] for a in wire}, {"sudden_jump", "oscillation"})
        self.assertNotIn("anomaly_type", wire[0])
        self.assertEqual(CrossValidationResult.from_dict(result.to_dict()), result)
