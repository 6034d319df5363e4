"""
CaptureShield — Confidence Aggregator Tests (TASK 4.1)
======================================================
Normalization, weight redistribution, cross-checks, flags and the
confidence-level caps.

Part 4 of 6 — Fusion
"""

import logging
import sys
import unittest
from pathlib import Path

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from capture_fusion import (
    AggregationStatus, ConfidenceAggregator, ConfidenceFlag, ConfidenceLevel,
    CrossValidator, ValidationStatus,
)
from capture_types import (
    ALL_METHODS, AnalysisStatus, ArtifactAnalysisResult, DepthAnalysisResult,
    DetectionMethod, MoireAnalysisResult, TextureClass, TextureClassificationResult,
)

OK = AnalysisStatus.SUCCESS


def real_depth(variance=2.4, layers=5):
    return DepthAnalysisResult(status=OK, depth_variance=variance, depth_layers=layers,
                               edge_coherence=0.8, is_likely_real_scene=True)


def flat_depth():
    return DepthAnalysisResult(status=OK, depth_variance=0.01, depth_layers=1,
                               screen_pattern_detected=True)


def clean_moire():
    return MoireAnalysisResult(status=OK, detected=False)


def screen_moire(confidence=0.9):
    return MoireAnalysisResult(status=OK, detected=True, confidence=confidence)


def real_texture(confidence=0.85):
    return TextureClassificationResult(status=OK, classification=TextureClass.REAL_SCENE,
                                       confidence=confidence)


def clean_artifacts():
    return ArtifactAnalysisResult(status=OK)


class TestNormalization(unittest.TestCase):

    def test_depth(self):
        self.assertAlmostEqual(ConfidenceAggregator.normalize_depth(real_depth()), 1.0)
        self.assertAlmostEqual(ConfidenceAggregator.normalize_depth(real_depth(0.0, 1)), 0.9)
        self.assertAlmostEqual(ConfidenceAggregator.normalize_depth(flat_depth()), 0.1)
        not_flat = DepthAnalysisResult(status=OK, depth_variance=0.4, depth_layers=2)
        self.assertAlmostEqual(ConfidenceAggregator.normalize_depth(not_flat), 0.2)

    def test_moire(self):
        self.assertEqual(ConfidenceAggregator.normalize_moire(clean_moire()), 1.0)
        self.assertAlmostEqual(ConfidenceAggregator.normalize_moire(screen_moire(0.9)), 0.1)

    def test_texture(self):
        self.assertAlmostEqual(ConfidenceAggregator.normalize_texture(real_texture(0.85)), 0.85)
        lcd = TextureClassificationResult(status=OK, classification=TextureClass.LCD_SCREEN,
                                          confidence=0.8, is_likely_recaptured=True)
        self.assertAlmostEqual(ConfidenceAggregator.normalize_texture(lcd), 0.2)
        weak = TextureClassificationResult(status=OK, classification=TextureClass.UNKNOWN,
                                           confidence=0.2)
        self.assertEqual(ConfidenceAggregator.normalize_texture(weak), 0.5)

    def test_artifacts(self):
        self.assertEqual(ConfidenceAggregator.normalize_artifacts(clean_artifacts()), 1.0)
        artificial = ArtifactAnalysisResult(status=OK, overall_confidence=0.7, is_likely_artificial=True)
        self.assertAlmostEqual(ConfidenceAggregator.normalize_artifacts(artificial), 0.3)

    def test_unusable_results_are_none(self):
        self.assertIsNone(ConfidenceAggregator.normalize_depth(None))
        self.assertIsNone(ConfidenceAggregator.normalize_moire(MoireAnalysisResult.unavailable("x")))
        self.assertIsNone(ConfidenceAggregator.normalize_texture(TextureClassificationResult.error("x")))


class TestWeights(unittest.TestCase):

    def setUp(self):
        self.aggregator = ConfidenceAggregator()

    def test_all_available_keeps_base_weights(self):
        weights = self.aggregator.redistribute_weights(ALL_METHODS)
        self.assertAlmostEqual(weights[DetectionMethod.LIDAR], 0.55)
        self.assertAlmostEqual(sum(weights.values()), 1.0)

    def test_missing_lidar_splits_evenly(self):
        weights = self.aggregator.redistribute_weights(
            [DetectionMethod.MOIRE, DetectionMethod.TEXTURE, DetectionMethod.ARTIFACTS])
        self.assertEqual(weights[DetectionMethod.LIDAR], 0.0)
        for m in (DetectionMethod.MOIRE, DetectionMethod.TEXTURE, DetectionMethod.ARTIFACTS):
            self.assertAlmostEqual(weights[m], 1.0 / 3.0)

    def test_nothing_available(self):
        self.assertEqual(set(self.aggregator.redistribute_weights([]).values()), {0.0})


class TestAggregate(unittest.TestCase):

    def setUp(self):
        self.aggregator = ConfidenceAggregator()

    def test_all_clean_is_very_high(self):
        result = self.aggregator.aggregate(real_depth(), clean_moire(), real_texture(), clean_artifacts())
        self.assertEqual(result.status, AggregationStatus.SUCCESS)
        self.assertEqual(result.confidence_level, ConfidenceLevel.VERY_HIGH)
        self.assertEqual(result.flags, [])
        self.assertTrue(result.primary_signal_valid)
        self.assertTrue(result.supporting_signals_agree)
        self.assertEqual(result.overall_confidence, 1.0)
        self.assertEqual(len(result.available_methods), 4)

    def test_depth_only_is_partial(self):
        result = self.aggregator.aggregate(depth=real_depth())
        self.assertEqual(result.status, AggregationStatus.PARTIAL)
        self.assertEqual(result.flags, [ConfidenceFlag.PARTIAL_ANALYSIS])
        self.assertEqual(result.confidence_level, ConfidenceLevel.HIGH)
        self.assertAlmostEqual(result.overall_confidence, 1.0)
        self.assertAlmostEqual(result.method_breakdown[DetectionMethod.LIDAR].weight, 1.0)
        self.assertFalse(result.method_breakdown[DetectionMethod.MOIRE].available)
        self.assertEqual(result.method_breakdown[DetectionMethod.MOIRE].status, "unavailable")

    def test_breakdown_sums_to_overall_without_boost(self):
        result = self.aggregator.aggregate(real_depth(0.0, 1), screen_moire())
        total = sum(r.contribution for r in result.method_breakdown.values())
        self.assertAlmostEqual(result.overall_confidence, total)

    def test_screen_against_real_depth_is_capped(self):
        result = self.aggregator.aggregate(real_depth(0.0, 1), screen_moire())
        self.assertIn(ConfidenceFlag.PRIMARY_SUPPORTING_DISAGREE, result.flags)
        self.assertIn(ConfidenceFlag.SCREEN_DETECTED, result.flags)
        self.assertFalse(result.supporting_signals_agree)
        self.assertLessEqual(result.confidence_level.rank, ConfidenceLevel.MEDIUM.rank)
        self.assertEqual(result.method_breakdown[DetectionMethod.MOIRE].status, "fail")

    def test_flat_depth_fails_primary(self):
        result = self.aggregator.aggregate(flat_depth(), clean_moire(), real_texture(), clean_artifacts())
        self.assertIn(ConfidenceFlag.PRIMARY_SIGNAL_FAILED, result.flags)
        self.assertFalse(result.primary_signal_valid)
        self.assertNotIn(result.confidence_level, (ConfidenceLevel.VERY_HIGH, ConfidenceLevel.HIGH))

    def test_supporting_disagreement(self):
        result = self.aggregator.aggregate(moire=clean_moire(), texture=real_texture(),
                                           artifacts=ArtifactAnalysisResult(
                                               status=OK, overall_confidence=0.8,
                                               is_likely_artificial=True))
        self.assertIn(ConfidenceFlag.METHODS_DISAGREE, result.flags)
        self.assertNotIn(ConfidenceFlag.PRIMARY_SUPPORTING_DISAGREE, result.flags)

    def test_flags_are_unique_and_sorted(self):
        lcd = TextureClassificationResult(status=OK, classification=TextureClass.LCD_SCREEN,
                                          confidence=0.8, is_likely_recaptured=True)
        result = self.aggregator.aggregate(flat_depth(), screen_moire(), lcd, clean_artifacts())
        values = [f.value for f in result.flags]
        self.assertEqual(values, sorted(set(values)))
        self.assertEqual(values.count("screen_detected"), 1)

    def test_nothing_available(self):
        result = self.aggregator.aggregate()
        self.assertEqual(result.status, AggregationStatus.UNAVAILABLE)
        self.assertEqual(result.overall_confidence, 0.0)
        self.assertEqual(result.confidence_level, ConfidenceLevel.SUSPICIOUS)

    def test_unavailable_results_are_ignored(self):
        result = self.aggregator.aggregate(depth=DepthAnalysisResult.unavailable("no depth"),
                                           moire=clean_moire())
        self.assertEqual(result.available_methods, [DetectionMethod.MOIRE])

    def test_cross_validation_penalty_applied(self):
        depth, moire = real_depth(0.0, 1), screen_moire()
        plain = self.aggregator.aggregate(depth, moire)
        cv = CrossValidator().validate(depth=depth, moire=moire)
        self.assertEqual(cv.validation_status, ValidationStatus.FAIL)

        checked = self.aggregator.aggregate(depth, moire, cross_validation=cv)
        self.assertAlmostEqual(checked.overall_confidence,
                               plain.overall_confidence - cv.overall_penalty)
        self.assertIn(ConfidenceFlag.METHODS_DISAGREE, checked.flags)
        self.assertIs(checked.cross_validation, cv)

    def test_failed_cross_validation_blocks_boost(self):
        cv = CrossValidator().validate_scores({
            DetectionMethod.LIDAR: 1.0, DetectionMethod.MOIRE: 1.0,
            DetectionMethod.TEXTURE: 0.85, DetectionMethod.ARTIFACTS: 1.0,
        })
        result = self.aggregator.aggregate(real_depth(), clean_moire(), real_texture(),
                                           clean_artifacts(), cross_validation=cv)
        self.assertFalse(result.supporting_signals_agree)
        self.assertNotEqual(result.confidence_level, ConfidenceLevel.VERY_HIGH)


def test_low_confidence_primary_flag():
    aggregator = ConfidenceAggregator({"low_confidence_primary_threshold": 0.95})
    result = aggregator.aggregate(depth=real_depth(0.0, 1))
    assert ConfidenceFlag.LOW_CONFIDENCE_PRIMARY in result.flags


def test_ambiguous_results_flag():
    aggregator = ConfidenceAggregator()
    weak = TextureClassificationResult(status=OK, classification=TextureClass.UNKNOWN, confidence=0.2)
    artificial = ArtifactAnalysisResult(status=OK, overall_confidence=0.5, is_likely_artificial=True)
    result = aggregator.aggregate(texture=weak, artifacts=artificial)
    assert ConfidenceFlag.AMBIGUOUS_RESULTS in result.flags


def test_level_cap_helper():
    assert ConfidenceLevel.VERY_HIGH.capped_at(ConfidenceLevel.MEDIUM) is ConfidenceLevel.MEDIUM
    assert ConfidenceLevel.LOW.capped_at(ConfidenceLevel.MEDIUM) is ConfidenceLevel.LOW


def test_over_target_time_logged_at_info(caplog):
    aggregator = ConfidenceAggregator({"target_time_ms": -1.0, "max_time_ms": 1e9})
    with caplog.at_level(logging.INFO, logger="Aggregator"):
        aggregator.aggregate(depth=real_depth())
    messages = [r for r in caplog.records if "over target time" in r.getMessage()]
    assert len(messages) == 1
    assert messages[0].levelno == logging.INFO
