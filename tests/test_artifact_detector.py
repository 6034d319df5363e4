"""
CaptureShield — Artifact Detector Tests (TASK 2.4)
==================================================
Rolling-shutter banding, rectangular glare and halftone dot screens.

Part 2 of 6 — Signal Analyzers
"""

import sys
import unittest
from pathlib import Path

import numpy as np

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from analyzers.artifact_detector import ArtifactDetector
from capture_types import AnalysisStatus


def banded_image(rows=512, cols=64):
    """Row brightness modulated at the 60/90/120 Hz band centres."""
    y = np.arange(rows)[:, None]
    profile = 0.5 + 0.1 * (np.cos(2 * np.pi * 30 * y / rows)
                           + np.cos(2 * np.pi * 45 * y / rows)
                           + np.cos(2 * np.pi * 60 * y / rows))
    gray = np.repeat(profile, cols, axis=1)
    return np.repeat(gray[:, :, None], 3, axis=2).astype(np.float32)


def glare_image():
    """Black frame with one white 40x120 rectangle."""
    img = np.zeros((256, 256, 3), dtype=np.uint8)
    img[100:140, 60:180] = 255
    return img


def halftone_image(size=512, pitch=12):
    x = np.arange(size)
    c = np.cos(2 * np.pi * x / pitch)
    gray = 0.5 + 0.4 * c[None, :] * c[:, None]
    return np.repeat(gray[:, :, None], 3, axis=2).astype(np.float32)


class TestArtifactDetector(unittest.TestCase):

    def setUp(self):
        self.detector = ArtifactDetector()

    def tearDown(self):
        self.detector.release()

    def test_pwm_banding_detected(self):
        result = self.detector.analyze(banded_image())
        self.assertEqual(result.status, AnalysisStatus.SUCCESS)
        self.assertTrue(result.pwm_flicker_detected)
        self.assertAlmostEqual(result.pwm_confidence, 0.75, places=6)
        self.assertTrue(result.is_likely_artificial)

    def test_rectangular_glare_detected(self):
        result = self.detector.analyze(glare_image())
        self.assertTrue(result.specular_pattern_detected)
        self.assertAlmostEqual(result.specular_confidence, 1.0, places=6)
        self.assertTrue(result.is_likely_artificial)

    def test_halftone_dots_detected(self):
        result = self.detector.analyze(halftone_image())
        self.assertTrue(result.halftone_detected)
        self.assertGreater(result.halftone_confidence, 0.5)

    def test_noise_has_no_glare_or_halftone(self):
        rng = np.random.default_rng(5)
        noise = rng.integers(0, 256, size=(256, 256, 3), dtype=np.uint8)
        result = self.detector.analyze(noise)
        self.assertEqual(result.status, AnalysisStatus.SUCCESS)
        self.assertFalse(result.specular_pattern_detected)
        self.assertFalse(result.halftone_detected)

    def test_overall_is_weighted_sum(self):
        result = self.detector.analyze(glare_image())
        expected = (0.35 * result.pwm_confidence
                    + 0.30 * result.specular_confidence
                    + 0.35 * result.halftone_confidence)
        self.assertAlmostEqual(result.overall_confidence, min(1.0, expected), places=6)

    def test_small_image_unavailable(self):
        result = self.detector.analyze(np.zeros((40, 40, 3), dtype=np.uint8))
        self.assertEqual(result.status, AnalysisStatus.UNAVAILABLE)
        self.assertIn("too small", result.reason)

    def test_pwm_windows_cached(self):
        self.detector.analyze(banded_image())
        self.assertIn((512, 512), self.detector._pwm_windows)
        self.detector.release()
        self.assertEqual(self.detector._pwm_windows, {})


def test_edge_uniformity_of_solid_box():
    assert ArtifactDetector.edge_uniformity(np.ones((10, 30), dtype=bool)) == 1.0


def test_flat_tile_has_no_halftone_score():
    detector = ArtifactDetector()
    assert detector.halftone_tile_score(np.full((128, 128), 0.5)) == 0.0
