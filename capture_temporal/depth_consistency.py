"""
CaptureShield — Temporal Depth Consistency (TASK 3.1)
=====================================================
Video captures carry one depth grid per keyframe. A real scene keeps
its depth structure from keyframe to keyframe; a screen or print
swapped in mid-clip breaks it.

A clip is real only when every keyframe is real AND the per-keyframe
depth spread is stable (1 - std/mean > 0.8).

Part 3 of 6 — Temporal Analysis
"""

import time
from typing import Iterable, Optional

import numpy as np

from analyzers.depth_scene import DepthSceneAnalyzer
from capture_types import AnalysisStatus, TemporalDepthResult
from capture_utils import clamp01, elapsed_ms, section_config, setup_logger

_log = setup_logger('TemporalDepth')


class TemporalDepthAnalyzer:
    """
    Runs DepthSceneAnalyzer over a keyframe sequence and scores the
    stability of the results.
    """

    def __init__(self, config: Optional[dict] = None,
                 depth_analyzer: Optional[DepthSceneAnalyzer] = None):
        self.cfg = section_config('temporal_depth', config)
        self.depth_analyzer = depth_analyzer or DepthSceneAnalyzer()

    def analyze(self, depth_grids: Iterable) -> TemporalDepthResult:
        """Analyze keyframe depth grids in capture order."""
        start = time.perf_counter()
        grids = list(depth_grids)
        if not grids:
            _log.error("Temporal depth analysis called with no keyframes")
            return TemporalDepthResult(status=AnalysisStatus.ERROR, reason="No keyframes supplied")

        analyses = [self.depth_analyzer.analyze(grid) for grid in grids]

        failed = [i for i, a in enumerate(analyses) if a.status is not AnalysisStatus.SUCCESS]
        if failed:
            worst = analyses[failed[0]]
            _log.info("Temporal depth unavailable: keyframe %d %s (%s)",
                      failed[0], worst.status.value, worst.reason)
            return TemporalDepthResult(
                status=AnalysisStatus.UNAVAILABLE,
                keyframe_analyses=analyses,
                keyframe_count=len(analyses),
                analysis_time_ms=elapsed_ms(start),
                reason=f"Keyframe {failed[0]} {worst.status.value}: {worst.reason}",
            )

        variances = np.array([a.depth_variance for a in analyses], dtype=np.float64)
        mean_variance = float(variances.mean())
        stability = self.variance_stability(variances)
        coherence = float(np.mean([a.edge_coherence for a in analyses]))
        is_real = all(a.is_likely_real_scene for a in analyses) and \
            stability > self.cfg['stability_threshold']

        took = elapsed_ms(start)
        _log.debug("Temporal depth: %d keyframes, stability=%.3f coherence=%.3f real=%s",
                   len(analyses), stability, coherence, is_real)

        return TemporalDepthResult(
            status=AnalysisStatus.SUCCESS,
            keyframe_analyses=analyses,
            mean_variance=mean_variance,
            variance_stability=stability,
            temporal_coherence=coherence,
            is_likely_real_scene=bool(is_real),
            keyframe_count=len(analyses),
            analysis_time_ms=took,
            algorithm_version=str(self.cfg['algorithm_version']),
        )

    @staticmethod
    def variance_stability(variances: np.ndarray) -> float:
        mean = float(variances.mean())
        if mean <= 0:
            return 0.0
        return clamp01(1.0 - float(variances.std()) / mean)
