"""
CaptureShield — Depth Scene Analyzer (TASK 2.1)
===============================================
Scores 3-D structure from a depth grid. This is the PRIMARY signal:
a live scene has depth spread, several distinct layers and real edges,
a screen or print held up to the camera is one flat plane.

Real Scene:  spread > 0.5 m, >= 3 layers, edge coherence > 0.3.
Flat Screen: depth range < 0.15 m at 0.2-1.5 m, > 85% of samples at
             the median depth, every quadrant flat.

The six thresholds are shared with the backend re-verification
service and must stay identical on both sides.

Part 2 of 6 — Signal Analyzers
"""

import dataclasses
import time
from typing import List, Optional

import numpy as np

from capture_analyzer import CaptureAnalyzer
from capture_types import AnalysisStatus, CaptureFrame, DepthAnalysisResult, DetectionMethod
from capture_utils import elapsed_ms, section_config, setup_logger, warn_if_slow

_log = setup_logger('DepthScene')


class DepthSceneAnalyzer(CaptureAnalyzer):
    name = "depth_scene"
    method = DetectionMethod.LIDAR

    def __init__(self, config: Optional[dict] = None):
        self.cfg = section_config('depth', config)

    def analyze_frame(self, frame: CaptureFrame) -> DepthAnalysisResult:
        if frame.depth is None:
            return DepthAnalysisResult.unavailable("No depth data in frame")
        return self.analyze(frame.depth)

    def analyze(self, depth) -> DepthAnalysisResult:
        """
        Analyze one depth grid (H x W, meters).

        Returns:
            DepthAnalysisResult. UNAVAILABLE when the grid is smaller than
            3x3, not two-dimensional, or holds no valid samples.
        """
        start = time.perf_counter()
        try:
            grid = np.asarray(depth, dtype=np.float64)
        except (TypeError, ValueError) as e:
            return DepthAnalysisResult.unavailable(f"Unreadable depth grid: {e}")

        if grid.ndim != 2:
            return DepthAnalysisResult.unavailable(f"Depth grid must be 2-D, got shape {grid.shape}")

        min_dim = self.cfg['min_grid_dimension']
        h, w = grid.shape
        if h < min_dim or w < min_dim:
            return DepthAnalysisResult.unavailable(f"Depth grid too small ({w}x{h})")

        try:
            result = self._analyze_grid(grid)
        except Exception as e:
            _log.error("Depth analysis failed: %s", e, exc_info=True)
            return DepthAnalysisResult.error(str(e))

        took = elapsed_ms(start)
        warn_if_slow(_log, "Depth analysis", took, self.cfg['max_time_ms'])
        if result.status is AnalysisStatus.SUCCESS:
            _log.debug(
                "Depth: std=%.3f layers=%d coherence=%.3f real=%s",
                result.depth_variance, result.depth_layers,
                result.edge_coherence, result.is_likely_real_scene,
            )
        else:
            _log.info("Depth analysis unavailable: %s", result.reason)
        return dataclasses.replace(result, analysis_time_ms=took)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _valid_mask(self, grid: np.ndarray) -> np.ndarray:
        with np.errstate(invalid='ignore'):
            return (np.isfinite(grid)
                    & (grid >= self.cfg['min_valid_depth'])
                    & (grid <= self.cfg['max_valid_depth']))

    def _analyze_grid(self, grid: np.ndarray) -> DepthAnalysisResult:
        cfg = self.cfg
        valid_mask = self._valid_mask(grid)
        valid = grid[valid_mask]
        if valid.size == 0:
            return DepthAnalysisResult.unavailable("No valid depth samples")

        spread = self.compute_depth_spread(valid)
        layers = self.count_depth_layers(valid)
        coherence = self.compute_edge_coherence(grid)
        quadrant_std = self.compute_quadrant_std(grid, valid_mask)
        screen = self.is_screen_pattern(valid, quadrant_std)

        is_real = (
            spread > cfg['variance_threshold']
            and layers >= cfg['layer_threshold']
            and coherence > cfg['coherence_threshold']
            and not screen
        )

        return DepthAnalysisResult(
            status=AnalysisStatus.SUCCESS,
            depth_variance=float(spread),
            depth_layers=int(layers),
            edge_coherence=float(coherence),
            min_depth=float(valid.min()),
            max_depth=float(valid.max()),
            is_likely_real_scene=bool(is_real),
            screen_pattern_detected=bool(screen),
            quadrant_std=[float(q) for q in quadrant_std],
            valid_sample_count=int(valid.size),
            algorithm_version=str(cfg['algorithm_version']),
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    @staticmethod
    def compute_depth_spread(valid: np.ndarray) -> float:
        """Root-mean-square deviation of valid depths (reported as depth_variance)."""
        if valid.size == 0:
            return 0.0
        return float(np.sqrt(np.mean((valid - valid.mean()) ** 2)))

    def count_depth_layers(self, valid: np.ndarray) -> int:
        """Count prominent peaks in the smoothed depth histogram."""
        bins = int(self.cfg['histogram_bins'])
        lo, hi = float(valid.min()), float(valid.max())
        if hi <= lo or bins < 3:
            return 0

        bin_width = (hi - lo) / bins
        idx = np.floor((valid - lo) / bin_width).astype(np.int64)
        idx = np.clip(idx, 0, bins - 1)
        hist = np.bincount(idx, minlength=bins).astype(np.float64)

        # 3-tap moving average, edges repeat the edge value
        padded = np.concatenate(([hist[0]], hist, [hist[-1]]))
        smoothed = (padded[:-2] + padded[1:-1] + padded[2:]) / 3.0

        threshold = smoothed.max() * self.cfg['peak_prominence_ratio']
        inner = smoothed[1:-1]
        peaks = int(np.count_nonzero(
            (inner > smoothed[:-2]) & (inner > smoothed[2:]) & (inner > threshold)
        ))
        if smoothed[0] > threshold and smoothed[0] > smoothed[1]:
            peaks += 1
        if smoothed[-1] > threshold and smoothed[-1] > smoothed[-2]:
            peaks += 1
        return peaks

    def compute_edge_coherence(self, grid: np.ndarray) -> float:
        """Share of interior samples on a depth edge, mapped through 1 - exp(-30 r)."""
        h, w = grid.shape
        if h < 3 or w < 3:
            return 0.0

        center = grid[1:-1, 1:-1]
        center_ok = self._valid_mask(center)
        valid_pixels = int(np.count_nonzero(center_ok))
        if valid_pixels == 0:
            return 0.0

        min_valid = self.cfg['min_valid_depth']
        with np.errstate(invalid='ignore'):
            neighbour_ok = np.isfinite(grid) & (grid > min_valid)

        left, right = grid[1:-1, :-2], grid[1:-1, 2:]
        up, down = grid[:-2, 1:-1], grid[2:, 1:-1]
        gx_ok = neighbour_ok[1:-1, :-2] & neighbour_ok[1:-1, 2:]
        gy_ok = neighbour_ok[:-2, 1:-1] & neighbour_ok[2:, 1:-1]

        with np.errstate(invalid='ignore', over='ignore'):
            gx = np.where(gx_ok, (right - left) / 2.0, 0.0)
            gy = np.where(gy_ok, (down - up) / 2.0, 0.0)
            magnitude = np.sqrt(gx * gx + gy * gy)

        edges = int(np.count_nonzero(center_ok & (magnitude > self.cfg['gradient_threshold'])))
        ratio = edges / valid_pixels
        coherence = 1.0 - np.exp(-ratio * self.cfg['edge_coherence_gain'])
        return float(min(max(coherence, 0.0), 1.0))

    def compute_quadrant_std(self, grid: np.ndarray, valid_mask: np.ndarray) -> List[float]:
        """Depth std per image quadrant; quadrants with too few samples are skipped."""
        h, w = grid.shape
        if h < 4 or w < 4:
            return []

        mid_y, mid_x = h // 2, w // 2
        bounds = (
            (0, mid_y, 0, mid_x),
            (0, mid_y, mid_x, w),
            (mid_y, h, 0, mid_x),
            (mid_y, h, mid_x, w),
        )
        out = []
        for y0, y1, x0, x1 in bounds:
            samples = grid[y0:y1, x0:x1][valid_mask[y0:y1, x0:x1]]
            if samples.size < self.cfg['min_quadrant_samples']:
                continue
            out.append(self.compute_depth_spread(samples))
        return out

    def is_screen_pattern(self, valid: np.ndarray, quadrant_std: List[float]) -> bool:
        """Flat, uniform plane at handheld distance, flat in every quadrant."""
        cfg = self.cfg
        depth_range = float(valid.max() - valid.min())
        mean_depth = float(valid.mean())

        in_screen_distance = cfg['screen_distance_min'] <= mean_depth <= cfg['screen_distance_max']
        if not in_screen_distance or depth_range >= cfg['screen_depth_range_max']:
            return False

        median = float(np.sort(valid)[valid.size // 2])
        near_median = np.count_nonzero(np.abs(valid - median) < cfg['screen_uniformity_band'])
        uniformity = near_median / valid.size
        if uniformity <= cfg['screen_uniformity_threshold']:
            return False

        # A screen must be flat across all four quadrants
        if len(quadrant_std) != 4:
            return False
        return all(q < cfg['min_quadrant_variance'] for q in quadrant_std)
