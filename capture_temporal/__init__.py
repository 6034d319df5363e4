"""
CaptureShield — Temporal Analysis Package
=========================================
Multi-keyframe analysis for video captures.
"""
from .depth_consistency import TemporalDepthAnalyzer

__all__ = ["TemporalDepthAnalyzer"]
