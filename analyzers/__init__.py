"""
CaptureShield — Signal Analyzers Package
========================================
Independent per-signal detectors fused by capture_fusion.
"""
from .depth_scene import DepthSceneAnalyzer
from .moire_detector import MoireDetector
from .texture_classifier import HeuristicTextureScorer, TextureClassifier
from .artifact_detector import ArtifactDetector

__all__ = [
    "DepthSceneAnalyzer",
    "MoireDetector",
    "TextureClassifier",
    "HeuristicTextureScorer",
    "ArtifactDetector",
]
