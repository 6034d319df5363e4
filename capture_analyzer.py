"""
CaptureShield — Analyzer Interface
==================================
Defines the `CaptureAnalyzer` base class for the per-signal detectors.

Engine Integration:
  - DetectionOrchestrator owns one instance of each analyzer
  - Each capture, every analyzer receives the same `CaptureFrame`
  - Each returns its own status-tagged result record
  - ConfidenceAggregator fuses the records

Part 1 of 6 — Foundations
"""

from abc import ABC, abstractmethod
from typing import Any

from capture_types import CaptureFrame, DetectionMethod


class CaptureAnalyzer(ABC):
    """
    Abstract Base Class for all CaptureShield signal analyzers.

    Contract: `analyze` never raises. Precondition failures come back
    with status UNAVAILABLE, internal failures with status ERROR.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for the analyzer (e.g., 'moire_detector')."""
        pass

    @property
    @abstractmethod
    def method(self) -> DetectionMethod:
        """Fusion slot this analyzer feeds."""
        pass

    @abstractmethod
    def analyze_frame(self, frame: CaptureFrame) -> Any:
        """
        Run the analysis on one captured frame.

        Returns:
            The analyzer's result dataclass (DepthAnalysisResult,
            MoireAnalysisResult, TextureClassificationResult or
            ArtifactAnalysisResult).
        """
        pass

    def release(self):
        """Optional cleanup logic on shutdown."""
        pass
