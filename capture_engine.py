"""
CaptureShield — Detection Orchestrator (TASK 5.1)
=================================================
Single entry point for scoring a capture.

Flow per frame:
  1. Fan the frame out to every registered analyzer (thread pool)
  2. Join all results; a failed analyzer never blocks the others
  3. Cross-validate the usable results
  4. Aggregate with the cross-validation penalty applied
  5. Append one `detection_completed` entry to the audit trail

Video / burst captures go through `analyze_sequence`, which adds the
temporal-stability checks of the CrossValidator.

Part 5 of 6 — Orchestration
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from analyzers import ArtifactDetector, DepthSceneAnalyzer, MoireDetector, TextureClassifier
from capture_analyzer import CaptureAnalyzer
from capture_fusion import (
    AggregatedConfidenceResult, ConfidenceAggregator, CrossValidationResult,
    CrossValidator, DetectionFrame,
)
from capture_logger import CaptureAuditLogger
from capture_types import (
    ALL_METHODS, ArtifactAnalysisResult, CaptureFrame, DepthAnalysisResult,
    DetectionMethod, MoireAnalysisResult, TextureClassificationResult, to_wire,
)
from capture_utils import CONFIG, elapsed_ms, section_config, setup_logger, utc_timestamp, warn_if_slow

_log = setup_logger('Orchestrator')

# analyzer name -> (class, config.yaml section)
ANALYZER_REGISTRY = {
    DepthSceneAnalyzer.name: (DepthSceneAnalyzer, "depth"),
    MoireDetector.name: (MoireDetector, "moire"),
    TextureClassifier.name: (TextureClassifier, "texture"),
    ArtifactDetector.name: (ArtifactDetector, "artifacts"),
}

# Constants
DEFAULT_CONFIG = {
    "analyzers": list(ANALYZER_REGISTRY),
    "enable_cross_validation": True,
    "max_workers": 4,
    "audit_log_dir": None,  # None disables the JSONL audit trail
    # Per-section overrides passed to each component, e.g. {"moire": {...}}
    "overrides": {},
}

_RESULT_FIELD = {
    DetectionMethod.LIDAR: "depth",
    DetectionMethod.MOIRE: "moire",
    DetectionMethod.TEXTURE: "texture",
    DetectionMethod.ARTIFACTS: "artifacts",
}


@dataclass
class DetectionResults:
    """Everything the capture payload carries about one frame."""
    aggregated_confidence: AggregatedConfidenceResult
    depth: Optional[DepthAnalysisResult] = None
    moire: Optional[MoireAnalysisResult] = None
    texture: Optional[TextureClassificationResult] = None
    artifacts: Optional[ArtifactAnalysisResult] = None
    cross_validation: Optional[CrossValidationResult] = None
    total_processing_time_ms: float = 0.0
    computed_at: str = field(default_factory=utc_timestamp)

    def result_for(self, method: DetectionMethod):
        return getattr(self, _RESULT_FIELD[method])

    @property
    def methods_used(self) -> List[DetectionMethod]:
        """Methods whose analyzer completed successfully."""
        return [m for m in ALL_METHODS
                if self.result_for(m) is not None and self.result_for(m).is_success]

    @property
    def available_method_count(self) -> int:
        return len(self.methods_used)

    @property
    def has_any_results(self) -> bool:
        return self.available_method_count > 0

    @classmethod
    def unavailable(cls) -> "DetectionResults":
        return cls(aggregated_confidence=AggregatedConfidenceResult.unavailable())

    def to_dict(self) -> dict:
        data = to_wire(asdict(self))
        data["aggregated_confidence"] = self.aggregated_confidence.to_dict()
        if self.cross_validation is not None:
            data["cross_validation"] = self.cross_validation.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DetectionResults":
        def opt(key, result_cls):
            value = data.get(key)
            return None if value is None else result_cls.from_dict(value)

        return cls(
            aggregated_confidence=AggregatedConfidenceResult.from_dict(data["aggregated_confidence"]),
            depth=opt("depth", DepthAnalysisResult),
            moire=opt("moire", MoireAnalysisResult),
            texture=opt("texture", TextureClassificationResult),
            artifacts=opt("artifacts", ArtifactAnalysisResult),
            cross_validation=opt("cross_validation", CrossValidationResult),
            total_processing_time_ms=float(data.get("total_processing_time_ms", 0.0)),
            computed_at=data.get("computed_at") or utc_timestamp(),
        )

    def audit_summary(self) -> dict:
        agg = self.aggregated_confidence
        cv = self.cross_validation
        return {
            "overall_confidence": agg.overall_confidence,
            "confidence_level": agg.confidence_level.value,
            "status": agg.status.value,
            "flags": [f.value for f in agg.flags],
            "methods_used": [m.value for m in self.methods_used],
            "validation_status": cv.validation_status.value if cv is not None else None,
            "penalty": cv.overall_penalty if cv is not None else 0.0,
            "total_processing_time_ms": self.total_processing_time_ms,
        }


class DetectionOrchestrator:
    """
    Owns one long-lived instance of each analyzer plus the fusion layer.

    Analyzer instances keep their transform caches between calls, so an
    orchestrator should be created once and reused.
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        overrides = self.config["overrides"]
        self.timing = section_config('orchestrator', overrides.get('orchestrator'))

        self.analyzers: Dict[DetectionMethod, CaptureAnalyzer] = {}
        for name in self.config["analyzers"]:
            if name not in ANALYZER_REGISTRY:
                raise ValueError(f"Unknown analyzer '{name}'. Known: {sorted(ANALYZER_REGISTRY)}")
            analyzer_cls, section = ANALYZER_REGISTRY[name]
            self.register_analyzer(analyzer_cls(overrides.get(section)))

        self.aggregator = ConfidenceAggregator(overrides.get('aggregation'))
        self.cross_validator = CrossValidator(overrides.get('cross_validation'),
                                              overrides.get('aggregation'))
        self._executor = ThreadPoolExecutor(max_workers=self.config["max_workers"],
                                            thread_name_prefix="capture-analyzer")

        self.audit: Optional[CaptureAuditLogger] = None
        if self.config["audit_log_dir"]:
            self.audit = CaptureAuditLogger(self.config["audit_log_dir"],
                                            CONFIG.get('logging', {}).get('audit_file', 'capture_audit.jsonl'))
            self.audit.log({"event": "orchestrator_init",
                            "analyzers": [a.name for a in self.analyzers.values()]}, level="SYSTEM")

    def register_analyzer(self, analyzer: CaptureAnalyzer):
        """Register (or replace) the analyzer feeding `analyzer.method`."""
        previous = self.analyzers.get(analyzer.method)
        if previous is not None and previous is not analyzer:
            previous.release()
        self.analyzers[analyzer.method] = analyzer
        _log.debug("Registered analyzer %s for %s", analyzer.name, analyzer.method.value)

    # ---------------------------------------------------------------
    # Single frame
    # ---------------------------------------------------------------

    def analyze(self, frame: Union[CaptureFrame, np.ndarray],
                depth: Optional[np.ndarray] = None) -> DetectionResults:
        """Score one frame. Pixels may be given bare, with depth alongside."""
        start = time.perf_counter()
        frame = _as_frame(frame, depth)

        raw = self._run_analyzers(frame)
        cross_validation = None
        if self.config["enable_cross_validation"]:
            cross_validation = self.cross_validator.validate(**raw)
        aggregated = self.aggregator.aggregate(**raw, cross_validation=cross_validation)

        took = elapsed_ms(start)
        results = DetectionResults(
            aggregated_confidence=aggregated,
            cross_validation=cross_validation,
            total_processing_time_ms=took,
            **raw,
        )

        _log.info("Detection complete in %.1fms: confidence=%.3f level=%s methods=%d/%d",
                  took, aggregated.overall_confidence, aggregated.confidence_level.value,
                  results.available_method_count, len(ALL_METHODS))
        warn_if_slow(_log, "Detection", took, self.timing['max_time_ms'], self.timing.get('target_time_ms'))
        if self.audit is not None:
            self.audit.log_detection(results.audit_summary())
        return results

    def _run_analyzers(self, frame: CaptureFrame) -> Dict[str, object]:
        """Run all analyzers concurrently; keyed by aggregator argument name."""
        futures = {
            method: self._executor.submit(analyzer.analyze_frame, frame)
            for method, analyzer in self.analyzers.items()
        }
        raw = {field_name: None for field_name in _RESULT_FIELD.values()}
        for method, future in futures.items():
            try:
                result = future.result()
            except Exception as e:
                # Analyzers report failures as results; this is a contract breach
                _log.error("Analyzer %s raised: %s", self.analyzers[method].name, e, exc_info=True)
                if self.audit is not None:
                    self.audit.error(f"Analyzer {self.analyzers[method].name} raised", e)
                continue
            if not result.is_success:
                _log.info("%s %s: %s", method.value, result.status.value, result.reason)
            raw[_RESULT_FIELD[method]] = result
        return raw

    # ---------------------------------------------------------------
    # Sequences
    # ---------------------------------------------------------------

    def analyze_sequence(self, frames: Sequence[Union[CaptureFrame, DetectionFrame]]) -> CrossValidationResult:
        """Temporal cross-validation over a video or burst.

        Raw CaptureFrames are analyzed first; DetectionFrames are used as-is.
        """
        start = time.perf_counter()
        detection_frames = []
        for index, frame in enumerate(frames):
            if isinstance(frame, DetectionFrame):
                detection_frames.append(frame)
                continue
            frame = _as_frame(frame)
            detection_frames.append(DetectionFrame(index=index, timestamp=frame.timestamp,
                                                   **self._run_analyzers(frame)))

        result = self.cross_validator.validate_sequence(detection_frames)
        took = elapsed_ms(start)
        _log.info("Sequence of %d frames validated in %.1fms: %s",
                  len(detection_frames), took, result.validation_status.value)
        if self.audit is not None:
            self.audit.log({
                "frame_count": len(detection_frames),
                "validation_status": result.validation_status.value,
                "penalty": result.overall_penalty,
                "anomalies": [a.anomaly_type.value for a in result.anomalies],
            }, event="sequence_validated")
        return result

    def release(self):
        """Release analyzer caches, worker threads and the audit file."""
        for analyzer in self.analyzers.values():
            analyzer.release()
        self._executor.shutdown(wait=True)
        if self.audit is not None:
            self.audit.close()
        _log.info("Orchestrator released")


def _as_frame(frame, depth=None) -> CaptureFrame:
    if isinstance(frame, CaptureFrame):
        if depth is None:
            return frame
        return CaptureFrame(pixels=frame.pixels, depth=depth, timestamp=frame.timestamp)
    return CaptureFrame(pixels=np.asarray(frame), depth=depth)
