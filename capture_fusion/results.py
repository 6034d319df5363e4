"""
CaptureShield — Fusion Result Types
===================================
Output records of the ConfidenceAggregator and CrossValidator.
These are the structures serialized into the capture payload and
re-checked server side; field names are part of that contract.

Part 4 of 6 — Fusion
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional

from capture_types import ALL_METHODS, DetectionMethod, to_wire
from capture_utils import utc_timestamp


# ===================================================================
# Aggregation enums
# ===================================================================

class ConfidenceLevel(str, Enum):
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SUSPICIOUS = "suspicious"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def capped_at(self, cap: "ConfidenceLevel") -> "ConfidenceLevel":
        """Return the lower of self and cap."""
        return self if self.rank <= cap.rank else cap


_LEVEL_RANK = {
    ConfidenceLevel.SUSPICIOUS: 0,
    ConfidenceLevel.LOW: 1,
    ConfidenceLevel.MEDIUM: 2,
    ConfidenceLevel.HIGH: 3,
    ConfidenceLevel.VERY_HIGH: 4,
}


class ConfidenceFlag(str, Enum):
    PRIMARY_SIGNAL_FAILED = "primary_signal_failed"
    SCREEN_DETECTED = "screen_detected"
    PRINT_DETECTED = "print_detected"
    METHODS_DISAGREE = "methods_disagree"
    PRIMARY_SUPPORTING_DISAGREE = "primary_supporting_disagree"
    PARTIAL_ANALYSIS = "partial_analysis"
    LOW_CONFIDENCE_PRIMARY = "low_confidence_primary"
    AMBIGUOUS_RESULTS = "ambiguous_results"


class AggregationStatus(str, Enum):
    SUCCESS = "success"          # all four methods fused
    PARTIAL = "partial"          # one to three methods fused
    UNAVAILABLE = "unavailable"  # nothing to fuse
    ERROR = "error"


# ===================================================================
# Aggregation records
# ===================================================================

@dataclass(frozen=True)
class MethodResult:
    """One row of the per-method breakdown."""
    available: bool
    score: Optional[float]
    weight: float
    contribution: float
    status: str  # "pass" | "fail" | "unavailable"

    @classmethod
    def unavailable(cls) -> "MethodResult":
        return cls(available=False, score=None, weight=0.0, contribution=0.0, status="unavailable")


@dataclass(frozen=True)
class AggregatedConfidenceResult:
    overall_confidence: float
    confidence_level: ConfidenceLevel
    method_breakdown: Dict[DetectionMethod, MethodResult]
    primary_signal_valid: bool
    supporting_signals_agree: bool
    flags: List[ConfidenceFlag]
    status: AggregationStatus
    cross_validation: Optional["CrossValidationResult"] = None
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)

    @property
    def available_methods(self) -> List[DetectionMethod]:
        return [m for m in ALL_METHODS
                if m in self.method_breakdown and self.method_breakdown[m].available]

    @classmethod
    def unavailable(cls, algorithm_version: str = "1.0") -> "AggregatedConfidenceResult":
        return cls(
            overall_confidence=0.0,
            confidence_level=ConfidenceLevel.SUSPICIOUS,
            method_breakdown={m: MethodResult.unavailable() for m in ALL_METHODS},
            primary_signal_valid=False,
            supporting_signals_agree=False,
            flags=[ConfidenceFlag.PARTIAL_ANALYSIS],
            status=AggregationStatus.UNAVAILABLE,
            algorithm_version=algorithm_version,
        )

    def to_dict(self) -> dict:
        data = to_wire(asdict(self))
        if self.cross_validation is not None:
            data["cross_validation"] = self.cross_validation.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AggregatedConfidenceResult":
        data = dict(data)
        data["confidence_level"] = ConfidenceLevel(data["confidence_level"])
        data["method_breakdown"] = {
            DetectionMethod(k): MethodResult(**v)
            for k, v in (data.get("method_breakdown") or {}).items()
        }
        data["flags"] = [ConfidenceFlag(f) for f in data.get("flags", [])]
        data["status"] = AggregationStatus(data["status"])
        if data.get("cross_validation") is not None:
            data["cross_validation"] = CrossValidationResult.from_dict(data["cross_validation"])
        return cls(**data)


# ===================================================================
# Cross-validation enums
# ===================================================================

class ValidationStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class ExpectedRelationship(str, Enum):
    POSITIVE = "positive"  # scores should move together
    NEGATIVE = "negative"  # scores should move oppositely
    NEUTRAL = "neutral"


class AnomalyType(str, Enum):
    CONTRADICTORY_SIGNALS = "contradictory_signals"
    TOO_HIGH_AGREEMENT = "too_high_agreement"
    ISOLATED_DISAGREEMENT = "isolated_disagreement"
    BOUNDARY_CLUSTER = "boundary_cluster"
    CORRELATION_ANOMALY = "correlation_anomaly"


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TemporalAnomalyType(str, Enum):
    SUDDEN_JUMP = "sudden_jump"
    OSCILLATION = "oscillation"


# ===================================================================
# Cross-validation records
# ===================================================================

@dataclass(frozen=True)
class PairwiseConsistency:
    method_a: DetectionMethod
    method_b: DetectionMethod
    expected_relationship: ExpectedRelationship
    expected_agreement: float
    actual_agreement: float
    anomaly_score: float
    is_anomaly: bool

    @classmethod
    def from_dict(cls, data: dict) -> "PairwiseConsistency":
        data = dict(data)
        data["method_a"] = DetectionMethod(data["method_a"])
        data["method_b"] = DetectionMethod(data["method_b"])
        data["expected_relationship"] = ExpectedRelationship(data["expected_relationship"])
        return cls(**data)


@dataclass(frozen=True)
class ConfidenceInterval:
    lower_bound: float
    point_estimate: float
    upper_bound: float

    @property
    def width(self) -> float:
        return self.upper_bound - self.lower_bound

    @classmethod
    def empty(cls) -> "ConfidenceInterval":
        return cls(0.0, 0.0, 0.0)


@dataclass(frozen=True)
class TemporalAnomaly:
    frame_index: int
    method: DetectionMethod
    delta_score: float
    anomaly_type: TemporalAnomalyType

    def to_dict(self) -> dict:
        """Wire form; the kind travels under the key "type"."""
        data = to_wire(asdict(self))
        data["type"] = data.pop("anomaly_type")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TemporalAnomaly":
        return cls(
            frame_index=int(data["frame_index"]),
            method=DetectionMethod(data["method"]),
            delta_score=float(data["delta_score"]),
            anomaly_type=TemporalAnomalyType(data.get("type", data.get("anomaly_type"))),
        )


@dataclass(frozen=True)
class TemporalConsistency:
    frame_count: int
    stability_scores: Dict[DetectionMethod, float]
    anomalies: List[TemporalAnomaly]
    overall_stability: float

    @classmethod
    def single_frame(cls, methods=()) -> "TemporalConsistency":
        """One frame is trivially stable for every method it carries."""
        return cls(frame_count=1, stability_scores={m: 1.0 for m in methods},
                   anomalies=[], overall_stability=1.0)

    def to_dict(self) -> dict:
        data = to_wire(asdict(self))
        data["anomalies"] = [a.to_dict() for a in self.anomalies]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TemporalConsistency":
        return cls(
            frame_count=int(data["frame_count"]),
            stability_scores={DetectionMethod(k): float(v)
                              for k, v in (data.get("stability_scores") or {}).items()},
            anomalies=[TemporalAnomaly.from_dict(a) for a in data.get("anomalies", [])],
            overall_stability=float(data["overall_stability"]),
        )


@dataclass(frozen=True)
class AnomalyReport:
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    affected_methods: List[DetectionMethod]
    details: str
    confidence_impact: float

    @classmethod
    def from_dict(cls, data: dict) -> "AnomalyReport":
        return cls(
            anomaly_type=AnomalyType(data["anomaly_type"]),
            severity=AnomalySeverity(data["severity"]),
            affected_methods=[DetectionMethod(m) for m in data.get("affected_methods", [])],
            details=data.get("details", ""),
            confidence_impact=float(data["confidence_impact"]),
        )


@dataclass(frozen=True)
class CrossValidationResult:
    validation_status: ValidationStatus
    pairwise_consistencies: List[PairwiseConsistency]
    temporal_consistency: Optional[TemporalConsistency]
    confidence_intervals: Dict[DetectionMethod, ConfidenceInterval]
    aggregated_interval: ConfidenceInterval
    anomalies: List[AnomalyReport]
    overall_penalty: float
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)

    def anomalies_of(self, anomaly_type: AnomalyType) -> List[AnomalyReport]:
        return [a for a in self.anomalies if a.anomaly_type is anomaly_type]

    @classmethod
    def unavailable(cls, algorithm_version: str = "1.0") -> "CrossValidationResult":
        return cls(
            validation_status=ValidationStatus.PASS,
            pairwise_consistencies=[],
            temporal_consistency=None,
            confidence_intervals={},
            aggregated_interval=ConfidenceInterval.empty(),
            anomalies=[],
            overall_penalty=0.0,
            algorithm_version=algorithm_version,
        )

    def to_dict(self) -> dict:
        data = to_wire(asdict(self))
        if self.temporal_consistency is not None:
            data["temporal_consistency"] = self.temporal_consistency.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CrossValidationResult":
        temporal = data.get("temporal_consistency")
        return cls(
            validation_status=ValidationStatus(data["validation_status"]),
            pairwise_consistencies=[PairwiseConsistency.from_dict(p)
                                    for p in data.get("pairwise_consistencies", [])],
            temporal_consistency=TemporalConsistency.from_dict(temporal) if temporal else None,
            confidence_intervals={DetectionMethod(k): ConfidenceInterval(**v)
                                  for k, v in (data.get("confidence_intervals") or {}).items()},
            aggregated_interval=ConfidenceInterval(**data["aggregated_interval"]),
            anomalies=[AnomalyReport.from_dict(a) for a in data.get("anomalies", [])],
            overall_penalty=float(data["overall_penalty"]),
            analysis_time_ms=float(data.get("analysis_time_ms", 0.0)),
            algorithm_version=data.get("algorithm_version", "1.0"),
            computed_at=data.get("computed_at") or utc_timestamp(),
        )
