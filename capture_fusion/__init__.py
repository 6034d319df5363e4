"""
CaptureShield — Fusion Package
==============================
Score normalization, weighted fusion and cross-validation.
"""
from .results import (
    AggregatedConfidenceResult,
    AggregationStatus,
    AnomalyReport,
    AnomalySeverity,
    AnomalyType,
    ConfidenceFlag,
    ConfidenceInterval,
    ConfidenceLevel,
    CrossValidationResult,
    ExpectedRelationship,
    MethodResult,
    PairwiseConsistency,
    TemporalAnomaly,
    TemporalAnomalyType,
    TemporalConsistency,
    ValidationStatus,
)
from .confidence_aggregator import ConfidenceAggregator
from .cross_validator import CrossValidator, DetectionFrame

__all__ = [
    "AggregatedConfidenceResult",
    "AggregationStatus",
    "AnomalyReport",
    "AnomalySeverity",
    "AnomalyType",
    "ConfidenceAggregator",
    "ConfidenceFlag",
    "ConfidenceInterval",
    "ConfidenceLevel",
    "CrossValidationResult",
    "CrossValidator",
    "DetectionFrame",
    "ExpectedRelationship",
    "MethodResult",
    "PairwiseConsistency",
    "TemporalAnomaly",
    "TemporalAnomalyType",
    "TemporalConsistency",
    "ValidationStatus",
]
