"""
CaptureShield — Shared Types
============================
Enums, the capture frame container and the per-analyzer result records.

Every result is created once per analysis call and never mutated.
`to_dict()` produces the snake_case wire form shared with the
re-verification backend; `from_dict()` reverses it.

Part 1 of 6 — Foundations
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from capture_utils import utc_timestamp


# ===================================================================
# Enumerations
# ===================================================================

class AnalysisStatus(str, Enum):
    """Outcome of a single analyzer call."""
    SUCCESS = "success"          # analysis ran to completion
    UNAVAILABLE = "unavailable"  # input failed a precondition
    ERROR = "error"              # algorithm failed internally


class DetectionMethod(str, Enum):
    """Closed set of fused signals. Declaration order is the canonical order."""
    LIDAR = "lidar"
    MOIRE = "moire"
    TEXTURE = "texture"
    ARTIFACTS = "artifacts"

    @property
    def is_primary(self) -> bool:
        return self is DetectionMethod.LIDAR


ALL_METHODS = tuple(DetectionMethod)


class ScreenType(str, Enum):
    LCD = "lcd"
    OLED = "oled"
    HIGH_REFRESH = "highRefresh"
    UNKNOWN = "unknown"


class TextureClass(str, Enum):
    REAL_SCENE = "real_scene"
    LCD_SCREEN = "lcd_screen"
    OLED_SCREEN = "oled_screen"
    PRINTED_PAPER = "printed_paper"
    UNKNOWN = "unknown"

    @property
    def is_screen(self) -> bool:
        return self in (TextureClass.LCD_SCREEN, TextureClass.OLED_SCREEN)

    @property
    def is_recapture(self) -> bool:
        return self.is_screen or self is TextureClass.PRINTED_PAPER


# Arg-max tie-break order for the texture classifier
TEXTURE_CLASS_ORDER = (
    TextureClass.REAL_SCENE,
    TextureClass.LCD_SCREEN,
    TextureClass.OLED_SCREEN,
    TextureClass.PRINTED_PAPER,
    TextureClass.UNKNOWN,
)


# ===================================================================
# Serialization helpers
# ===================================================================

def to_wire(value: Any) -> Any:
    """Recursively convert enums / NumPy scalars into JSON-ready values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {to_wire(k): to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


def _opt_enum(enum_cls, value):
    return None if value is None else enum_cls(value)


# ===================================================================
# Capture Frame
# ===================================================================

@dataclass(frozen=True)
class CaptureFrame:
    """One captured frame: RGB(A) pixels plus an optional depth grid.

    pixels: HxWx3 or HxWx4 array, RGB channel order (uint8 or float in [0,1]).
    depth:  HxW float32 depth in meters, or None when no depth sensor.
    """
    pixels: np.ndarray
    depth: Optional[np.ndarray] = None
    timestamp: float = 0.0

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def has_depth(self) -> bool:
        return self.depth is not None


# ===================================================================
# Depth
# ===================================================================

@dataclass(frozen=True)
class DepthAnalysisResult:
    """Depth-grid scene analysis (primary signal)."""
    status: AnalysisStatus
    depth_variance: float = 0.0
    depth_layers: int = 0
    edge_coherence: float = 0.0
    min_depth: float = 0.0
    max_depth: float = 0.0
    is_likely_real_scene: bool = False
    screen_pattern_detected: bool = False
    quadrant_std: List[float] = field(default_factory=list)
    valid_sample_count: int = 0
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status is AnalysisStatus.SUCCESS

    @classmethod
    def unavailable(cls, reason: str) -> "DepthAnalysisResult":
        return cls(status=AnalysisStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "DepthAnalysisResult":
        return cls(status=AnalysisStatus.ERROR, reason=reason)

    def to_dict(self) -> dict:
        return to_wire(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "DepthAnalysisResult":
        data = dict(data)
        data["status"] = AnalysisStatus(data["status"])
        data["quadrant_std"] = list(data.get("quadrant_std", []))
        return cls(**data)


# ===================================================================
# Moiré
# ===================================================================

@dataclass(frozen=True)
class MoirePeak:
    """One spectral peak. frequency is in cycles per image width."""
    frequency: float
    magnitude: float
    angle: float
    prominence: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MoireAnalysisResult:
    """Screen-grid interference analysis."""
    status: AnalysisStatus
    detected: bool = False
    confidence: float = 0.0
    peaks: List[MoirePeak] = field(default_factory=list)
    screen_type: Optional[ScreenType] = None
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status is AnalysisStatus.SUCCESS

    @classmethod
    def unavailable(cls, reason: str) -> "MoireAnalysisResult":
        return cls(status=AnalysisStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "MoireAnalysisResult":
        return cls(status=AnalysisStatus.ERROR, reason=reason)

    def to_dict(self) -> dict:
        return to_wire(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "MoireAnalysisResult":
        data = dict(data)
        data["status"] = AnalysisStatus(data["status"])
        data["peaks"] = [MoirePeak(**p) for p in data.get("peaks", [])]
        data["screen_type"] = _opt_enum(ScreenType, data.get("screen_type"))
        return cls(**data)


# ===================================================================
# Texture
# ===================================================================

@dataclass(frozen=True)
class TextureFeatures:
    """The five scalar features consumed by the texture scorer."""
    color_variance: float
    edge_sharpness: float
    periodicity: float
    high_frequency: float
    color_uniformity: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TextureClassificationResult:
    """Surface-material classification."""
    status: AnalysisStatus
    classification: TextureClass = TextureClass.UNKNOWN
    confidence: float = 0.0
    all_classifications: Dict[TextureClass, float] = field(default_factory=dict)
    features: Optional[TextureFeatures] = None
    is_likely_recaptured: bool = False
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status is AnalysisStatus.SUCCESS

    @classmethod
    def unavailable(cls, reason: str) -> "TextureClassificationResult":
        return cls(status=AnalysisStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "TextureClassificationResult":
        return cls(status=AnalysisStatus.ERROR, reason=reason)

    def to_dict(self) -> dict:
        return to_wire(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "TextureClassificationResult":
        data = dict(data)
        data["status"] = AnalysisStatus(data["status"])
        data["classification"] = TextureClass(data.get("classification", "unknown"))
        data["all_classifications"] = {
            TextureClass(k): float(v)
            for k, v in (data.get("all_classifications") or {}).items()
        }
        if data.get("features") is not None:
            data["features"] = TextureFeatures(**data["features"])
        return cls(**data)


# ===================================================================
# Artifacts
# ===================================================================

@dataclass(frozen=True)
class ArtifactAnalysisResult:
    """PWM flicker, specular geometry and halftone periodicity."""
    status: AnalysisStatus
    pwm_flicker_detected: bool = False
    pwm_confidence: float = 0.0
    specular_pattern_detected: bool = False
    specular_confidence: float = 0.0
    halftone_detected: bool = False
    halftone_confidence: float = 0.0
    overall_confidence: float = 0.0
    is_likely_artificial: bool = False
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)
    reason: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status is AnalysisStatus.SUCCESS

    @classmethod
    def unavailable(cls, reason: str) -> "ArtifactAnalysisResult":
        return cls(status=AnalysisStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "ArtifactAnalysisResult":
        return cls(status=AnalysisStatus.ERROR, reason=reason)

    def to_dict(self) -> dict:
        return to_wire(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "ArtifactAnalysisResult":
        data = dict(data)
        data["status"] = AnalysisStatus(data["status"])
        return cls(**data)


# ===================================================================
# Temporal depth (video keyframes)
# ===================================================================

@dataclass(frozen=True)
class TemporalDepthResult:
    """Depth analysis aggregated over the keyframes of a video capture."""
    status: AnalysisStatus
    keyframe_analyses: List[DepthAnalysisResult] = field(default_factory=list)
    mean_variance: float = 0.0
    variance_stability: float = 0.0
    temporal_coherence: float = 0.0
    is_likely_real_scene: bool = False
    keyframe_count: int = 0
    analysis_time_ms: float = 0.0
    algorithm_version: str = "1.0"
    computed_at: str = field(default_factory=utc_timestamp)
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return to_wire(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "TemporalDepthResult":
        data = dict(data)
        data["status"] = AnalysisStatus(data["status"])
        data["keyframe_analyses"] = [
            DepthAnalysisResult.from_dict(k) for k in data.get("keyframe_analyses", [])
        ]
        return cls(**data)
