"""
Morph value types shared across the scan pipeline.

BoundsRange / PhysiologicalBounds describe what the archetype table allows for
a gender. EnvelopeRange / Envelope describe the tighter per-scan corridor built
from the selected archetypes. StageOutcome tags each stage result carried into
the committed scan record.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass(frozen=True)
class BoundsRange:
    min: float
    max: float

    @property
    def banned(self) -> bool:
        return self.min == 0 and self.max == 0

    @property
    def fixed(self) -> bool:
        return self.min == self.max and not self.banned

    @property
    def width(self) -> float:
        return self.max - self.min

    def contains(self, value: float, tolerance: float = 1e-9) -> bool:
        return self.min - tolerance <= value <= self.max + tolerance

    def clamp(self, value: float) -> float:
        return min(self.max, max(self.min, value))

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max}


@dataclass
class PhysiologicalBounds:
    """Per-gender hard limits derived from the archetype table."""
    gender: str
    shape: Dict[str, BoundsRange] = field(default_factory=dict)
    limbs: Dict[str, BoundsRange] = field(default_factory=dict)

    def banned_shape_keys(self) -> List[str]:
        return [k for k, r in self.shape.items() if r.banned]

    def fixed_limb_keys(self) -> List[str]:
        return [k for k, r in self.limbs.items() if r.min == r.max]

    def to_dict(self) -> dict:
        return {
            "gender": self.gender,
            "shape_params": {k: r.to_dict() for k, r in self.shape.items()},
            "limb_masses": {k: r.to_dict() for k, r in self.limbs.items()},
        }


@dataclass(frozen=True)
class EnvelopeRange:
    min: float
    max: float
    archetype_min: Optional[float] = None
    archetype_max: Optional[float] = None

    @property
    def bounds(self) -> BoundsRange:
        return BoundsRange(self.min, self.max)

    @property
    def has_archetype_data(self) -> bool:
        return self.archetype_min is not None and self.archetype_max is not None

    def to_dict(self) -> dict:
        return {
            "min": self.min,
            "max": self.max,
            "archetype_min": self.archetype_min,
            "archetype_max": self.archetype_max,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EnvelopeRange":
        lo, hi = float(data["min"]), float(data["max"])
        if lo > hi:
            lo, hi = hi, lo
        return cls(
            min=lo,
            max=hi,
            archetype_min=data.get("archetype_min"),
            archetype_max=data.get("archetype_max"),
        )


@dataclass
class EnvelopeMetadata:
    archetypes_used: List[str] = field(default_factory=list)
    keys_with_archetype_data: int = 0
    keys_using_db_fallback: int = 0
    envelope_generation_timestamp: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "archetypes_used": list(self.archetypes_used),
            "keys_with_archetype_data": self.keys_with_archetype_data,
            "keys_using_db_fallback": self.keys_using_db_fallback,
            "envelope_generation_timestamp": self.envelope_generation_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "EnvelopeMetadata":
        data = data or {}
        return cls(
            archetypes_used=list(data.get("archetypes_used") or []),
            keys_with_archetype_data=int(data.get("keys_with_archetype_data") or 0),
            keys_using_db_fallback=int(data.get("keys_using_db_fallback") or 0),
            envelope_generation_timestamp=data.get("envelope_generation_timestamp"),
        )


@dataclass
class Envelope:
    """K=5 corridor: key -> EnvelopeRange for shapes and limbs."""
    shape: Dict[str, EnvelopeRange] = field(default_factory=dict)
    limbs: Dict[str, EnvelopeRange] = field(default_factory=dict)
    metadata: EnvelopeMetadata = field(default_factory=EnvelopeMetadata)

    def to_dict(self) -> dict:
        return {
            "shape_params_envelope": {k: r.to_dict() for k, r in self.shape.items()},
            "limb_masses_envelope": {k: r.to_dict() for k, r in self.limbs.items()},
            "envelope_metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Envelope":
        return cls(
            shape={
                k: EnvelopeRange.from_dict(v)
                for k, v in (data.get("shape_params_envelope") or {}).items()
            },
            limbs={
                k: EnvelopeRange.from_dict(v)
                for k, v in (data.get("limb_masses_envelope") or {}).items()
            },
            metadata=EnvelopeMetadata.from_dict(data.get("envelope_metadata")),
        )


@dataclass(frozen=True)
class StageOutcome:
    """
    Tagged result of one pipeline stage.

    status is "pending" (stage never ran), "ready" (data holds the stage
    payload) or "error" (error holds the reported message).
    """
    status: str
    data: Optional[dict] = None
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "StageOutcome":
        if payload is None:
            return cls(status="pending")
        if not isinstance(payload, dict):
            return cls(status="error", error=f"unexpected payload type {type(payload).__name__}")
        if payload.get("error"):
            return cls(status="error", data=payload, error=str(payload["error"]))
        return cls(status="ready", data=payload)

    @property
    def ready(self) -> bool:
        return self.status == "ready"
