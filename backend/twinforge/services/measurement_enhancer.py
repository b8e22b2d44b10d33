"""
Measurement Enhancer — turns the raw vision extraction into a complete,
anatomically consistent measurement set.

Every field the avatar needs is guaranteed present and positive after this
step. Missing values are estimated from the declared height/weight using BMI
scaled reference circumferences; inconsistent circumferences are corrected
and each substitution is recorded in the processing notes.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from twinforge.models.morph_types import is_finite_number
from twinforge.pipeline.config import (
    BMI_NORMAL_REFERENCE,
    BODY_FRAME_RATIO,
    CHEST_CORRECTION_BELOW_WAIST_CM,
    MAX_CHEST_BELOW_WAIST_CM,
    MIN_HIP_WAIST_GAP_CM,
    REFERENCE_IMAGE_HEIGHT_PX,
)

logger = logging.getLogger("twinforge-measurements")

MEASUREMENT_FIELDS = (
    "waist_cm",
    "hips_cm",
    "chest_cm",
    "height_cm",
    "weight_kg",
    "estimated_body_fat_perc",
    "estimated_muscle_mass_kg",
)

# Reference circumferences (cm) at BMI 22: (feminine, masculine)
_REFERENCE_WAIST = (70.0, 85.0)
_REFERENCE_CHEST = (88.0, 100.0)
_REFERENCE_HIPS = 95.0


@dataclass
class UserMetrics:
    height_cm: float
    weight_kg: float
    gender: str = "feminine"

    @property
    def bmi(self) -> float:
        return self.weight_kg / (self.height_cm / 100) ** 2

    @property
    def feminine(self) -> bool:
        return self.gender == "feminine"


@dataclass
class EnhancedMeasurements:
    raw_measurements: dict
    pixel_per_cm: float
    scale_method: Optional[str]
    processing_notes: list = field(default_factory=list)


def _usable(value) -> bool:
    return is_finite_number(value) and value > 0


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def fallback_measurements(user: UserMetrics) -> dict:
    """Reference measurements scaled by BMI, used for any missing field."""
    bmi = user.bmi
    ratio = _clamp(bmi / BMI_NORMAL_REFERENCE, 0.8, 1.3)
    idx = 0 if user.feminine else 1
    waist = _REFERENCE_WAIST[idx] * ratio
    return {
        "waist_cm": waist,
        "chest_cm": _REFERENCE_CHEST[idx] * ratio,
        "hips_cm": max(waist + MIN_HIP_WAIST_GAP_CM, _REFERENCE_HIPS * ratio),
        "height_cm": user.height_cm,
        "weight_kg": user.weight_kg,
        "estimated_body_fat_perc": _clamp(15 + (bmi - BMI_NORMAL_REFERENCE) * 1.5, 8, 35),
        "estimated_muscle_mass_kg": user.weight_kg * (0.4 + max(0.0, (25 - bmi) / 20) * 0.2),
    }


def enhance_measurements(
    vision_analysis: Optional[dict],
    user: UserMetrics,
    processing_notes: Optional[list] = None,
) -> EnhancedMeasurements:
    """
    Fill, scale and correct the measurements of a vision analysis.

    Never raises: any malformed input degrades to the BMI-based fallback.
    ``processing_notes`` is extended in place when given.
    """
    notes = processing_notes if processing_notes is not None else []
    analysis = vision_analysis if isinstance(vision_analysis, dict) else {}
    raw = analysis.get("measurements")
    raw = raw if isinstance(raw, dict) else {}

    fallback = fallback_measurements(user)
    measurements: dict = {}
    filled = []
    for name in MEASUREMENT_FIELDS:
        value = raw.get(name)
        if _usable(value):
            measurements[name] = float(value)
        else:
            measurements[name] = fallback[name]
            filled.append(name)
    if filled:
        notes.append(f"Estimated missing measurements from declared profile: {', '.join(filled)}")

    pixel_per_cm = analysis.get("pixel_per_cm")
    scale_method = analysis.get("scale_method")
    if not _usable(pixel_per_cm):
        pixel_per_cm = (REFERENCE_IMAGE_HEIGHT_PX * BODY_FRAME_RATIO) / user.height_cm
        scale_method = "user_height_fallback"
        notes.append(f"Scale fallback applied: {pixel_per_cm:.2f} px/cm")
    else:
        pixel_per_cm = float(pixel_per_cm)

    waist = measurements["waist_cm"]
    if measurements["hips_cm"] < waist + MIN_HIP_WAIST_GAP_CM:
        measurements["hips_cm"] = waist + MIN_HIP_WAIST_GAP_CM
        notes.append("Corrected hips measurement (anatomical consistency)")
    if measurements["chest_cm"] < waist - MAX_CHEST_BELOW_WAIST_CM:
        measurements["chest_cm"] = waist - CHEST_CORRECTION_BELOW_WAIST_CM
        notes.append("Corrected chest measurement (anatomical consistency)")

    logger.debug(f"Measurements enhanced ({len(filled)} filled, scale={scale_method})")
    return EnhancedMeasurements(
        raw_measurements=measurements,
        pixel_per_cm=pixel_per_cm,
        scale_method=scale_method,
        processing_notes=notes,
    )
