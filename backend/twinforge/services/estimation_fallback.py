"""
Estimation Fallback — deterministic replacement for a failed vision extraction.

Strategies, in order of preference:
  last_scan          user's most recent committed measurements, rescaled to the
                     declared weight
  default_archetype  the gender's "Normal / Non obèse" archetype
  ultimate_fallback  hard-coded neutral archetype (no database needed)
"""
import logging
import math
from dataclasses import dataclass
from typing import Optional

from twinforge.models.morph_types import is_finite_number
from twinforge.pipeline.config import FALLBACK_CONFIDENCE
from twinforge.services.errors import ReplyParseError, ReplyValidationError, UpstreamAIError
from twinforge.services.gender import gender_code, normalize_gender
from twinforge.services.measurement_enhancer import UserMetrics

logger = logging.getLogger("twinforge-fallback")

_CIRCUMFERENCES = ("waist_cm", "hips_cm", "chest_cm")


@dataclass
class FallbackStrategy:
    type: str
    data: dict


def ultimate_fallback_archetype(gender: str) -> dict:
    gender = normalize_gender(gender) or "feminine"
    return {
        "id": f"{gender_code(gender)}-FALLBACK-001",
        "name": "Fallback Default",
        "gender": gender,
        "level": "Normal",
        "obesity": "Non obèse",
        "muscularity": "Normal",
        "morphotype": "REC",
        "bmi_range": [18.5, 25],
        "morph_values": {},
        "limb_masses": {
            "gate": 1.0,
            "armMass": 1.0,
            "calfMass": 1.0,
            "neckMass": 1.0,
            "thighMass": 1.0,
            "torsoMass": 1.0,
            "forearmMass": 1.0,
        },
    }


def raw_measurements_from_metrics(metrics: Optional[dict]) -> Optional[dict]:
    """Committed scans keep measurements under estimate_result.extracted_data."""
    if not isinstance(metrics, dict):
        return None
    direct = metrics.get("raw_measurements")
    if isinstance(direct, dict) and direct:
        return direct
    estimate = metrics.get("estimate_result") or {}
    nested = (estimate.get("extracted_data") or {}).get("raw_measurements")
    return nested if isinstance(nested, dict) and nested else None


def fallback_reason(error: Exception) -> str:
    """Classify the vision failure for the response's fallback_reason."""
    detail = str(error)
    if isinstance(error, UpstreamAIError):
        detail = f"{error.user_message} {error.detail}"
        if error.kind == "timeout":
            return "openai_timeout_error"
        if error.kind in ("format", "size"):
            return "openai_format_error"
    if isinstance(error, (ReplyParseError, ReplyValidationError)):
        return "openai_format_error"
    lowered = detail.lower()
    if "timeout" in lowered:
        return "openai_timeout_error"
    if "format" in lowered:
        return "openai_format_error"
    if "invalid_image_url" in lowered or "download" in lowered:
        return "openai_access_error"
    return "openai_general_error"


async def determine_fallback_strategy(
    user_id: Optional[str],
    gender: str,
    scan_store=None,
    archetype_repository=None,
) -> FallbackStrategy:
    if user_id and scan_store is not None:
        try:
            metrics = await scan_store.last_scan_metrics(user_id)
            if raw_measurements_from_metrics(metrics):
                logger.info(f"Fallback: using last scan of user {user_id}")
                return FallbackStrategy("last_scan", metrics)
        except Exception as e:
            logger.warning(f"Fallback: last scan lookup failed: {e}")

    if archetype_repository is not None:
        try:
            archetype = await archetype_repository.default_archetype(gender)
            if archetype:
                logger.info(f"Fallback: using default archetype {archetype.get('id')}")
                return FallbackStrategy("default_archetype", archetype)
        except Exception as e:
            logger.warning(f"Fallback: default archetype lookup failed: {e}")

    logger.warning("Fallback: using ultimate fallback archetype")
    return FallbackStrategy("ultimate_fallback", ultimate_fallback_archetype(gender))


def create_fallback_estimation(strategy: FallbackStrategy, user: UserMetrics) -> dict:
    """Build a vision-shaped extraction result from a fallback strategy."""
    measurements: dict = {"height_cm": user.height_cm, "weight_kg": user.weight_kg}
    notes = [f"Vision analysis unavailable - fallback strategy: {strategy.type}"]

    if strategy.type == "last_scan":
        last = raw_measurements_from_metrics(strategy.data) or {}
        last_weight = last.get("weight_kg")
        factor = 1.0
        if is_finite_number(last_weight) and last_weight > 0:
            factor = math.sqrt(user.weight_kg / last_weight)
        for name in _CIRCUMFERENCES:
            if is_finite_number(last.get(name)):
                measurements[name] = round(last[name] * factor, 1)
        for name in ("estimated_body_fat_perc", "estimated_muscle_mass_kg"):
            if is_finite_number(last.get(name)):
                measurements[name] = last[name]
        notes.append(f"Measurements interpolated from last scan (scale factor {factor:.3f})")

    return {
        "measurements": measurements,
        "confidence": dict(FALLBACK_CONFIDENCE[strategy.type]),
        "keypoints": {},
        "skin_tone": None,
        "skin_tone_analysis": None,
        "scale_method": f"fallback_{strategy.type}",
        "pixel_per_cm": None,
        "quality_assessment": None,
        "processing_notes": notes,
        "fallback_strategy": strategy.type,
    }
