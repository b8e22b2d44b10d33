"""BMI validation of an estimate against the declared profile and the archetype table."""
import logging
from typing import Optional

from twinforge.pipeline.config import (
    BMI_DECLARED_TOLERANCE,
    BMI_PLAUSIBLE_MAX,
    BMI_PLAUSIBLE_MIN,
)
from twinforge.services.archetype_matcher import bmi_distance

logger = logging.getLogger("twinforge-bmi")


async def validate_bmi_with_database(
    archetype_repository,
    estimated_bmi: float,
    declared_height_cm: float,
    declared_weight_kg: float,
    gender: str,
) -> dict:
    """
    Flags:
      bmi_declared_mismatch       estimate differs from declared BMI by > 3
      bmi_extreme                 outside the plausible 12-60 range
      bmi_out_of_archetype_range  no archetype of the gender covers the estimate
      db_fetch_failed             archetype lookup failed (validation continues)
    """
    flags: list = []
    declared_bmi = declared_weight_kg / (declared_height_cm / 100) ** 2

    if abs(estimated_bmi - declared_bmi) > BMI_DECLARED_TOLERANCE:
        flags.append("bmi_declared_mismatch")
    if not (BMI_PLAUSIBLE_MIN <= estimated_bmi <= BMI_PLAUSIBLE_MAX):
        flags.append("bmi_extreme")

    covering: Optional[int] = None
    total: Optional[int] = None
    nearest: Optional[float] = None
    if archetype_repository is not None:
        try:
            archetypes = await archetype_repository.list_for_gender(gender)
            distances = [bmi_distance(estimated_bmi, a.get("bmi_range")) for a in archetypes]
            total = len(archetypes)
            covering = sum(1 for d in distances if d == 0)
            nearest = min(distances) if distances else None
            if total and not covering:
                flags.append("bmi_out_of_archetype_range")
        except Exception as e:
            logger.warning(f"BMI validation archetype lookup failed: {e}")
            flags.append("db_fetch_failed")

    return {
        "estimated_bmi": round(estimated_bmi, 2),
        "declared_bmi": round(declared_bmi, 2),
        "archetypes_evaluated": total,
        "archetypes_covering_bmi": covering,
        "nearest_archetype_distance": round(nearest, 2) if nearest is not None else None,
        "is_valid": not {"bmi_extreme", "bmi_out_of_archetype_range"} & set(flags),
        "flags": flags,
    }
