"""
Morph Clamp — server-side enforcement of the refinement constraints.

The model is told to respect the envelope, but its output is never trusted:
every canonical key is clamped into its envelope range, then into the DB
bounds, then masculine limits are applied within those bounds. Keys outside
the canonical vocabulary are dropped and missing keys are filled from the blend.
"""
import logging
from dataclasses import asdict, dataclass, field

from twinforge.models.morph_types import (
    BoundsRange,
    Envelope,
    PhysiologicalBounds,
    is_finite_number,
)
from twinforge.pipeline.config import (
    DEFAULT_LIMB_MASS,
    MASCULINE_BANNED_KEYS,
    MASCULINE_SHAPE_LIMITS,
)

logger = logging.getLogger("twinforge-clamp")

_ACTIVE_EPSILON = 1e-6


@dataclass
class ClampReport:
    final_shape_params: dict = field(default_factory=dict)
    final_limb_masses: dict = field(default_factory=dict)
    clamped_keys: list = field(default_factory=list)
    envelope_violations: list = field(default_factory=list)
    db_violations: list = field(default_factory=list)
    gender_violations: list = field(default_factory=list)
    missing_keys_added: list = field(default_factory=list)
    extra_keys_removed: list = field(default_factory=list)
    out_of_range_count: int = 0
    active_keys_count: int = 0
    refinement_deltas: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def _gender_limit(key: str, value: float, gender: str) -> float:
    if gender != "masculine":
        return value
    if key in MASCULINE_BANNED_KEYS:
        return 0.0
    limit = MASCULINE_SHAPE_LIMITS.get(key)
    if limit is not None and value > limit:
        return limit
    return value


def _clamp_section(
    proposed: dict,
    blend: dict,
    envelope: dict,
    bounds: dict[str, BoundsRange],
    neutral: float,
    gender: str,
    is_shape: bool,
    report: ClampReport,
) -> dict:
    final = {}
    for key in proposed:
        if key not in bounds:
            report.extra_keys_removed.append(key)

    for key, db in bounds.items():
        env = envelope[key].bounds if key in envelope else db
        value = proposed.get(key)
        missing = not is_finite_number(value)
        if missing:
            value = blend.get(key) if is_finite_number(blend.get(key)) else neutral
            report.missing_keys_added.append(key)
        original = value

        if not env.contains(value):
            report.envelope_violations.append(key)
            value = env.clamp(value)
        if not db.contains(value):
            report.db_violations.append(key)
            value = db.clamp(value)
        if is_shape:
            limited = _gender_limit(key, value, gender)
            if limited != value:
                report.gender_violations.append(key)
                # a limit below the archetype floor yields to the floor
                value = db.clamp(env.clamp(limited))

        if not missing and value != original:
            report.clamped_keys.append(key)
        final[key] = float(value)
    return final


def clamp_refined_vector(
    shape_params: dict,
    limb_masses: dict,
    envelope: Envelope,
    bounds: PhysiologicalBounds,
    gender: str,
    blend_shape_params: dict,
    blend_limb_masses: dict,
) -> ClampReport:
    """Clamp a proposed refinement and report every correction made."""
    report = ClampReport()
    report.final_shape_params = _clamp_section(
        shape_params, blend_shape_params, envelope.shape, bounds.shape,
        0.0, gender, True, report,
    )
    report.final_limb_masses = _clamp_section(
        limb_masses, blend_limb_masses, envelope.limbs, bounds.limbs,
        DEFAULT_LIMB_MASS, gender, False, report,
    )
    report.out_of_range_count = len(report.clamped_keys)
    report.active_keys_count = sum(
        1 for v in report.final_shape_params.values() if abs(v) > _ACTIVE_EPSILON
    )

    deltas = {}
    for final, blend in (
        (report.final_shape_params, blend_shape_params),
        (report.final_limb_masses, blend_limb_masses),
    ):
        for key, value in final.items():
            if is_finite_number(blend.get(key)):
                deltas[key] = round(value - blend[key], 4)
    report.refinement_deltas = deltas

    if report.clamped_keys or report.extra_keys_removed:
        logger.info(
            f"Clamped {len(report.clamped_keys)} keys "
            f"(envelope={len(report.envelope_violations)}, db={len(report.db_violations)}, "
            f"gender={len(report.gender_violations)}), removed {report.extra_keys_removed}"
        )
    return report
