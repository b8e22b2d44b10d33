"""
DB Bounds Lookup — physiological min/max per canonical key for a gender.

Bounds are the envelope of every archetype of the gender. A canonical shape
key that no archetype of the gender uses is banned ([0, 0]); a canonical limb
key that no archetype carries is pinned at the neutral multiplier.
"""
import logging

from twinforge.models.morph_types import BoundsRange, PhysiologicalBounds, is_finite_number
from twinforge.pipeline.config import DEFAULT_LIMB_MASS, LIMB_KEYS, SHAPE_KEYS
from twinforge.services.errors import ArchetypeDataError
from twinforge.services.gender import normalize_gender

logger = logging.getLogger("twinforge-bounds")


def _key_ranges(vectors: list[dict], keys: list[str]) -> dict[str, BoundsRange]:
    ranges: dict[str, BoundsRange] = {}
    for key in keys:
        values = [v[key] for v in vectors if is_finite_number(v.get(key))]
        if values:
            ranges[key] = BoundsRange(float(min(values)), float(max(values)))
    return ranges


def compute_physiological_bounds(archetypes: list[dict], gender: str) -> PhysiologicalBounds:
    """Aggregate archetype vectors into per-key bounds for ``gender``."""
    gender = normalize_gender(gender) or gender
    rows = [a for a in archetypes if normalize_gender(a.get("gender")) in (None, gender)]
    if not rows:
        raise ArchetypeDataError(f"No archetypes available for gender '{gender}'")

    shape_found = _key_ranges([a.get("morph_values") or {} for a in rows], SHAPE_KEYS)
    limb_found = _key_ranges([a.get("limb_masses") or {} for a in rows], LIMB_KEYS)

    shape = {k: shape_found.get(k, BoundsRange(0.0, 0.0)) for k in SHAPE_KEYS}
    limbs = {
        k: limb_found.get(k, BoundsRange(DEFAULT_LIMB_MASS, DEFAULT_LIMB_MASS))
        for k in LIMB_KEYS
    }
    bounds = PhysiologicalBounds(gender=gender, shape=shape, limbs=limbs)
    logger.info(
        f"Bounds for {gender}: {len(rows)} archetypes, "
        f"banned={bounds.banned_shape_keys()}, fixed_limbs={bounds.fixed_limb_keys()}"
    )
    return bounds


async def lookup_bounds(repository, gender: str) -> PhysiologicalBounds:
    archetypes = await repository.list_for_gender(gender)
    return compute_physiological_bounds(archetypes, gender)
