"""
Envelope Builder — K=5 archetype corridor intersected with DB bounds.

For each canonical key the archetype range [min, max] over the selected
archetypes is intersected with the physiological bounds, so every envelope
range is contained in its bounds range. Banned keys stay [0, 0]. Keys no
selected archetype carries fall back to the full bounds range.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from twinforge.models.morph_types import (
    BoundsRange,
    Envelope,
    EnvelopeMetadata,
    EnvelopeRange,
    PhysiologicalBounds,
    is_finite_number,
)
from twinforge.pipeline.config import K_ARCHETYPES

logger = logging.getLogger("twinforge-envelope")


def intersect_with_bounds(
    lo: float,
    hi: float,
    db: BoundsRange,
    archetype_min: Optional[float] = None,
    archetype_max: Optional[float] = None,
) -> EnvelopeRange:
    """Clip [lo, hi] into ``db``; a disjoint range collapses to the nearest DB edge."""
    if db.banned:
        return EnvelopeRange(0.0, 0.0, archetype_min, archetype_max)
    new_lo, new_hi = max(lo, db.min), min(hi, db.max)
    if new_lo > new_hi:
        edge = db.min if hi < db.min else db.max
        new_lo = new_hi = edge
    return EnvelopeRange(new_lo, new_hi, archetype_min, archetype_max)


def _section(
    archetypes: list[dict],
    vector_field: str,
    bounds: dict[str, BoundsRange],
) -> tuple[dict[str, EnvelopeRange], int, int]:
    ranges: dict[str, EnvelopeRange] = {}
    with_data = fallback = 0
    for key, db in bounds.items():
        values = [
            float(a[vector_field][key])
            for a in archetypes
            if is_finite_number((a.get(vector_field) or {}).get(key))
        ]
        if values:
            arch_lo, arch_hi = min(values), max(values)
            ranges[key] = intersect_with_bounds(arch_lo, arch_hi, db, arch_lo, arch_hi)
            with_data += 1
        else:
            ranges[key] = EnvelopeRange(db.min, db.max)
            fallback += 1
    return ranges, with_data, fallback


def build_envelope(
    archetypes: list[dict],
    bounds: PhysiologicalBounds,
    k: int = K_ARCHETYPES,
    now: Optional[datetime] = None,
) -> Envelope:
    """Build the corridor from the first ``k`` archetypes (caller ranks them)."""
    selected = archetypes[:k]
    shape, shape_data, shape_fallback = _section(selected, "morph_values", bounds.shape)
    limbs, limb_data, limb_fallback = _section(selected, "limb_masses", bounds.limbs)

    metadata = EnvelopeMetadata(
        archetypes_used=[str(a.get("id")) for a in selected],
        keys_with_archetype_data=shape_data + limb_data,
        keys_using_db_fallback=shape_fallback + limb_fallback,
        envelope_generation_timestamp=(now or datetime.now(timezone.utc)).isoformat(),
    )
    logger.info(
        f"Envelope built from {len(selected)} archetypes: "
        f"{metadata.keys_with_archetype_data} keys with data, "
        f"{metadata.keys_using_db_fallback} on DB fallback"
    )
    return Envelope(shape=shape, limbs=limbs, metadata=metadata)


def clamp_envelope_to_bounds(envelope: Envelope, bounds: PhysiologicalBounds) -> Envelope:
    """
    Re-apply the containment rule to an envelope that did not come from
    build_envelope (e.g. supplied by the client). Non-canonical keys are
    dropped; canonical keys missing from the envelope take the bounds range.
    """
    def _clip(current: dict[str, EnvelopeRange], db_ranges: dict[str, BoundsRange]):
        clipped = {}
        for key, db in db_ranges.items():
            existing = current.get(key)
            if existing is None:
                clipped[key] = EnvelopeRange(db.min, db.max)
            else:
                clipped[key] = intersect_with_bounds(
                    existing.min, existing.max, db,
                    existing.archetype_min, existing.archetype_max,
                )
        return clipped

    return Envelope(
        shape=_clip(envelope.shape, bounds.shape),
        limbs=_clip(envelope.limbs, bounds.limbs),
        metadata=envelope.metadata,
    )
