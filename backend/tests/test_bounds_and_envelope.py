"""
test_bounds_and_envelope.py — DB physiological bounds and the K=5 envelope.

Tests cover:
  - Bounds aggregation per gender, banned shape keys, fixed limb keys
  - Envelope containment in DB bounds, DB fallback for keys without data
  - Disjoint ranges collapsing to the nearest DB edge
  - Re-clipping a client supplied envelope
"""

import asyncio
import pytest

from twinforge.models.morph_types import BoundsRange, Envelope
from twinforge.pipeline.config import LIMB_KEYS, SHAPE_KEYS
from twinforge.services.bounds_lookup import compute_physiological_bounds, lookup_bounds
from twinforge.services.envelope_builder import (
    build_envelope,
    clamp_envelope_to_bounds,
    intersect_with_bounds,
)
from twinforge.services.errors import ArchetypeDataError

from conftest import FakeArchetypeRepository, FEMININE_ARCHETYPES, MASCULINE_ARCHETYPES


def _assert_contained(envelope, bounds):
    for section, db_section in ((envelope.shape, bounds.shape), (envelope.limbs, bounds.limbs)):
        for key, r in section.items():
            db = db_section[key]
            assert db.min <= r.min <= r.max <= db.max, key


# ===========================================================================
# Class 1: Physiological bounds
# ===========================================================================

class TestPhysiologicalBounds:

    def test_every_canonical_key_present(self, feminine_bounds):
        assert set(feminine_bounds.shape) == set(SHAPE_KEYS)
        assert set(feminine_bounds.limbs) == set(LIMB_KEYS)

    def test_min_max_across_archetypes(self, feminine_bounds):
        assert feminine_bounds.shape["pearFigure"] == BoundsRange(-0.4, 2.0)
        assert feminine_bounds.limbs["torsoMass"] == BoundsRange(0.95, 1.45)

    def test_absent_shape_keys_banned(self, masculine_bounds):
        banned = set(masculine_bounds.banned_shape_keys())
        assert {"pregnant", "nipples", "animeProportion", "bigHips"} <= banned
        assert "bodybuilderSize" not in banned

    def test_absent_limb_keys_fixed_at_one(self, feminine_bounds):
        assert feminine_bounds.limbs["forearmMass"] == BoundsRange(1.0, 1.0)
        assert "headMass" in feminine_bounds.fixed_limb_keys()

    def test_other_gender_rows_ignored(self):
        bounds = compute_physiological_bounds(FEMININE_ARCHETYPES + MASCULINE_ARCHETYPES, "masculine")
        assert bounds.shape["pregnant"].banned

    def test_no_archetypes_raises(self):
        with pytest.raises(ArchetypeDataError):
            compute_physiological_bounds([], "feminine")

    def test_lookup_through_repository(self):
        repository = FakeArchetypeRepository(FEMININE_ARCHETYPES + MASCULINE_ARCHETYPES)
        bounds = asyncio.run(lookup_bounds(repository, "male"))
        assert bounds.gender == "masculine"
        assert bounds.shape["superBreast"] == BoundsRange(-0.5, 0.3)

    def test_to_dict_layout(self, feminine_bounds):
        payload = feminine_bounds.to_dict()
        assert payload["shape_params"]["nipples"] == {"min": 0.0, "max": 0.0}
        assert payload["limb_masses"]["gate"] == {"min": 1.0, "max": 1.0}


# ===========================================================================
# Class 2: Envelope construction
# ===========================================================================

class TestBuildEnvelope:

    def test_envelope_within_bounds(self, feminine_envelope, feminine_bounds):
        _assert_contained(feminine_envelope, feminine_bounds)

    def test_envelope_within_bounds_for_any_selection(self, feminine_archetypes, feminine_bounds):
        for start in range(len(feminine_archetypes)):
            envelope = build_envelope(feminine_archetypes[start:], feminine_bounds)
            _assert_contained(envelope, feminine_bounds)

    def test_only_first_k_archetypes_used(self, feminine_envelope):
        assert len(feminine_envelope.metadata.archetypes_used) == 5
        assert "FEM-OBE-OVA-006" not in feminine_envelope.metadata.archetypes_used

    def test_ranges_from_selected_archetypes(self, feminine_envelope):
        pear = feminine_envelope.shape["pearFigure"]
        assert (pear.min, pear.max) == (-0.4, 1.5)
        assert (pear.archetype_min, pear.archetype_max) == (-0.4, 1.5)

    def test_banned_keys_stay_zero(self, masculine_envelope):
        for key in ("pregnant", "nipples", "animeProportion"):
            r = masculine_envelope.shape[key]
            assert (r.min, r.max) == (0.0, 0.0)

    def test_keys_without_data_use_db_range(self, feminine_envelope):
        meta = feminine_envelope.metadata
        assert meta.keys_with_archetype_data == 15
        assert meta.keys_using_db_fallback == 10
        assert not feminine_envelope.limbs["legMass"].has_archetype_data

    def test_empty_selection_equals_bounds(self, feminine_bounds):
        envelope = build_envelope([], feminine_bounds)
        for key, db in feminine_bounds.shape.items():
            assert envelope.shape[key].bounds == db

    def test_to_dict_round_trip(self, feminine_envelope):
        restored = Envelope.from_dict(feminine_envelope.to_dict())
        assert restored.shape == feminine_envelope.shape
        assert restored.metadata.archetypes_used == feminine_envelope.metadata.archetypes_used


# ===========================================================================
# Class 3: Intersections and client envelopes
# ===========================================================================

class TestIntersection:

    def test_overlap_is_clipped(self):
        r = intersect_with_bounds(-1.0, 0.5, BoundsRange(0.0, 1.0))
        assert (r.min, r.max) == (0.0, 0.5)

    def test_disjoint_above_collapses_to_max(self):
        r = intersect_with_bounds(1.5, 2.0, BoundsRange(0.0, 1.0))
        assert (r.min, r.max) == (1.0, 1.0)

    def test_disjoint_below_collapses_to_min(self):
        r = intersect_with_bounds(-2.0, -1.0, BoundsRange(0.2, 1.0))
        assert (r.min, r.max) == (0.2, 0.2)

    def test_banned_bounds_force_zero(self):
        r = intersect_with_bounds(0.4, 0.9, BoundsRange(0.0, 0.0), 0.4, 0.9)
        assert (r.min, r.max) == (0.0, 0.0)
        assert r.archetype_max == 0.9

    def test_client_envelope_reclipped(self, masculine_bounds):
        client = {
            "shape_params_envelope": {
                "pregnant": {"min": 0.0, "max": 1.5},
                "bodybuilderSize": {"min": 2.0, "max": -1.0},
                "madeUpKey": {"min": 0.0, "max": 1.0},
            },
            "limb_masses_envelope": {"armMass": {"min": 0.5, "max": 2.0}},
        }
        envelope = clamp_envelope_to_bounds(Envelope.from_dict(client), masculine_bounds)
        assert envelope.shape["pregnant"].bounds == BoundsRange(0.0, 0.0)
        assert envelope.shape["bodybuilderSize"].bounds == BoundsRange(0.1, 1.5)
        assert "madeUpKey" not in envelope.shape
        assert envelope.limbs["armMass"].bounds == BoundsRange(1.0, 1.3)
        assert envelope.shape["emaciated"].bounds == masculine_bounds.shape["emaciated"]
        _assert_contained(envelope, masculine_bounds)
