"""
Archetype Matcher — ranks a gender's archetypes against the validated semantic
profile and estimated BMI, keeps the top K, and blends their vectors.

Scoring:
  label points  : obesity 3, muscularity 3, level 2, morphotype 2 (normalised to 0-1)
  tie-breaker   : distance from the estimated BMI to the archetype bmi_range
Blend:
  score-weighted mean per key over the archetypes carrying it, then clamped
  into the K=5 envelope.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from twinforge.models.morph_types import Envelope, PhysiologicalBounds, is_finite_number
from twinforge.pipeline.config import DEFAULT_LIMB_MASS, K_ARCHETYPES, MATCH_WEIGHTS
from twinforge.services.envelope_builder import build_envelope

logger = logging.getLogger("twinforge-matcher")

_NO_RANGE_DISTANCE = 99.0


@dataclass
class ScoredArchetype:
    archetype: dict
    score: float
    bmi_distance: float
    match_reasons: list = field(default_factory=list)
    mismatch_reasons: list = field(default_factory=list)

    @property
    def id(self) -> str:
        return str(self.archetype.get("id"))

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.archetype.get("name"),
            "score": round(self.score, 4),
            "bmi_distance": round(self.bmi_distance, 2),
            "obesity": self.archetype.get("obesity"),
            "muscularity": self.archetype.get("muscularity"),
            "level": self.archetype.get("level"),
            "morphotype": self.archetype.get("morphotype"),
            "match_reasons": self.match_reasons,
            "mismatch_reasons": self.mismatch_reasons,
        }


def bmi_distance(bmi: Optional[float], bmi_range) -> float:
    if not is_finite_number(bmi):
        return 0.0
    if not isinstance(bmi_range, (list, tuple)) or len(bmi_range) != 2:
        return _NO_RANGE_DISTANCE
    lo, hi = bmi_range
    if not (is_finite_number(lo) and is_finite_number(hi)):
        return _NO_RANGE_DISTANCE
    if lo <= bmi <= hi:
        return 0.0
    return lo - bmi if bmi < lo else bmi - hi


class ArchetypeMatcher:
    def __init__(self, k: int = K_ARCHETYPES, weights: Optional[dict] = None):
        self.k = k
        self.weights = weights or MATCH_WEIGHTS
        self._max_points = sum(self.weights.values())

    def score(self, archetype: dict, profile: dict, bmi: Optional[float]) -> ScoredArchetype:
        points = 0.0
        matched, mismatched = [], []
        for name, weight in self.weights.items():
            wanted = profile.get(name)
            if wanted and archetype.get(name) == wanted:
                points += weight
                matched.append(f"{name}={wanted}")
            elif wanted:
                mismatched.append(f"{name}: {archetype.get(name)} != {wanted}")
        return ScoredArchetype(
            archetype=archetype,
            score=points / self._max_points if self._max_points else 0.0,
            bmi_distance=bmi_distance(bmi, archetype.get("bmi_range")),
            match_reasons=matched,
            mismatch_reasons=mismatched,
        )

    def rank(self, archetypes: list[dict], profile: dict, bmi: Optional[float]) -> list[ScoredArchetype]:
        scored = [self.score(a, profile, bmi) for a in archetypes]
        scored.sort(key=lambda s: (-s.score, s.bmi_distance, s.id))
        return scored[: self.k]

    @staticmethod
    def blend(selected: list[ScoredArchetype], envelope: Envelope) -> tuple[dict, dict]:
        """Score-weighted mean of the selected vectors, clamped into the envelope."""
        def _mix(vector_field: str, ranges: dict, neutral: float) -> dict:
            mixed = {}
            for key, env in ranges.items():
                total = weight_sum = 0.0
                for s in selected:
                    value = (s.archetype.get(vector_field) or {}).get(key)
                    if is_finite_number(value):
                        weight = s.score + 0.1
                        total += weight * value
                        weight_sum += weight
                value = total / weight_sum if weight_sum else neutral
                mixed[key] = round(env.bounds.clamp(value), 4)
            return mixed

        return (
            _mix("morph_values", envelope.shape, 0.0),
            _mix("limb_masses", envelope.limbs, DEFAULT_LIMB_MASS),
        )

    def match(
        self,
        archetypes: list[dict],
        profile: dict,
        bmi: Optional[float],
        bounds: PhysiologicalBounds,
    ) -> dict:
        selected = self.rank(archetypes, profile, bmi)
        envelope = build_envelope([s.archetype for s in selected], bounds, k=self.k)
        shape, limbs = self.blend(selected, envelope)
        coherence = sum(s.score for s in selected) / len(selected) if selected else 0.0
        strategy = "semantic_coherence" if any(s.score > 0 for s in selected) else "bmi_proximity"
        logger.info(
            f"Matched {len(selected)}/{len(archetypes)} archetypes "
            f"(strategy={strategy}, coherence={coherence:.2f})"
        )
        return {
            "selected_archetypes": [s.summary() for s in selected],
            "strategy_used": strategy,
            "semantic_coherence_score": round(coherence, 4),
            "blended_shape_params": shape,
            "blended_limb_masses": limbs,
            "k5_envelope": envelope.to_dict(),
            "matching_stats": {
                "total_archetypes_evaluated": len(archetypes),
                "total_archetypes_found": len(selected),
                "best_match_score": selected[0].score if selected else 0,
                "worst_match_score": selected[-1].score if selected else 0,
                "envelope_morph_keys": len(envelope.shape) + len(envelope.limbs),
            },
        }
