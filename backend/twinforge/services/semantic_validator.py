"""
Semantic Validator — reconciles the AI semantic classification with the
vocabulary actually present in the archetype table.

Every label of the validated profile is a member of the valid values for the
resolved gender, and the obesity / level labels are consistent with the BMI.
Each change is recorded in ``adjustments_made``; each detected inconsistency
in ``validation_flags``.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from twinforge.models.morph_types import is_finite_number
from twinforge.pipeline.config import (
    ATHLETIC_AI_LEVEL,
    BMI_OBESE,
    BMI_OVERWEIGHT,
    BMI_UNDERWEIGHT,
    DEFAULT_LEVEL,
    DEFAULT_MORPHOTYPE,
    DEFAULT_VOCABULARY,
    LOW_AI_LEVEL,
    MORBID_BMI,
    MUSCULAR_AI_LEVEL,
)

logger = logging.getLogger("twinforge-semantic")

_ATHLETIC_LABELS = ("Athlétique",)
_MUSCULAR_LABELS = ("Musclé", "Musclée")
_LOW_LABELS = ("Moins musclée", "Atrophié")


class VocabularySource(Protocol):
    async def valid_values_for(self, gender: str) -> dict[str, list[str]]:
        ...


class StaticVocabulary:
    """Fixed vocabulary; the default when no archetype table is reachable."""

    def __init__(self, values: Optional[dict[str, list[str]]] = None):
        self.values = values or DEFAULT_VOCABULARY

    async def valid_values_for(self, gender: str) -> dict[str, list[str]]:
        return {name: list(vals) for name, vals in self.values.items()}


_DEFAULTS = StaticVocabulary()


@dataclass
class SemanticValidationResult:
    validated_profile: dict
    validation_flags: list = field(default_factory=list)
    adjustments_made: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "validated_profile": self.validated_profile,
            "validation_flags": self.validation_flags,
            "adjustments_made": self.adjustments_made,
        }


def _first_valid(candidates, valid: list[str]) -> Optional[str]:
    for c in candidates:
        if c in valid:
            return c
    return None


_OBESE_FALLBACKS = ("Obèse", "Obésité morbide", "Surpoids")


def _obese_label(valid: list[str]) -> Optional[str]:
    """Closest label above "Non obèse" the vocabulary offers, or None."""
    label = _first_valid(_OBESE_FALLBACKS, valid)
    if label:
        return label
    return next((v for v in valid if v != "Non obèse"), None)


def _bmi_obesity(bmi: float) -> str:
    if bmi > BMI_OBESE:
        return "Obèse"
    if bmi > BMI_OVERWEIGHT:
        return "Surpoids"
    return "Non obèse"


def extract_bmi(extracted_data: Optional[dict]) -> Optional[float]:
    data = extracted_data or {}
    bmi = data.get("estimated_bmi")
    if is_finite_number(bmi) and bmi > 0:
        return float(bmi)
    raw = data.get("raw_measurements") or {}
    height, weight = raw.get("height_cm"), raw.get("weight_kg")
    if is_finite_number(height) and is_finite_number(weight) and height > 0:
        return weight / (height / 100) ** 2
    return None


async def load_vocabulary(source: VocabularySource, gender: str, flags: list) -> dict[str, list[str]]:
    """Valid values for ``gender``; falls back to the defaults on lookup failure."""
    fallback = await _DEFAULTS.valid_values_for(gender)
    try:
        values = await source.valid_values_for(gender)
    except Exception as e:
        logger.warning(f"Vocabulary lookup failed for {gender}, using defaults: {e}")
        flags.append("db_fetch_failed")
        return fallback

    merged = {}
    for name, defaults in fallback.items():
        found = list(values.get(name) or [])
        if not found:
            if "db_vocabulary_incomplete" not in flags:
                flags.append("db_vocabulary_incomplete")
            found = list(defaults)
        merged[name] = found
    return merged


async def validate_semantic_with_db(
    source: VocabularySource,
    raw_profile: dict,
    extracted_data: Optional[dict],
    gender: str,
) -> SemanticValidationResult:
    """
    Validate the raw labels (obesity, muscularity, level, morphotype) plus the
    numeric ``muscularity_level`` of ``raw_profile`` against the vocabulary.
    """
    flags: list = []
    adjustments: list = []
    vocab = await load_vocabulary(source, gender, flags)
    bmi = extract_bmi(extracted_data)
    ai_level = raw_profile.get("muscularity_level")
    ai_level = float(ai_level) if is_finite_number(ai_level) else None

    # ── obesity ────────────────────────────────────────────────────────────────
    valid_obesity = vocab["obesity"]
    obesity = raw_profile.get("obesity")
    if obesity not in valid_obesity:
        target = _bmi_obesity(bmi) if bmi is not None else "Non obèse"
        if target in valid_obesity:
            new = target
        elif bmi is not None and bmi > BMI_OBESE:
            new = _obese_label(valid_obesity) or valid_obesity[0]
        else:
            new = valid_obesity[0]
        adjustments.append(f"obesity_adjusted_from_{obesity}_to_{new}")
        obesity = new

    # ── muscularity ────────────────────────────────────────────────────────────
    valid_musc = vocab["muscularity"]
    muscularity = raw_profile.get("muscularity")
    athletic = _first_valid(_ATHLETIC_LABELS, valid_musc)
    muscular = _first_valid(_MUSCULAR_LABELS, valid_musc)
    if muscularity not in valid_musc:
        if ai_level is not None and ai_level >= ATHLETIC_AI_LEVEL and athletic:
            new = athletic
        elif ai_level is not None and ai_level >= MUSCULAR_AI_LEVEL and muscular:
            new = muscular
        else:
            new = "Normal" if "Normal" in valid_musc else valid_musc[0]
        adjustments.append(f"muscularity_adjusted_from_{muscularity}_to_{new}")
        muscularity = new
    elif muscularity == "Normal" and ai_level is not None:
        if ai_level >= ATHLETIC_AI_LEVEL and athletic:
            muscularity = athletic
            adjustments.append(f"muscularity_upgraded_to_{athletic}_based_on_AI_level")
        elif ai_level >= MUSCULAR_AI_LEVEL and muscular:
            muscularity = muscular
            adjustments.append(f"muscularity_upgraded_from_Normal_to_{muscular}_based_on_AI_level")

    if ai_level is not None and ai_level < LOW_AI_LEVEL and bmi is not None and bmi > MORBID_BMI:
        low = _first_valid(_LOW_LABELS, valid_musc) or valid_musc[0]
        if low != muscularity:
            adjustments.append(f"muscularity_forced_low_for_obese_from_{muscularity}_to_{low}")
            muscularity = low

    # ── level / morphotype ─────────────────────────────────────────────────────
    valid_level = vocab["level"]
    level = raw_profile.get("level")
    if level not in valid_level:
        level = DEFAULT_LEVEL if DEFAULT_LEVEL in valid_level else valid_level[0]
        adjustments.append(f"level_adjusted_to_{level}")

    valid_morpho = vocab["morphotype"]
    morphotype = raw_profile.get("morphotype")
    if morphotype not in valid_morpho:
        morphotype = DEFAULT_MORPHOTYPE if DEFAULT_MORPHOTYPE in valid_morpho else valid_morpho[0]
        adjustments.append(f"morphotype_adjusted_to_{morphotype}")

    # ── BMI cross-checks ───────────────────────────────────────────────────────
    if bmi is not None:
        if bmi > BMI_OBESE and obesity == "Non obèse":
            flags.append("bmi_obesity_mismatch")
            replacement = _obese_label(valid_obesity)
            if replacement:
                obesity = replacement
                adjustments.append("obesity_adjusted_for_bmi_consistency")
        elif bmi < BMI_OVERWEIGHT and obesity == "Obèse" and "Non obèse" in valid_obesity:
            obesity = "Non obèse"
            adjustments.append("obesity_adjusted_for_bmi_consistency")
            flags.append("bmi_obesity_mismatch")

        if bmi > BMI_OVERWEIGHT and level == "Mince" and "Surpoids" in valid_level:
            level = "Surpoids"
            adjustments.append("level_adjusted_for_bmi_consistency")
            flags.append("bmi_level_mismatch")
        elif bmi < BMI_UNDERWEIGHT and level == "Obèse" and "Mince" in valid_level:
            level = "Mince"
            adjustments.append("level_adjusted_for_bmi_consistency")
            flags.append("bmi_level_mismatch")

    confidence = (raw_profile.get("confidence") or {})
    confidence = confidence.get("semantic") if isinstance(confidence, dict) else confidence
    profile = {
        "obesity": obesity,
        "muscularity": muscularity,
        "level": level,
        "morphotype": morphotype,
        "validated_morph_values": {
            "bmi": round(bmi, 2) if bmi is not None else None,
            "confidence": confidence if is_finite_number(confidence) else None,
        },
    }
    logger.info(
        f"Semantic profile validated ({gender}): {obesity} / {muscularity} / {level} / "
        f"{morphotype}, {len(adjustments)} adjustments"
    )
    return SemanticValidationResult(profile, flags, adjustments)
