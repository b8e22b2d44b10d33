"""
Refinement Prompt Builder — deterministic text prompt for the morph refinement call.

Sections, in order: context and blend input, K=5 envelope (priority 1),
DB physiological bounds (priority 2), muscular gating, photo metrics,
gender constraints, strict constraints and the JSON output contract.

Pure function of its inputs: identical inputs give an identical prompt, and
missing optional data renders "N/A" placeholders instead of failing.
"""
import json
from dataclasses import dataclass, field
from typing import Optional

from twinforge.models.morph_types import Envelope, PhysiologicalBounds, is_finite_number
from twinforge.pipeline.config import (
    BMI_OBESE,
    BMI_OVERWEIGHT,
    BMI_UNDERWEIGHT,
    DEFAULT_MUSCULARITY_LEVEL,
    HIGH_MUSCULARITY_THRESHOLD,
    LOW_MUSCULARITY_THRESHOLD,
    MASCULINE_BANNED_KEYS,
    MASCULINE_SHAPE_LIMITS,
    MUSCULAR_LABELS,
    MUSCULARITY_LEVELS,
    NARROW_LIMB_RANGE,
    NARROW_SHAPE_RANGE,
    OBESE_LABELS,
)


@dataclass
class RefinementPromptInput:
    resolved_gender: str
    blend_shape_params: dict
    blend_limb_masses: dict
    envelope: Envelope
    bounds: PhysiologicalBounds
    photo_views: list = field(default_factory=list)
    vision_classification: Optional[dict] = None
    user_measurements: Optional[dict] = None


def muscularity_level(label: Optional[str]) -> float:
    return MUSCULARITY_LEVELS.get(label or "", DEFAULT_MUSCULARITY_LEVEL)


def _fmt(value) -> str:
    return f"{value:.3f}" if is_finite_number(value) else "N/A"


def _envelope_lines(ranges: dict, narrow: float) -> list[str]:
    lines = []
    for key in sorted(ranges):
        r = ranges[key]
        level = "VERY STRICT" if r.max - r.min < narrow else "STRICT"
        lines.append(
            f"- {key}: [{_fmt(r.min)}, {_fmt(r.max)}] "
            f"({level} - archetypes: [{_fmt(r.archetype_min)}, {_fmt(r.archetype_max)}])"
        )
    return lines


def build_envelope_section(envelope: Envelope) -> str:
    meta = envelope.metadata
    used = meta.archetypes_used
    lines = [
        "K=5 ENVELOPE - ABSOLUTE CONSTRAINTS (PRIORITY 1):",
        "",
        f"This envelope was built from the {len(used)} most relevant archetypes after strict muscular gating:",
        "\n".join(f"- {a}" for a in used) or "N/A",
        "",
        "SHAPE PARAMETERS ENVELOPE (NEVER EXCEED THESE RANGES):",
        *_envelope_lines(envelope.shape, NARROW_SHAPE_RANGE),
        "",
        "LIMB MASSES ENVELOPE (NEVER EXCEED THESE RANGES):",
        *_envelope_lines(envelope.limbs, NARROW_LIMB_RANGE),
        "",
        "K=5 ENVELOPE RULES:",
        "1. Never propose a value outside the envelope for any key.",
        "2. The envelope reflects the diversity of the 5 most relevant archetypes after muscular gating.",
        f"3. If the envelope is narrow (range < {NARROW_SHAPE_RANGE}), respect this constraint VERY strictly.",
        "4. If the envelope is wide, use photos to choose within this range.",
        "5. Any value outside the envelope will be automatically clamped (fidelity loss).",
        "6. The envelope already guarantees muscular coherence (gating applied).",
        "",
        "K=5 ENVELOPE METADATA:",
        f"- Keys with archetype data: {meta.keys_with_archetype_data}",
        f"- Keys using DB fallback: {meta.keys_using_db_fallback}",
        f"- Generation timestamp: {meta.envelope_generation_timestamp or 'N/A'}",
        f"- Source Archetypes: {', '.join(used) or 'N/A'}",
    ]
    return "\n".join(lines)


def build_bounds_section(bounds: PhysiologicalBounds) -> str:
    lines = [
        "DB PHYSIOLOGICAL BOUNDS - ABSOLUTE LIMITS (PRIORITY 2):",
        "",
        f"These bounds represent the absolute physiological limits for {bounds.gender} gender:",
        "",
        "SHAPE PARAMETERS DB BOUNDS (ABSOLUTE PHYSIOLOGICAL LIMITS):",
    ]
    for key in sorted(bounds.shape):
        r = bounds.shape[key]
        lines.append(f"- {key}: [{_fmt(r.min)}, {_fmt(r.max)}] ({'BANNED' if r.banned else 'ALLOWED'})")
    lines += ["", "LIMB MASSES DB BOUNDS (ABSOLUTE PHYSIOLOGICAL LIMITS):"]
    for key in sorted(bounds.limbs):
        r = bounds.limbs[key]
        lines.append(f"- {key}: [{_fmt(r.min)}, {_fmt(r.max)}] ({'FIXED' if r.min == r.max else 'VARIABLE'})")
    lines += [
        "",
        "DB BOUNDS RULES:",
        "1. DB bounds are ABSOLUTE physiological limits.",
        "2. No value can exceed these bounds, even within the K=5 envelope.",
        "3. BANNED keys (min=max=0) MUST remain at 0.",
        "4. FIXED keys (min=max) MUST retain their exact value.",
        "5. The K=5 envelope is already clamped to DB bounds (double safety).",
    ]
    return "\n".join(lines)


def build_gating_section(classification: Optional[dict]) -> str:
    label = (classification or {}).get("muscularity")
    level = muscularity_level(label)
    shown = label or "N/A"
    lines = [
        "MUSCULAR GATING - COHERENCE PRESERVED:",
        "",
        f'Vision classification determined: "{shown}"',
        "Archetypes used for K=5 envelope were STRICTLY filtered based on this classification.",
        "",
        "IMPLICATIONS FOR REFINEMENT:",
    ]
    if level >= HIGH_MUSCULARITY_THRESHOLD:
        lines += [
            f"- HIGH MUSCULARITY detected ({shown})",
            "- ABSOLUTE PRIORITY: Maximize bodybuilderSize and bodybuilderDetails up to the UPPER LIMITS of the K=5 envelope.",
            "- Caution: pearFigure should remain moderate to preserve muscular visibility.",
            "- emaciated should remain within its envelope range.",
        ]
    elif level <= LOW_MUSCULARITY_THRESHOLD:
        lines += [
            f"- ATROPHIED/LOW MUSCULARITY detected ({shown})",
            "- INSTRUCTION: Move bodybuilderSize and bodybuilderDetails towards the lower values of the K=5 envelope.",
            "- emaciated can be optimized within its envelope range based on photos.",
            "- Caution: avoid high muscular values that would contradict gating.",
        ]
    else:
        lines += [
            f"- NORMAL MUSCULARITY detected ({shown})",
            "- You can refine all muscular parameters within the K=5 envelope.",
            "- emaciated treated as standard morphological key within its range.",
        ]
    return "\n".join(lines)


def build_photo_metrics_section(user_measurements: Optional[dict]) -> str:
    raw = (user_measurements or {}).get("raw_measurements") or {}
    chest, waist, hips = raw.get("chest_cm"), raw.get("waist_cm"), raw.get("hips_cm")
    if not all(is_finite_number(v) and v > 0 for v in (chest, waist, hips)):
        return "Photo Metrics: Not available - use direct visual analysis."

    bmi = (user_measurements or {}).get("estimated_bmi")
    if is_finite_number(bmi):
        category = "obese" if bmi > BMI_OBESE else "overweight" if bmi > BMI_OVERWEIGHT else "normal"
        bmi_line = f"- Estimated BMI: {bmi:.1f} (category: {category})"
    else:
        bmi_line = "- Estimated BMI: N/A (category: N/A)"

    return "\n".join([
        "PHOTO METRICS - AI GUIDANCE:",
        f"- Hip-to-Shoulder Ratio: {hips / chest:.3f} (hips/shoulders)",
        f"- Waist-to-Hip Ratio: {waist / hips:.3f} (waist/hips)",
        f"- Chest-to-Waist Ratio: {chest / waist:.3f} (chest/waist)",
        bmi_line,
        "",
        "PHOTO-REALISTIC GUIDANCE:",
        "1. If hip-to-shoulder-ratio > 1.1 → optimize bigHips and assLarge within K=5 envelope.",
        "2. If waist-to-hip-ratio < 0.8 → optimize narrowWaist within K=5 envelope.",
        f"3. If BMI > {BMI_OBESE:g} → pearFigure towards upper envelope, bodybuilderSize towards lower.",
        f"4. If BMI < {BMI_UNDERWEIGHT:g} → emaciated can be optimized within its envelope range.",
        "5. torsoMass controls torso width via bones (not via shape keys).",
        "6. All adjustments MUST remain within the K=5 envelope.",
    ])


def build_gender_section(gender: str, bounds: PhysiologicalBounds, classification: Optional[dict]) -> str:
    banned = bounds.banned_shape_keys()
    fixed = [(k, bounds.limbs[k].min) for k in sorted(bounds.fixed_limb_keys())]
    lines = [
        f"GENDER {gender.upper()} CONSTRAINTS:",
        "",
        "BANNED KEYS (MUST REMAIN AT 0):",
        *([f"- {k}: 0 (banned by DB for {gender})" for k in sorted(banned)] or ["- No banned keys"]),
        "",
        "FIXED LIMB MASSES (EXACT VALUES):",
        *([f"- {k}: {_fmt(v)} (fixed DB value)" for k, v in fixed] or ["- No fixed masses"]),
        "",
    ]
    if gender == "masculine":
        limits = ", ".join(f"{k} <= {v:g}" for k, v in MASCULINE_SHAPE_LIMITS.items())
        lines += [
            "MASCULINE SPECIFICITIES:",
            f"- {', '.join(MASCULINE_BANNED_KEYS)} MUST remain at 0.",
            "- Focus on bodybuilderSize/bodybuilderDetails for masculine muscularity.",
            "",
            "STRICT MASCULINE PHYSIOLOGICAL CONSTRAINTS:",
            "- breastsSmall: NEVER exceed 1.0 (absolute masculine physiological limit).",
            "- superBreast: MUST be 0.0 or negative, NEVER positive (masculine anatomy).",
            f"- Any value exceeding these thresholds will be automatically corrected ({limits}).",
        ]
    else:
        lines += [
            "FEMININE SPECIFICITIES:",
            "- All feminine keys available according to K=5 envelope.",
            "- Balance superBreast, bigHips, assLarge based on photos.",
            "- Feminine muscularity via bodybuilderSize/bodybuilderDetails within envelope.",
        ]
    lines += [
        "",
        "CRITICAL GENDER REMINDER:",
        "Gender constraints are already integrated into the K=5 envelope.",
        "Strictly adhere to banned and fixed values defined by the DB.",
    ]

    muscularity = (classification or {}).get("muscularity")
    obesity = (classification or {}).get("obesity")
    if muscularity in MUSCULAR_LABELS and obesity in OBESE_LABELS:
        lines += [
            "",
            "SPECIAL INSTRUCTION - MUSCULAR/ATHLETIC AND OBESE USER DETECTED:",
            f"- Classification: {muscularity} and {obesity}",
            "- IMPERATIVE: Maximize bodybuilderSize AND bodybuilderDetails up to the MAXIMUM LIMITS allowed.",
            "- CONSTRAINT: Absolutely respect K=5 envelope and DB physiological bounds.",
            "- SAFETY: Keep emaciated at 0 or minimum value to avoid muscular contradiction.",
        ]
    return "\n".join(lines)


OUTPUT_CONTRACT = """Output JSON ONLY:
{
  "final_shape_params": { /* refined shape parameters */ },
  "final_limb_masses": { /* refined limb masses */ },
  "ai_confidence": /* number (0-1) */,
  "refinement_notes": [ /* list of major adjustments */ ],
  "clamped_keys": [],
  "envelope_violations": [],
  "db_violations": [],
  "gender_violations": [],
  "out_of_range_count": 0,
  "missing_keys_added": [],
  "extra_keys_removed": []
}"""


def build_refinement_prompt(data: RefinementPromptInput) -> str:
    classification = data.vision_classification or {}
    views = [v for v in ("front", "profile") if v in data.photo_views]
    photos = " + ".join(v.capitalize() for v in views) or "N/A"
    sections = [
        "You are an expert 3D body morphing AI. Your task is to refine a morphological vector "
        "based on provided photos, strictly adhering to K=5 envelope and database physiological bounds.",
        "\n".join([
            "CONTEXT:",
            f"- Gender: {data.resolved_gender}",
            f"- Photos available: {photos}",
            f"- Vision Classification: Obesity: {classification.get('obesity', 'N/A')}, "
            f"Muscularity: {classification.get('muscularity', 'N/A')}, "
            f"Morphotype: {classification.get('morphotype', 'N/A')}",
        ]),
        "\n".join([
            "INPUT DATA (BLENDING):",
            f"Shape Parameters: {json.dumps(data.blend_shape_params, indent=2, sort_keys=True)}",
            f"Limb Masses: {json.dumps(data.blend_limb_masses, indent=2, sort_keys=True)}",
        ]),
        build_envelope_section(data.envelope),
        build_bounds_section(data.bounds),
        build_gating_section(classification),
        build_photo_metrics_section(data.user_measurements),
        build_gender_section(data.resolved_gender, data.bounds, classification),
        "\n".join([
            "STRICT CONSTRAINTS:",
            "1. NEVER exceed K=5 envelope for any key.",
            "2. NEVER exceed DB physiological bounds.",
            "3. NEVER ignore muscular gating (archetypes are pre-filtered).",
            "4. Prioritize photo-realism WITHIN these strict constraints.",
            "5. All values MUST be finite numbers.",
            "6. Precision: 3 decimal places maximum.",
            "7. No additional keys not present in K=5 envelope.",
        ]),
        OUTPUT_CONTRACT,
        "Analyze photos and refine the morphological vector for a perfectly faithful avatar within strict constraints.",
    ]
    return "\n\n".join(sections)
