"""
Semantic Analyzer — raw morphological descriptors from the scan photos.

The model returns raw shape key values in [-3, 3], global muscularity /
adiposity levels, body types and regional scores. The reply is structurally
validated here; label reconciliation against the archetype vocabulary happens
in semantic_validator.
"""
import logging
from typing import Optional

from twinforge.models.morph_types import is_finite_number
from twinforge.pipeline.config import (
    RAW_SHAPE_MAX,
    RAW_SHAPE_MIN,
    SEMANTIC_MAX_TOKENS,
    SEMANTIC_TEMPERATURE,
    SHAPE_KEYS,
)
from twinforge.services import llm_client
from twinforge.services.errors import ReplyValidationError
from twinforge.services.measurement_enhancer import UserMetrics

logger = logging.getLogger("twinforge-semantic")

REQUIRED_FIELDS = (
    "muscularity_level",
    "adiposity_level",
    "body_types",
    "body_shape_primary",
    "muscle_definition",
    "fat_distribution",
    "region_scores",
    "flags",
    "confidence",
    "pearFigure",
    "emaciated",
    "bodybuilderSize",
)
UNIT_FIELDS = ("muscularity_level", "adiposity_level", "muscle_definition")
REGION_KEYS = ("shoulders_width", "chest_depth", "waist_circ", "hips_width", "glutes_projection")

_SHAPE_DESCRIPTIONS = {
    "pearFigure": "volume global/adiposité",
    "emaciated": "émaciation/maigreur",
    "bodybuilderSize": "développement musculaire global",
    "bodybuilderDetails": "définition musculaire",
    "bigHips": "largeur des hanches",
    "assLarge": "projection des fessiers",
    "narrowWaist": "étroitesse de la taille",
    "superBreast": "développement de la poitrine",
    "breastsSmall": "réduction de la poitrine",
    "pregnant": "proéminence abdominale",
    "animeWaist": "taille très étroite",
    "breastsSag": "affaissement de la poitrine",
    "dollBody": "corps stylisé",
    "animeProportion": "proportions stylisées",
    "animeNeck": "cou stylisé",
    "nipples": "détails anatomiques",
}


def _score(value) -> str:
    return f"{value:.2f}" if is_finite_number(value) else "N/A"


def build_semantic_prompt(
    user: UserMetrics,
    front_report: Optional[dict] = None,
    profile_report: Optional[dict] = None,
    muscle_definition_score: Optional[float] = None,
    muscle_volume_score: Optional[float] = None,
) -> str:
    def quality_line(label, report):
        quality = (report or {}).get("quality") or {}
        sharp = "Nette" if (quality.get("blur_score") or 0) > 0.6 else "Floue"
        return f"- {label}: {sharp}, luminosité {round((quality.get('brightness') or 0.5) * 100)}%"

    shape_lines = "\n".join(f"- {k}: {_SHAPE_DESCRIPTIONS[k]}" for k in SHAPE_KEYS)
    shape_schema = ",\n".join(f'  "{k}": number (-3 à +3)' for k in SHAPE_KEYS)
    return f"""Tu es un expert en analyse morphologique sémantique CORPORELLE. À partir de ces photos (face/profil), extrais le profil sémantique morphologique BRUT du CORPS uniquement.

PROFIL UTILISATEUR:
- Taille: {user.height_cm}cm
- Poids: {user.weight_kg}kg
- Genre: {user.gender}
- BMI: {user.bmi:.1f}

QUALITÉ PHOTOS:
{quality_line("Face", front_report)}
{quality_line("Profil", profile_report)}

MÉTRIQUES MUSCULAIRES PRÉ-ANALYSÉES (indicateurs forts):
- Score de Définition Musculaire Estimée (0-1): {_score(muscle_definition_score)}
- Score de Volume Musculaire Estimé (0-1): {_score(muscle_volume_score)}

MISSION: extrais les valeurs morphologiques du CORPS directement observées, sans contraintes de classification. Ignore les détails faciaux.

SHAPE KEYS À EXTRAIRE (valeurs brutes -3 à +3):
{shape_lines}

Retourne JSON avec :
{{
{shape_schema},
  "muscularity_level": number (0-1),
  "adiposity_level": number (0-1),
  "body_types": string[] (parmi "POM", "POI", "OVA", "SAB", "REC", "TRI"),
  "body_shape_primary": string (POM/POI/OVA/SAB/REC/TRI),
  "muscle_definition": number (0-1),
  "fat_distribution": "upper" | "lower" | "central" | "even",
  "region_scores": {{
    "shoulders_width": number (-1 à +1),
    "chest_depth": number (-1 à +1),
    "waist_circ": number (-1 à +1),
    "hips_width": number (-1 à +1),
    "glutes_projection": number (-1 à +1)
  }},
  "flags": {{
    "clothes_baggy": boolean,
    "arms_away_from_body": boolean,
    "hair_volume_high": boolean,
    "posture_good": boolean,
    "lighting_adequate": boolean
  }},
  "confidence": {{"semantic": number (0-1)}}
}}

INSTRUCTIONS POUR LA MUSCULATURE:
- Si les scores pré-analysés sont élevés, "muscularity_level" et "muscle_definition" DOIVENT refléter cette musculature visible, même avec un IMC en surpoids.
- Ne sous-estime pas la musculature à cause de l'adiposité générale.

Réponds en JSON compact uniquement."""


def validate_semantic_structure(reply: dict) -> None:
    """Raise ReplyValidationError naming the first structural problem found."""
    for name in REQUIRED_FIELDS:
        if name not in reply:
            raise ReplyValidationError(name, "is missing")
    for name in UNIT_FIELDS:
        value = reply[name]
        if not is_finite_number(value) or not 0 <= value <= 1:
            raise ReplyValidationError(name, f"must be a number in [0, 1], got {value!r}")
    for key in SHAPE_KEYS:
        if key in reply:
            value = reply[key]
            if not is_finite_number(value) or not RAW_SHAPE_MIN <= value <= RAW_SHAPE_MAX:
                raise ReplyValidationError(key, f"must be a number in [-3, 3], got {value!r}")
    body_types = reply["body_types"]
    if not isinstance(body_types, list) or not body_types:
        raise ReplyValidationError("body_types", "must be a non-empty list")
    regions = reply["region_scores"]
    if not isinstance(regions, dict):
        raise ReplyValidationError("region_scores", "must be an object")
    for region in REGION_KEYS:
        value = regions.get(region)
        if not is_finite_number(value) or not -1 <= value <= 1:
            raise ReplyValidationError(f"region_scores.{region}", f"must be a number in [-1, 1], got {value!r}")
    if not isinstance(reply["confidence"], dict):
        raise ReplyValidationError("confidence", "must be an object")


def derive_raw_labels(reply: dict, gender: str, bmi: Optional[float]) -> dict:
    """Turn numeric semantic levels into candidate vocabulary labels."""
    feminine = gender == "feminine"
    adiposity = reply.get("adiposity_level") or 0.0
    muscularity = reply.get("muscularity_level") or 0.0

    if adiposity >= 0.85:
        obesity = "Obésité morbide"
    elif adiposity >= 0.6:
        obesity = "Obèse"
    elif adiposity >= 0.4:
        obesity = "Surpoids"
    else:
        obesity = "Non obèse"

    if muscularity >= 0.9:
        musc = "Athlétique"
    elif muscularity >= 0.7:
        musc = "Musclée" if feminine else "Musclé"
    elif muscularity >= 0.5:
        musc = "Moyennement musclée" if feminine else "Moyen musclé"
    else:
        musc = "Normal"

    if bmi is None:
        level = "Normal"
    elif bmi < 18.5:
        level = "Mince"
    elif bmi < 25:
        level = "Normal"
    elif bmi < 30:
        level = "Surpoids"
    else:
        level = "Obèse"

    return {
        "obesity": obesity,
        "muscularity": musc,
        "level": level,
        "morphotype": reply.get("body_shape_primary"),
        "muscularity_level": reply.get("muscularity_level"),
        "confidence": reply.get("confidence"),
    }


async def analyze_photos_for_semantics(
    front_url: str,
    profile_url: Optional[str],
    user: UserMetrics,
    front_report: Optional[dict] = None,
    profile_report: Optional[dict] = None,
    muscle_definition_score: Optional[float] = None,
    muscle_volume_score: Optional[float] = None,
) -> dict:
    prompt = build_semantic_prompt(
        user, front_report, profile_report, muscle_definition_score, muscle_volume_score
    )
    content = await llm_client.complete_with_vision(
        prompt,
        [u for u in (front_url, profile_url) if u],
        temperature=SEMANTIC_TEMPERATURE,
        max_tokens=SEMANTIC_MAX_TOKENS,
        json_mode=True,
    )
    reply = llm_client.parse_json_reply(content)
    validate_semantic_structure(reply)

    measurements = reply.get("measurements")
    if not isinstance(measurements, dict):
        measurements = {}
    measurements.setdefault("height_cm", user.height_cm)
    measurements.setdefault("weight_kg", user.weight_kg)
    reply["measurements"] = measurements
    reply["confidence"]["overall"] = reply["confidence"].get("semantic")

    logger.info(
        f"Semantic analysis: muscularity={reply['muscularity_level']}, "
        f"adiposity={reply['adiposity_level']}, shape={reply['body_shape_primary']}"
    )
    return reply
