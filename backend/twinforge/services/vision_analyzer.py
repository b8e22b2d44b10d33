"""
Vision Analyzer — body keypoint and measurement extraction from the scan photos.

The model is asked for pure body extraction (keypoints, circumferences, body
composition, skin tone, scale) and must not produce morph parameters; those
come from the later semantic and refinement stages.
"""
import logging
from typing import Optional

from twinforge.pipeline.config import (
    DEFAULT_POSE_QUALITY,
    ESTIMATE_MAX_TOKENS,
    ESTIMATE_TEMPERATURE,
    PHOTO_QUALITY_WEIGHTS,
)
from twinforge.services import llm_client
from twinforge.services.measurement_enhancer import UserMetrics

logger = logging.getLogger("twinforge-vision")

DEFAULT_PHOTO_REPORT = {
    "quality": {"blur_score": 0.5, "brightness": 0.5, "exposure_ok": True, "noise_score": 0.5},
    "content": {"single_person": True, "pose_ok": True, "face_detected": False, "face_bbox_norm": None},
    "scale": {"pixel_per_cm_estimate": None, "method": "none"},
}


def _report_section(report: Optional[dict], name: str) -> dict:
    section = (report or {}).get(name)
    return section if isinstance(section, dict) else DEFAULT_PHOTO_REPORT[name]


def photo_quality_score(front_report: Optional[dict], profile_report: Optional[dict]) -> float:
    """Mean of the per-view scores: blur 40%, exposure 30%, single person 30%."""
    def view_score(report):
        quality = _report_section(report, "quality")
        content = _report_section(report, "content")
        blur = quality.get("blur_score") or 0.5
        exposure = 1.0 if quality.get("exposure_ok") else (quality.get("brightness") or 0.5)
        single = 1.0 if content.get("single_person") else 0.0
        return (
            blur * PHOTO_QUALITY_WEIGHTS["blur"]
            + exposure * PHOTO_QUALITY_WEIGHTS["exposure"]
            + single * PHOTO_QUALITY_WEIGHTS["single_person"]
        )

    return (view_score(front_report) + view_score(profile_report)) / 2


def photo_quality_diagnostics(report: Optional[dict], pose_quality: Optional[float]) -> dict:
    quality = _report_section(report, "quality")
    return {
        "blur_score": quality.get("blur_score"),
        "brightness": quality.get("brightness"),
        "pose_quality": pose_quality or DEFAULT_POSE_QUALITY,
    }


def skin_tone_from_reports(photos: list[dict]) -> Optional[dict]:
    """First skin tone measured client-side in a photo report."""
    for photo in photos or []:
        tone = ((photo or {}).get("report") or {}).get("skin_tone")
        if tone:
            return tone
    return None


def build_quality_context(front_report: Optional[dict], profile_report: Optional[dict]) -> str:
    lines = ["PHOTO QUALITY CONTEXT:"]
    if front_report:
        quality = _report_section(front_report, "quality")
        scale = _report_section(front_report, "scale")
        sharp = "Sharp" if (quality.get("blur_score") or 0) > 0.6 else "Slightly blurry"
        lines.append(f"- Front photo: {sharp}, brightness {round((quality.get('brightness') or 0.5) * 100)}%")
        lines.append(f"- Scale method: {scale.get('method', 'none')}")
        lines.append(f"- Estimated pixel/cm: {scale.get('pixel_per_cm_estimate') or 'Unknown'}")
    if profile_report:
        quality = _report_section(profile_report, "quality")
        sharp = "Sharp" if (quality.get("blur_score") or 0) > 0.6 else "Slightly blurry"
        lines.append(f"- Profile photo: {sharp}, brightness {round((quality.get('brightness') or 0.5) * 100)}%")
    return "\n".join(lines)


def build_extraction_prompt(user: UserMetrics, quality_context: str, has_front: bool, has_profile: bool) -> str:
    if has_front and has_profile:
        photos = "ces 2 photos (face/profil)"
    elif has_front:
        photos = "cette photo de face"
    else:
        photos = "cette photo de profil"
    single_note = "" if (has_front and has_profile) else (
        "\n\nNOTE: Une seule photo disponible - effectue une analyse simplifiée avec estimation "
        "des mesures manquantes basée sur les proportions anatomiques standards."
    )
    return f"""Tu es un expert en analyse morphologique corporelle. Extrais UNIQUEMENT les keypoints anatomiques du CORPS et les mesures corporelles de {photos}.{single_note}

PROFIL UTILISATEUR:
- Height: {user.height_cm}cm
- Weight: {user.weight_kg}kg
- Gender: {user.gender}
- BMI: {user.bmi:.1f}

{quality_context}

MISSION: Extraction pure de keypoints CORPORELS et mesures corporelles. Ne génère AUCUN paramètre morphologique (shape_params, limb_masses).
Focus UNIQUEMENT sur le corps : épaules, taille, hanches, membres, torse. Ignore les proportions faciales.

Pour chaque photo, identifie:
1. Points anatomiques clés CORPORELS (épaules, taille, hanches, coudes, genoux) avec coordonnées normalisées
2. Mesures corporelles en centimètres (tour de taille, poitrine, hanches)
3. Estimation d'échelle via la hauteur corporelle totale dans l'image
4. Validation de pose (bras dégagés, pieds visibles, alignement correct)
5. Estimation de composition corporelle (masse grasse, masse musculaire)
6. Couleur de peau (zone visage uniquement pour la couleur)

Retourne JSON avec:
{{
  "keypoints": {{"front": [[x,y,confidence], ...], "profile": [[x,y,confidence], ...]}},
  "measurements": {{
    "waist_cm": number, "hips_cm": number, "chest_cm": number,
    "height_cm": number, "weight_kg": number,
    "estimated_body_fat_perc": number, "estimated_muscle_mass_kg": number
  }},
  "skin_tone": {{"r": 0-255, "g": 0-255, "b": 0-255, "confidence": 0-1, "region_used": "face_detected" | "center_fallback"}},
  "confidence": {{"vision": 0-1, "fit": 0-1}},
  "quality_assessment": {{"photo_quality": 0-1, "pose_quality": 0-1}},
  "scale_method": "body-proportion" | "total-height" | "reference-object",
  "pixel_per_cm": number
}}

IMPORTANT:
- Mesures anatomiques directes depuis les photos, estimation robuste même avec éclairage/pose imparfaits
- Respect de la diversité des carnations sans biais

Réponds en JSON compact uniquement."""


async def analyze_photos_with_vision(
    front_url: Optional[str],
    profile_url: Optional[str],
    user: UserMetrics,
    front_report: Optional[dict] = None,
    profile_report: Optional[dict] = None,
) -> dict:
    """
    Run the extraction prompt. Returns the decoded reply with ``measurements``
    defaulted to {} and the declared height/weight filled in when missing.
    Raises UpstreamAIError / ReplyParseError on failure.
    """
    prompt = build_extraction_prompt(
        user,
        build_quality_context(front_report, profile_report),
        bool(front_url),
        bool(profile_url),
    )
    content = await llm_client.complete_with_vision(
        prompt,
        [u for u in (front_url, profile_url) if u],
        temperature=ESTIMATE_TEMPERATURE,
        max_tokens=ESTIMATE_MAX_TOKENS,
        json_mode=True,
    )
    parsed = llm_client.parse_json_reply(content)

    measurements = parsed.get("measurements")
    if not isinstance(measurements, dict):
        measurements = {}
    measurements.setdefault("height_cm", user.height_cm)
    measurements.setdefault("weight_kg", user.weight_kg)
    parsed["measurements"] = measurements

    confidence = parsed.get("confidence")
    if not isinstance(confidence, dict):
        parsed["confidence"] = {"vision": 0.0, "fit": 0.0}

    logger.info(
        f"Vision extraction done: {len(measurements)} measurements, "
        f"scale={parsed.get('scale_method')}, confidence={parsed['confidence']}"
    )
    return parsed
