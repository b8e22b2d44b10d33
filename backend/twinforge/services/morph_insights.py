"""
Morph Insights — turns a committed avatar and the user's profile into typed,
user-facing insights (French copy) plus summary scores.

The analysis is rule based: thresholds on a few shape keys, the BMI band,
the declared objective and activity level, and the captured skin tone.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from twinforge.models.morph_types import is_finite_number
from twinforge.pipeline.config import (
    BMI_HEALTHY_MIN,
    BMI_OVERWEIGHT,
    INSIGHT_LEAN_THRESHOLD,
    INSIGHT_MUSCLE_THRESHOLD,
    INSIGHT_PEAR_THRESHOLD,
    INSIGHTS_CONFIDENCE,
    INSIGHTS_MODEL,
)

logger = logging.getLogger("twinforge-insights")

OBJECTIVE_LABELS = {
    "fat_loss": "perte de graisse",
    "muscle_gain": "prise de muscle",
    "recomp": "recomposition corporelle",
}

ACTIVITY_INSIGHTS = {
    "sedentary": (
        "Potentiel d'Activation",
        "Votre morphologie révèle un excellent potentiel pour débuter une activité physique "
        "progressive. Commencez par des exercices adaptés à votre composition corporelle.",
        "#F59E0B",
        ("Programme débutant", "Exercices adaptés à votre niveau"),
    ),
    "light": (
        "Progression Naturelle",
        "Votre niveau d'activité léger combiné à votre morphologie offre une base solide pour "
        "intensifier progressivement votre entraînement.",
        "#10B981",
        ("Intensifier l'entraînement", "Prochaines étapes pour votre progression"),
    ),
    "moderate": (
        "Équilibre Optimal",
        "Votre activité modérée est parfaitement alignée avec votre morphologie. Continuez sur "
        "cette voie pour des résultats durables.",
        "#22C55E",
        ("Maintenir le cap", "Optimisations pour votre routine actuelle"),
    ),
    "active": (
        "Performance Athlétique",
        "Votre niveau d'activité élevé et votre morphologie indiquent un excellent potentiel de "
        "performance. Votre corps est optimisé pour l'effort.",
        "#8B5CF6",
        ("Optimisation performance", "Techniques avancées pour votre niveau"),
    ),
    "athlete": (
        "Morphologie d'Élite",
        "Votre statut d'athlète se reflète dans votre morphologie exceptionnelle. Votre "
        "composition corporelle est optimisée pour la haute performance.",
        "#EC4899",
        ("Stratégies d'élite", "Techniques de pointe pour athlètes"),
    ),
}


@dataclass
class MorphInsight:
    id: str
    title: str
    description: str
    type: str          # recommendation | observation | achievement | goal_progress
    category: str      # morphology | fitness | nutrition | health | goals
    priority: str      # high | medium | low
    icon: str
    color: str
    confidence: float
    value: Optional[str] = None
    actionable: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _action(action: str, description: str) -> dict:
    return {"action": action, "description": description}


def _shape_value(shape: dict, key: str) -> float:
    value = shape.get(key)
    return float(value) if is_finite_number(value) else 0.0


def skin_tone_hex(skin_tone: Optional[dict]) -> Optional[str]:
    """Hex colour of a skin tone given as ``hex``, ``rgb`` or flat r/g/b."""
    if not isinstance(skin_tone, dict):
        return None
    if skin_tone.get("hex"):
        return str(skin_tone["hex"])
    rgb = skin_tone.get("rgb") if isinstance(skin_tone.get("rgb"), dict) else skin_tone
    channels = [rgb.get(c) for c in ("r", "g", "b")]
    if not all(is_finite_number(c) for c in channels):
        return None
    return "#" + "".join(f"{max(0, min(255, int(round(c)))):02X}" for c in channels)


def profile_bmi(profile: dict) -> Optional[float]:
    bmi = profile.get("bmi")
    if is_finite_number(bmi) and bmi > 0:
        return float(bmi)
    height, weight = profile.get("height_cm"), profile.get("weight_kg")
    if is_finite_number(height) and is_finite_number(weight) and height > 0:
        return weight / (height / 100) ** 2
    return None


def _composition_insight(shape: dict) -> Optional[MorphInsight]:
    bodybuilder = _shape_value(shape, "bodybuilderSize")
    if bodybuilder > INSIGHT_MUSCLE_THRESHOLD:
        return MorphInsight(
            id="muscle-development",
            title="Développement Musculaire Excellent",
            description=(
                f"Votre scan révèle un développement musculaire remarquable "
                f"(score: {bodybuilder * 100:.0f}%). Votre morphologie indique un excellent "
                f"potentiel athlétique."
            ),
            type="achievement", category="morphology", priority="high",
            value="Développé", icon="Zap", color="#8B5CF6", confidence=0.92,
            actionable=_action("Optimiser l'entraînement", "Programme adapté à votre morphologie musculaire"),
        )
    if _shape_value(shape, "emaciated") < INSIGHT_LEAN_THRESHOLD:
        return MorphInsight(
            id="lean-physique",
            title="Physique Lean Défini",
            description=(
                "Votre morphologie révèle une composition corporelle très définie. Excellent pour "
                "la définition musculaire et la performance athlétique."
            ),
            type="observation", category="morphology", priority="medium",
            value="Défini", icon="TrendingUp", color="#10B981", confidence=0.88,
        )
    return None


def _bmi_insight(bmi: float) -> MorphInsight:
    shown = f"{bmi:.1f}"
    if BMI_HEALTHY_MIN <= bmi < BMI_OVERWEIGHT:
        return MorphInsight(
            id="bmi-optimal",
            title="IMC dans la Zone Optimale",
            description=(
                f"Votre IMC de {shown} se situe dans la plage idéale. Votre morphologie actuelle "
                f"est excellente pour maintenir une santé optimale."
            ),
            type="achievement", category="health", priority="high",
            value=shown, icon="Check", color="#22C55E", confidence=0.95,
        )
    if bmi < BMI_HEALTHY_MIN:
        return MorphInsight(
            id="bmi-underweight",
            title="Potentiel de Prise de Masse",
            description=(
                f"Votre IMC de {shown} indique un potentiel pour une prise de masse saine. Votre "
                f"morphologie lean est idéale pour développer du muscle de qualité."
            ),
            type="recommendation", category="health", priority="high",
            value=shown, icon="TrendingUp", color="#06B6D4", confidence=0.90,
            actionable=_action("Plan de prise de masse", "Stratégie adaptée à votre morphologie"),
        )
    return MorphInsight(
        id="bmi-optimization",
        title="Opportunité d'Optimisation",
        description=(
            f"Votre IMC de {shown} offre une excellente base pour une transformation corporelle. "
            f"Votre morphologie actuelle a un potentiel d'amélioration significatif."
        ),
        type="recommendation", category="health", priority="high",
        value=shown, icon="Target", color="#F59E0B", confidence=0.88,
        actionable=_action("Plan de transformation", "Programme personnalisé basé sur votre scan"),
    )


def _goal_insight(profile: dict) -> Optional[MorphInsight]:
    objective = profile.get("objective")
    target = profile.get("target_weight_kg")
    weight = profile.get("weight_kg")
    if not objective or not is_finite_number(target) or not is_finite_number(weight):
        return None
    label = OBJECTIVE_LABELS.get(objective, OBJECTIVE_LABELS["recomp"])
    diff = target - weight
    detail = ""
    if diff != 0:
        detail = f" avec un objectif de {abs(diff):.1f}kg {'à gagner' if diff > 0 else 'à perdre'}"
    return MorphInsight(
        id="goal-alignment",
        title="Alignement des Objectifs",
        description=(
            f"Votre objectif de {label}{detail} est parfaitement réalisable avec votre "
            f"morphologie actuelle."
        ),
        type="goal_progress", category="goals", priority="high",
        value=label, icon="Target", color="#8B5CF6", confidence=0.87,
        actionable=_action("Plan personnalisé", "Stratégie basée sur votre scan 3D"),
    )


def analyze_morphology(scan_data: dict, profile: dict) -> list[MorphInsight]:
    shape = scan_data.get("final_shape_params") or {}
    insights = []

    composition = _composition_insight(shape)
    if composition:
        insights.append(composition)

    if _shape_value(shape, "pearFigure") > INSIGHT_PEAR_THRESHOLD:
        insights.append(MorphInsight(
            id="pear-shape",
            title="Silhouette en Poire",
            description=(
                "Votre morphologie présente une répartition des masses caractéristique. Cette "
                "forme naturelle offre des avantages pour certains types d'exercices."
            ),
            type="observation", category="morphology", priority="medium",
            value="Poire", icon="Circle", color="#EC4899", confidence=0.85,
            actionable=_action("Exercices ciblés", "Programme adapté à votre répartition corporelle"),
        ))

    bmi = profile_bmi(profile)
    if bmi is not None:
        insights.append(_bmi_insight(bmi))

    goal = _goal_insight(profile)
    if goal:
        insights.append(goal)

    activity = ACTIVITY_INSIGHTS.get(profile.get("activity_level"))
    if activity:
        title, description, color, (action, action_description) = activity
        insights.append(MorphInsight(
            id="activity-analysis", title=title, description=description,
            type="recommendation", category="fitness", priority="medium",
            value=profile["activity_level"], icon="Activity", color=color, confidence=0.85,
            actionable=_action(action, action_description),
        ))

    skin_tone = scan_data.get("skin_tone")
    hex_color = skin_tone_hex(skin_tone)
    if hex_color:
        confidence = skin_tone.get("confidence")
        insights.append(MorphInsight(
            id="skin-tone-analysis",
            title="Analyse de Teint Personnalisée",
            description=(
                f"Votre teint naturel a été capturé avec précision ({hex_color}). Cette "
                f"information permet un rendu 3D ultra-réaliste de votre avatar."
            ),
            type="observation", category="morphology", priority="low",
            value=hex_color, icon="Palette", color="#A855F7",
            confidence=float(confidence) if is_finite_number(confidence) and confidence > 0 else 0.80,
        ))
    return insights


def _mean_confidence(insights: list[MorphInsight], default: float) -> float:
    if not insights:
        return default
    return sum(i.confidence for i in insights) / len(insights)


def calculate_summary(insights: list[MorphInsight], profile: dict) -> dict:
    has_goals = bool(profile.get("target_weight_kg") or profile.get("objective"))
    return {
        "morphology_score": _mean_confidence([i for i in insights if i.category == "morphology"], 0.8),
        "goal_alignment": 0.85 if has_goals else 0.5,
        "health_indicators": _mean_confidence([i for i in insights if i.category == "health"], 0.75),
        "recommendations_count": sum(1 for i in insights if i.type == "recommendation"),
    }


def generate_insights(scan_data: dict, profile: dict, now: Optional[datetime] = None) -> dict:
    insights = analyze_morphology(scan_data, profile)
    summary = calculate_summary(insights, profile)
    logger.info(
        f"Generated {len(insights)} insights, morphology_score={summary['morphology_score']:.2f}, "
        f"recommendations={summary['recommendations_count']}",
        extra={"user_id": profile.get("user_id"), "scan_id": scan_data.get("scan_id")},
    )
    return {
        "insights": [i.to_dict() for i in insights],
        "summary": summary,
        "metadata": {
            "generated_at": (now or datetime.now(timezone.utc)).isoformat(),
            "ai_model": INSIGHTS_MODEL,
            "confidence": INSIGHTS_CONFIDENCE,
        },
    }
