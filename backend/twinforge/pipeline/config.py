"""
Scan pipeline configuration — single source of truth for the morph vocabulary,
envelope thresholds, prompt gating rules and stage defaults.

Import from here in all services and routes rather than hardcoding values.
"""
from __future__ import annotations

import os

# ── Vocabulary version ─────────────────────────────────────────────────────────
# Bump whenever a canonical key is added, renamed or removed.
MAPPING_VERSION: str = "v1.0"

# ── Canonical keys ─────────────────────────────────────────────────────────────
SHAPE_KEYS: list[str] = [
    "pearFigure",
    "emaciated",
    "bodybuilderSize",
    "bodybuilderDetails",
    "bigHips",
    "assLarge",
    "narrowWaist",
    "superBreast",
    "breastsSmall",
    "pregnant",
    "animeWaist",
    "breastsSag",
    "dollBody",
    "animeProportion",
    "animeNeck",
    "nipples",
]

LIMB_KEYS: list[str] = [
    "armMass",
    "forearmMass",
    "thighMass",
    "calfMass",
    "legMass",
    "torsoMass",
    "neckMass",
    "headMass",
    "gate",
]

# Raw semantic extraction range for shape keys
RAW_SHAPE_MIN: float = -3.0
RAW_SHAPE_MAX: float = 3.0

# Limb multiplier used when a limb key is absent for a gender
DEFAULT_LIMB_MASS: float = 1.0

# ── Envelope ───────────────────────────────────────────────────────────────────
K_ARCHETYPES: int = 5

# Range width below which the prompt marks a key "VERY STRICT"
NARROW_SHAPE_RANGE: float = 0.5
NARROW_LIMB_RANGE: float = 0.3

# ── Gender ─────────────────────────────────────────────────────────────────────
GENDER_CODES: dict[str, str] = {
    "masculine": "MAS",
    "feminine": "FEM",
}

GENDER_ALIASES: dict[str, str] = {
    "masculine": "masculine",
    "male": "masculine",
    "man": "masculine",
    "m": "masculine",
    "mas": "masculine",
    "homme": "masculine",
    "feminine": "feminine",
    "female": "feminine",
    "woman": "feminine",
    "f": "feminine",
    "fem": "feminine",
    "femme": "feminine",
}

DEFAULT_GENDER: str = "feminine"

# Keys that must stay at zero on a masculine avatar
MASCULINE_BANNED_KEYS: list[str] = ["pregnant", "nipples", "animeProportion"]

# Upper limits applied to masculine avatars: key -> max
MASCULINE_SHAPE_LIMITS: dict[str, float] = {
    "breastsSmall": 1.0,
    "superBreast": 0.0,
}

# ── Muscular gating ────────────────────────────────────────────────────────────
MUSCULARITY_LEVELS: dict[str, float] = {
    "Atrophié sévère": 0.1,
    "Atrophiée sévère": 0.1,
    "Légèrement atrophié": 0.2,
    "Moins musclée": 0.2,
    "Normal": 0.4,
    "Moyen musclé": 0.6,
    "Moyennement musclée": 0.6,
    "Musclé": 0.8,
    "Musclée": 0.8,
    "Normal costaud": 0.9,
    "Athlétique": 0.9,
}
DEFAULT_MUSCULARITY_LEVEL: float = 0.4

HIGH_MUSCULARITY_THRESHOLD: float = 0.7
LOW_MUSCULARITY_THRESHOLD: float = 0.3

MUSCULAR_LABELS: set[str] = {"Musclé", "Musclée", "Athlétique", "Normal costaud"}
OBESE_LABELS: set[str] = {"Obèse", "Obésité morbide"}

# ── Semantic vocabulary ────────────────────────────────────────────────────────
# Used only when the archetype table cannot be read.
DEFAULT_VOCABULARY: dict[str, list[str]] = {
    "obesity": ["Non obèse", "Surpoids", "Obèse", "Obésité morbide"],
    "muscularity": ["Normal", "Moyen musclé", "Musclé", "Athlétique"],
    "level": ["Normal", "Mince", "Surpoids", "Obèse"],
    "morphotype": ["REC", "POI", "SAB", "TRI", "OVA", "POM"],
}

DEFAULT_LEVEL: str = "Normal"
DEFAULT_MORPHOTYPE: str = "REC"

# Semantic muscularity_level thresholds for label upgrades
ATHLETIC_AI_LEVEL: float = 0.9
MUSCULAR_AI_LEVEL: float = 0.7
LOW_AI_LEVEL: float = 0.3
MORBID_BMI: float = 35.0

# ── BMI thresholds ─────────────────────────────────────────────────────────────
BMI_OBESE: float = 30.0
BMI_OVERWEIGHT: float = 25.0
BMI_UNDERWEIGHT: float = 20.0
BMI_NORMAL_REFERENCE: float = 22.0
BMI_PLAUSIBLE_MIN: float = 12.0
BMI_PLAUSIBLE_MAX: float = 60.0
BMI_DECLARED_TOLERANCE: float = 3.0

# ── Archetype matching ─────────────────────────────────────────────────────────
MATCH_WEIGHTS: dict[str, float] = {
    "obesity": 3.0,
    "muscularity": 3.0,
    "level": 2.0,
    "morphotype": 2.0,
}

# ── Photo quality ──────────────────────────────────────────────────────────────
PHOTO_QUALITY_WEIGHTS: dict[str, float] = {
    "blur": 0.4,
    "exposure": 0.3,
    "single_person": 0.3,
}
DEFAULT_POSE_QUALITY: float = 0.8

# ── Measurement fallbacks ──────────────────────────────────────────────────────
REFERENCE_IMAGE_HEIGHT_PX: float = 1000.0
BODY_FRAME_RATIO: float = 0.8
MIN_HIP_WAIST_GAP_CM: float = 5.0
MAX_CHEST_BELOW_WAIST_CM: float = 20.0
CHEST_CORRECTION_BELOW_WAIST_CM: float = 10.0

# ── Estimation fallback strategies ─────────────────────────────────────────────
FALLBACK_CONFIDENCE: dict[str, dict[str, float]] = {
    "last_scan": {"vision": 0.55, "fit": 0.5},
    "default_archetype": {"vision": 0.4, "fit": 0.35},
    "ultimate_fallback": {"vision": 0.3, "fit": 0.25},
}

# ── Morph insights ─────────────────────────────────────────────────────────────
INSIGHTS_MODEL: str = "analytical_v1.0"
INSIGHTS_CONFIDENCE: float = 0.85
INSIGHT_MUSCLE_THRESHOLD: float = 0.3
INSIGHT_LEAN_THRESHOLD: float = -0.5
INSIGHT_PEAR_THRESHOLD: float = 0.3
BMI_HEALTHY_MIN: float = 18.5

# ── LLM stage settings ─────────────────────────────────────────────────────────
ESTIMATE_TEMPERATURE: float = 0.05
ESTIMATE_MAX_TOKENS: int = 2000
SEMANTIC_TEMPERATURE: float = 0.1
SEMANTIC_MAX_TOKENS: int = 2000
REFINE_TEMPERATURE: float = 0.1
REFINE_MAX_TOKENS: int = 3000
DEFAULT_AI_CONFIDENCE: float = 0.8

# ── Environment ────────────────────────────────────────────────────────────────
ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
MOCK_USER_ID: str = "00000000-0000-0000-0000-000000000001"


def is_production() -> bool:
    return os.getenv("ENVIRONMENT", ENVIRONMENT).lower() == "production"
