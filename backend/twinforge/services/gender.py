"""Gender resolution for avatar generation."""
from typing import Optional

from twinforge.pipeline.config import DEFAULT_GENDER, GENDER_ALIASES, GENDER_CODES


def normalize_gender(value: Optional[str]) -> Optional[str]:
    """Map any accepted spelling to "masculine" / "feminine"; None if unknown."""
    if not value or not isinstance(value, str):
        return None
    return GENDER_ALIASES.get(value.strip().lower())


def resolve_gender(
    saved: Optional[str] = None,
    override: Optional[str] = None,
    profile: Optional[str] = None,
) -> str:
    """First recognisable value among saved payload, explicit override, profile."""
    for candidate in (saved, override, profile):
        gender = normalize_gender(candidate)
        if gender:
            return gender
    return DEFAULT_GENDER


def gender_code(gender: str) -> str:
    return GENDER_CODES.get(normalize_gender(gender) or DEFAULT_GENDER, "FEM")
