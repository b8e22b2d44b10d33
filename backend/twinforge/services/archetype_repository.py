"""
Archetype Repository — read access to the morph_archetypes reference table.

Archetypes are returned as plain dicts (MorphArchetype.as_dict) so the pure
engines downstream never touch ORM state.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from twinforge.models.orm_models import MorphArchetype
from twinforge.services.gender import gender_code, normalize_gender

logger = logging.getLogger("twinforge-archetypes")

VOCABULARY_FIELDS = ("obesity", "muscularity", "level", "morphotype")


class ArchetypeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for_gender(self, gender: str) -> list[dict]:
        gender = normalize_gender(gender) or gender
        result = await self.session.execute(
            select(MorphArchetype)
            .where(MorphArchetype.gender == gender)
            .order_by(MorphArchetype.id)
        )
        rows = [a.as_dict() for a in result.scalars().all()]
        logger.debug(f"Loaded {len(rows)} archetypes for {gender}")
        return rows

    async def fetch_by_ids(self, ids: list[str]) -> list[dict]:
        if not ids:
            return []
        result = await self.session.execute(
            select(MorphArchetype).where(MorphArchetype.id.in_(ids))
        )
        by_id = {a.id: a.as_dict() for a in result.scalars().all()}
        # Preserve caller ranking
        return [by_id[i] for i in ids if i in by_id]

    async def valid_values_for(self, gender: str) -> dict[str, list[str]]:
        """Distinct vocabulary values for a gender, in table order."""
        gender = normalize_gender(gender) or gender
        result = await self.session.execute(
            select(
                MorphArchetype.obesity,
                MorphArchetype.muscularity,
                MorphArchetype.level,
                MorphArchetype.morphotype,
            )
            .where(MorphArchetype.gender == gender)
            .order_by(MorphArchetype.id)
        )
        values: dict[str, list[str]] = {name: [] for name in VOCABULARY_FIELDS}
        for row in result.all():
            for name, value in zip(VOCABULARY_FIELDS, row):
                if value and value not in values[name]:
                    values[name].append(value)
        return values

    async def default_archetype(self, gender: str) -> Optional[dict]:
        result = await self.session.execute(
            select(MorphArchetype)
            .where(MorphArchetype.gender_code == gender_code(gender))
            .where(MorphArchetype.level == "Normal")
            .where(MorphArchetype.obesity == "Non obèse")
            .order_by(MorphArchetype.id)
            .limit(1)
        )
        archetype = result.scalar_one_or_none()
        return archetype.as_dict() if archetype else None
