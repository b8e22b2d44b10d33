"""
Persistence Writer — committed scans and the avatar section of user preferences.

body_scans rows are insert-only. user_profile.preferences is read, shallow
merged with the latest avatar fields (last write wins) and upserted on user_id.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from twinforge.models.morph_types import StageOutcome
from twinforge.models.orm_models import BodyScan, UserProfile
from twinforge.services.errors import PersistenceError

logger = logging.getLogger("twinforge-persistence")

STAGE_FIELDS = ("estimate_result", "semantic_result", "match_result", "refine_result")

PASSTHROUGH_FIELDS = (
    "morph_bounds",
    "validation_metadata",
    "temporal_analysis",
    "smoothing_metadata",
    "visionfit_result",
    "photos_metadata",
)

AVATAR_FIELDS = (
    "final_shape_params",
    "final_limb_masses",
    "skin_tone",
    "resolved_gender",
    "mapping_version",
    "gltf_model_id",
    "material_config_version",
    "avatar_version",
)


def build_scan_metrics(payload: dict) -> dict:
    """Assemble the metrics blob stored on body_scans."""
    metrics = {}
    stage_status = {}
    for name in STAGE_FIELDS:
        outcome = StageOutcome.from_payload(payload.get(name))
        metrics[name] = outcome.data
        stage_status[name.removesuffix("_result")] = outcome.status
        if outcome.status == "error":
            logger.warning(f"Committing scan with failed stage {name}: {outcome.error}")
    for name in PASSTHROUGH_FIELDS + AVATAR_FIELDS:
        metrics[name] = payload.get(name)
    metrics["stage_status"] = stage_status
    return metrics


def avatar_preferences(payload: dict, now: Optional[datetime] = None) -> dict:
    prefs = {name: payload.get(name) for name in AVATAR_FIELDS}
    prefs["lastMorphSave"] = (now or datetime.now(timezone.utc)).isoformat()
    return prefs


def merge_preferences(existing: Optional[dict], avatar: dict) -> dict:
    """Shallow merge: unrelated keys (e.g. face data) survive, avatar keys are replaced."""
    return {**(existing or {}), **avatar}


def profile_upsert_statement(user_id: str, preferences: dict, now: datetime):
    stmt = pg_insert(UserProfile).values(user_id=user_id, preferences=preferences, updated_at=now)
    return stmt.on_conflict_do_update(
        index_elements=[UserProfile.user_id],
        set_={"preferences": stmt.excluded.preferences, "updated_at": stmt.excluded.updated_at},
    )


class ScanStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_body_scan(self, user_id: str, metrics: dict, scan_id: Optional[str] = None) -> str:
        scan_id = scan_id or str(uuid.uuid4())
        try:
            self.session.add(BodyScan(
                id=scan_id,
                user_id=user_id,
                timestamp=datetime.now(timezone.utc),
                metrics=metrics,
            ))
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to store body scan {scan_id}: {e}", extra={"scan_id": scan_id})
            raise PersistenceError(f"Failed to store body scan: {e}") from e
        logger.info("Body scan stored", extra={"scan_id": scan_id, "user_id": user_id})
        return scan_id

    async def upsert_profile_preferences(self, user_id: str, avatar: dict) -> dict:
        try:
            result = await self.session.execute(
                select(UserProfile.preferences).where(UserProfile.user_id == user_id)
            )
            merged = merge_preferences(result.scalar_one_or_none(), avatar)
            await self.session.execute(
                profile_upsert_statement(user_id, merged, datetime.now(timezone.utc))
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to update user profile {user_id}: {e}")
            raise PersistenceError(f"Failed to update user profile: {e}") from e
        return merged

    async def last_scan_metrics(self, user_id: str) -> Optional[dict]:
        result = await self.session.execute(
            select(BodyScan.metrics)
            .where(BodyScan.user_id == user_id)
            .order_by(BodyScan.timestamp.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
