"""ORM Models for TwinForge — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from twinforge.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── ARCHETYPES ────────────────────────────────────────────────────────────────
class MorphArchetype(Base):
    """Reference body archetype. Read-only for the pipeline."""
    __tablename__ = "morph_archetypes"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    gender: Mapped[str] = mapped_column(String(20), nullable=False)       # masculine | feminine
    gender_code: Mapped[Optional[str]] = mapped_column(String(5))         # MAS | FEM
    level: Mapped[Optional[str]] = mapped_column(String(50))
    obesity: Mapped[Optional[str]] = mapped_column(String(50))
    muscularity: Mapped[Optional[str]] = mapped_column(String(50))
    morphotype: Mapped[Optional[str]] = mapped_column(String(10))
    bmi_range: Mapped[Optional[list]] = mapped_column(JSONB)              # [min, max]
    morph_values: Mapped[dict] = mapped_column(JSONB, default=dict)
    limb_masses: Mapped[dict] = mapped_column(JSONB, default=dict)

    __table_args__ = (
        Index("ix_morph_archetypes_gender", "gender"),
    )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "gender": self.gender,
            "gender_code": self.gender_code,
            "level": self.level,
            "obesity": self.obesity,
            "muscularity": self.muscularity,
            "morphotype": self.morphotype,
            "bmi_range": self.bmi_range,
            "morph_values": self.morph_values or {},
            "limb_masses": self.limb_masses or {},
        }


# ── SCANS ─────────────────────────────────────────────────────────────────────
class BodyScan(Base):
    """Immutable record of one committed scan."""
    __tablename__ = "body_scans"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    metrics: Mapped[dict] = mapped_column(JSONB, default=dict)

    __table_args__ = (
        Index("ix_body_scans_user_ts", "user_id", "timestamp"),
    )


# ── PROFILES ──────────────────────────────────────────────────────────────────
class UserProfile(Base):
    __tablename__ = "user_profile"
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(Text)
    sex: Mapped[Optional[str]] = mapped_column(String(20))
    preferences: Mapped[dict] = mapped_column(JSONB, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
