"""Pydantic request models for the scan pipeline endpoints."""
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


# ─── Shared ───────────────────────────────────────────────────────────────────

class Photo(BaseModel):
    view: Literal["front", "profile"]
    url: str = Field(..., min_length=1)
    report: Optional[dict] = None


class PhotoSet(BaseModel):
    photos: list[Photo] = Field(default_factory=list)

    def photo(self, view: str) -> Optional[Photo]:
        return next((p for p in self.photos if p.view == view), None)

    def urls(self) -> list[str]:
        return [p.url for p in self.photos]

    def dumped_photos(self) -> list[dict]:
        return [p.model_dump() for p in self.photos]


# ─── Stage requests ───────────────────────────────────────────────────────────

class EstimateRequest(PhotoSet):
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "3f1c2b7e-9d4a-4c1e-8a55-0c2f6e7d9b10",
            "photos": [
                {"view": "front", "url": "https://cdn.example.com/scans/front.jpg"},
                {"view": "profile", "url": "https://cdn.example.com/scans/profile.jpg"},
            ],
            "user_declared_height_cm": 172,
            "user_declared_weight_kg": 68,
            "user_declared_gender": "feminine",
        }
    })

    user_id: str
    user_declared_height_cm: float = Field(..., gt=0)
    user_declared_weight_kg: float = Field(..., gt=0)
    user_declared_gender: Optional[str] = None
    resolvedGender: Optional[str] = None
    clientScanId: Optional[str] = None


class SemanticRequest(PhotoSet):
    user_id: str
    extracted_data: dict = Field(default_factory=dict)
    user_declared_gender: Optional[str] = None
    resolvedGender: Optional[str] = None
    clientScanId: Optional[str] = None
    muscle_definition_score: Optional[float] = None
    muscle_volume_score: Optional[float] = None


class MatchingConfig(BaseModel):
    k: int = Field(5, ge=1, le=20)


class MatchRequest(BaseModel):
    user_id: str
    extracted_data: dict = Field(default_factory=dict)
    semantic_profile: dict = Field(default_factory=dict)
    user_declared_gender: Optional[str] = None
    resolvedGender: Optional[str] = None
    matching_config: MatchingConfig = Field(default_factory=MatchingConfig)
    clientScanId: Optional[str] = None


class RefineRequest(PhotoSet):
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "scan_id": "scan-2024-0001",
            "user_id": "3f1c2b7e-9d4a-4c1e-8a55-0c2f6e7d9b10",
            "resolvedGender": "masculine",
            "photos": [{"view": "front", "url": "https://cdn.example.com/scans/front.jpg"}],
            "blend_shape_params": {"bodybuilderSize": 0.4, "pearFigure": -0.2},
            "blend_limb_masses": {"armMass": 1.05, "thighMass": 0.98},
            "mapping_version": "v1.0",
            "selected_archetype_ids": ["MAS-NOR-REC-001"],
        }
    })

    scan_id: Optional[str] = None
    user_id: str
    resolvedGender: Optional[str] = None
    user_declared_gender: Optional[str] = None
    blend_shape_params: dict[str, Any] = Field(default_factory=dict)
    blend_limb_masses: dict[str, Any] = Field(default_factory=dict)
    mapping_version: Optional[str] = None
    k5_envelope: Optional[dict] = None
    selected_archetype_ids: list[str] = Field(default_factory=list)
    vision_classification: Optional[dict] = None
    user_measurements: Optional[dict] = None


class CommitRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    estimate_result: Any = None
    semantic_result: Any = None
    match_result: Any = None
    refine_result: Any = None
    morph_bounds: Optional[dict] = None
    validation_metadata: Optional[dict] = None
    temporal_analysis: Optional[dict] = None
    smoothing_metadata: Optional[dict] = None
    visionfit_result: Optional[dict] = None
    photos_metadata: Optional[list] = None
    final_shape_params: dict[str, float] = Field(default_factory=dict)
    final_limb_masses: dict[str, float] = Field(default_factory=dict)
    skin_tone: Optional[dict] = None
    resolved_gender: Optional[str] = None
    mapping_version: Optional[str] = None
    gltf_model_id: Optional[str] = None
    material_config_version: Optional[str] = None
    avatar_version: Optional[str] = None
    clientScanId: Optional[str] = None


class InsightsScanData(BaseModel):
    model_config = ConfigDict(extra="allow")

    scan_id: Optional[str] = None
    final_shape_params: dict[str, float] = Field(default_factory=dict)
    final_limb_masses: dict[str, float] = Field(default_factory=dict)
    skin_tone: Optional[dict] = None
    resolved_gender: Optional[str] = None
    avatar_version: Optional[str] = None


class InsightsUserProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: str = Field(..., min_length=1)
    age: Optional[int] = None
    sex: Optional[str] = None
    height_cm: Optional[float] = Field(None, gt=0)
    weight_kg: Optional[float] = Field(None, gt=0)
    target_weight_kg: Optional[float] = Field(None, gt=0)
    activity_level: Optional[Literal["sedentary", "light", "moderate", "active", "athlete"]] = None
    objective: Optional[Literal["fat_loss", "recomp", "muscle_gain"]] = None
    bmi: Optional[float] = None


class InsightsRequest(BaseModel):
    """``scan_data`` defaults to the user's latest committed scan when omitted."""

    user_profile: InsightsUserProfile
    scan_data: Optional[InsightsScanData] = None
    analysis_config: Optional[dict] = None
