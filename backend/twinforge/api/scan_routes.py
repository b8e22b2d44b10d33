"""Scan pipeline routes — estimate, semantic, match, refine, commit and insights stages."""
import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from twinforge.api.deps import (
    assert_user_matches,
    get_archetype_repository,
    get_scan_store,
    get_token_subject,
)
from twinforge.models.morph_types import Envelope, is_finite_number
from twinforge.models.scan_schemas import (
    CommitRequest,
    EstimateRequest,
    InsightsRequest,
    MatchRequest,
    RefineRequest,
    SemanticRequest,
)
from twinforge.pipeline.config import MAPPING_VERSION, MOCK_USER_ID, is_production
from twinforge.services.archetype_matcher import ArchetypeMatcher
from twinforge.services.archetype_repository import ArchetypeRepository
from twinforge.services.bmi_validator import validate_bmi_with_database
from twinforge.services.bounds_lookup import compute_physiological_bounds
from twinforge.services.envelope_builder import build_envelope, clamp_envelope_to_bounds
from twinforge.services.errors import (
    ReplyParseError,
    ReplyValidationError,
    TwinForgeError,
    UpstreamAIError,
)
from twinforge.services.estimation_fallback import (
    create_fallback_estimation,
    determine_fallback_strategy,
    fallback_reason,
)
from twinforge.services.gender import normalize_gender, resolve_gender
from twinforge.services.measurement_enhancer import UserMetrics, enhance_measurements
from twinforge.services.morph_clamp import clamp_refined_vector
from twinforge.services.morph_insights import generate_insights
from twinforge.services.perf_monitor import timed_stage, tracker
from twinforge.services.persistence import ScanStore, avatar_preferences, build_scan_metrics
from twinforge.services.prompt_builder import RefinementPromptInput, build_refinement_prompt
from twinforge.services.refinement_client import request_refinement
from twinforge.services.semantic_analyzer import analyze_photos_for_semantics, derive_raw_labels
from twinforge.services.semantic_validator import extract_bmi, validate_semantic_with_db
from twinforge.services.vision_analyzer import (
    analyze_photos_with_vision,
    photo_quality_diagnostics,
    photo_quality_score,
    skin_tone_from_reports,
)

router = APIRouter(prefix="/api/v1", tags=["Scan Pipeline"])
logger = logging.getLogger("twinforge-api")

STAGE_PATHS = (
    "/scan-estimate",
    "/scan-semantic",
    "/scan-match",
    "/scan-refine-morphs",
    "/scan-commit",
    "/generate-morph-insights",
)

_VISION_FAILURES = (UpstreamAIError, ReplyParseError, ReplyValidationError)


def trace_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def _run_stage(request: Request, stage: str, func, *args):
    """Unexpected failures become the 500 envelope; pipeline errors go to the app handlers."""
    try:
        return await func(*args)
    except (TwinForgeError, HTTPException):
        raise
    except Exception as e:
        logger.exception(f"{stage} stage failed unexpectedly", extra={"stage": stage})
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(e), "traceId": trace_id(request)},
        )


def _numeric_only(values: dict) -> dict:
    return {k: float(v) for k, v in values.items() if is_finite_number(v)}


# ─── Estimate ─────────────────────────────────────────────────────────────────

@timed_stage("estimate")
async def run_estimate(body: EstimateRequest, archetypes: ArchetypeRepository, scans: ScanStore) -> dict:
    gender = resolve_gender(override=body.resolvedGender, profile=body.user_declared_gender)
    user = UserMetrics(body.user_declared_height_cm, body.user_declared_weight_kg, gender)
    front, profile = body.photo("front"), body.photo("profile")
    front_report = front.report if front else None
    profile_report = profile.report if profile else None

    fallback_used = False
    reason = None
    try:
        extraction = await analyze_photos_with_vision(
            front.url if front else None,
            profile.url if profile else None,
            user,
            front_report,
            profile_report,
        )
    except _VISION_FAILURES as e:
        reason = fallback_reason(e)
        logger.warning(
            f"Vision extraction failed ({reason}): {e}; applying fallback",
            extra={"scan_id": body.clientScanId, "stage": "estimate"},
        )
        strategy = await determine_fallback_strategy(body.user_id, gender, scans, archetypes)
        tracker.record_fallback(strategy.type)
        extraction = create_fallback_estimation(strategy, user)
        fallback_used = True

    notes = list(extraction.get("processing_notes") or [])
    enhanced = enhance_measurements(extraction, user, notes)
    raw = enhanced.raw_measurements
    estimated_bmi = raw["weight_kg"] / (raw["height_cm"] / 100) ** 2

    bmi_validation = await validate_bmi_with_database(
        archetypes, estimated_bmi, user.height_cm, user.weight_kg, gender
    )
    quality = extraction.get("quality_assessment")
    pose_quality = quality.get("pose_quality") if isinstance(quality, dict) else None
    confidence = extraction.get("confidence")
    if not isinstance(confidence, dict):
        confidence = {}

    logger.info(
        f"Estimate done: bmi={estimated_bmi:.2f}, fallback={fallback_used}",
        extra={"scan_id": body.clientScanId, "user_id": body.user_id, "stage": "estimate"},
    )
    return {
        "extracted_data": {
            "raw_measurements": raw,
            "estimated_bmi": round(estimated_bmi, 2),
            "processing_confidence": confidence.get("vision"),
            "photo_quality_score": round(photo_quality_score(front_report, profile_report), 3),
            "skin_tone": skin_tone_from_reports(body.dumped_photos()) or extraction.get("skin_tone"),
            "skin_tone_analysis": extraction.get("skin_tone_analysis"),
            "keypoints": extraction.get("keypoints"),
            "scale_method": enhanced.scale_method,
            "pixel_per_cm": enhanced.pixel_per_cm,
            "fallback_used": fallback_used,
            "fallback_reason": reason,
            "bmi_validation": bmi_validation,
        },
        "photos_metadata": body.dumped_photos(),
        "resolved_gender": gender,
        "diagnostics": {
            "photo_quality": {
                "front": photo_quality_diagnostics(front_report, pose_quality),
                "profile": photo_quality_diagnostics(profile_report, pose_quality),
            },
            "processing_notes": enhanced.processing_notes,
            "bmi_validation_flags": bmi_validation["flags"],
        },
    }


@router.post("/scan-estimate")
async def scan_estimate(
    body: EstimateRequest,
    request: Request,
    archetypes: ArchetypeRepository = Depends(get_archetype_repository),
    scans: ScanStore = Depends(get_scan_store),
    token_subject=Depends(get_token_subject),
):
    """Vision extraction of body measurements, with deterministic fallback."""
    assert_user_matches(token_subject, body.user_id)
    if not body.photo("front") and not body.photo("profile"):
        raise HTTPException(status_code=400, detail="At least one photo (front or profile) is required")
    return await _run_stage(request, "estimate", run_estimate, body, archetypes, scans)


# ─── Semantic ─────────────────────────────────────────────────────────────────

@timed_stage("semantic")
async def run_semantic(body: SemanticRequest, archetypes: ArchetypeRepository) -> dict:
    gender = resolve_gender(override=body.resolvedGender, profile=body.user_declared_gender)
    raw = body.extracted_data.get("raw_measurements") or {}
    height, weight = raw.get("height_cm"), raw.get("weight_kg")
    if not (is_finite_number(height) and is_finite_number(weight) and height > 0 and weight > 0):
        raise HTTPException(
            status_code=400,
            detail="extracted_data.raw_measurements must include height_cm and weight_kg",
        )
    user = UserMetrics(float(height), float(weight), gender)
    front, profile = body.photo("front"), body.photo("profile")

    reply = await analyze_photos_for_semantics(
        (front or profile).url,
        profile.url if front and profile else None,
        user,
        front.report if front else None,
        profile.report if profile else None,
        body.muscle_definition_score,
        body.muscle_volume_score,
    )
    bmi = extract_bmi(body.extracted_data)
    raw_labels = derive_raw_labels(reply, gender, bmi)
    validation = await validate_semantic_with_db(archetypes, raw_labels, body.extracted_data, gender)

    logger.info(
        f"Semantic stage done: {len(validation.adjustments_made)} adjustments",
        extra={"scan_id": body.clientScanId, "user_id": body.user_id, "stage": "semantic"},
    )
    return {
        "semantic_profile": validation.validated_profile,
        "semantic_confidence": reply["confidence"].get("semantic"),
        "adjustments_made": validation.adjustments_made,
        "validation_flags": validation.validation_flags,
        "raw_semantic_labels": raw_labels,
        "raw_semantic": reply,
        "resolved_gender": gender,
    }


@router.post("/scan-semantic")
async def scan_semantic(
    body: SemanticRequest,
    request: Request,
    archetypes: ArchetypeRepository = Depends(get_archetype_repository),
    token_subject=Depends(get_token_subject),
):
    """Semantic classification reconciled with the archetype vocabulary."""
    assert_user_matches(token_subject, body.user_id)
    if not body.photos:
        raise HTTPException(status_code=400, detail="At least one photo (front or profile) is required")
    return await _run_stage(request, "semantic", run_semantic, body, archetypes)


# ─── Match ────────────────────────────────────────────────────────────────────

@timed_stage("match")
async def run_match(body: MatchRequest, archetypes: ArchetypeRepository) -> dict:
    gender = resolve_gender(override=body.resolvedGender, profile=body.user_declared_gender)
    rows = await archetypes.list_for_gender(gender)
    bounds = compute_physiological_bounds(rows, gender)
    matcher = ArchetypeMatcher(k=body.matching_config.k)
    result = matcher.match(rows, body.semantic_profile, extract_bmi(body.extracted_data), bounds)
    result["db_bounds"] = bounds.to_dict()
    result["resolved_gender"] = gender
    return result


@router.post("/scan-match")
async def scan_match(
    body: MatchRequest,
    request: Request,
    archetypes: ArchetypeRepository = Depends(get_archetype_repository),
    token_subject=Depends(get_token_subject),
):
    """Top-K archetype selection, envelope and blended starting vector."""
    assert_user_matches(token_subject, body.user_id)
    return await _run_stage(request, "match", run_match, body, archetypes)


# ─── Refine ───────────────────────────────────────────────────────────────────

async def _refinement_envelope(body: RefineRequest, rows: list[dict], bounds, archetypes) -> Envelope:
    if body.k5_envelope:
        return clamp_envelope_to_bounds(Envelope.from_dict(body.k5_envelope), bounds)
    selected = await archetypes.fetch_by_ids(body.selected_archetype_ids)
    if not selected:
        ranked = ArchetypeMatcher().rank(
            rows, body.vision_classification or {}, extract_bmi(body.user_measurements)
        )
        selected = [s.archetype for s in ranked]
    return build_envelope(selected, bounds)


@timed_stage("refine")
async def run_refine(body: RefineRequest, archetypes: ArchetypeRepository) -> dict:
    gender = resolve_gender(override=body.resolvedGender, profile=body.user_declared_gender)
    rows = await archetypes.list_for_gender(gender)
    bounds = compute_physiological_bounds(rows, gender)
    envelope = await _refinement_envelope(body, rows, bounds, archetypes)
    blend_shape = _numeric_only(body.blend_shape_params)
    blend_limbs = _numeric_only(body.blend_limb_masses)

    prompt = build_refinement_prompt(RefinementPromptInput(
        resolved_gender=gender,
        blend_shape_params=blend_shape,
        blend_limb_masses=blend_limbs,
        envelope=envelope,
        bounds=bounds,
        photo_views=[p.view for p in body.photos],
        vision_classification=body.vision_classification,
        user_measurements=body.user_measurements,
    ))
    reply = await request_refinement(prompt, body.urls())
    report = clamp_refined_vector(
        reply.final_shape_params,
        reply.final_limb_masses,
        envelope,
        bounds,
        gender,
        blend_shape,
        blend_limbs,
    )

    logger.info(
        f"Refinement done: {report.active_keys_count} active keys, "
        f"{report.out_of_range_count} clamped",
        extra={"scan_id": body.scan_id, "user_id": body.user_id, "stage": "refine"},
    )
    return {
        "ai_refine": True,
        "scan_id": body.scan_id,
        "resolved_gender": gender,
        "mapping_version": body.mapping_version or MAPPING_VERSION,
        "final_shape_params": report.final_shape_params,
        "final_limb_masses": report.final_limb_masses,
        "ai_confidence": reply.ai_confidence,
        "refinement_notes": reply.refinement_notes,
        "violations": {
            "clamped_keys": report.clamped_keys,
            "envelope_violations": report.envelope_violations,
            "db_violations": report.db_violations,
            "gender_violations": report.gender_violations,
            "missing_keys_added": report.missing_keys_added,
            "extra_keys_removed": report.extra_keys_removed,
            "out_of_range_count": report.out_of_range_count,
            "ai_reported_out_of_range_count": reply.out_of_range_count,
        },
        "active_keys_count": report.active_keys_count,
        "refinement_deltas": report.refinement_deltas,
        "k5_envelope": envelope.to_dict(),
        "db_bounds": bounds.to_dict(),
    }


@router.post("/scan-refine-morphs")
async def scan_refine_morphs(
    body: RefineRequest,
    request: Request,
    archetypes: ArchetypeRepository = Depends(get_archetype_repository),
    token_subject=Depends(get_token_subject),
):
    """AI refinement of the blended vector inside the envelope and DB bounds."""
    assert_user_matches(token_subject, body.user_id)
    if not body.photos:
        raise HTTPException(status_code=400, detail="At least one photo is required for refinement")
    return await _run_stage(request, "refine", run_refine, body, archetypes)


# ─── Commit ───────────────────────────────────────────────────────────────────

@timed_stage("commit")
async def run_commit(body: CommitRequest, scans: ScanStore) -> dict:
    payload = body.model_dump()
    if payload.get("resolved_gender"):
        payload["resolved_gender"] = normalize_gender(payload["resolved_gender"]) or payload["resolved_gender"]
    payload["mapping_version"] = payload.get("mapping_version") or MAPPING_VERSION

    scan_id = await scans.insert_body_scan(body.user_id, build_scan_metrics(payload))
    await scans.upsert_profile_preferences(body.user_id, avatar_preferences(payload))
    tracker.record_scan_committed()
    logger.info(
        "Scan committed",
        extra={"scan_id": scan_id, "user_id": body.user_id, "stage": "commit"},
    )
    return {"success": True, "scan_id": scan_id, "processing_complete": True}


@router.post("/scan-commit")
async def scan_commit(
    body: CommitRequest,
    request: Request,
    scans: ScanStore = Depends(get_scan_store),
    token_subject=Depends(get_token_subject),
):
    """Persist the scan (insert only) and merge the avatar into the user's preferences."""
    if body.user_id == MOCK_USER_ID and not is_production():
        logger.info("Mock user commit: skipping database writes", extra={"user_id": body.user_id})
        return {
            "success": True,
            "scan_id": f"mock-scan-{uuid.uuid4()}",
            "processing_complete": True,
            "mock_mode": True,
        }
    assert_user_matches(token_subject, body.user_id)
    return await _run_stage(request, "commit", run_commit, body, scans)


# ─── Insights ────────────────────────────────────────────────────────────────

@timed_stage("insights")
async def run_insights(body: InsightsRequest, scans: ScanStore) -> dict:
    profile = body.user_profile.model_dump()
    if body.scan_data is not None:
        scan_data = body.scan_data.model_dump()
    else:
        scan_data = await scans.last_scan_metrics(profile["user_id"])
        if not scan_data:
            raise HTTPException(status_code=404, detail="No committed scan found for this user")
    return generate_insights(scan_data, profile)


@router.post("/generate-morph-insights")
async def generate_morph_insights(
    body: InsightsRequest,
    request: Request,
    scans: ScanStore = Depends(get_scan_store),
    token_subject=Depends(get_token_subject),
):
    """Typed insights and summary scores for a committed avatar."""
    assert_user_matches(token_subject, body.user_profile.user_id)
    return await _run_stage(request, "insights", run_insights, body, scans)


# ─── CORS preflight ───────────────────────────────────────────────────────────

async def preflight():
    return JSONResponse(content={"ok": True})


for _path in STAGE_PATHS:
    router.add_api_route(_path, preflight, methods=["OPTIONS"], include_in_schema=False)
