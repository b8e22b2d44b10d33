"""
test_scan_routes.py — HTTP surface of the scan pipeline.

The archetype repository and scan store are in-memory fakes (see conftest),
and the vision model is replaced by FakeLLM. Each test queues the model
replies it expects the route to consume.
"""

import json

import pytest
from jose import jwt

from twinforge.pipeline.config import DEFAULT_POSE_QUALITY, MOCK_USER_ID
from twinforge.services.errors import UpstreamAIError

USER_ID = "6f1c2b9e-5a7d-4e3f-9b21-0c8d7e6f5a41"
OTHER_USER_ID = "1a2b3c4d-0000-4e3f-9b21-0c8d7e6f5a41"
FRONT = {"view": "front", "url": "https://cdn.example.com/scans/front.jpg"}
PROFILE = {"view": "profile", "url": "https://cdn.example.com/scans/profile.jpg"}


def _estimate_body(**overrides):
    body = {
        "user_id": USER_ID,
        "photos": [FRONT, PROFILE],
        "user_declared_height_cm": 170,
        "user_declared_weight_kg": 65,
        "user_declared_gender": "feminine",
        "clientScanId": "client-scan-1",
    }
    body.update(overrides)
    return body


VISION_REPLY = {
    "keypoints": {"front": [[0.5, 0.1, 0.9]], "profile": []},
    "measurements": {
        "waist_cm": 72, "hips_cm": 98, "chest_cm": 90, "height_cm": 170, "weight_kg": 65,
        "estimated_body_fat_perc": 24, "estimated_muscle_mass_kg": 27,
    },
    "skin_tone": {"r": 198, "g": 150, "b": 120, "confidence": 0.8, "region_used": "face_detected"},
    "confidence": {"vision": 0.85, "fit": 0.8},
    "quality_assessment": {"photo_quality": 0.8, "pose_quality": 0.9},
    "scale_method": "total-height",
    "pixel_per_cm": 4.5,
}

SEMANTIC_REPLY = {
    "muscularity_level": 0.4,
    "adiposity_level": 0.3,
    "body_types": ["REC"],
    "body_shape_primary": "REC",
    "muscle_definition": 0.4,
    "fat_distribution": "even",
    "region_scores": {
        "shoulders_width": 0.1, "chest_depth": 0.0, "waist_circ": -0.2,
        "hips_width": 0.3, "glutes_projection": 0.2,
    },
    "flags": {"clothes_baggy": False},
    "confidence": {"semantic": 0.8},
    "pearFigure": 0.5,
    "emaciated": -1.0,
    "bodybuilderSize": 0.2,
}

MASCULINE_IDS = ["MAS-NOR-REC-001", "MAS-SUR-TRI-002", "MAS-OBE-POM-003", "MAS-NOR-TRI-004"]


def _refine_body(**overrides):
    body = {
        "scan_id": "scan-42",
        "user_id": USER_ID,
        "resolvedGender": "masculine",
        "photos": [FRONT],
        "blend_shape_params": {"pearFigure": 0.3, "bodybuilderSize": 0.8, "breastsSmall": 0.6, "superBreast": -0.2},
        "blend_limb_masses": {"armMass": 1.0},
        "selected_archetype_ids": MASCULINE_IDS,
    }
    body.update(overrides)
    return body


def _refine_reply(**overrides):
    reply = {
        "final_shape_params": {
            "pregnant": 1.5, "superBreast": 0.25, "breastsSmall": 1.3,
            "bodybuilderSize": 2.5, "pearFigure": 0.3, "fooKey": 1.0,
        },
        "final_limb_masses": {"armMass": 1.1},
        "ai_confidence": 0.7,
        "refinement_notes": ["raised muscularity"],
        "out_of_range_count": 0,
    }
    reply.update(overrides)
    return json.dumps(reply)


def _token(subject, secret="test-secret"):
    return jwt.encode({"sub": subject, "aud": "authenticated"}, secret, algorithm="HS256")


# ===========================================================================
# Class 1: Transport behaviour
# ===========================================================================

class TestTransport:

    @pytest.mark.parametrize("path", [
        "/api/v1/scan-estimate", "/api/v1/scan-semantic", "/api/v1/scan-match",
        "/api/v1/scan-refine-morphs", "/api/v1/scan-commit", "/api/v1/generate-morph-insights",
    ])
    def test_preflight_ok(self, client, path):
        response = client.options(path)
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_get_not_allowed(self, client):
        response = client.get("/api/v1/scan-estimate")
        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}

    def test_invalid_body_is_400(self, client):
        response = client.post("/api/v1/scan-estimate", json={"user_id": USER_ID, "photos": [FRONT]})
        assert response.status_code == 400
        assert "user_declared_height_cm" in response.json()["error"]

    def test_request_id_header(self, client):
        response = client.get("/health")
        assert response.headers.get("X-Request-ID")

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "active"
        assert body["environment"] == "test"


# ===========================================================================
# Class 2: Estimate
# ===========================================================================

class TestEstimate:

    def test_vision_success(self, client, fake_llm):
        fake_llm.queue(json.dumps(VISION_REPLY))
        response = client.post("/api/v1/scan-estimate", json=_estimate_body())
        assert response.status_code == 200
        body = response.json()
        extracted = body["extracted_data"]
        assert extracted["fallback_used"] is False
        assert extracted["estimated_bmi"] == 22.49
        assert extracted["raw_measurements"]["hips_cm"] == 98
        assert extracted["pixel_per_cm"] == 4.5
        assert extracted["processing_confidence"] == 0.85
        assert extracted["bmi_validation"]["flags"] == []
        assert body["resolved_gender"] == "feminine"
        assert body["photos_metadata"][0]["view"] == "front"
        assert body["diagnostics"]["photo_quality"]["front"]["pose_quality"] == 0.9
        assert fake_llm.calls[0]["image_urls"] == [FRONT["url"], PROFILE["url"]]

    @pytest.mark.parametrize("quality", ["good", 0.8, ["pose_quality", 0.9], None])
    def test_non_dict_quality_assessment_tolerated(self, client, fake_llm, quality):
        fake_llm.queue(json.dumps(dict(VISION_REPLY, quality_assessment=quality)))
        response = client.post("/api/v1/scan-estimate", json=_estimate_body())
        assert response.status_code == 200
        body = response.json()
        assert body["extracted_data"]["fallback_used"] is False
        assert body["diagnostics"]["photo_quality"]["front"]["pose_quality"] == DEFAULT_POSE_QUALITY

    def test_fallback_on_upstream_failure(self, client, fake_llm):
        fake_llm.queue(UpstreamAIError(kind="timeout", user_message="Délai d'analyse IA dépassé.", detail="timed out"))
        response = client.post("/api/v1/scan-estimate", json=_estimate_body())
        assert response.status_code == 200
        extracted = response.json()["extracted_data"]
        assert extracted["fallback_used"] is True
        assert extracted["fallback_reason"] == "openai_timeout_error"
        assert extracted["scale_method"] == "user_height_fallback"
        assert extracted["processing_confidence"] == 0.4
        assert extracted["raw_measurements"]["hips_cm"] >= extracted["raw_measurements"]["waist_cm"] + 5

        metrics = client.get("/metrics").json()
        assert metrics["fallbacks_by_strategy"] == {"default_archetype": 1}

    def test_fallback_on_unparseable_reply(self, client, fake_llm):
        fake_llm.queue("Sorry, I can't see anyone in this picture.")
        response = client.post("/api/v1/scan-estimate", json=_estimate_body())
        assert response.json()["extracted_data"]["fallback_reason"] == "openai_format_error"

    def test_no_photo_rejected(self, client, fake_llm):
        response = client.post("/api/v1/scan-estimate", json=_estimate_body(photos=[]))
        assert response.status_code == 400
        assert response.json() == {"error": "At least one photo (front or profile) is required"}
        assert fake_llm.calls == []

    def test_resolved_gender_override(self, client, fake_llm):
        fake_llm.queue(json.dumps(VISION_REPLY))
        response = client.post("/api/v1/scan-estimate", json=_estimate_body(resolvedGender="male"))
        assert response.json()["resolved_gender"] == "masculine"


# ===========================================================================
# Class 3: Semantic and match
# ===========================================================================

class TestSemanticAndMatch:

    def _semantic_body(self, **overrides):
        body = {
            "user_id": USER_ID,
            "photos": [FRONT, PROFILE],
            "extracted_data": {"raw_measurements": {"height_cm": 170, "weight_kg": 65}, "estimated_bmi": 22.49},
            "user_declared_gender": "feminine",
        }
        body.update(overrides)
        return body

    def test_semantic_profile(self, client, fake_llm):
        fake_llm.queue(json.dumps(SEMANTIC_REPLY))
        response = client.post("/api/v1/scan-semantic", json=self._semantic_body())
        assert response.status_code == 200
        body = response.json()
        assert body["semantic_profile"]["obesity"] == "Non obèse"
        assert body["semantic_profile"]["level"] == "Normal"
        assert body["semantic_profile"]["muscularity"] == "Normal"
        assert body["semantic_confidence"] == 0.8
        assert body["raw_semantic_labels"]["morphotype"] == "REC"

    def test_semantic_requires_measurements(self, client, fake_llm):
        response = client.post("/api/v1/scan-semantic", json=self._semantic_body(extracted_data={}))
        assert response.status_code == 400
        assert "height_cm" in response.json()["error"]

    def test_semantic_upstream_failure_is_502(self, client, fake_llm):
        fake_llm.queue(UpstreamAIError(kind="rate_limit", user_message="Nos serveurs IA sont très sollicités.", status_code=429))
        response = client.post("/api/v1/scan-semantic", json=self._semantic_body())
        assert response.status_code == 502
        body = response.json()
        assert body["kind"] == "rate_limit"
        assert body["error"] == "Nos serveurs IA sont très sollicités."
        assert "traceId" in body

    def test_semantic_invalid_reply_is_500(self, client, fake_llm):
        reply = dict(SEMANTIC_REPLY, adiposity_level=4)
        fake_llm.queue(json.dumps(reply))
        response = client.post("/api/v1/scan-semantic", json=self._semantic_body())
        assert response.status_code == 500
        assert "adiposity_level" in response.json()["error"]

    def test_match(self, client):
        body = {
            "user_id": USER_ID,
            "extracted_data": {"estimated_bmi": 27},
            "semantic_profile": {"obesity": "Surpoids", "muscularity": "Normal", "level": "Surpoids", "morphotype": "POI"},
            "user_declared_gender": "female",
        }
        response = client.post("/api/v1/scan-match", json=body)
        assert response.status_code == 200
        result = response.json()
        assert result["resolved_gender"] == "feminine"
        assert result["selected_archetypes"][0]["id"] == "FEM-SUR-POI-002"
        assert len(result["selected_archetypes"]) == 5
        assert result["db_bounds"]["shape_params"]["pregnant"] == {"min": 0.0, "max": 1.2}

    def test_match_k_out_of_range(self, client):
        body = {"user_id": USER_ID, "matching_config": {"k": 0}}
        assert client.post("/api/v1/scan-match", json=body).status_code == 400

    def test_match_without_archetypes_is_503(self, client, fake_repository):
        fake_repository.rows = []
        response = client.post("/api/v1/scan-match", json={"user_id": USER_ID})
        assert response.status_code == 503


# ===========================================================================
# Class 4: Refine
# ===========================================================================

class TestRefine:

    def test_masculine_constraints_enforced(self, client, fake_llm):
        fake_llm.queue(_refine_reply())
        response = client.post("/api/v1/scan-refine-morphs", json=_refine_body())
        assert response.status_code == 200
        body = response.json()
        shape = body["final_shape_params"]
        assert shape["pregnant"] == 0.0
        assert shape["superBreast"] == 0.0
        assert shape["breastsSmall"] == 1.0
        assert shape["bodybuilderSize"] == 1.5
        assert "fooKey" not in shape
        violations = body["violations"]
        assert violations["out_of_range_count"] == 4
        assert violations["ai_reported_out_of_range_count"] == 0
        assert violations["extra_keys_removed"] == ["fooKey"]
        assert body["ai_refine"] is True
        assert body["scan_id"] == "scan-42"
        assert body["mapping_version"] == "v1.0"
        assert body["k5_envelope"]["envelope_metadata"]["archetypes_used"] == MASCULINE_IDS

    def test_prompt_carries_envelope(self, client, fake_llm):
        fake_llm.queue(_refine_reply())
        client.post("/api/v1/scan-refine-morphs", json=_refine_body())
        prompt = fake_llm.calls[0]["prompt"]
        assert "GENDER MASCULINE CONSTRAINTS:" in prompt
        assert "- bodybuilderSize: [0.100, 1.500]" in prompt

    def test_client_envelope_reclipped(self, client, fake_llm):
        fake_llm.queue(_refine_reply())
        envelope = {
            "shape_params_envelope": {"bodybuilderSize": {"min": 0.2, "max": 0.5}},
            "limb_masses_envelope": {},
        }
        response = client.post("/api/v1/scan-refine-morphs", json=_refine_body(k5_envelope=envelope))
        assert response.json()["final_shape_params"]["bodybuilderSize"] == 0.5

    def test_envelope_ranked_when_no_selection(self, client, fake_llm):
        fake_llm.queue(_refine_reply(final_shape_params={"bigHips": 0.7}))
        body = _refine_body(
            resolvedGender="feminine",
            selected_archetype_ids=[],
            vision_classification={"obesity": "Surpoids", "muscularity": "Normal", "level": "Surpoids", "morphotype": "POI"},
            user_measurements={"estimated_bmi": 27},
        )
        response = client.post("/api/v1/scan-refine-morphs", json=body)
        assert response.status_code == 200
        used = response.json()["k5_envelope"]["envelope_metadata"]["archetypes_used"]
        assert used[0] == "FEM-SUR-POI-002"
        assert "FEM-OBE-OVA-006" not in used

    def test_invalid_reply_is_500(self, client, fake_llm):
        fake_llm.queue(json.dumps({"final_shape_params": {"pearFigure": 0.2}}))
        response = client.post("/api/v1/scan-refine-morphs", json=_refine_body())
        assert response.status_code == 500
        assert "final_limb_masses" in response.json()["error"]

    def test_no_photo_rejected(self, client, fake_llm):
        response = client.post("/api/v1/scan-refine-morphs", json=_refine_body(photos=[]))
        assert response.status_code == 400
        assert response.json() == {"error": "At least one photo is required for refinement"}


# ===========================================================================
# Class 5: Commit and token checks
# ===========================================================================

class TestCommit:

    def _commit_body(self, **overrides):
        body = {
            "user_id": USER_ID,
            "estimate_result": {"extracted_data": {"estimated_bmi": 22.49}},
            "semantic_result": {"semantic_profile": {"obesity": "Non obèse"}},
            "match_result": {"selected_archetypes": []},
            "refine_result": {"ai_refine": True},
            "final_shape_params": {"pearFigure": 0.3},
            "final_limb_masses": {"armMass": 1.1},
            "skin_tone": {"r": 198, "g": 150, "b": 120},
            "resolved_gender": "male",
            "avatar_version": "v2",
            "unknown_client_field": "ignored",
        }
        body.update(overrides)
        return body

    def test_commit_persists_scan_and_preferences(self, client, fake_store):
        fake_store.preferences[USER_ID] = {"face": {"jaw": 0.2}}
        response = client.post("/api/v1/scan-commit", json=self._commit_body())
        assert response.status_code == 200
        assert response.json() == {"success": True, "scan_id": "scan-1", "processing_complete": True}

        metrics = fake_store.inserted[0]["metrics"]
        assert metrics["resolved_gender"] == "masculine"
        assert metrics["mapping_version"] == "v1.0"
        assert metrics["stage_status"]["refine"] == "ready"
        assert "unknown_client_field" not in metrics

        prefs = fake_store.preferences[USER_ID]
        assert prefs["face"] == {"jaw": 0.2}
        assert prefs["avatar_version"] == "v2"
        assert "lastMorphSave" in prefs

        assert client.get("/metrics").json()["scans_committed"] == 1

    def test_mock_user_skips_writes(self, client, fake_store):
        response = client.post("/api/v1/scan-commit", json=self._commit_body(user_id=MOCK_USER_ID))
        body = response.json()
        assert body["mock_mode"] is True
        assert body["scan_id"].startswith("mock-scan-")
        assert fake_store.inserted == []

    def test_mock_user_written_in_production(self, client, fake_store, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        response = client.post("/api/v1/scan-commit", json=self._commit_body(user_id=MOCK_USER_ID))
        assert "mock_mode" not in response.json()
        assert len(fake_store.inserted) == 1

    def test_token_subject_mismatch_is_403(self, client, fake_store, monkeypatch):
        monkeypatch.setenv("SUPABASE_JWT_SECRET", "test-secret")
        response = client.post(
            "/api/v1/scan-commit",
            json=self._commit_body(),
            headers={"Authorization": f"Bearer {_token(OTHER_USER_ID)}"},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "user_id does not match token"}
        assert fake_store.inserted == []

    def test_invalid_token_is_401(self, client, monkeypatch):
        monkeypatch.setenv("SUPABASE_JWT_SECRET", "test-secret")
        response = client.post(
            "/api/v1/scan-commit",
            json=self._commit_body(),
            headers={"Authorization": f"Bearer {_token(USER_ID, secret='wrong-secret')}"},
        )
        assert response.status_code == 401

    def test_matching_token_accepted(self, client, monkeypatch):
        monkeypatch.setenv("SUPABASE_JWT_SECRET", "test-secret")
        response = client.post(
            "/api/v1/scan-commit",
            json=self._commit_body(),
            headers={"Authorization": f"Bearer {_token(USER_ID)}"},
        )
        assert response.status_code == 200


# ===========================================================================
# Class 6: Morph insights
# ===========================================================================

class TestInsights:

    PROFILE = {
        "user_id": USER_ID, "height_cm": 180, "weight_kg": 85,
        "target_weight_kg": 80, "objective": "fat_loss", "activity_level": "moderate",
    }

    def test_insights_from_request_scan(self, client):
        body = {
            "user_profile": self.PROFILE,
            "scan_data": {"final_shape_params": {"bodybuilderSize": 0.6}, "skin_tone": {"hex": "#C69678"}},
        }
        response = client.post("/api/v1/generate-morph-insights", json=body)
        assert response.status_code == 200
        payload = response.json()
        ids = [i["id"] for i in payload["insights"]]
        assert ids == ["muscle-development", "bmi-optimization", "goal-alignment", "activity-analysis", "skin-tone-analysis"]
        assert payload["summary"]["recommendations_count"] == 2
        assert payload["metadata"]["ai_model"] == "analytical_v1.0"

    def test_latest_committed_scan_used_when_omitted(self, client, fake_store):
        fake_store.last_metrics = {"final_shape_params": {"pearFigure": 0.6}, "final_limb_masses": {}}
        response = client.post("/api/v1/generate-morph-insights", json={"user_profile": {"user_id": USER_ID}})
        assert response.status_code == 200
        assert [i["id"] for i in response.json()["insights"]] == ["pear-shape"]

    def test_no_committed_scan_is_404(self, client):
        response = client.post("/api/v1/generate-morph-insights", json={"user_profile": {"user_id": USER_ID}})
        assert response.status_code == 404
        assert response.json() == {"error": "No committed scan found for this user"}

    def test_missing_profile_is_400(self, client):
        response = client.post("/api/v1/generate-morph-insights", json={"scan_data": {}})
        assert response.status_code == 400
        assert "user_profile" in response.json()["error"]

    def test_unknown_activity_level_is_400(self, client):
        profile = dict(self.PROFILE, activity_level="extreme")
        response = client.post("/api/v1/generate-morph-insights", json={"user_profile": profile, "scan_data": {}})
        assert response.status_code == 400

    def test_token_subject_must_match_profile(self, client, monkeypatch):
        monkeypatch.setenv("SUPABASE_JWT_SECRET", "test-secret")
        response = client.post(
            "/api/v1/generate-morph-insights",
            json={"user_profile": self.PROFILE, "scan_data": {}},
            headers={"Authorization": f"Bearer {_token(OTHER_USER_ID)}"},
        )
        assert response.status_code == 403

class TestUnexpectedFailure:

    def test_unexpected_exception_envelope(self, client, monkeypatch):
        from twinforge.api import scan_routes

        def explode(rows, gender):
            raise ValueError("boom")

        monkeypatch.setattr(scan_routes, "compute_physiological_bounds", explode)
        response = client.post("/api/v1/scan-match", json={"user_id": USER_ID})
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Internal server error"
        assert body["details"] == "boom"
        assert body["traceId"]
        assert client.get("/metrics").json()["error_count_by_stage"] == {"match": 1}
