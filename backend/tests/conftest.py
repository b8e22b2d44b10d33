"""
conftest.py — Shared pytest fixtures for the TwinForge backend test suite.

No database or network fixtures are defined here. Engines are exercised as
pure functions; route tests swap the archetype repository and scan store for
in-memory fakes through FastAPI dependency overrides and patch the LLM client.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``twinforge.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import copy
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any twinforge imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

# Rate limiting reads these when the app module is imported
os.environ["RATE_LIMIT_PER_MINUTE"] = "0"
os.environ["SCAN_RATE_LIMIT_PER_MINUTE"] = "0"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SUPABASE_JWT_SECRET", None)

from twinforge.services.gender import normalize_gender  # noqa: E402


# ---------------------------------------------------------------------------
# Archetype rows (shape of MorphArchetype.as_dict())
# ---------------------------------------------------------------------------

FEMININE_ARCHETYPES = [
    {
        "id": "FEM-NOR-REC-001", "name": "Normale rectangle", "gender": "feminine", "gender_code": "FEM",
        "level": "Normal", "obesity": "Non obèse", "muscularity": "Normal", "morphotype": "REC",
        "bmi_range": [18.5, 25],
        "morph_values": {
            "pearFigure": 0.2, "emaciated": -0.2, "bodybuilderSize": 0.0, "bigHips": 0.3,
            "assLarge": 0.1, "narrowWaist": 0.4, "superBreast": 0.3, "breastsSmall": 0.0, "pregnant": 0.0,
        },
        "limb_masses": {"armMass": 1.0, "thighMass": 1.05, "calfMass": 1.0, "torsoMass": 1.0, "gate": 1.0},
    },
    {
        "id": "FEM-SUR-POI-002", "name": "Surpoids poire", "gender": "feminine", "gender_code": "FEM",
        "level": "Surpoids", "obesity": "Surpoids", "muscularity": "Normal", "morphotype": "POI",
        "bmi_range": [25, 30],
        "morph_values": {
            "pearFigure": 0.8, "emaciated": -0.5, "bigHips": 0.9, "assLarge": 0.6,
            "narrowWaist": 0.1, "superBreast": 0.6, "pregnant": 0.3,
        },
        "limb_masses": {"armMass": 1.1, "thighMass": 1.15, "calfMass": 1.05, "torsoMass": 1.1, "gate": 1.0},
    },
    {
        "id": "FEM-OBE-POM-003", "name": "Obèse pomme", "gender": "feminine", "gender_code": "FEM",
        "level": "Obèse", "obesity": "Obèse", "muscularity": "Normal", "morphotype": "POM",
        "bmi_range": [30, 40],
        "morph_values": {
            "pearFigure": 1.5, "emaciated": -0.8, "bigHips": 1.2, "assLarge": 1.0,
            "superBreast": 0.9, "pregnant": 0.8,
        },
        "limb_masses": {"armMass": 1.25, "thighMass": 1.3, "calfMass": 1.15, "torsoMass": 1.3, "gate": 1.0},
    },
    {
        "id": "FEM-MIN-SAB-004", "name": "Mince sablier musclée", "gender": "feminine", "gender_code": "FEM",
        "level": "Mince", "obesity": "Non obèse", "muscularity": "Musclée", "morphotype": "SAB",
        "bmi_range": [17, 22],
        "morph_values": {
            "pearFigure": -0.4, "emaciated": 0.2, "bodybuilderSize": 0.6, "bodybuilderDetails": 0.5,
            "narrowWaist": 0.6, "breastsSmall": 0.4,
        },
        "limb_masses": {"armMass": 1.05, "thighMass": 1.0, "calfMass": 1.0, "torsoMass": 0.95, "gate": 1.0},
    },
    {
        "id": "FEM-NOR-TRI-005", "name": "Athlétique triangle", "gender": "feminine", "gender_code": "FEM",
        "level": "Normal", "obesity": "Non obèse", "muscularity": "Athlétique", "morphotype": "TRI",
        "bmi_range": [20, 26],
        "morph_values": {
            "pearFigure": 0.0, "emaciated": 0.0, "bodybuilderSize": 1.0, "bodybuilderDetails": 0.9,
            "narrowWaist": 0.3,
        },
        "limb_masses": {"armMass": 1.15, "thighMass": 1.1, "calfMass": 1.1, "torsoMass": 1.05, "gate": 1.0},
    },
    {
        "id": "FEM-OBE-OVA-006", "name": "Obèse ovale", "gender": "feminine", "gender_code": "FEM",
        "level": "Obèse", "obesity": "Obésité morbide", "muscularity": "Moins musclée", "morphotype": "OVA",
        "bmi_range": [35, 50],
        "morph_values": {
            "pearFigure": 2.0, "emaciated": -1.0, "bigHips": 1.5, "assLarge": 1.2,
            "superBreast": 1.1, "pregnant": 1.2, "bodybuilderSize": -0.5,
        },
        "limb_masses": {"armMass": 1.4, "thighMass": 1.45, "calfMass": 1.25, "torsoMass": 1.45, "gate": 1.0},
    },
]

# No masculine archetype carries pregnant / nipples / animeProportion
MASCULINE_ARCHETYPES = [
    {
        "id": "MAS-NOR-REC-001", "name": "Normal rectangle", "gender": "masculine", "gender_code": "MAS",
        "level": "Normal", "obesity": "Non obèse", "muscularity": "Normal", "morphotype": "REC",
        "bmi_range": [18.5, 25],
        "morph_values": {
            "pearFigure": 0.1, "emaciated": -0.1, "bodybuilderSize": 0.2, "breastsSmall": 0.5,
            "superBreast": -0.3,
        },
        "limb_masses": {
            "armMass": 1.0, "forearmMass": 1.0, "thighMass": 1.0, "calfMass": 1.0,
            "torsoMass": 1.05, "gate": 1.0,
        },
    },
    {
        "id": "MAS-SUR-TRI-002", "name": "Surpoids musclé", "gender": "masculine", "gender_code": "MAS",
        "level": "Surpoids", "obesity": "Surpoids", "muscularity": "Musclé", "morphotype": "TRI",
        "bmi_range": [25, 30],
        "morph_values": {
            "pearFigure": 0.5, "emaciated": -0.4, "bodybuilderSize": 0.9, "bodybuilderDetails": 0.7,
            "breastsSmall": 1.4, "superBreast": 0.3,
        },
        "limb_masses": {
            "armMass": 1.2, "forearmMass": 1.1, "thighMass": 1.15, "calfMass": 1.1,
            "torsoMass": 1.2, "gate": 1.0,
        },
    },
    {
        "id": "MAS-OBE-POM-003", "name": "Obèse pomme", "gender": "masculine", "gender_code": "MAS",
        "level": "Obèse", "obesity": "Obèse", "muscularity": "Normal", "morphotype": "POM",
        "bmi_range": [30, 40],
        "morph_values": {
            "pearFigure": 1.4, "emaciated": -0.7, "bodybuilderSize": 0.1, "breastsSmall": 1.0,
            "superBreast": 0.1,
        },
        "limb_masses": {
            "armMass": 1.3, "forearmMass": 1.2, "thighMass": 1.3, "calfMass": 1.2,
            "torsoMass": 1.4, "gate": 1.0,
        },
    },
    {
        "id": "MAS-NOR-TRI-004", "name": "Athlétique", "gender": "masculine", "gender_code": "MAS",
        "level": "Normal", "obesity": "Non obèse", "muscularity": "Athlétique", "morphotype": "TRI",
        "bmi_range": [21, 27],
        "morph_values": {
            "pearFigure": -0.2, "emaciated": 0.0, "bodybuilderSize": 1.5, "bodybuilderDetails": 1.2,
            "breastsSmall": 0.2, "superBreast": -0.5,
        },
        "limb_masses": {
            "armMass": 1.3, "forearmMass": 1.2, "thighMass": 1.2, "calfMass": 1.15,
            "torsoMass": 1.25, "gate": 1.0,
        },
    },
]


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------

class FakeArchetypeRepository:
    """Same interface as ArchetypeRepository, backed by a list of rows."""

    def __init__(self, rows, fail=False):
        self.rows = copy.deepcopy(rows)
        self.fail = fail

    def _check(self):
        if self.fail:
            raise RuntimeError("archetype table unavailable")

    async def list_for_gender(self, gender):
        self._check()
        gender = normalize_gender(gender) or gender
        return [r for r in self.rows if r["gender"] == gender]

    async def fetch_by_ids(self, ids):
        self._check()
        by_id = {r["id"]: r for r in self.rows}
        return [by_id[i] for i in ids if i in by_id]

    async def valid_values_for(self, gender):
        self._check()
        gender = normalize_gender(gender) or gender
        values = {name: [] for name in ("obesity", "muscularity", "level", "morphotype")}
        for row in self.rows:
            if row["gender"] != gender:
                continue
            for name in values:
                if row[name] and row[name] not in values[name]:
                    values[name].append(row[name])
        return values

    async def default_archetype(self, gender):
        self._check()
        gender = normalize_gender(gender) or gender
        for row in self.rows:
            if row["gender"] == gender and row["level"] == "Normal" and row["obesity"] == "Non obèse":
                return row
        return None


class FakeScanStore:
    """Records inserts and keeps one preferences blob per user."""

    def __init__(self, last_metrics=None):
        self.last_metrics = last_metrics
        self.inserted = []
        self.preferences = {}

    async def last_scan_metrics(self, user_id):
        return self.last_metrics

    async def insert_body_scan(self, user_id, metrics, scan_id=None):
        scan_id = scan_id or f"scan-{len(self.inserted) + 1}"
        self.inserted.append({"id": scan_id, "user_id": user_id, "metrics": metrics})
        return scan_id

    async def upsert_profile_preferences(self, user_id, avatar):
        merged = {**self.preferences.get(user_id, {}), **avatar}
        self.preferences[user_id] = merged
        return merged


class FakeLLM:
    """Stand-in for llm_client.complete_with_vision: replies are consumed in order."""

    def __init__(self):
        self.replies = []
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    async def __call__(self, prompt, image_urls, temperature=0.1, max_tokens=2000, json_mode=True):
        self.calls.append({"prompt": prompt, "image_urls": list(image_urls), "temperature": temperature})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def feminine_archetypes():
    return copy.deepcopy(FEMININE_ARCHETYPES)


@pytest.fixture
def masculine_archetypes():
    return copy.deepcopy(MASCULINE_ARCHETYPES)


@pytest.fixture
def feminine_bounds(feminine_archetypes):
    from twinforge.services.bounds_lookup import compute_physiological_bounds
    return compute_physiological_bounds(feminine_archetypes, "feminine")


@pytest.fixture
def masculine_bounds(masculine_archetypes):
    from twinforge.services.bounds_lookup import compute_physiological_bounds
    return compute_physiological_bounds(masculine_archetypes, "masculine")


@pytest.fixture
def feminine_envelope(feminine_archetypes, feminine_bounds):
    """Envelope over the first five feminine archetypes (FEM-OBE-OVA-006 excluded)."""
    from twinforge.services.envelope_builder import build_envelope
    return build_envelope(feminine_archetypes, feminine_bounds)


@pytest.fixture
def masculine_envelope(masculine_archetypes, masculine_bounds):
    from twinforge.services.envelope_builder import build_envelope
    return build_envelope(masculine_archetypes, masculine_bounds)


@pytest.fixture
def fake_repository():
    return FakeArchetypeRepository(FEMININE_ARCHETYPES + MASCULINE_ARCHETYPES)


@pytest.fixture
def fake_store():
    return FakeScanStore()


@pytest.fixture
def fake_llm(monkeypatch):
    from twinforge.services import llm_client
    llm = FakeLLM()
    monkeypatch.setattr(llm_client, "complete_with_vision", llm)
    return llm


@pytest.fixture
def client(fake_repository, fake_store):
    """TestClient with the database-backed dependencies replaced by fakes."""
    from fastapi.testclient import TestClient
    from twinforge.main import app
    from twinforge.api.deps import get_archetype_repository, get_scan_store
    from twinforge.services.perf_monitor import tracker

    tracker.reset()
    app.dependency_overrides[get_archetype_repository] = lambda: fake_repository
    app.dependency_overrides[get_scan_store] = lambda: fake_store
    yield TestClient(app)
    app.dependency_overrides.clear()
