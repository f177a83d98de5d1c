"""Tests for the offer matrix sidecar FastAPI application.

Uses FastAPI TestClient over an InMemoryOfferBackend; the ``with`` block
runs the lifespan so the matrix is loaded before the first request.
"""

from unittest.mock import AsyncMock, patch
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient
from offer_matrix.api import create_app
from offer_matrix.backend import InMemoryOfferBackend
from offer_matrix.config import MatrixSettings
from offer_matrix.errors import PersistenceError
from offer_matrix.features import HIGH_TECH_EXAMS
from offer_matrix.models import OfferGroup, Program, ViewPreferences
from offer_matrix.prefs import decode_hidden, encode

BTA = "bta.pdf::BTA::Pamata"
ERGO = "ergo.pdf::ERGO::Optimāls"
DOCS = ["bta.pdf", "ergo.pdf", "broken.pdf"]

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _backend():
    backend = InMemoryOfferBackend("https://offers.example.com")
    backend.add_group(
        OfferGroup(
            source_file="bta.pdf",
            programs=[
                Program(
                    insurer="BTA",
                    program_code="Pamata",
                    premium_eur=310.0,
                    payment_method="monthly",
                    features={"MR": "v", "Homeopāts": "-"},
                )
            ],
        )
    )
    backend.add_group(
        OfferGroup(
            source_file="ergo.pdf",
            programs=[
                Program(
                    insurer="ERGO",
                    program_code="Optimāls",
                    premium_eur=295.0,
                    features={"Augsto tehnoloģiju izmeklējumi": "v"},
                )
            ],
        )
    )
    backend.add_group(OfferGroup(source_file="broken.pdf", status="error"))
    return backend


@pytest.fixture
def backend():
    return _backend()


@pytest.fixture
def client(backend):
    settings = MatrixSettings(dev_mode=True, _env_file=None)
    app = create_app(settings, backend, document_ids=DOCS)
    with TestClient(app) as c:
        yield c


def _url(identity):
    return f"/api/v1/matrix/columns/{quote(identity, safe='')}"


# ---------------------------------------------------------------------------
# Health / matrix
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["backend"] == "InMemoryOfferBackend"
        assert data["columns"] == 3
        assert data["polling"] is False
        assert data["dev_mode"] is True


class TestMatrix:
    def test_get_matrix(self, client):
        resp = client.get("/api/v1/matrix")
        assert resp.status_code == 200
        data = resp.json()
        assert data["order"] == [BTA, ERGO, "broken.pdf::error"]
        bta, ergo, broken = data["columns"]
        assert bta["cells"][HIGH_TECH_EXAMS] == "✓"
        assert ergo["cells"][HIGH_TECH_EXAMS] == "✓"
        assert bta["cells"]["Homeopāts"] == "—"
        assert bta["payment_method_label"] == "Cenrāža programma"
        assert bta["editable"] is True
        assert broken["editable"] is False
        assert broken["column"]["error"] == "Processing failed"
        assert data["failed_documents"] == {"broken.pdf": "Processing failed"}
        assert data["read_only"] is False

    def test_refresh_picks_up_backend_changes(self, client, backend):
        backend.add_group(
            OfferGroup(source_file="broken.pdf", programs=[Program(insurer="Seesam")])
        )
        resp = client.post("/api/v1/matrix/refresh")
        assert resp.status_code == 200
        assert "broken.pdf::Seesam::" in resp.json()["order"]
        assert resp.json()["failed_documents"] == {}


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------


class TestEdit:
    def test_edit_saved(self, client, backend):
        resp = client.patch(_url(BTA), json={"premium_eur": "1 234,56 €"})
        assert resp.status_code == 200
        assert resp.json() == {"outcome": "saved", "identity": BTA, "state": "clean"}
        matrix = client.get("/api/v1/matrix").json()
        assert matrix["columns"][0]["column"]["premium_eur"] == 1234.56

    def test_edit_noop(self, client):
        resp = client.patch(_url(BTA), json={"premium_eur": 310})
        assert resp.json()["outcome"] == "noop"

    def test_identity_change_returns_new_identity(self, client):
        resp = client.patch(_url(BTA), json={"program_code": "Plus"})
        assert resp.status_code == 200
        assert resp.json()["identity"] == "bta.pdf::BTA::Plus"
        assert client.get("/api/v1/matrix").json()["order"][0] == "bta.pdf::BTA::Plus"

    def test_invalid_amount(self, client):
        resp = client.patch(_url(BTA), json={"premium_eur": "abc"})
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["detail"] == "premium_eur"
        assert data["retryable"] is False

    def test_unknown_column(self, client):
        resp = client.patch(_url("nope.pdf::X::Y"), json={"premium_eur": 1})
        assert resp.status_code == 404
        assert resp.json()["code"] == "UNKNOWN_COLUMN"

    def test_error_column(self, client):
        resp = client.patch(_url("broken.pdf::error"), json={"premium_eur": 1})
        assert resp.status_code == 400

    def test_persistence_failure(self, client, backend):
        with patch.object(
            backend,
            "patch_offer",
            new_callable=AsyncMock,
            side_effect=PersistenceError("upstream down", status_code=503),
        ):
            resp = client.patch(_url(BTA), json={"premium_eur": 400})
        assert resp.status_code == 502
        data = resp.json()
        assert data["code"] == "PERSISTENCE_ERROR"
        assert data["retryable"] is True
        # Optimistic value still shown and marked pending
        column = client.get("/api/v1/matrix").json()["columns"][0]
        assert column["column"]["premium_eur"] == 400.0
        assert column["state"] == "pending"

    def test_delete(self, client):
        resp = client.delete(_url(ERGO))
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "saved"
        assert ERGO not in client.get("/api/v1/matrix").json()["order"]


# ---------------------------------------------------------------------------
# Order / visibility / preferences
# ---------------------------------------------------------------------------


class TestView:
    def test_move(self, client):
        resp = client.post("/api/v1/matrix/order/move", json={"from_key": ERGO, "to_key": BTA})
        assert resp.status_code == 200
        assert resp.json()["order"][:2] == [ERGO, BTA]

    def test_move_unknown(self, client):
        resp = client.post("/api/v1/matrix/order/move", json={"from_key": "x", "to_key": BTA})
        assert resp.status_code == 404

    def test_toggle_hidden(self, client):
        resp = client.post("/api/v1/matrix/hidden/toggle", json={"feature": "Homeopath"})
        data = resp.json()
        assert data["hidden"] == ["Homeopāts"]
        assert "Homeopāts" not in data["columns"][0]["cells"]

    def test_preferences_round_trip(self, client):
        client.post("/api/v1/matrix/order/move", json={"from_key": ERGO, "to_key": BTA})
        prefs = client.get("/api/v1/matrix/preferences").json()
        assert prefs["order"][:2] == [ERGO, BTA]
        assert prefs["token"]

        resp = client.put(
            "/api/v1/matrix/preferences", json={"order": [BTA], "hidden": ["Homeopāts"]}
        )
        assert resp.status_code == 200
        assert resp.json()["order"][0] == BTA
        assert resp.json()["hidden"] == ["Homeopāts"]

        # The earlier token restores the earlier order
        resp = client.put("/api/v1/matrix/preferences", json={"token": prefs["token"]})
        assert resp.json()["order"][:2] == [ERGO, BTA]
        assert resp.json()["hidden"] == []

    def test_bad_token(self, client):
        resp = client.put("/api/v1/matrix/preferences", json={"token": "%%%garbage%%%"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "DECODE_ERROR"


# ---------------------------------------------------------------------------
# Shares
# ---------------------------------------------------------------------------


class TestShares:
    def test_create_and_open_share(self, client):
        client.post("/api/v1/matrix/hidden/toggle", json={"feature": "Homeopāts"})
        resp = client.post("/api/v1/matrix/share", json={"title": "Acme"})
        assert resp.status_code == 200
        link = resp.json()
        assert link["url"].startswith("https://offers.example.com/share/")
        assert link["expires_at"] is not None
        hf = link["url"].split("?hf=")[1]
        assert decode_hidden(hf) == {"Homeopāts"}

        shared = client.get(f"/api/v1/matrix/share/{link['token']}", params={"hf": hf})
        assert shared.status_code == 200
        data = shared.json()
        assert data["read_only"] is True
        assert data["hidden"] == ["Homeopāts"]
        assert all(c["editable"] is False for c in data["columns"])
        assert set(data["order"]) == {BTA, ERGO}

    def test_insurer_only_share(self, client):
        resp = client.post("/api/v1/matrix/share", json={"insurer_only": "ERGO", "role": "insurer"})
        link = resp.json()
        assert link["title"] == "Confirmation – ERGO"
        shared = client.get(f"/api/v1/matrix/share/{link['token']}").json()
        assert shared["order"] == [ERGO]

    def test_unknown_share(self, client):
        resp = client.get("/api/v1/matrix/share/does-not-exist")
        assert resp.status_code == 404

    def test_negative_ttl_rejected(self, client):
        resp = client.post("/api/v1/matrix/share", json={"expires_in_hours": -1})
        assert resp.status_code == 422


class TestPreferenceToken:
    def test_token_matches_codec(self, client):
        data = client.get("/api/v1/matrix/preferences").json()
        assert data["token"] == encode(
            ViewPreferences(order=data["order"], hidden=frozenset(data["hidden"]))
        )
