"""Tests for the dosewatch REST API.

Verifies the API contract (status codes, envelopes, error codes) for the
administration, co-sign, dose status and compliance endpoints, using the
in-memory MockPool behind the router dependency stubs.
"""

from __future__ import annotations

import uuid
from datetime import date

import httpx
import pytest

from dosewatch.api.app import create_app
from dosewatch.api.routers import administrations, doses

pytestmark = pytest.mark.unit


@pytest.fixture
def app(mock_pool):
    app = create_app(pool=mock_pool, run_sweeper=False)
    app.dependency_overrides[administrations._get_pool] = lambda: mock_pool
    app.dependency_overrides[doses._get_pool] = lambda: mock_pool
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


def _body(household, key: str = "api-1", **overrides) -> dict:
    body = {
        "regimen_id": str(household.regimen_id),
        "animal_id": str(household.animal_id),
        "caregiver_id": str(household.caregiver_id),
        "idempotency_key": key,
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# POST /api/administrations
# ---------------------------------------------------------------------------


class TestRecordEndpoint:
    async def test_fresh_record_is_201(self, client, household):
        resp = await client.post("/api/administrations", json=_body(household))

        assert resp.status_code == 201
        payload = resp.json()
        assert payload["meta"]["replayed"] is False
        administration = payload["data"]["administration"]
        assert administration["regimen_id"] == str(household.regimen_id)
        assert administration["idempotency_key"] == "api-1"
        assert administration["scheduled_for"] is not None
        assert payload["data"]["cosign_request"] is None

    async def test_replay_is_200_with_same_record(self, client, household, mock_pool):
        first = await client.post("/api/administrations", json=_body(household))
        second = await client.post("/api/administrations", json=_body(household))

        assert second.status_code == 200
        assert second.json()["meta"]["replayed"] is True
        assert (
            second.json()["data"]["administration"]["id"]
            == first.json()["data"]["administration"]["id"]
        )
        assert len(mock_pool.administrations) == 1

    async def test_bulk_record_and_replay(self, client, household, mock_pool):
        herd = [str(household.animal_id), str(mock_pool.seed_animal(household.household_id))]
        body = _body(household, "bulk-api", animal_ids=herd)
        del body["animal_id"]

        first = await client.post("/api/administrations", json=body)
        assert first.status_code == 201
        assert first.json()["meta"]["outcome"] == "succeeded"
        assert first.json()["data"]["summary"] == {"total": 2, "successful": 2, "failed": 0}

        second = await client.post("/api/administrations", json=body)
        assert second.status_code == 200
        assert second.json()["meta"]["replayed"] is True
        assert second.json()["data"]["summary"]["successful"] == 2
        assert len(mock_pool.administrations) == 2

    async def test_bulk_partial_failure(self, client, household):
        missing = str(uuid.uuid4())
        body = _body(household, "bulk-partial", animal_ids=[str(household.animal_id), missing])
        del body["animal_id"]

        resp = await client.post("/api/administrations", json=body)

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["outcome"] == "partial"
        assert data["failed"] == [
            {"animal_id": missing, "code": "not_found", "reason": f"Animal not found: {missing}"}
        ]

    async def test_animal_and_animal_ids_are_exclusive(self, client, household):
        body = _body(household, animal_ids=[str(household.animal_id)])
        resp = await client.post("/api/administrations", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    async def test_missing_key_is_422(self, client, household):
        body = _body(household)
        del body["idempotency_key"]
        resp = await client.post("/api/administrations", json=body)
        assert resp.status_code == 422

    async def test_unknown_regimen_is_404(self, client, household):
        resp = await client.post(
            "/api/administrations", json=_body(household, regimen_id=str(uuid.uuid4()))
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    async def test_discontinued_regimen_is_409(self, client, household, mock_pool):
        regimen_id = mock_pool.seed_regimen(household.animal_id, active=False)
        resp = await client.post(
            "/api/administrations", json=_body(household, regimen_id=str(regimen_id))
        )
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "regimen_discontinued"
        assert error["details"]["regimen_id"] == str(regimen_id)

    async def test_inventory_mismatch_is_409(self, client, household, mock_pool):
        item = mock_pool.seed_inventory(
            household.household_id, household.medication_id, expires_on=date(2020, 1, 1)
        )
        resp = await client.post(
            "/api/administrations", json=_body(household, inventory_source_id=str(item))
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["details"]["reasons"] == ["expired"]

        resp = await client.post(
            "/api/administrations",
            json=_body(
                household,
                inventory_source_id=str(item),
                allow_override=True,
                override_reason="vet approved",
            ),
        )
        assert resp.status_code == 201
        override = resp.json()["data"]["administration"]["inventory_override"]
        assert override["reason"] == "vet approved"


# ---------------------------------------------------------------------------
# Edit / undo / co-sign
# ---------------------------------------------------------------------------


class TestFollowUpEndpoints:
    async def _create(self, client, household, **overrides) -> dict:
        resp = await client.post("/api/administrations", json=_body(household, **overrides))
        assert resp.status_code == 201
        return resp.json()["data"]

    async def test_edit_notes(self, client, household):
        created = await self._create(client, household)
        resp = await client.patch(
            f"/api/administrations/{created['administration']['id']}",
            json={"caregiver_id": str(household.other_caregiver_id), "notes": "with food"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["notes"] == "with food"
        assert resp.json()["data"]["is_edited"] is True

    async def test_undo(self, client, household):
        created = await self._create(client, household)
        resp = await client.post(
            f"/api/administrations/{created['administration']['id']}/undo",
            json={"caregiver_id": str(household.caregiver_id)},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["is_deleted"] is True

    async def test_undo_unknown_is_404(self, client, household):
        resp = await client.post(
            f"/api/administrations/{uuid.uuid4()}/undo",
            json={"caregiver_id": str(household.caregiver_id)},
        )
        assert resp.status_code == 404

    async def test_malformed_id_is_422(self, client, household):
        resp = await client.post(
            "/api/administrations/not-a-uuid/undo",
            json={"caregiver_id": str(household.caregiver_id)},
        )
        assert resp.status_code == 422

    async def test_cosign_flow(self, client, household, mock_pool):
        regimen_id = mock_pool.seed_regimen(household.animal_id, high_risk=True)
        created = await self._create(client, household, regimen_id=str(regimen_id))
        assert created["cosign_request"]["state"] == "pending"
        administration_id = created["administration"]["id"]

        own = await client.post(
            f"/api/administrations/{administration_id}/cosign",
            json={"caregiver_id": str(household.caregiver_id)},
        )
        assert own.status_code == 400
        assert own.json()["error"]["code"] == "validation_error"

        confirmed = await client.post(
            f"/api/administrations/{administration_id}/cosign",
            json={"caregiver_id": str(household.other_caregiver_id)},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["cosign_pending"] is False
        assert confirmed.json()["data"]["cosigned_by"] == str(household.other_caregiver_id)

        late = await client.post(
            f"/api/administrations/{administration_id}/cosign",
            json={"caregiver_id": str(uuid.uuid4())},
        )
        assert late.status_code == 409
        assert late.json()["error"]["code"] == "stale_cosign"

    async def test_expire_endpoint(self, client):
        resp = await client.post("/api/cosign/expire")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"expired_count": 0, "administration_ids": []}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReadEndpoints:
    RANGE = {"start": "2025-03-03T00:00:00Z", "end": "2025-03-04T00:00:00Z"}

    async def test_list_doses(self, client, household):
        resp = await client.get(
            "/api/doses", params={"animal_id": str(household.animal_id), **self.RANGE}
        )
        assert resp.status_code == 200
        payload = resp.json()
        assert payload["meta"]["total"] == 2
        # Both doses of that day are long past their cutoff
        assert [d["status"] for d in payload["data"]] == ["missed", "missed"]

    async def test_doses_require_animal(self, client):
        resp = await client.get("/api/doses", params=self.RANGE)
        assert resp.status_code == 422

    async def test_compliance_for_animal(self, client, household):
        resp = await client.get(
            "/api/compliance", params={"animal_id": str(household.animal_id), **self.RANGE}
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["scheduled"] == 2
        assert data["missed"] == 2
        assert data["adherence_pct"] == 0.0

    async def test_compliance_scope_is_400(self, client, household):
        resp = await client.get(
            "/api/compliance",
            params={
                "animal_id": str(household.animal_id),
                "household_id": str(household.household_id),
                **self.RANGE,
            },
        )
        assert resp.status_code == 400

    async def test_backwards_range_is_400(self, client, household):
        resp = await client.get(
            "/api/doses",
            params={
                "animal_id": str(household.animal_id),
                "start": self.RANGE["end"],
                "end": self.RANGE["start"],
            },
        )
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Health / errors
# ---------------------------------------------------------------------------


async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "sweeper": None}


async def test_unhandled_errors_use_envelope(app, client, household):
    def _broken_pool():
        raise RuntimeError("pool exploded")

    app.dependency_overrides[administrations._get_pool] = _broken_pool
    resp = await client.post("/api/administrations", json=_body(household))
    assert resp.status_code == 500
    assert resp.json() == {
        "error": {"code": "internal_error", "message": "Internal server error", "details": None}
    }
