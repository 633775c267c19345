"""HTTP tests for the telephony webhooks and client routers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from callrouter.api.config import router as config_router
from callrouter.api.incidents import router as incidents_router
from callrouter.api.telephony import router as telephony_router
from callrouter.api.users import router as users_router
from callrouter.config import settings
from callrouter.database import get_session

SECRET = {"x-webhook-secret": "test-secret"}


def _as(user) -> dict[str, str]:
    return {"x-actor-id": str(user.id)}


@pytest.fixture
def api_app(session_factory, engine):
    app = FastAPI()
    app.include_router(telephony_router)
    app.include_router(incidents_router)
    app.include_router(config_router)
    app.include_router(users_router)
    app.state.engine = engine

    async def _get_session_override():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _get_session_override
    return app


@pytest.fixture
def client(api_app, monkeypatch):
    monkeypatch.setattr(settings, "webhook_shared_secret", "test-secret")
    monkeypatch.setattr(settings, "app_env", "development")
    return AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test")


async def _incoming(client, call_sid: str = "CA-1") -> int:
    resp = await client.post(
        "/api/telephony/incoming-call",
        headers=SECRET,
        json={"caller_id": "+15557654321", "call_sid": call_sid},
    )
    assert resp.status_code == 201
    return resp.json()["incident_id"]


class TestTelephonyWebhooks:
    @pytest.mark.asyncio
    async def test_requires_valid_secret(self, client, staff):
        async with client:
            missing = await client.post("/api/telephony/incoming-call", json={"caller_id": "+1555"})
            wrong = await client.post(
                "/api/telephony/incoming-call",
                headers={"x-webhook-secret": "nope"},
                json={"caller_id": "+1555"},
            )

        assert missing.status_code == 401
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejected_in_production(self, client, staff, monkeypatch):
        monkeypatch.setattr(settings, "webhook_shared_secret", "")
        monkeypatch.setattr(settings, "app_env", "production")

        async with client:
            resp = await client.post("/api/telephony/incoming-call", json={"caller_id": "+1555"})

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_unconfigured_secret_allowed_in_development(self, client, staff, monkeypatch):
        monkeypatch.setattr(settings, "webhook_shared_secret", "")

        async with client:
            resp = await client.post("/api/telephony/incoming-call", json={"caller_id": "+1555"})

        assert resp.status_code == 201

    @pytest.mark.asyncio
    async def test_provider_status_no_answer_escalates(self, client, staff, gateway):
        async with client:
            incident_id = await _incoming(client)
            resp = await client.post(
                "/api/telephony/attempt-result",
                headers=SECRET,
                json={
                    "incident_id": incident_id,
                    "phone": staff["primary"].phone,
                    "provider_status": "no-answer",
                },
            )

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "result": "missed", "advanced": True}
        assert gateway.rung_user_ids == [staff["primary"].id, staff["secondary"].id]

    @pytest.mark.asyncio
    async def test_unrecognised_result_is_rejected(self, client, staff):
        async with client:
            incident_id = await _incoming(client)
            unknown = await client.post(
                "/api/telephony/attempt-result",
                headers=SECRET,
                json={"incident_id": incident_id, "user_id": staff["primary"].id, "provider_status": "ringing"},
            )
            no_callee = await client.post(
                "/api/telephony/attempt-result",
                headers=SECRET,
                json={"incident_id": incident_id, "result": "missed"},
            )

        assert unknown.status_code == 400
        assert no_callee.status_code == 422

    @pytest.mark.asyncio
    async def test_answered_and_completed(self, client, staff):
        async with client:
            incident_id = await _incoming(client)
            answered = await client.post(
                "/api/telephony/answered",
                headers=SECRET,
                json={"incident_id": incident_id, "user_id": staff["primary"].id},
            )
            completed = await client.post(
                "/api/telephony/completed",
                headers=SECRET,
                json={"incident_id": incident_id, "call_sid": "CA-1", "duration": 63},
            )

        assert answered.status_code == 200
        assert answered.json()["routing_state"] == "awaiting_claim"
        assert answered.json()["assigned_user_id"] == staff["primary"].id
        assert completed.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_incident_is_404(self, client, staff):
        async with client:
            resp = await client.post(
                "/api/telephony/answered",
                headers=SECRET,
                json={"incident_id": 999, "user_id": staff["primary"].id},
            )

        assert resp.status_code == 404


class TestIncidentRoutes:
    @pytest.mark.asyncio
    async def test_actor_header_is_required(self, client, staff):
        async with client:
            missing = await client.get("/api/incidents/mine")
            unknown = await client.get("/api/incidents/mine", headers={"x-actor-id": "4242"})

        assert missing.status_code == 401
        assert unknown.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_only_routes(self, client, staff):
        async with client:
            incident_id = await _incoming(client)
            as_tech = await client.get("/api/incidents/open", headers=_as(staff["primary"]))
            as_admin = await client.get("/api/incidents/open", headers=_as(staff["admin"]))
            escalate = await client.post(
                f"/api/incidents/{incident_id}/escalate", headers=_as(staff["primary"])
            )

        assert as_tech.status_code == 403
        assert escalate.status_code == 403
        assert as_admin.status_code == 200
        assert [i["id"] for i in as_admin.json()] == [incident_id]

    @pytest.mark.asyncio
    async def test_accept_then_details(self, client, staff):
        primary = staff["primary"]
        async with client:
            incident_id = await _incoming(client)
            accepted = await client.post(f"/api/incidents/{incident_id}/accept", headers=_as(primary))
            details = await client.get(f"/api/incidents/{incident_id}", headers=_as(primary))
            mine = await client.get("/api/incidents/mine", headers=_as(primary))

        assert accepted.status_code == 200
        assert accepted.json()["routing_state"] == "assigned"
        body = details.json()
        assert body["incident"]["assigned_user_id"] == primary.id
        assert body["assigned_user"]["name"] == "Pat"
        assert [a["target_user_id"] for a in body["call_attempts"]] == [primary.id]
        assert "incident_accepted" in [e["type"] for e in body["events"]]
        assert [i["id"] for i in mine.json()] == [incident_id]

    @pytest.mark.asyncio
    async def test_decline_moves_to_next_person(self, client, staff, gateway):
        async with client:
            incident_id = await _incoming(client)
            resp = await client.post(
                f"/api/incidents/{incident_id}/decline",
                headers=_as(staff["primary"]),
                json={"reason": "already_on_call"},
            )

        assert resp.status_code == 200
        assert gateway.rung_user_ids[-1] == staff["secondary"].id

    @pytest.mark.asyncio
    async def test_close_twice_conflicts(self, client, staff):
        admin = staff["admin"]
        async with client:
            incident_id = await _incoming(client)
            first = await client.post(
                f"/api/incidents/{incident_id}/close",
                headers=_as(admin),
                json={"outcome": "nuisance", "outcome_notes": "kids"},
            )
            second = await client.post(
                f"/api/incidents/{incident_id}/close",
                headers=_as(admin),
                json={"outcome": "other"},
            )

        assert first.status_code == 200
        assert first.json()["status"] == "resolved"
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_status_regression_conflicts(self, client, staff):
        tech = staff["primary"]
        async with client:
            incident_id = await _incoming(client)
            forward = await client.post(
                f"/api/incidents/{incident_id}/status", headers=_as(tech), json={"status": "on_site"}
            )
            backward = await client.post(
                f"/api/incidents/{incident_id}/status", headers=_as(tech), json={"status": "en_route"}
            )
            invalid = await client.post(
                f"/api/incidents/{incident_id}/status", headers=_as(tech), json={"status": "teleported"}
            )

        assert forward.status_code == 200
        assert backward.status_code == 409
        assert invalid.status_code == 422

    @pytest.mark.asyncio
    async def test_admin_assign_and_unclaimed(self, client, staff):
        admin = staff["admin"]
        async with client:
            incident_id = await _incoming(client)
            unclaimed = await client.get("/api/incidents/unclaimed", headers=_as(admin))
            assigned = await client.post(
                f"/api/incidents/{incident_id}/assign",
                headers=_as(admin),
                json={"user_id": staff["secondary"].id},
            )
            missing_user = await client.post(
                f"/api/incidents/{incident_id}/assign",
                headers=_as(admin),
                json={"user_id": 4242},
            )
            after = await client.get("/api/incidents/unclaimed", headers=_as(admin))

        assert [i["id"] for i in unclaimed.json()] == [incident_id]
        assert assigned.json()["assigned_user_id"] == staff["secondary"].id
        assert missing_user.status_code == 404
        assert after.json() == []

    @pytest.mark.asyncio
    async def test_unknown_incident_details_is_404(self, client, staff):
        async with client:
            resp = await client.get("/api/incidents/999", headers=_as(staff["admin"]))

        assert resp.status_code == 404


class TestConfigRoutes:
    @pytest.mark.asyncio
    async def test_ring_duration_is_admin_only_and_bounded(self, client, staff):
        async with client:
            as_tech = await client.put(
                "/api/config/ring-duration", headers=_as(staff["primary"]), json={"seconds": 20}
            )
            too_long = await client.put(
                "/api/config/ring-duration", headers=_as(staff["admin"]), json={"seconds": 90}
            )
            ok = await client.put("/api/config/ring-duration", headers=_as(staff["admin"]), json={"seconds": 20})
            read = await client.get("/api/config/ring-duration", headers=_as(staff["primary"]))

        assert as_tech.status_code == 403
        assert too_long.status_code == 422
        assert ok.json() == {"seconds": 20}
        assert read.json() == {"seconds": 20}

    @pytest.mark.asyncio
    async def test_ladder_updates_validate_step_names(self, client, staff):
        admin = _as(staff["admin"])
        async with client:
            bad = await client.put("/api/config/ladders/after-hours", headers=admin, json={"steps": ["pager"]})
            empty = await client.put("/api/config/ladders/after-hours", headers=admin, json={"steps": []})
            good = await client.put(
                "/api/config/ladders/after-hours", headers=admin, json={"steps": ["manager", "rotating_pool"]}
            )
            read = await client.get("/api/config/ladders/after-hours", headers=admin)
            business = await client.get("/api/config/ladders/business-hours", headers=admin)

        assert bad.status_code == 422
        assert empty.status_code == 422
        assert good.status_code == 200
        assert read.json() == {"steps": ["manager", "rotating_pool"]}
        assert business.json()["steps"][0] == "primary_oncall"

    @pytest.mark.asyncio
    async def test_business_hours_round_trip(self, client, staff):
        admin = _as(staff["admin"])
        window = {
            "days": [1, 2, 3, 4, 5],
            "start_hour": 7,
            "start_minute": 30,
            "end_hour": 18,
            "end_minute": 0,
            "timezone": "America/Chicago",
        }
        async with client:
            put = await client.put("/api/config/business-hours", headers=admin, json=window)
            get = await client.get("/api/config/business-hours", headers=admin)
            bad_tz = await client.put(
                "/api/config/business-hours", headers=admin, json={**window, "timezone": "Nowhere/Land"}
            )

        assert put.status_code == 200
        assert get.json() == window
        assert bad_tz.status_code == 422


class TestUserRoutes:
    @pytest.mark.asyncio
    async def test_me_and_availability(self, client, engine, staff, gateway):
        primary = staff["primary"]
        async with client:
            me = await client.get("/api/users/me", headers=_as(primary))
            off = await client.put(
                "/api/users/me/availability", headers=_as(primary), json={"available": False}
            )
            await _incoming(client)

        assert me.json()["id"] == primary.id
        assert off.json()["available"] is False
        # An unavailable primary is skipped; the secondary is rung first.
        assert gateway.rung_user_ids == [staff["secondary"].id]
