"""End-to-end tests through the HTTP surface.

Flow covered: ticket request, ticket exchange, refresh rotation, access
token verification, consent listing and withdrawal, quota enforcement.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import ACCOUNT_PASSWORD, CLIENT_SECRET, FakeClock, seed_directory
from feblr_sso import app as app_module
from feblr_sso.service.runtime import get_runtime, reset_runtime_for_tests
from feblr_sso.storage.models import ACCOUNT_DISABLED


@pytest.fixture
def runtime():
    runtime = get_runtime()
    seed_directory(runtime.store, runtime.verifier)
    return runtime


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app)


def _ticket_body(**overrides):
    body = {
        "account_id": "a1",
        "password": ACCOUNT_PASSWORD,
        "application_id": "app1",
        "scope": ["read"],
    }
    body.update(overrides)
    return body


def _issue_ticket(client, **overrides):
    response = client.post("/v1/tickets", json=_ticket_body(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def _exchange(client, code, client_id="app1", client_secret=CLIENT_SECRET):
    return client.post(
        "/v1/tokens",
        json={"code": code, "client_id": client_id, "client_secret": client_secret},
    )


class TestTicketFlow:
    def test_ticket_then_exchange_then_verify(self, client):
        ticket = _issue_ticket(client)
        assert ticket["scope"] == ["read"]
        assert len(ticket["code"]) >= 43

        response = _exchange(client, ticket["code"])
        assert response.status_code == 200
        tokens = response.json()
        assert tokens["token_type"] == "bearer"
        assert tokens["scope"] == ["read"]
        assert tokens["expires_in"] == 1800

        verified = client.get(
            "/v1/tokens/verify",
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert verified.status_code == 200
        assert verified.json()["sub"] == "a1"
        assert verified.json()["app"] == "app1"
        assert verified.json()["scope"] == ["read"]

    def test_requested_scope_is_narrowed(self, client):
        # write is allowed for app1 but a1 only holds read
        ticket = _issue_ticket(client, scope=["read", "write"])
        assert ticket["scope"] == ["read"]

    def test_no_overlap_is_insufficient_scope(self, client):
        response = client.post("/v1/tickets", json=_ticket_body(scope=["write"]))
        assert response.status_code == 403
        assert response.json() == {
            "errno": "40300002",
            "errmsg": "requested scope is not permitted",
        }

    def test_wrong_password_and_unknown_account_look_the_same(self, client):
        wrong = client.post("/v1/tickets", json=_ticket_body(password="nope"))
        unknown = client.post("/v1/tickets", json=_ticket_body(account_id="ghost"))
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json() == {
            "errno": "40100001",
            "errmsg": "invalid credentials",
        }

    def test_disabled_account_is_forbidden(self, client, runtime):
        runtime.store.set_account_status("a1", ACCOUNT_DISABLED)
        response = client.post("/v1/tickets", json=_ticket_body())
        assert response.status_code == 403
        assert response.json()["errno"] == "40300001"

    def test_empty_scope_list_is_validation_error(self, client):
        response = client.post("/v1/tickets", json=_ticket_body(scope=[]))
        assert response.status_code == 400
        assert response.json()["field"] == "scope"

    def test_malformed_scope_name_is_validation_error(self, client):
        response = client.post("/v1/tickets", json=_ticket_body(scope=["read;drop"]))
        assert response.status_code == 400
        assert response.json() == {
            "errno": "40000000",
            "errmsg": "invalid parameter",
            "field": "scope",
        }

    def test_non_ascii_second_factor_digits_are_rejected(self, client, runtime):
        runtime.store.set_second_factor("a1", "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ")
        response = client.post(
            "/v1/tickets", json=_ticket_body(second_factor_code="١٢٣٤٥٦")
        )
        assert response.status_code == 401
        assert response.json()["errno"] == "40100003"

    def test_unknown_application_is_invalid_client(self, client):
        response = client.post("/v1/tickets", json=_ticket_body(application_id="nope"))
        assert response.status_code == 401
        assert response.json()["errno"] == "40100006"

    def test_preview_reports_application_and_scope(self, client, runtime):
        response = client.post("/v1/tickets/preview", json=_ticket_body(scope=["read", "write"]))
        assert response.status_code == 200
        assert response.json() == {
            "application_id": "app1",
            "application_name": "Notes",
            "redirect_uri": "https://notes.example.com/callback",
            "scope": ["read"],
        }
        assert runtime.store.list_authorizations("a1") == []

    def test_ticket_can_only_be_exchanged_once(self, client):
        ticket = _issue_ticket(client)
        assert _exchange(client, ticket["code"]).status_code == 200

        second = _exchange(client, ticket["code"])
        assert second.status_code == 404
        assert second.json() == {"errno": "40400001", "errmsg": "ticket not found"}

    def test_patch_exchange_variant(self, client):
        ticket = _issue_ticket(client)
        response = client.patch(
            f"/v1/tickets/{ticket['code']}",
            json={"client_id": "app1", "client_secret": CLIENT_SECRET},
        )
        assert response.status_code == 200
        assert response.json()["scope"] == ["read"]

    def test_exchange_by_other_application_is_rejected(self, client):
        ticket = _issue_ticket(client)
        response = _exchange(client, ticket["code"], "app2", "app2-client-secret")
        assert response.status_code == 403
        assert response.json()["errno"] == "40300003"

    def test_bad_client_secret(self, client):
        ticket = _issue_ticket(client)
        response = _exchange(client, ticket["code"], client_secret="wrong")
        assert response.status_code == 401
        assert response.json()["errno"] == "40100006"


class TestRefreshFlow:
    def _tokens(self, client):
        ticket = _issue_ticket(client)
        return _exchange(client, ticket["code"]).json()

    def test_refresh_rotates_and_old_token_dies(self, client):
        first = self._tokens(client)

        rotated = client.post("/v1/tokens/refresh", json={"refresh_token": first["refresh_token"]})
        assert rotated.status_code == 200
        assert rotated.json()["refresh_token"] != first["refresh_token"]
        assert rotated.json()["scope"] == ["read"]

        replay = client.post("/v1/tokens/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json() == {"errno": "40100004", "errmsg": "refresh token is invalid"}

    def test_revoke_then_refresh_fails(self, client):
        first = self._tokens(client)
        revoked = client.post("/v1/tokens/revoke", json={"refresh_token": first["refresh_token"]})
        assert revoked.status_code == 204
        response = client.post("/v1/tokens/refresh", json={"refresh_token": first["refresh_token"]})
        assert response.status_code == 401

    def test_verify_rejects_garbage_and_missing_token(self, client):
        garbage = client.get("/v1/tokens/verify", headers={"Authorization": "Bearer not.a.jwt"})
        assert garbage.status_code == 401
        assert garbage.json()["errno"] == "40100005"
        missing = client.get("/v1/tokens/verify")
        assert missing.status_code == 401
        assert missing.json()["errno"] == "40100005"


class TestAuthorizations:
    def test_grant_recorded_then_withdrawn(self, client):
        ticket = _issue_ticket(client)
        tokens = _exchange(client, ticket["code"]).json()
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        listed = client.get("/v1/authorizations", headers=headers)
        assert listed.status_code == 200
        assert [g["application_id"] for g in listed.json()] == ["app1"]
        assert listed.json()[0]["scope"] == ["read"]

        removed = client.delete("/v1/authorizations/app1", headers=headers)
        assert removed.status_code == 204
        assert client.get("/v1/authorizations", headers=headers).json() == []

        refresh = client.post("/v1/tokens/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_applications_only_see_and_withdraw_their_own_consent(self, client):
        app1_tokens = _exchange(client, _issue_ticket(client)["code"]).json()
        app2_ticket = _issue_ticket(client, application_id="app2")
        app2_tokens = _exchange(client, app2_ticket["code"], "app2", "app2-client-secret").json()
        app2_headers = {"Authorization": f"Bearer {app2_tokens['access_token']}"}

        listed = client.get("/v1/authorizations", headers=app2_headers)
        assert [g["application_id"] for g in listed.json()] == ["app2"]

        foreign = client.delete("/v1/authorizations/app1", headers=app2_headers)
        assert foreign.status_code == 403
        assert foreign.json()["errno"] == "40300003"

        # app1 keeps its consent and its refresh token
        refresh = client.post(
            "/v1/tokens/refresh", json={"refresh_token": app1_tokens["refresh_token"]}
        )
        assert refresh.status_code == 200
        app1_headers = {"Authorization": f"Bearer {refresh.json()['access_token']}"}
        assert [
            g["application_id"] for g in client.get("/v1/authorizations", headers=app1_headers).json()
        ] == ["app1"]


class TestQuota:
    @pytest.fixture
    def limited(self, monkeypatch):
        monkeypatch.setenv("QUOTA_ROUTE_LIMITS", '{"POST /v1/tickets": 3}')
        runtime = reset_runtime_for_tests()
        seed_directory(runtime.store, runtime.verifier)
        clock = FakeClock()
        runtime.quota._clock = clock
        return TestClient(app_module.app), clock

    def test_fourth_ticket_request_in_a_window_is_rejected(self, limited):
        client, clock = limited
        for expected_remaining in ("2", "1", "0"):
            response = client.post("/v1/tickets", json=_ticket_body())
            assert response.status_code == 201
            assert response.headers["X-RateLimit-Limit"] == "3"
            assert response.headers["X-RateLimit-Remaining"] == expected_remaining

        rejected = client.post("/v1/tickets", json=_ticket_body())
        assert rejected.status_code == 429
        assert rejected.json() == {"errno": "42900001", "errmsg": "reach quota limit"}
        assert 1 <= int(rejected.headers["Retry-After"]) <= 60

        clock.advance(60)
        assert client.post("/v1/tickets", json=_ticket_body()).status_code == 201

    def test_failed_attempts_count_against_the_quota(self, limited):
        client, _ = limited
        for _ in range(3):
            assert client.post("/v1/tickets", json=_ticket_body(password="x")).status_code == 401
        assert client.post("/v1/tickets", json=_ticket_body()).status_code == 429

    def test_routes_have_independent_counters(self, limited):
        client, _ = limited
        for _ in range(3):
            client.post("/v1/tickets", json=_ticket_body())
        assert client.post("/v1/tickets/preview", json=_ticket_body()).status_code == 200

    def test_health_is_exempt(self, limited):
        client, _ = limited
        for _ in range(5):
            client.post("/v1/tickets", json=_ticket_body())
        response = client.get("/healthz")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


def test_health_reports_components(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["cache"]["type"] == "LocalCache"


def test_security_and_correlation_headers(client):
    response = client.post(
        "/v1/tickets", json=_ticket_body(), headers={"X-Request-ID": "req-123"}
    )
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_rejected_requests_keep_security_headers(client):
    response = client.post("/v1/tickets", json=_ticket_body(password="nope"))
    assert response.status_code == 401
    assert response.headers["Cache-Control"] == "no-store"
    assert "X-Request-ID" in response.headers
