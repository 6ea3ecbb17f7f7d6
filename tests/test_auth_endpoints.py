from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from db_support import TEST_ENV, FakeClock, create_test_session_factory, create_user, override_get_db
from deviceauth.db import get_db
from deviceauth.main import app
from deviceauth.models import AuditLog, CliToken, DeviceAuthorization
from deviceauth.services.session_tokens import start_session
from deviceauth.settings import get_settings


class AuthEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        env_patcher = patch.dict(os.environ, TEST_ENV, clear=False)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)

        self.engine, self.session_factory = create_test_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.session_factory)
        self.addCleanup(app.dependency_overrides.clear)

        self.clock = FakeClock()
        clock_patcher = patch("deviceauth.services.device_auth._utc_now", self.clock)
        clock_patcher.start()
        self.addCleanup(clock_patcher.stop)

        with self.session_factory() as db:
            self.user = create_user(db)
            self.other_user = create_user(db, external_id="google-oauth2|2002", email="other@example.com")
            self.session = start_session(db, self.user)
            self.other_session = start_session(db, self.other_user)

        self.client = TestClient(app)

    def _session_headers(self, access_token: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token or self.session.access_token}"}

    def _actions(self) -> list[str]:
        with self.session_factory() as db:
            return list(db.scalars(select(AuditLog.action).order_by(AuditLog.id)).all())

    def _login_cli(self, device_name: str = "laptop") -> str:
        started = self.client.post("/api/v1/auth/cli/start").json()
        verify = self.client.post(
            "/api/v1/auth/cli/verify",
            json={"userCode": started["userCode"]},
            headers=self._session_headers(),
        )
        self.assertEqual(verify.status_code, 200)
        self.clock.advance(3)
        polled = self.client.post(
            "/api/v1/auth/cli/poll",
            json={"deviceCode": started["deviceCode"], "deviceName": device_name},
        ).json()
        self.assertEqual(polled["status"], "ok")
        self.clock.advance(3)
        return polled["accessToken"]

    def test_cli_login_flow_end_to_end(self) -> None:
        with patch("deviceauth.services.device_auth.generate_user_code", return_value="KX7P2M3Q"):
            start = self.client.post("/api/v1/auth/cli/start")

        self.assertEqual(start.status_code, 200)
        started = start.json()
        self.assertEqual(started["userCode"], "KX7P2M3Q")
        self.assertEqual(started["interval"], 2)
        self.assertEqual(started["expiresIn"], 600)
        self.assertEqual(started["verificationUrl"], "https://app.example.com/cli/verify?userCode=KX7P2M3Q")
        self.assertIn("X-Request-Id", start.headers)

        self.clock.advance(2)
        pending = self.client.post("/api/v1/auth/cli/poll", json={"deviceCode": started["deviceCode"]})
        self.assertEqual(pending.json(), {"status": "pending", "interval": 2})

        verify = self.client.post(
            "/api/v1/auth/cli/verify",
            json={"userCode": "kx7p2m3q"},
            headers=self._session_headers(),
        )
        self.assertEqual(verify.status_code, 200)
        self.assertEqual(verify.json(), {"ok": True})

        self.clock.advance(3)
        ok = self.client.post(
            "/api/v1/auth/cli/poll",
            json={"deviceCode": started["deviceCode"], "deviceName": "laptop", "deviceFingerprint": "fp-1"},
            headers={"User-Agent": "orca-cli/1.4.0"},
        )
        body = ok.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["expiresIn"], 2_592_000)
        self.assertEqual(len(body["accessToken"]), 64)
        self.assertNotIn("interval", body)

        self.clock.advance(3)
        again = self.client.post("/api/v1/auth/cli/poll", json={"deviceCode": started["deviceCode"]})
        self.assertEqual(again.json(), {"status": "expired"})

        whoami = self.client.get("/api/v1/auth/cli/whoami", headers={"Authorization": f"Bearer {body['accessToken']}"})
        self.assertEqual(whoami.status_code, 200)
        self.assertEqual(whoami.json()["id"], self.user.id)
        self.assertEqual(whoami.json()["via"], "cli")

        with self.session_factory() as db:
            token = db.scalar(select(CliToken))
            self.assertEqual(token.user_agent, "orca-cli/1.4.0")
            self.assertEqual(token.device_fingerprint, "fp-1")
            self.assertIsNone(db.scalar(select(DeviceAuthorization)))

        actions = self._actions()
        self.assertIn("CLI_LOGIN_STARTED", actions)
        self.assertIn("CLI_LOGIN_APPROVED", actions)
        self.assertIn("CLI_TOKEN_MINTED", actions)

    def test_fast_poll_gets_slow_down(self) -> None:
        started = self.client.post("/api/v1/auth/cli/start").json()

        first = self.client.post("/api/v1/auth/cli/poll", json={"deviceCode": started["deviceCode"]})
        second = self.client.post("/api/v1/auth/cli/poll", json={"deviceCode": started["deviceCode"]})

        self.assertEqual(first.json()["status"], "pending")
        self.assertEqual(second.json()["status"], "slow_down")
        self.assertGreater(second.json()["interval"], 2)

    def test_poll_requires_device_code(self) -> None:
        response = self.client.post("/api/v1/auth/cli/poll", json={})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_verify_requires_session_and_live_code(self) -> None:
        unauthenticated = self.client.post("/api/v1/auth/cli/verify", json={"userCode": "ABCD2345"})
        self.assertEqual(unauthenticated.status_code, 401)
        self.assertEqual(unauthenticated.json()["error"]["code"], "INVALID_TOKEN")

        unknown = self.client.post(
            "/api/v1/auth/cli/verify",
            json={"userCode": "ABCD2345"},
            headers=self._session_headers(),
        )
        self.assertEqual(unknown.status_code, 400)
        error = unknown.json()["error"]
        self.assertEqual(error["code"], "INVALID_OR_EXPIRED_CODE")
        self.assertTrue(error["request_id"])
        self.assertIn("CLI_LOGIN_APPROVE_FAIL", self._actions())

    def test_start_is_rate_limited_per_origin(self) -> None:
        with patch.dict(os.environ, {"CLI_DEVICE_RATE_LIMIT_MAX": "2", "TRUST_FORWARDED_HEADERS": "true"}):
            get_settings.cache_clear()
            headers = {"X-Forwarded-For": "203.0.113.9"}
            self.assertEqual(self.client.post("/api/v1/auth/cli/start", headers=headers).status_code, 200)
            self.assertEqual(self.client.post("/api/v1/auth/cli/start", headers=headers).status_code, 200)

            limited = self.client.post("/api/v1/auth/cli/start", headers=headers)
            other = self.client.post("/api/v1/auth/cli/start", headers={"X-Forwarded-For": "203.0.113.10"})

        self.assertEqual(limited.status_code, 429)
        self.assertEqual(limited.json()["error"]["code"], "RATE_LIMIT_EXCEEDED")
        self.assertEqual(limited.headers["Retry-After"], "3600")
        self.assertEqual(other.status_code, 200)
        self.assertIn("CLI_LOGIN_RATE_LIMITED", self._actions())

    def test_forwarded_for_is_ignored_unless_trusted(self) -> None:
        with patch.dict(os.environ, {"CLI_DEVICE_RATE_LIMIT_MAX": "2"}):
            get_settings.cache_clear()
            statuses = [
                self.client.post(
                    "/api/v1/auth/cli/start",
                    headers={"X-Forwarded-For": f"198.51.100.{index}"},
                ).status_code
                for index in range(3)
            ]

        self.assertEqual(statuses, [200, 200, 429])
        with self.session_factory() as db:
            origins = set(db.scalars(select(DeviceAuthorization.origin_address)).all())
        self.assertEqual(origins, {"testclient"})

    def test_start_audit_records_client_address_and_agent(self) -> None:
        response = self.client.post("/api/v1/auth/cli/start", headers={"User-Agent": "orca-cli/1.4.0"})
        self.assertEqual(response.status_code, 200)

        with self.session_factory() as db:
            entry = db.scalar(select(AuditLog).where(AuditLog.action == "CLI_LOGIN_STARTED"))
        self.assertEqual(entry.ip, "testclient")
        self.assertEqual(entry.actor_id, "testclient")
        self.assertEqual(entry.user_agent, "orca-cli/1.4.0")
        self.assertTrue(entry.success)

    def test_oversized_forwarded_address_is_clipped(self) -> None:
        long_address = "2001:db8::" + "f" * 300
        with patch.dict(os.environ, {"TRUST_FORWARDED_HEADERS": "true"}):
            get_settings.cache_clear()
            response = self.client.post("/api/v1/auth/cli/start", headers={"X-Forwarded-For": long_address})

        self.assertEqual(response.status_code, 200)
        with self.session_factory() as db:
            record = db.scalar(select(DeviceAuthorization))
            entry = db.scalar(select(AuditLog).where(AuditLog.action == "CLI_LOGIN_STARTED"))
        self.assertEqual(record.origin_address, long_address[:128])
        self.assertEqual(entry.ip, long_address[:128])

    def test_token_management_endpoints(self) -> None:
        cli_token = self._login_cli("laptop")

        listed = self.client.get("/api/v1/auth/cli/tokens", headers=self._session_headers())
        self.assertEqual(listed.status_code, 200)
        tokens = listed.json()["tokens"]
        self.assertEqual(len(tokens), 1)
        token_id = tokens[0]["id"]
        self.assertEqual(tokens[0]["deviceName"], "laptop")
        self.assertEqual(tokens[0]["label"], "laptop")
        self.assertIsNone(tokens[0]["revokedAt"])
        self.assertNotIn("tokenHash", tokens[0])

        renamed = self.client.patch(
            f"/api/v1/auth/cli/tokens/{token_id}",
            json={"name": "work laptop"},
            headers=self._session_headers(),
        )
        self.assertEqual(renamed.status_code, 200)

        foreign = self.client.post(
            f"/api/v1/auth/cli/tokens/{token_id}/revoke",
            headers=self._session_headers(self.other_session.access_token),
        )
        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(foreign.json()["error"]["code"], "NOT_FOUND")

        revoked = self.client.post(f"/api/v1/auth/cli/tokens/{token_id}/revoke", headers=self._session_headers())
        self.assertEqual(revoked.status_code, 200)
        revoked_again = self.client.post(
            f"/api/v1/auth/cli/tokens/{token_id}/revoke",
            headers=self._session_headers(),
        )
        self.assertEqual(revoked_again.status_code, 200)

        listed = self.client.get("/api/v1/auth/cli/tokens", headers=self._session_headers()).json()["tokens"]
        self.assertEqual(listed[0]["label"], "work laptop")
        self.assertIsNotNone(listed[0]["revokedAt"])

        rejected = self.client.get("/api/v1/auth/cli/whoami", headers={"Authorization": f"Bearer {cli_token}"})
        self.assertEqual(rejected.status_code, 401)

        actions = self._actions()
        self.assertIn("CLI_TOKEN_RENAMED", actions)
        self.assertIn("CLI_TOKEN_REVOKED", actions)

    def test_me_accepts_session_or_cli_token(self) -> None:
        cli_token = self._login_cli()

        via_session = self.client.get("/api/v1/auth/me", headers=self._session_headers())
        via_cli = self.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {cli_token}"})
        anonymous = self.client.get("/api/v1/auth/me")

        self.assertEqual(via_session.json()["via"], "session")
        self.assertEqual(via_cli.json()["via"], "cli")
        self.assertEqual(via_cli.json()["email"], "dev@example.com")
        self.assertEqual(anonymous.status_code, 401)

    def test_cli_whoami_rejects_session_jwt(self) -> None:
        response = self.client.get("/api/v1/auth/cli/whoami", headers=self._session_headers())

        self.assertEqual(response.status_code, 401)

    def test_refresh_rotates_and_sets_cookies(self) -> None:
        response = self.client.post(
            "/api/v1/auth/refresh",
            json={"refreshToken": self.session.refresh_token},
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("accessToken", response.cookies)
        self.assertIn("refreshToken", response.cookies)
        set_cookie = ",".join(response.headers.get_list("set-cookie"))
        self.assertIn("HttpOnly", set_cookie)
        self.assertIn("Path=/api/v1/auth", set_cookie)

        replay = self.client.post(
            "/api/v1/auth/refresh",
            json={"refreshToken": self.session.refresh_token},
        )
        self.assertEqual(replay.status_code, 401)
        self.assertEqual(replay.json()["error"]["code"], "INVALID_TOKEN")

        via_cookie = self.client.post("/api/v1/auth/refresh")
        self.assertEqual(via_cookie.status_code, 200)

        actions = self._actions()
        self.assertIn("SESSION_REFRESHED", actions)
        self.assertIn("SESSION_REFRESH_FAIL", actions)

    def test_logout_clears_refresh_slot(self) -> None:
        response = self.client.post("/api/v1/auth/logout", headers=self._session_headers())

        self.assertEqual(response.status_code, 200)
        self.assertIn("refreshToken=", ",".join(response.headers.get_list("set-cookie")))

        self.client.cookies.clear()
        refreshed = self.client.post(
            "/api/v1/auth/refresh",
            json={"refreshToken": self.session.refresh_token},
        )
        self.assertEqual(refreshed.status_code, 401)
        self.assertIn("SESSION_LOGOUT", self._actions())

    def test_health_reports_status(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")


if __name__ == "__main__":
    unittest.main()
