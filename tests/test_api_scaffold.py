from __future__ import annotations

import os
import unittest

from fastapi.testclient import TestClient

# Keep env self-contained for import-time settings.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "dummy-service-role-key")
os.environ.setdefault("API_CORS_ALLOWED_ORIGINS", "http://localhost:3000")

from apps.api.app.main import app


class ApiScaffoldTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.client = TestClient(app)

    def test_health_route(self) -> None:
        response = self.client.get("/api/v1/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_auth_route_requires_bearer_token(self) -> None:
        response = self.client.get("/api/v1/auth/me")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"detail": "Missing Bearer token."})

    def test_wallet_routes_require_bearer_token(self) -> None:
        for method, path in [
            ("get", "/api/v1/wallet"),
            ("post", "/api/v1/wallet/deduct"),
            ("get", "/api/v1/billing/subscription"),
        ]:
            with self.subTest(path=path):
                response = getattr(self.client, method)(path, headers={"Authorization": "Basic abc"})
                self.assertEqual(response.status_code, 401)

    def test_cors_preflight_allows_localhost_origin(self) -> None:
        response = self.client.options(
            "/api/v1/health",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers.get("access-control-allow-origin"), "http://localhost:3000")


if __name__ == "__main__":
    unittest.main()
