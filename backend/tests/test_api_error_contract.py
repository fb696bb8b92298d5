from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from sikupi import create_app
from sikupi.utils.jwt_utils import create_token


class ApiErrorContractTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._env = patch.dict(
            os.environ,
            {"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:", "DATABASE_URL": "sqlite:///:memory:", "PAYMENTS_PROVIDER": "mock"},
            clear=False,
        )
        cls._env.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        cls._env.stop()

    def _assert_error_shape(self, res, status):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        self._assert_error_shape(self.client.get("/api/does-not-exist"), 404)

    def test_engine_errors_share_the_shape(self):
        headers = {"Authorization": f"Bearer {create_token(1)}"}
        body = self._assert_error_shape(self.client.get("/api/transactions/424242", headers=headers), 404)
        self.assertEqual(body["error"], "NOT_FOUND")

        body = self._assert_error_shape(
            self.client.post("/api/transactions", json={"quantity": 1}, headers=headers), 400
        )
        self.assertEqual(body["error"], "VALIDATION_ERROR")
        self.assertEqual(body["field"], "product_id")

    def test_missing_token(self):
        body = self._assert_error_shape(self.client.get("/api/transactions"), 401)
        self.assertEqual(body["error"], "UNAUTHORIZED")

    def test_payments_unavailable_when_disabled(self):
        headers = {"Authorization": f"Bearer {create_token(1)}"}
        with patch.dict(os.environ, {"PAYMENTS_PROVIDER": "disabled"}, clear=False):
            app = create_app()
        app.config.update(TESTING=True)
        res = app.test_client().post("/api/payments/midtrans/token", json={"transaction_id": 1}, headers=headers)
        body = self._assert_error_shape(res, 503)
        self.assertEqual(body["error"], "PAYMENTS_UNAVAILABLE")

    def test_production_without_provider_refuses_webhooks(self):
        prod_env = {"SIKUPI_ENV": "prod", "SECRET_KEY": "prod-secret-key-0123456789"}
        with patch.dict(os.environ, prod_env, clear=False):
            os.environ.pop("PAYMENTS_PROVIDER", None)
            app = create_app()
        app.config.update(TESTING=True)
        client = app.test_client()

        res = client.post("/api/webhooks/midtrans", json={"order_id": "1", "transaction_status": "settlement"})
        body = self._assert_error_shape(res, 503)
        self.assertEqual(body["error"], "PAYMENTS_UNAVAILABLE")

        health = client.get("/api/health").get_json()
        self.assertEqual(health["payments"]["status"], "misconfigured")


if __name__ == "__main__":
    unittest.main()
