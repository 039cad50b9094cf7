import unittest

from orderflow import create_app
from orderflow.config import Config
from orderflow.contexts.erp.application.token_locks import reset_token_locks_for_tests
from orderflow.db import close_db
from orderflow.observability import reset_metrics_for_tests
from tests.helpers.seed import connect_erp, install_erp_client, seed_order
from tests.helpers.temp_db import TempDbSandbox


class ExternalStatusTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        reset_token_locks_for_tests()
        self._temp_db = TempDbSandbox(prefix="external_status")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.tenant_id = "tenant-status"
        self.headers = {"X-Tenant-Id": self.tenant_id, "X-Actor-Role": "buyer"}
        self.erp = install_erp_client(self.app)
        connect_erp(self.app, self.tenant_id, self.erp)
        self.order_id = seed_order(self.app, self.tenant_id)["order_id"]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()
        reset_token_locks_for_tests()

    def _put(self, status_code, order_id=None, headers=None):
        return self.client.put(
            f"/api/orders/{order_id or self.order_id}/external-status",
            json={"status_code": status_code},
            headers=headers or self.headers,
        )

    def _order(self) -> dict:
        return self.client.get(f"/api/orders/{self.order_id}", headers=self.headers).get_json()

    def test_set_external_status(self) -> None:
        res = self._put(3)

        self.assertEqual(res.status_code, 200, res.get_json())
        payload = res.get_json()
        self.assertEqual(payload["external_status"], 3)
        self.assertEqual(payload["erp_sync"]["outcome"], "synced")
        self.assertEqual(self.erp.gateway.order_statuses["ERP-1001"], 3)
        order = self._order()
        self.assertEqual(order["external_status"], 3)
        self.assertEqual(order["internal_status"], "draft")

    def test_rate_limited_push_is_an_error(self) -> None:
        self.erp.gateway.queue_responses(429, 429, 429, 429)

        res = self._put(1)

        self.assertEqual(res.status_code, 503)
        payload = res.get_json()
        self.assertEqual(payload["error"], "erp_rate_limited")
        self.assertIn("request_id", payload)
        order = self._order()
        self.assertIsNone(order["external_status"])
        self.assertEqual(order["last_sync_outcome"], "rate_limited")
        timeline = self.client.get(f"/api/orders/{self.order_id}/timeline", headers=self.headers).get_json()["items"]
        self.assertEqual(timeline[0]["event_type"], "external_status_changed")
        self.assertEqual(timeline[0]["erp_sync_outcome"], "rate_limited")

    def test_order_without_reference_cannot_be_pushed(self) -> None:
        local_only = seed_order(self.app, self.tenant_id, external_order_ref=None)

        res = self._put(3, order_id=local_only["order_id"])

        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "erp_order_not_linked")

    def test_invalid_status_code(self) -> None:
        for value in (7, None):
            res = self._put(value)
            self.assertEqual(res.status_code, 400, value)
            self.assertEqual(res.get_json()["error"], "external_status_invalid")

    def test_locked_status_cannot_move(self) -> None:
        self.assertEqual(self._put(2).status_code, 200)

        res = self._put(3)

        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "external_status_locked")
        self.assertEqual(self._put(2).status_code, 200)

    def test_supplier_cannot_push_status(self) -> None:
        supplier_headers = dict(self.headers, **{"X-Actor-Role": "supplier"})

        res = self._put(3, headers=supplier_headers)

        self.assertEqual(res.status_code, 403)

    def test_resync_after_failed_mirror(self) -> None:
        self.erp.gateway.queue_responses(400)
        finalized = self.client.post(f"/api/orders/{self.order_id}/finalize", headers=self.headers).get_json()
        self.assertEqual(finalized["erp_sync"]["outcome"], "failed")
        self.assertEqual(finalized["warning"], "erp_sync_pending")

        res = self.client.post(f"/api/orders/{self.order_id}/resync", headers=self.headers)

        self.assertEqual(res.status_code, 200, res.get_json())
        payload = res.get_json()
        self.assertEqual(payload["external_status"], 1)
        self.assertEqual(payload["erp_sync"]["outcome"], "synced")
        self.assertIsNone(payload["warning"])
        self.assertEqual(self._order()["external_status"], 1)

    def test_resync_needs_a_mapped_status(self) -> None:
        res = self.client.post(f"/api/orders/{self.order_id}/resync", headers=self.headers)

        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "status_invalid")

    def test_erp_connection_routes(self) -> None:
        status = self.client.get("/api/erp/status", headers={"X-Tenant-Id": "tenant-novo"}).get_json()
        self.assertFalse(status["connected"])

        res = self.client.post(
            "/api/erp/authorize",
            json={"code": "novo-codigo", "redirect_uri": "https://app.test/callback"},
            headers={"X-Tenant-Id": "tenant-novo"},
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertTrue(res.get_json()["connected"])
        self.assertTrue(res.get_json()["message"])

        missing = self.client.post("/api/erp/authorize", json={}, headers={"X-Tenant-Id": "tenant-novo"})
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.get_json()["error"], "authorization_code_required")


if __name__ == "__main__":
    unittest.main()
