import unittest
from unittest.mock import patch

from orderflow import create_app
from orderflow.config import Config
from orderflow.db import close_db
from orderflow.ui_strings import error_message
from tests.helpers.seed import install_erp_client, seed_order
from tests.helpers.temp_db import TempDbSandbox


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True, PROPAGATE_EXCEPTIONS=False))
        self.client = self.app.test_client()
        self.tenant_id = "tenant-error-api"
        self.headers = {"X-Tenant-Id": self.tenant_id}
        install_erp_client(self.app)
        self.order_id = seed_order(self.app, self.tenant_id)["order_id"]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_validation_error_for_invalid_transition(self) -> None:
        finalized = self.client.post(f"/api/orders/{self.order_id}/finalize", headers=self.headers)
        self.assertEqual(finalized.status_code, 200)

        response = self.client.post(f"/api/orders/{self.order_id}/send", headers=self.headers)

        self.assertEqual(response.status_code, 409)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "order_terminal")
        self.assertEqual(payload.get("message"), error_message("order_terminal"))
        self.assertEqual(payload.get("status"), "finalized")
        self.assertTrue((payload.get("request_id") or "").strip())

    def test_not_found_for_missing_order(self) -> None:
        response = self.client.get("/api/orders/999999", headers=self.headers)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json().get("message"), error_message("order_not_found"))

    def test_stack_trace_not_exposed_for_unhandled_error(self) -> None:
        target = "orderflow.contexts.negotiation.application.service.NegotiationService.send_to_supplier"
        with patch(target, side_effect=RuntimeError("stack_secret_token")):
            response = self.client.post(f"/api/orders/{self.order_id}/send", headers=self.headers)

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("stack_secret_token", body)

    def test_unknown_route_stays_http_404(self) -> None:
        response = self.client.get("/api/nao-existe", headers=self.headers)
        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
