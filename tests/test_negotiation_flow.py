import unittest

from orderflow import create_app
from orderflow.config import Config
from orderflow.contexts.erp.application.token_locks import reset_token_locks_for_tests
from orderflow.db import close_db
from orderflow.observability import reset_metrics_for_tests
from tests.helpers.seed import connect_erp, install_erp_client, seed_order
from tests.helpers.temp_db import TempDbSandbox


class NegotiationFlowTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        reset_token_locks_for_tests()
        self._temp_db = TempDbSandbox(prefix="negotiation_flow")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.client = self.app.test_client()
        self.tenant_id = "tenant-negociacao"
        self.erp = install_erp_client(self.app)
        connect_erp(self.app, self.tenant_id, self.erp)
        self.seeded = seed_order(self.app, self.tenant_id)
        self.order_id = self.seeded["order_id"]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()
        reset_token_locks_for_tests()

    def _headers(self, role: str = "buyer", tenant_id: str | None = None) -> dict:
        headers = {
            "X-Tenant-Id": tenant_id or self.tenant_id,
            "X-Actor-Role": role,
            "X-Actor-Name": f"{role} de teste",
        }
        if role == "supplier":
            headers["X-Supplier-Ids"] = str(self.seeded["supplier_id"])
        return headers

    def _url(self, suffix: str = "") -> str:
        return f"/api/orders/{self.order_id}{suffix}"

    def _proposal_body(self, quantity: float = 100, discount: float = 10, bonus: float = 5) -> dict:
        return {
            "min_order_value": 500,
            "delivery_lead_days": 7,
            "valid_until": "2026-12-31",
            "items": [
                {
                    "order_item_id": self.seeded["item_ids"][0],
                    "quantity": quantity,
                    "discount_pct": discount,
                    "bonus_quantity": bonus,
                }
            ],
        }

    def _send_and_propose(self) -> int:
        res = self.client.post(self._url("/send"), headers=self._headers())
        self.assertEqual(res.status_code, 200, res.get_json())
        res = self.client.post(self._url("/proposals"), json=self._proposal_body(), headers=self._headers("supplier"))
        self.assertEqual(res.status_code, 201, res.get_json())
        self.assertEqual(res.get_json()["status"], "proposal_pending")
        return int(res.get_json()["proposal_id"])

    def _order(self) -> dict:
        res = self.client.get(self._url(), headers=self._headers())
        self.assertEqual(res.status_code, 200)
        return res.get_json()

    def test_counter_round_then_buyer_accepts_reactivated_proposal(self) -> None:
        supplier_proposal_id = self._send_and_propose()

        counter = self.client.post(
            self._url("/counter-proposal"),
            json=self._proposal_body(quantity=120, discount=15, bonus=0),
            headers=self._headers(),
        )
        self.assertEqual(counter.status_code, 201, counter.get_json())
        counter_payload = counter.get_json()
        self.assertEqual(counter_payload["status"], "counter_proposal_pending")
        self.assertEqual(counter_payload["superseded_proposal_ids"], [supplier_proposal_id])

        rejected = self.client.post(
            self._url(f"/counter-proposal/{counter_payload['proposal_id']}/respond"),
            json={"response": "reject"},
            headers=self._headers("supplier"),
        )
        self.assertEqual(rejected.status_code, 200, rejected.get_json())
        self.assertEqual(rejected.get_json()["status"], "proposal_pending")
        self.assertEqual(rejected.get_json()["reactivated_proposal_id"], supplier_proposal_id)

        second_counter = self.client.post(
            self._url("/counter-proposal"),
            json=self._proposal_body(quantity=110),
            headers=self._headers(),
        )
        self.assertEqual(second_counter.status_code, 409)
        self.assertEqual(second_counter.get_json()["error"], "counter_proposal_not_allowed")

        accepted = self.client.post(
            self._url(f"/proposals/{supplier_proposal_id}/accept"),
            headers=self._headers(),
        )
        self.assertEqual(accepted.status_code, 200, accepted.get_json())
        payload = accepted.get_json()
        self.assertEqual(payload["status"], "accepted")
        self.assertEqual(payload["total"], 1080.0)
        self.assertEqual(payload["erp_sync"]["outcome"], "synced")
        self.assertIsNone(payload["warning"])
        self.assertEqual(self.erp.gateway.order_statuses["ERP-1001"], 3)

        order = self._order()
        self.assertEqual(order["internal_status"], "accepted")
        self.assertEqual(order["external_status"], 3)
        self.assertEqual(order["last_sync_outcome"], "synced")
        self.assertIsNone(order["pending_proposal"])

        finalized = self.client.post(self._url("/finalize"), headers=self._headers())
        self.assertEqual(finalized.status_code, 200, finalized.get_json())
        self.assertEqual(finalized.get_json()["status"], "finalized")
        self.assertEqual(self.erp.gateway.order_statuses["ERP-1001"], 1)

        timeline = self.client.get(self._url("/timeline"), headers=self._headers()).get_json()["items"]
        event_types = [event["event_type"] for event in timeline]
        self.assertEqual(
            sorted(event_types),
            sorted(
                [
                    "order_sent",
                    "proposal_submitted",
                    "counter_proposal_submitted",
                    "counter_proposal_rejected",
                    "proposal_accepted",
                    "order_finalized",
                ]
            ),
        )
        accepted_event = next(event for event in timeline if event["event_type"] == "proposal_accepted")
        self.assertEqual(accepted_event["erp_sync_outcome"], "synced")
        self.assertIn("sincronizado", accepted_event["description"])

    def test_supplier_accepts_counter_proposal(self) -> None:
        self._send_and_propose()
        counter = self.client.post(
            self._url("/counter-proposal"),
            json=self._proposal_body(quantity=150, discount=20, bonus=0),
            headers=self._headers(),
        ).get_json()

        res = self.client.post(
            self._url(f"/counter-proposal/{counter['proposal_id']}/respond"),
            json={"response": "accept"},
            headers=self._headers("supplier"),
        )

        self.assertEqual(res.status_code, 200, res.get_json())
        payload = res.get_json()
        self.assertEqual(payload["status"], "accepted")
        # 150 x 8.00 on the negotiated line plus 40 x 4.50 untouched.
        self.assertEqual(payload["products_total"], 1380.0)

        proposals = self.client.get(self._url("/proposals"), headers=self._headers()).get_json()["items"]
        statuses = {item["author_role"]: item["status"] for item in proposals}
        self.assertEqual(statuses, {"buyer": "accepted", "supplier": "rejected"})

    def test_buyer_cannot_answer_counter_for_supplier(self) -> None:
        self._send_and_propose()
        counter = self.client.post(
            self._url("/counter-proposal"), json=self._proposal_body(), headers=self._headers()
        ).get_json()

        res = self.client.post(
            self._url(f"/counter-proposal/{counter['proposal_id']}/respond"),
            json={"response": "accept"},
            headers=self._headers(),
        )

        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "permission_denied")

    def test_buyer_rejects_supplier_proposal(self) -> None:
        proposal_id = self._send_and_propose()

        res = self.client.post(self._url(f"/proposals/{proposal_id}/reject"), headers=self._headers())

        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["status"], "rejected")
        self.assertIsNone(res.get_json()["erp_sync"])
        follow_up = self.client.post(self._url("/finalize"), headers=self._headers())
        self.assertEqual(follow_up.status_code, 409)
        self.assertEqual(follow_up.get_json()["error"], "order_terminal")

    def test_finalize_commits_locally_when_erp_rate_limits(self) -> None:
        self.erp.gateway.queue_responses(429, 429, 429, 429)

        res = self.client.post(self._url("/finalize"), headers=self._headers())

        self.assertEqual(res.status_code, 200, res.get_json())
        payload = res.get_json()
        self.assertEqual(payload["status"], "finalized")
        self.assertEqual(payload["erp_sync"]["outcome"], "rate_limited")
        self.assertTrue(payload["erp_sync"]["rate_limited"])
        self.assertEqual(payload["erp_sync"]["retries_used"], 3)
        self.assertEqual(payload["warning"], "erp_rate_limited")
        self.assertEqual(len(self.erp._sleep.calls), 3)

        order = self._order()
        self.assertEqual(order["internal_status"], "finalized")
        self.assertIsNone(order["external_status"])
        self.assertEqual(order["last_sync_outcome"], "rate_limited")

    def test_cancel_reason_needs_five_characters(self) -> None:
        short = self.client.post(self._url("/cancel"), json={"reason": "abcd"}, headers=self._headers())
        self.assertEqual(short.status_code, 400)
        self.assertEqual(short.get_json()["error"], "cancel_reason_too_short")
        order = self._order()
        self.assertEqual(order["internal_status"], "draft")
        self.assertEqual(order["version"], 0)

        ok = self.client.post(self._url("/cancel"), json={"reason": "abcde"}, headers=self._headers())
        self.assertEqual(ok.status_code, 200, ok.get_json())
        self.assertEqual(ok.get_json()["status"], "canceled")
        self.assertEqual(ok.get_json()["erp_sync"]["outcome"], "synced")
        self.assertEqual(self.erp.gateway.order_statuses["ERP-1001"], 2)
        self.assertEqual(self._order()["cancel_reason"], "abcde")

    def test_cancel_closes_pending_proposal(self) -> None:
        self._send_and_propose()

        res = self.client.post(
            self._url("/cancel"), json={"reason": "Fornecedor sem estoque"}, headers=self._headers("supplier")
        )

        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(len(res.get_json()["closed_proposal_ids"]), 1)
        self.assertIsNone(self._order()["pending_proposal"])

    def test_send_without_items_is_refused(self) -> None:
        empty = seed_order(self.app, self.tenant_id, items=())

        res = self.client.post(f"/api/orders/{empty['order_id']}/send", headers=self._headers())

        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "order_items_required")

    def test_erp_not_connected_does_not_block_transition(self) -> None:
        other_tenant = "tenant-sem-erp"
        other = seed_order(self.app, other_tenant)

        res = self.client.post(
            f"/api/orders/{other['order_id']}/finalize",
            headers=self._headers(tenant_id=other_tenant),
        )

        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["status"], "finalized")
        self.assertEqual(res.get_json()["erp_sync"]["outcome"], "unavailable")
        self.assertEqual(res.get_json()["warning"], "erp_not_connected")

    def test_order_without_erp_reference_is_skipped(self) -> None:
        local_only = seed_order(self.app, self.tenant_id, external_order_ref=None)

        res = self.client.post(f"/api/orders/{local_only['order_id']}/finalize", headers=self._headers())

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["erp_sync"]["outcome"], "skipped")
        self.assertIsNone(res.get_json()["warning"])
        self.assertEqual(self.erp.gateway.status_calls(), [])

    def test_other_tenant_sees_not_found(self) -> None:
        res = self.client.get(self._url(), headers=self._headers(tenant_id="tenant-intruso"))

        self.assertEqual(res.status_code, 404)
        payload = res.get_json()
        self.assertEqual(payload["error"], "order_not_found")
        self.assertTrue(payload["message"])
        self.assertEqual(payload["request_id"], res.headers.get("X-Request-Id"))

    def test_supplier_outside_order_scope_sees_not_found(self) -> None:
        headers = self._headers("supplier")
        headers["X-Supplier-Ids"] = "999"

        res = self.client.get(self._url(), headers=headers)

        self.assertEqual(res.status_code, 404)

    def test_unknown_actor_role_is_forbidden(self) -> None:
        res = self.client.get(self._url(), headers=self._headers(role="auditor"))

        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "actor_role_invalid")

    def test_invalid_proposal_body(self) -> None:
        self.client.post(self._url("/send"), headers=self._headers())

        res = self.client.post(self._url("/proposals"), json={"items": []}, headers=self._headers("supplier"))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "items_required")

        res = self.client.post(
            self._url("/proposals"),
            json=self._proposal_body(quantity=0),
            headers=self._headers("supplier"),
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "quantity_invalid")
        self.assertEqual(self._order()["internal_status"], "sent_to_supplier")

    def test_suggested_quantities_follow_coverage(self) -> None:
        res = self.client.post(
            self._url("/suggested-quantities"),
            json={
                "lead_time_days": 10,
                "products": [{"product_id": "SKU-1", "stock": 50, "qty_sold_90d": 900, "class_by_revenue": "A"}],
            },
            headers=self._headers(),
        )

        self.assertEqual(res.status_code, 200)
        lines = res.get_json()["lines"]
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0]["product_id"], "SKU-1")
        self.assertEqual(lines[0]["suggested_quantity"], 175)

    def test_suggested_quantities_reject_malformed_products(self) -> None:
        for products in (["SKU-1"], [{"product_id": "SKU-1", "stock": "abc"}]):
            res = self.client.post(
                self._url("/suggested-quantities"),
                json={"products": products},
                headers=self._headers(),
            )
            self.assertEqual(res.status_code, 400, products)
            self.assertEqual(res.get_json()["error"], "validation_error", products)

    def test_non_finite_proposal_numbers_are_rejected(self) -> None:
        self.client.post(self._url("/send"), headers=self._headers())

        for field, value in (("quantity", "nan"), ("bonus", "inf"), ("discount", "-Infinity")):
            res = self.client.post(
                self._url("/proposals"),
                json=self._proposal_body(**{field: value}),
                headers=self._headers("supplier"),
            )
            self.assertEqual(res.status_code, 400, field)
            self.assertEqual(res.get_json()["error"], "validation_error", field)

        proposals = self.client.get(self._url("/proposals"), headers=self._headers()).get_json()
        self.assertEqual(proposals["items"], [])
        self.assertEqual(self._order()["internal_status"], "sent_to_supplier")

    def test_allowed_events_follow_actor_role(self) -> None:
        self.client.post(self._url("/send"), headers=self._headers())

        buyer_view = self._order()
        supplier_view = self.client.get(self._url(), headers=self._headers("supplier")).get_json()

        self.assertEqual(sorted(buyer_view["allowed_events"]), ["cancel", "finalize"])
        self.assertEqual(sorted(supplier_view["allowed_events"]), ["cancel", "propose"])

    def test_health_reports_transition_metrics(self) -> None:
        self.client.post(self._url("/send"), headers=self._headers())

        res = self.client.get("/health")

        self.assertEqual(res.status_code, 200)
        metrics = res.get_json()["metrics"]
        self.assertEqual(metrics["orders"]["transitions"].get("draft->sent_to_supplier"), 1)


if __name__ == "__main__":
    unittest.main()
