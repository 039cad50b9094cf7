import threading
import unittest

from orderflow import create_app
from orderflow.config import Config
from orderflow.contexts.negotiation.application.service import NegotiationService
from orderflow.contexts.negotiation.infrastructure.repositories import PurchaseOrderRepository
from orderflow.db import close_db, get_db
from orderflow.errors import ConflictError
from orderflow.observability import metrics_snapshot, reset_metrics_for_tests
from orderflow.policies import ActorContext, ActorRole
from tests.helpers.seed import connect_erp, install_erp_client, seed_order
from tests.helpers.temp_db import TempDbSandbox


class _StaleOrderRepository(PurchaseOrderRepository):
    """Keeps returning the first snapshot it read, like a request that read before another committed."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(tenant_id=tenant_id)
        self._snapshots: dict = {}

    def get_by_id(self, db, order_id: int):
        if order_id not in self._snapshots:
            self._snapshots[order_id] = super().get_by_id(db, order_id)
        return dict(self._snapshots[order_id])


class OrderConcurrencyTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="order_concurrency")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.tenant_id = "tenant-concorrencia"
        self.erp = install_erp_client(self.app)
        connect_erp(self.app, self.tenant_id, self.erp)
        self.order_id = seed_order(self.app, self.tenant_id)["order_id"]
        self.buyer = ActorContext(tenant_id=self.tenant_id, role=ActorRole.BUYER, name="Lojista")

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_second_write_with_stale_version_conflicts(self) -> None:
        with self.app.app_context():
            db = get_db()
            orders = PurchaseOrderRepository(tenant_id=self.tenant_id)
            with db.transaction():
                version = orders.transition_status(
                    db,
                    self.order_id,
                    expected_status="draft",
                    expected_version=0,
                    new_status="sent_to_supplier",
                )
            self.assertEqual(version, 1)

            with self.assertRaises(ConflictError) as ctx:
                with db.transaction():
                    orders.transition_status(
                        db,
                        self.order_id,
                        expected_status="draft",
                        expected_version=0,
                        new_status="canceled",
                        changes={"cancel_reason": "pedido duplicado"},
                    )
            self.assertEqual(ctx.exception.code, "order_conflict")
            self.assertEqual(ctx.exception.http_status, 409)

            order = orders.get_by_id(db, self.order_id)
            self.assertEqual(order["internal_status"], "sent_to_supplier")
            self.assertEqual(order["version"], 1)
            self.assertIsNone(order["cancel_reason"])

    def test_transition_rejects_unknown_columns(self) -> None:
        with self.app.app_context():
            db = get_db()
            orders = PurchaseOrderRepository(tenant_id=self.tenant_id)
            with self.assertRaises(ValueError):
                orders.transition_status(
                    db,
                    self.order_id,
                    expected_status="draft",
                    expected_version=0,
                    new_status="finalized",
                    changes={"tenant_id": "tenant-outro"},
                )

    def test_service_reports_conflict_and_leaves_no_side_effects(self) -> None:
        with self.app.app_context():
            stale = NegotiationService(
                self.tenant_id,
                sync_client=self.erp,
                orders=_StaleOrderRepository(self.tenant_id),
            )
            fresh = NegotiationService(self.tenant_id, sync_client=self.erp)

            stale.get_order(self.buyer, self.order_id)
            fresh.send_to_supplier(self.buyer, self.order_id)

            with self.assertRaises(ConflictError):
                stale.finalize(self.buyer, self.order_id)

            order = fresh.get_order(self.buyer, self.order_id).payload
            self.assertEqual(order["internal_status"], "sent_to_supplier")
            events = [item["event_type"] for item in fresh.timeline(self.buyer, self.order_id).payload["items"]]
            self.assertEqual(events, ["order_sent"])
            self.assertEqual(self.erp.gateway.status_calls(), [])

        self.assertEqual(metrics_snapshot()["orders"]["conflicts_total"], 1)

    def test_conflict_over_http_returns_409(self) -> None:
        client = self.app.test_client()
        headers = {"X-Tenant-Id": self.tenant_id, "X-Actor-Role": "buyer"}
        original = PurchaseOrderRepository.transition_status

        def _lose_race(repo, db, order_id, **kwargs):
            # Someone else bumped the version right before our write.
            db.execute("UPDATE purchase_orders SET version = version + 1 WHERE id = ?", (order_id,))
            return original(repo, db, order_id, **kwargs)

        PurchaseOrderRepository.transition_status = _lose_race
        try:
            res = client.post(f"/api/orders/{self.order_id}/send", headers=headers)
        finally:
            PurchaseOrderRepository.transition_status = original

        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "order_conflict")
        order = client.get(f"/api/orders/{self.order_id}", headers=headers).get_json()
        self.assertEqual(order["internal_status"], "draft")
        self.assertEqual(order["version"], 0)

    def test_parallel_finalize_has_one_winner(self) -> None:
        barrier = threading.Barrier(2)
        outcomes: list = []
        lock = threading.Lock()

        def _worker() -> None:
            with self.app.app_context():
                service = NegotiationService(
                    self.tenant_id,
                    sync_client=self.erp,
                    orders=_StaleOrderRepository(self.tenant_id),
                )
                service.get_order(self.buyer, self.order_id)
                barrier.wait(timeout=5)
                try:
                    service.finalize(self.buyer, self.order_id)
                    result = "ok"
                except ConflictError:
                    result = "conflict"
                finally:
                    close_db()
                with lock:
                    outcomes.append(result)

        threads = [threading.Thread(target=_worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(sorted(outcomes), ["conflict", "ok"])
        self.assertEqual(len(self.erp.gateway.status_calls()), 1)


if __name__ == "__main__":
    unittest.main()
