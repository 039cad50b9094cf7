import unittest

from orderflow.contexts.negotiation.domain.model import OrderStatus, ProposalStatus
from orderflow.ui_strings import (
    EXTERNAL_STATUS_LABELS,
    MESSAGES,
    STATUS_GROUPS,
    SYNC_OUTCOME_LABELS,
    TIMELINE_EVENT_LABELS,
    status_keys_for_group,
)


class UiStringsStatusGroupsTest(unittest.TestCase):
    def test_every_order_status_has_a_label(self) -> None:
        self.assertEqual(set(status_keys_for_group("pedido")), {status.value for status in OrderStatus})

    def test_every_proposal_status_has_a_label(self) -> None:
        self.assertEqual(set(status_keys_for_group("proposta")), {status.value for status in ProposalStatus})

    def test_status_labels_and_descriptions_are_not_empty(self) -> None:
        for group_name, statuses in STATUS_GROUPS.items():
            for status in statuses:
                self.assertTrue((status.get("label") or "").strip(), f"label vazio em {group_name}:{status.get('key')}")
                self.assertTrue(
                    (status.get("description") or "").strip(),
                    f"descricao vazia em {group_name}:{status.get('key')}",
                )

    def test_external_statuses_are_labelled(self) -> None:
        self.assertEqual(set(EXTERNAL_STATUS_LABELS), {0, 1, 2, 3})

    def test_timeline_events_have_success_messages(self) -> None:
        for event_type in TIMELINE_EVENT_LABELS:
            self.assertIn(event_type, MESSAGES["success"], event_type)

    def test_sync_outcomes_are_labelled(self) -> None:
        self.assertEqual(set(SYNC_OUTCOME_LABELS), {"synced", "skipped", "unavailable", "rate_limited", "failed"})


if __name__ == "__main__":
    unittest.main()
