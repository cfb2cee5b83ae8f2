import itertools

import pytest

from src.models.payment_link import WebhookEventType
from src.models.transaction import TERMINAL_STATUSES, TransactionStatus
from src.processor.state_machine import ALLOWED_TRANSITIONS, can_transition, event_type_for

S = TransactionStatus


class TestTransitions:

    @pytest.mark.unit
    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.PROCESSING),
        (S.PENDING, S.COMPLETED),
        (S.PROCESSING, S.COMPLETED),
        (S.PENDING, S.FAILED),
        (S.PROCESSING, S.FAILED),
        (S.PENDING, S.EXPIRED),
        (S.PROCESSING, S.EXPIRED),
    ])
    def test_forward_moves_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.unit
    def test_processing_cannot_go_back_to_pending(self):
        assert can_transition(S.PROCESSING, S.PENDING) is False

    @pytest.mark.unit
    @pytest.mark.parametrize("current,target", itertools.product(sorted(TERMINAL_STATUSES, key=lambda s: s.value), S))
    def test_terminal_states_never_move(self, current, target):
        assert can_transition(current, target) is False

    @pytest.mark.unit
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(S)

    @pytest.mark.unit
    def test_no_status_transitions_to_itself(self):
        assert all(status not in targets for status, targets in ALLOWED_TRANSITIONS.items())


class TestEventTypes:

    @pytest.mark.unit
    @pytest.mark.parametrize("status,event_type", [
        (S.PROCESSING, WebhookEventType.PROCESSING),
        (S.COMPLETED, WebhookEventType.COMPLETED),
        (S.FAILED, WebhookEventType.FAILED),
        (S.EXPIRED, WebhookEventType.EXPIRED),
    ])
    def test_event_for_status(self, status, event_type):
        assert event_type_for(status) is event_type

    @pytest.mark.unit
    def test_pending_emits_nothing(self):
        assert event_type_for(S.PENDING) is None
