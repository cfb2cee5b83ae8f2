from datetime import timedelta

import pytest

from conftest import START, seed
from src.models.payment_link import WebhookEventType
from src.models.transaction import TransactionStatus, TransactionType
from src.observability import audit as audit_actions
from src.processor.expiry import EXPIRED_MESSAGE, TransactionExpiryService
from src.storage.memory import _TransactionTable
from src.utils.factories import SubscriptionFactory, TransactionFactory

TIMEOUT = 29 * 60 + 50


@pytest.fixture
def expiry(repository, processor, audit, clock):
    return TransactionExpiryService(repository, processor, timeout_seconds=TIMEOUT, audit=audit, clock=clock)


def _status(repository, tx):
    with repository.atomic() as uow:
        return uow.transactions.find_by_id(tx.id).status


class TestExpireStale:

    @pytest.mark.unit
    def test_expires_only_old_pending_deposits(self, expiry, repository, clock):
        stale = TransactionFactory.create(created_at=START - timedelta(seconds=TIMEOUT + 1))
        fresh = TransactionFactory.create(created_at=START - timedelta(seconds=TIMEOUT - 60))
        processing = TransactionFactory.create(
            created_at=START - timedelta(hours=1), status=TransactionStatus.PROCESSING,
        )
        withdraw = TransactionFactory.create(created_at=START - timedelta(hours=1), type=TransactionType.WITHDRAW)
        seed(repository, stale, fresh, processing, withdraw)

        expired = expiry.expire_stale()

        assert [t.id for t in expired] == [stale.id]
        assert _status(repository, stale) is TransactionStatus.EXPIRED
        assert _status(repository, fresh) is TransactionStatus.PENDING
        assert _status(repository, processing) is TransactionStatus.PROCESSING
        assert _status(repository, withdraw) is TransactionStatus.PENDING

    @pytest.mark.unit
    def test_sets_error_message_and_audits(self, expiry, repository, audit):
        tx = TransactionFactory.create(created_at=START - timedelta(hours=1))
        seed(repository, tx)

        (expired,) = expiry.expire_stale()

        assert expired.error_message == EXPIRED_MESSAGE
        assert expired.processed_at == START
        (entry,) = audit.entries(audit_actions.TRANSACTION_EXPIRED)
        assert entry.resource_id == tx.id

    @pytest.mark.unit
    def test_dispatches_payment_expired(self, expiry, repository, payment_link):
        sub = SubscriptionFactory.create(payment_link.id, events={WebhookEventType.EXPIRED})
        tx = TransactionFactory.create(created_at=START - timedelta(hours=1), payment_link_id=payment_link.id)
        seed(repository, sub, tx)

        expiry.expire_stale()

        with repository.atomic() as uow:
            (attempt,) = uow.attempts.list_for_transaction(tx.id)
        assert attempt.event_type is WebhookEventType.EXPIRED
        assert attempt.payload["transaction"]["status"] == "EXPIRED"

    @pytest.mark.unit
    def test_webhook_that_wins_the_race_is_kept(self, expiry, repository, monkeypatch):
        tx = TransactionFactory.create(created_at=START - timedelta(hours=1))
        seed(repository, tx)
        original = _TransactionTable.update_status

        def settled_first(self, transaction_id, expected, new, fields):
            # The provider's completion lands between the scan and the update.
            original(self, transaction_id, expected, TransactionStatus.COMPLETED, {})
            return original(self, transaction_id, expected, new, fields)

        monkeypatch.setattr(_TransactionTable, "update_status", settled_first)

        assert expiry.expire_stale() == []
        assert _status(repository, tx) is TransactionStatus.COMPLETED

    @pytest.mark.unit
    def test_batch_size_limits_one_run(self, repository, processor, clock):
        seed(repository, *[TransactionFactory.create(created_at=START - timedelta(hours=1)) for _ in range(3)])
        service = TransactionExpiryService(repository, processor, timeout_seconds=TIMEOUT, batch_size=2, clock=clock)

        assert len(service.expire_stale()) == 2
        assert len(service.expire_stale()) == 1
        assert service.expire_stale() == []
