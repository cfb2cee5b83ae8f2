import hashlib
import threading
from collections import OrderedDict
from datetime import datetime, timedelta

from src.models.webhook import DepositEvent
from src.utils.crypto import canonical_json


class ReplayGuard:
    """Short-circuits byte-for-byte redeliveries of a provider event.

    Remembers the acknowledgement given for each event fingerprint for
    ``window_seconds``. Only events that were processed to completion are
    remembered, so a delivery that crashed is still retried in full.
    Correctness under redelivery does not depend on this cache; the
    conditional status update in the processor guarantees it.
    """

    def __init__(self, window_seconds: float = 600, max_entries: int = 10_000):
        self.window = timedelta(seconds=window_seconds)
        self.max_entries = max_entries
        self._seen: OrderedDict[str, tuple[datetime, object]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def fingerprint(event: DepositEvent) -> str:
        key = {
            "qrId": event.qr_id,
            "status": event.provider_status.value,
            "bankTxId": event.bank_tx_id,
            "blockchainTxID": event.blockchain_tx_id,
            "valueInCents": event.value_in_cents,
        }
        return hashlib.sha256(canonical_json(key).encode("utf-8")).hexdigest()

    def lookup(self, event: DepositEvent, now: datetime):
        """Return the remembered acknowledgement, or None if this event is new."""
        key = self.fingerprint(event)
        with self._lock:
            self._evict(now)
            found = self._seen.get(key)
            return found[1] if found else None

    def remember(self, event: DepositEvent, acknowledgement, now: datetime) -> None:
        key = self.fingerprint(event)
        with self._lock:
            self._seen[key] = (now, acknowledgement)
            self._seen.move_to_end(key)
            while len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._seen:
            key, (seen_at, _) = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            del self._seen[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
