from .deposit import DepositAcknowledgement, DepositWebhookProcessor, Outcome, TransitionOutcome
from .expiry import TransactionExpiryService
from .hooks import BotSyncClient, CompletionHook, ValidationDepositRecorder
from .state_machine import ALLOWED_TRANSITIONS, can_transition, event_type_for

__all__ = [
    "DepositAcknowledgement",
    "DepositWebhookProcessor",
    "Outcome",
    "TransitionOutcome",
    "TransactionExpiryService",
    "BotSyncClient",
    "CompletionHook",
    "ValidationDepositRecorder",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "event_type_for",
]
