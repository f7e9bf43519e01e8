"""
Exception taxonomy for the payment reconciliation pipeline

Errors that touch money or order state are never swallowed: callers turn them
into a stored error status or an operator alert. Notification errors are the
only ones absorbed locally.
"""

from typing import Iterable, Optional


class PaymentPipelineError(Exception):
    """Base class for every reconciliation error"""

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id


class MalformedWebhook(PaymentPipelineError):
    """Webhook is missing the signature, the order identifier or another required field"""


class InvalidSignature(PaymentPipelineError):
    """Webhook signature does not match the shared secret"""


class OrderNotFound(PaymentPipelineError):
    """No order exists for the identifier carried by the event"""


class InvalidTransition(PaymentPipelineError):
    """Requested status change is not in the transition table"""

    def __init__(self, current: str, target: str, order_id: Optional[str] = None):
        super().__init__(f"Transition {current} -> {target} is not allowed", order_id)
        self.current = current
        self.target = target


class CreditingFailure(PaymentPipelineError):
    """Wallet ledger could not apply a credit"""


class InsufficientBalance(PaymentPipelineError):
    """Wallet debit would drive the balance below zero"""


class LedgerOutcomeUnknown(PaymentPipelineError):
    """Ledger transaction timed out on our side and may still have committed"""


class LedgerConflict(PaymentPipelineError):
    """A ledger entry of the same type already exists for this order"""


class PersistenceFailure(PaymentPipelineError):
    """Order status update failed, possibly after money already moved"""


class NotificationFailure(PaymentPipelineError):
    """Chat or email delivery failed (best-effort, never affects money or state)"""


class InvoiceCreationError(PaymentPipelineError):
    """Provider rejected or failed the create-invoice call"""


class ConfigurationError(PaymentPipelineError):
    """Mandatory environment configuration is missing for the executing path"""

    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")
