"""Order pipeline error taxonomy.

Every rejection carries a machine-readable ``kind`` plus a human message.
Services raise these; create_app() registers a single handler that renders
them as ``{"ok": false, "error": kind, "message": ..., **extra}``.
"""


class OrderError(Exception):
    kind = "OrderError"
    status_code = 400

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        payload = {"ok": False, "error": self.kind, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(OrderError):
    """Malformed or missing request fields. Raised before any side effect."""

    kind = "ValidationError"


class NotFound(OrderError):
    kind = "NotFound"
    status_code = 404


class Forbidden(OrderError):
    kind = "Forbidden"
    status_code = 403


class NotAvailable(OrderError):
    """Product exists but is not approved and published."""

    kind = "NotAvailable"


class InsufficientStock(OrderError):
    kind = "InsufficientStock"

    def __init__(self, message, product_id=None, variant_id=None, available_stock=0):
        super().__init__(
            message,
            product_id=product_id,
            variant_id=variant_id,
            available_stock=available_stock,
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.available_stock = available_stock


class PaymentVerificationFailed(OrderError):
    """Signature mismatch, unsuccessful payment, or amount mismatch."""

    kind = "PaymentVerificationFailed"


class DuplicateRequest(OrderError):
    """Idempotency hit. A success alias, never rendered as a failure."""

    kind = "DuplicateRequest"
    status_code = 200


class InvalidTransition(OrderError):
    kind = "InvalidTransition"

    def __init__(self, current, target, allowed):
        allowed_text = ", ".join(allowed) if allowed else "none (terminal state)"
        super().__init__(
            f"Cannot transition from '{current}' to '{target}'. "
            f"Allowed: {allowed_text}",
            current=current,
            allowed=list(allowed),
        )


class GatewayUnavailable(OrderError):
    """Network failure or timeout talking to the payment gateway."""

    kind = "GatewayUnavailable"
    status_code = 503


class RefundFailed(OrderError):
    kind = "RefundFailed"
    status_code = 502


class TransactionDegraded(OrderError):
    """Informational: the sequential compensation path was used.

    Never raised to callers. Its kind is logged and surfaced as
    ``degraded: true`` on the create-order response.
    """

    kind = "TransactionDegraded"
    status_code = 200
