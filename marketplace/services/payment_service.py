"""Payment service — every call to the payment gateway (Stripe).

Responsible for:
- Verifying a client's payment proof before an order is trusted
- Creating payment intents for the checkout flow
- Issuing refunds on cancellation

Verification fails closed: a signature mismatch, an unexpected gateway
error, or an amount that doesn't match the computed total all reject the
order. Only network failures surface as GatewayUnavailable.
"""

import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP

import stripe
from flask import current_app

from marketplace.errors import (
    GatewayUnavailable,
    PaymentVerificationFailed,
    RefundFailed,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Currencies Stripe charges in whole units (no minor unit).
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

_http_timeout = None


class VerifiedPayment:
    """Gateway-confirmed payment. status is "captured" or "authorized"."""

    def __init__(self, payment_id, gateway_order_id, status, amount, currency):
        self.payment_id = payment_id
        self.gateway_order_id = gateway_order_id
        self.status = status
        self.amount = amount
        self.currency = currency

    def __repr__(self):
        return f"<VerifiedPayment {self.payment_id} {self.status} {self.amount}>"


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def to_minor(amount, currency):
    """Major units (Decimal/float/str) -> integer minor units."""
    amount = Decimal(str(amount))
    if currency.lower() not in ZERO_DECIMAL_CURRENCIES:
        amount = amount * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(amount, currency):
    """Integer minor units -> Decimal major units."""
    amount = Decimal(int(amount))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount / 100


def compute_signature(gateway_order_id, gateway_payment_id, secret=None):
    """HMAC-SHA256 hex digest of "gateway_order_id|gateway_payment_id"."""
    if secret is None:
        secret = current_app.config["PAYMENT_SIGNATURE_SECRET"]
    message = f"{gateway_order_id}|{gateway_payment_id}"
    return hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def _configure():
    """Point the stripe module at this app's key, timeout and retry policy."""
    global _http_timeout

    api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise GatewayUnavailable("Payment gateway is not configured.")
    stripe.api_key = api_key
    stripe.max_network_retries = current_app.config.get("GATEWAY_MAX_RETRIES", 0)

    timeout = current_app.config.get("GATEWAY_TIMEOUT_SECONDS", 10)
    if _http_timeout != timeout:
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        _http_timeout = timeout


# ──────────────────────────────────────────────
# Verification
# ──────────────────────────────────────────────

def verify(gateway_order_id, gateway_payment_id, signature, expected_amount,
           currency=None):
    """Verify a client-submitted payment proof against the gateway.

    1. Recompute the checkout signature and compare in constant time.
       A mismatch never reaches the gateway.
    2. Fetch the authoritative charge. It must belong to gateway_order_id
       and have succeeded.
    3. The charged amount must equal expected_amount within
       PAYMENT_AMOUNT_EPSILON.

    Returns:
        VerifiedPayment.

    Raises:
        ValidationError: proof fields missing.
        PaymentVerificationFailed: any check fails.
        GatewayUnavailable: the gateway could not be reached in time.
    """
    if not gateway_order_id or not gateway_payment_id or not signature:
        raise ValidationError(
            "Payment proof requires gateway_order_id, gateway_payment_id "
            "and signature."
        )

    currency = (currency or current_app.config["DEFAULT_CURRENCY"]).lower()

    secret = current_app.config.get("PAYMENT_SIGNATURE_SECRET")
    if not secret:
        raise GatewayUnavailable("Payment signature secret is not configured.")

    expected_signature = compute_signature(
        gateway_order_id, gateway_payment_id, secret
    )
    if not hmac.compare_digest(expected_signature, str(signature)):
        logger.warning(
            f"Invalid payment signature for gateway order {gateway_order_id} "
            f"payment {gateway_payment_id}"
        )
        raise PaymentVerificationFailed("Invalid payment signature")

    _configure()
    try:
        charge = stripe.Charge.retrieve(gateway_payment_id)
    except stripe.APIConnectionError as e:
        logger.error(f"Gateway unreachable verifying {gateway_payment_id}: {e}")
        raise GatewayUnavailable("Payment gateway unavailable. Please retry.")
    except stripe.StripeError as e:
        logger.warning(f"Gateway rejected lookup of {gateway_payment_id}: {e}")
        raise PaymentVerificationFailed("Payment could not be verified")

    if charge.get("payment_intent") != gateway_order_id:
        logger.warning(
            f"Payment {gateway_payment_id} belongs to "
            f"{charge.get('payment_intent')}, not {gateway_order_id}"
        )
        raise PaymentVerificationFailed("Payment does not belong to this order")

    if charge.get("status") != "succeeded":
        raise PaymentVerificationFailed("Payment not successful")
    status = "captured" if charge.get("captured") else "authorized"

    charge_currency = (charge.get("currency") or currency).lower()
    if charge_currency != currency:
        raise PaymentVerificationFailed("Payment currency does not match")

    paid = from_minor(charge.get("amount", 0), charge_currency)
    epsilon = Decimal(str(current_app.config["PAYMENT_AMOUNT_EPSILON"]))
    if abs(paid - Decimal(str(expected_amount))) > epsilon:
        logger.warning(
            f"Amount mismatch for payment {gateway_payment_id}: "
            f"paid {paid}, expected {expected_amount}"
        )
        raise PaymentVerificationFailed("Payment amount does not match")

    logger.info(f"Payment {gateway_payment_id} verified ({status}, {paid} {currency})")
    return VerifiedPayment(
        payment_id=gateway_payment_id,
        gateway_order_id=gateway_order_id,
        status=status,
        amount=paid,
        currency=currency,
    )


# ──────────────────────────────────────────────
# Payment intents & refunds
# ──────────────────────────────────────────────

def create_payment_order(amount, currency=None, receipt=None, notes=None,
                         user_id=None):
    """Create a payment intent for the client checkout flow.

    Returns a dict with the intent id, client secret, amount (minor units)
    and currency. Raises GatewayUnavailable on gateway errors.
    """
    currency = (currency or current_app.config["DEFAULT_CURRENCY"]).lower()
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")

    metadata = {k: str(v) for k, v in (notes or {}).items()}
    if user_id:
        metadata["user_id"] = str(user_id)
    if receipt:
        metadata["receipt"] = receipt

    _configure()
    try:
        intent = stripe.PaymentIntent.create(
            amount=to_minor(amount, currency),
            currency=currency,
            metadata=metadata,
            description=f"{current_app.config['STORE_NAME']} order",
        )
    except stripe.StripeError as e:
        logger.error(f"Failed to create payment intent for user {user_id}: {e}")
        raise GatewayUnavailable("Could not create payment order. Please retry.")

    return {
        "id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "amount": intent["amount"],
        "currency": intent["currency"],
        "key": current_app.config.get("STRIPE_PUBLISHABLE_KEY"),
    }


def refund(payment_id, amount, reason=None, currency=None):
    """Refund `amount` (major units) of a captured charge.

    Returns the gateway refund id. Raises RefundFailed on any gateway error.
    """
    currency = (currency or current_app.config["DEFAULT_CURRENCY"]).lower()
    if not payment_id:
        raise RefundFailed("Order has no gateway payment to refund.")

    try:
        _configure()
        result = stripe.Refund.create(
            charge=payment_id,
            amount=to_minor(amount, currency),
            metadata={"reason": reason or "order_canceled"},
        )
    except GatewayUnavailable as e:
        raise RefundFailed(e.message)
    except stripe.StripeError as e:
        logger.error(f"Refund failed for payment {payment_id}: {e}")
        raise RefundFailed("Refund could not be processed by the gateway.")

    logger.info(f"Refund {result['id']} issued for payment {payment_id} ({amount} {currency})")
    return result["id"]
