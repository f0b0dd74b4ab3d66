"""
HMAC-SHA256 signature checks for gateway webhooks and client checkout callbacks.
"""

import hashlib
import hmac

from token_ledger.exceptions import SignatureInvalidError


def compute_signature(message: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of `message` keyed with `secret`."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison of hex signatures."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().lower().encode("utf-8"))


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """
    Check a webhook signature over the exact bytes received.

    Raises:
        SignatureInvalidError: Signature missing or wrong
    """
    if not signatures_match(compute_signature(raw_body, secret), signature):
        raise SignatureInvalidError("webhook")


def verify_checkout_signature(
    order_id: str, payment_id: str, signature: str | None, secret: str
) -> None:
    """
    Check the client checkout signature over "{order_id}|{payment_id}".

    Raises:
        SignatureInvalidError: Signature missing or wrong
    """
    message = f"{order_id}|{payment_id}".encode("utf-8")
    if not signatures_match(compute_signature(message, secret), signature):
        raise SignatureInvalidError("checkout")
