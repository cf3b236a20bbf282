"""
Pre-shared key (PSK) parameter generation for Interledger payments.

A receiver holds one long-lived secret. For every challenge it derives a
destination address and a shared secret from that root secret and a fresh
random nonce:

    receiver_id   = HMAC(secret, "ilp_psk_receiver_id")[:8]
    shared_secret = HMAC(HMAC(secret, "ilp_psk_generation"), nonce)[:16]
    destination   = <account>.<b64url(receiver_id)><nonce>

The nonce travels inside the destination address, so the receiver can
re-derive the shared secret for any payment addressed to it without
storing challenges. Without the root secret nobody can compute the
shared secret that belongs to another payer's address.
"""
import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Tuple

RECEIVER_SECRET_BYTES = 32
NONCE_BYTES = 16
RECEIVER_ID_BYTES = 8
SHARED_SECRET_BYTES = 16

RECEIVER_ID_STRING = b"ilp_psk_receiver_id"
PSK_GENERATION_STRING = b"ilp_psk_generation"
PSK_CONDITION_STRING = b"ilp_psk_condition"

# 8 raw bytes -> 11 base64url chars, 16 raw bytes -> 22 chars (no padding)
RECEIVER_ID_LENGTH = 11
NONCE_LENGTH = 22


def base64url(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def base64url_decode(value: str) -> bytes:
    """Decode URL-safe base64 with or without padding."""
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _hmac(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def generate_receiver_secret() -> bytes:
    """Fresh 256-bit root secret."""
    return secrets.token_bytes(RECEIVER_SECRET_BYTES)


def get_receiver_id(receiver_secret: bytes) -> str:
    return base64url(_hmac(receiver_secret, RECEIVER_ID_STRING)[:RECEIVER_ID_BYTES])


def derive_shared_secret(receiver_secret: bytes, nonce: str) -> bytes:
    """Shared secret that belongs to the destination carrying ``nonce``."""
    generator = _hmac(receiver_secret, PSK_GENERATION_STRING)
    return _hmac(generator, nonce.encode("ascii"))[:SHARED_SECRET_BYTES]


@dataclass(frozen=True)
class PskParams:
    """Destination address and base64url shared secret handed to a payer."""
    destination_account: str
    shared_secret: str


def generate_params(destination_account: str, receiver_secret: bytes) -> PskParams:
    """
    Derive a fresh destination/shared secret pair for a payer.

    Args:
        destination_account: The receiver's ILP account address
        receiver_secret: The receiver's root secret

    Returns:
        PskParams with the per-challenge destination and shared secret
    """
    if len(receiver_secret) < RECEIVER_SECRET_BYTES:
        raise ValueError("Receiver secret must be at least 32 bytes")

    nonce = base64url(secrets.token_bytes(NONCE_BYTES))
    shared_secret = derive_shared_secret(receiver_secret, nonce)

    return PskParams(
        destination_account=f"{destination_account}.{get_receiver_id(receiver_secret)}{nonce}",
        shared_secret=base64url(shared_secret),
    )


def parse_destination(destination: str, account: str) -> Tuple[str, str]:
    """
    Split a generated destination into (receiver_id, nonce).

    Raises:
        ValueError: If the address does not belong to ``account`` or is malformed
    """
    prefix = account + "."
    if not destination.startswith(prefix):
        raise ValueError(f"Destination {destination} is not under account {account}")

    local_part = destination[len(prefix):]
    if len(local_part) != RECEIVER_ID_LENGTH + NONCE_LENGTH:
        raise ValueError(f"Malformed PSK destination: {destination}")

    return (local_part[:RECEIVER_ID_LENGTH], local_part[RECEIVER_ID_LENGTH:])


def fulfillment_for(shared_secret: bytes, packet: bytes) -> bytes:
    """Fulfillment a PSK receiver reveals for ``packet``."""
    return _hmac(_hmac(shared_secret, PSK_CONDITION_STRING), packet)


def condition_for(fulfillment: bytes) -> bytes:
    """Execution condition (SHA-256 hash) locking a transfer to ``fulfillment``."""
    return hashlib.sha256(fulfillment).digest()
