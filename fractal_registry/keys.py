"""Grantee public keys and owner account identifiers.

Public keys travel as ``<curve>:<base58>`` strings. A key with no curve prefix
is read as ed25519. The canonical (always prefixed) form is what the registry
hashes, indexes, stores and reports, so two spellings of the same key can
never produce two different grants.

Account identifiers follow the host's naming rules: 2..64 characters of
lowercase letters, digits and the separators ``-``, ``_``, ``.``, with no
leading, trailing or doubled separators.
"""

from __future__ import annotations

import re
from typing import Dict, Tuple

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .errors import bad_request


CURVE_ED25519 = "ed25519"
CURVE_SECP256K1 = "secp256k1"

# curve -> raw key length in bytes
KEY_LENGTHS: Dict[str, int] = {
    CURVE_ED25519: 32,
    CURVE_SECP256K1: 64,
}

ACCOUNT_ID_MIN_LEN = 2
ACCOUNT_ID_MAX_LEN = 64

_ACCOUNT_ID_RE = re.compile(r"^(([a-z\d]+[\-_])*[a-z\d]+\.)*([a-z\d]+[\-_])*[a-z\d]+$")


def split_public_key(value: str) -> Tuple[str, bytes]:
    """Parse a public key string into (curve, raw key bytes).

    Raises RegistryError(FR_E_BAD_REQUEST) on unknown curves, bad base58 or a
    raw length that does not match the curve.
    """
    if not isinstance(value, str) or not value.strip():
        raise bad_request("public key must be a non-empty string")
    s = value.strip()
    if ":" in s:
        curve, data = s.split(":", 1)
    else:
        curve, data = CURVE_ED25519, s
    if curve not in KEY_LENGTHS:
        raise bad_request(f"unknown key curve: {curve}", curve=curve)
    try:
        raw = base58.b58decode(data)
    except ValueError as e:
        raise bad_request("public key is not valid base58", reason=str(e)) from e
    expected = KEY_LENGTHS[curve]
    if len(raw) != expected:
        raise bad_request(
            f"invalid {curve} key length",
            curve=curve,
            got=len(raw),
            expected=expected,
        )
    return curve, raw


def format_public_key(curve: str, raw: bytes) -> str:
    return f"{curve}:{base58.b58encode(raw).decode('ascii')}"


def canonical_public_key(value: str) -> str:
    """Return the canonical ``<curve>:<base58>`` form of a public key."""
    curve, raw = split_public_key(value)
    return format_public_key(curve, raw)


def is_valid_account_id(value: str) -> bool:
    if not isinstance(value, str):
        return False
    if not (ACCOUNT_ID_MIN_LEN <= len(value) <= ACCOUNT_ID_MAX_LEN):
        return False
    return _ACCOUNT_ID_RE.match(value) is not None


def validate_account_id(value: str) -> str:
    if not is_valid_account_id(value):
        raise bad_request(f"invalid account id: {value!r}")
    return value


def generate_public_key() -> Tuple[str, str]:
    """Generate a fresh ed25519 key pair.

    Returns (public_key, private_key_hex); the public key is in canonical form.
    """
    sk = Ed25519PrivateKey.generate()
    pub_raw = sk.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    priv_raw = sk.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return format_public_key(CURVE_ED25519, pub_raw), priv_raw.hex()
