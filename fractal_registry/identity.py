"""Grant identity derivation.

A grant's identifier is the hex keccak-256 digest of its content, so the same
(owner, grantee, data_id, locked_until) tuple always names the same grant and
no sequence generator is needed.

Schemes
-------
v1 (default)
    keccak256(owner || grantee || data_id || str(locked_until)). Fields are
    concatenated without delimiters, so differently split tuples can share an
    identifier (owner="ab", data_id="c" vs owner="a", data_id="bc"). Kept
    bit-exact for compatibility with existing registries.

v2
    keccak256 over length-prefixed fields (8-byte big-endian length before each
    UTF-8 field). Removes the boundary collision. Opt-in per store.

Note that keccak-256 uses the original Keccak padding and is *not* the same
function as ``hashlib.sha3_256``.
"""

from __future__ import annotations

from typing import List

from Crypto.Hash import keccak

from .errors import FR_E_CONFIG, registry_error
from .models import Grant

ID_SCHEME_V1 = "v1"
ID_SCHEME_V2 = "v2"
ID_SCHEMES = (ID_SCHEME_V1, ID_SCHEME_V2)


def keccak256_hex(data: bytes) -> str:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """Length-prefixed encoding for hash inputs."""
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def _fields(grant: Grant) -> List[str]:
    return [grant.owner, grant.grantee, grant.data_id, str(grant.locked_until)]


def derive_grant_id_v1(grant: Grant) -> str:
    return keccak256_hex("".join(_fields(grant)).encode("utf-8"))


def derive_grant_id_v2(grant: Grant) -> str:
    return keccak256_hex(_safe_hash_encode(_fields(grant)))


def check_scheme(scheme: str) -> str:
    if scheme not in ID_SCHEMES:
        raise registry_error(FR_E_CONFIG, f"unknown id scheme: {scheme}", http_status=500, scheme=scheme)
    return scheme


def derive_grant_id(grant: Grant, *, scheme: str = ID_SCHEME_V1) -> str:
    """Derive the identifier for a grant. Pure and deterministic."""
    if check_scheme(scheme) == ID_SCHEME_V2:
        return derive_grant_id_v2(grant)
    return derive_grant_id_v1(grant)
