from __future__ import annotations

import hashlib
import ipaddress
import unicodedata

UNKNOWN_ORIGIN = "unknown"


def normalize_identifier(identifier: str) -> str:
    """Canonical login handle: trimmed, case-folded, accents stripped.

    Casing and compatibility forms (full-width letters, accents) collapse to
    the same key so they cannot be used to dodge counters. Characters with no
    Latin decomposition are kept as-is rather than dropped.
    """

    text = unicodedata.normalize("NFKC", identifier or "").strip().casefold()
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return unicodedata.normalize("NFC", stripped)


def normalize_origin(origin: str | None) -> str:
    """Canonical network origin; IPv4-mapped IPv6 collapses to IPv4."""

    raw = (origin or "").strip()
    if not raw:
        return UNKNOWN_ORIGIN
    try:
        addr = ipaddress.ip_address(raw)
    except ValueError:
        return raw.lower()
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return addr.compressed


def account_key(identifier: str) -> str:
    """Lockout ledger key for an identifier (sha256 of the normalized form)."""

    return hashlib.sha256(normalize_identifier(identifier).encode("utf-8")).hexdigest()


def identifier_counter_key(identifier: str) -> str:
    return f"login:email:{normalize_identifier(identifier)}"


def origin_counter_key(identifier: str, origin: str | None) -> str:
    return f"login:ip:{normalize_identifier(identifier)}|{normalize_origin(origin)}"
