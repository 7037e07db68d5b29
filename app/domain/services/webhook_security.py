"""
Mercado Pago webhook authentication.

Three independent checks, all pure functions so they can be exercised without
a request object:

- ``validate_provider_ip``: the caller must come from one of the provider's
  published CIDR ranges (localhost is accepted outside production).
- ``parse_signature_header``: splits ``x-signature`` (``ts=<seconds>,v1=<hex>``).
- ``validate_webhook_signature``: freshness window plus HMAC-SHA256 over
  ``id=<payment_id>;type=payment;ts=<ts>``.

Callers decide what to log and which HTTP status to answer with.
"""
import hashlib
import hmac
import ipaddress
import time
from dataclasses import dataclass
from typing import Iterable, Mapping

SIGNATURE_HEADER = "x-signature"
DEFAULT_MAX_AGE_SECONDS = 300

_LOCALHOST_ADDRESSES = frozenset({"127.0.0.1", "::1", "localhost"})


@dataclass(frozen=True)
class ParsedSignature:
    ts: int
    v1: str


def parse_signature_header(value: str | None) -> ParsedSignature | None:
    """
    Parse ``ts=<seconds>,v1=<hex>``.

    ``;`` is accepted as separator as well. Returns None when either part is
    missing or the timestamp is not an integer.
    """
    if not value:
        return None

    parts: dict[str, str] = {}
    for chunk in value.replace(";", ",").split(","):
        key, sep, val = chunk.partition("=")
        if not sep:
            continue
        parts[key.strip().lower()] = val.strip()

    ts_raw = parts.get("ts")
    v1 = parts.get("v1")
    if not ts_raw or not v1:
        return None

    try:
        ts = int(ts_raw)
    except ValueError:
        return None

    return ParsedSignature(ts=ts, v1=v1)


def build_signature_manifest(payment_id: str, ts: int | str) -> str:
    return f"id={payment_id};type=payment;ts={ts}"


def compute_signature(secret: str, payment_id: str, ts: int | str) -> str:
    """Hex HMAC-SHA256 the provider is expected to send as ``v1``"""
    manifest = build_signature_manifest(payment_id, ts)
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def validate_webhook_signature(
    headers: Mapping[str, str],
    payment_id: str,
    *,
    secret: str,
    now: float | None = None,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
) -> bool:
    """
    True only when the secret is configured, the header parses, the timestamp
    is within ``max_age_seconds`` of ``now`` (either direction) and the digest
    matches.
    """
    if not secret:
        return False

    parsed = parse_signature_header(headers.get(SIGNATURE_HEADER))
    if parsed is None:
        return False

    current = time.time() if now is None else now
    if abs(int(current) - parsed.ts) > max_age_seconds:
        return False

    expected = compute_signature(secret, str(payment_id), parsed.ts)
    return hmac.compare_digest(parsed.v1.encode(), expected.encode())


def validate_provider_ip(
    client_ip: str | None,
    *,
    allowed_ranges: Iterable[str],
    allow_localhost: bool = False,
) -> bool:
    if not client_ip:
        return False

    if allow_localhost and client_ip in _LOCALHOST_ADDRESSES:
        return True

    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False

    for cidr in allowed_ranges:
        network = ipaddress.ip_network(cidr, strict=False)
        if address.version == network.version and address in network:
            return True
    return False


def extract_client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str | None:
    """First ``x-forwarded-for`` hop, then ``cf-connecting-ip``, then the socket peer"""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip and cf_ip.strip():
        return cf_ip.strip()

    return fallback
