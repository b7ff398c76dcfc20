"""AWS Signature Version 4 for the S3-compatible surface.

Inbound requests are verified here before any backend work happens, and the
passthrough backend uses the same canonical form to re-sign the requests it
forwards upstream.

Two mutually exclusive ways a caller can sign:

- Header auth::

    Authorization: AWS4-HMAC-SHA256 Credential={access_key}/{date}/{region}/s3/aws4_request,
                   SignedHeaders={h1;h2;...}, Signature={hex}
    x-amz-date: {YYYYMMDDTHHMMSSZ}

- Query auth (pre-signed URL): ``X-Amz-Algorithm``, ``X-Amz-Credential``,
  ``X-Amz-Date``, ``X-Amz-Expires``, ``X-Amz-SignedHeaders`` and
  ``X-Amz-Signature`` query parameters.

The payload is never hashed by the gateway: the hash token is whatever the
caller put in ``x-amz-content-sha256``, or ``UNSIGNED-PAYLOAD``.
"""

import hashlib
import hmac
import re
import urllib.parse
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

logger = structlog.get_logger()

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SIGNATURE_PARAM = "X-Amz-Signature"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class RequestParts:
    """The parts of an HTTP request that take part in signing.

    ``raw_path`` is the path exactly as sent on the wire (still
    percent-encoded) and ``headers`` must use lower-case names.
    """

    method: str
    scheme: str
    hostname: str
    port: int | None
    raw_path: str
    query_string: str
    headers: Mapping[str, str]

    @classmethod
    def from_url(cls, method: str, url: str, headers: Mapping[str, str] | None = None) -> "RequestParts":
        """Build request parts from an absolute URL."""
        split = urllib.parse.urlsplit(url)
        return cls(
            method=method.upper(),
            scheme=split.scheme,
            hostname=split.hostname or "",
            port=split.port,
            raw_path=split.path,
            query_string=split.query,
            headers={k.lower(): v for k, v in (headers or {}).items()},
        )

    def query_params(self) -> list[tuple[str, str]]:
        """Decoded query parameters in the order they were sent."""
        return urllib.parse.parse_qsl(self.query_string, keep_blank_values=True)

    @property
    def host(self) -> str:
        """Host header value as a signer computes it (default port omitted)."""
        if self.port and _DEFAULT_PORTS.get(self.scheme) != self.port:
            return f"{self.hostname}:{self.port}"
        return self.hostname


@dataclass(frozen=True)
class SignedRequestContext:
    """Everything the canonical request is built from. Built fresh per request."""

    method: str
    canonical_path: str
    sorted_query_params: tuple[tuple[str, str], ...]
    signed_header_names: tuple[str, ...]
    signed_header_values: tuple[str, ...]
    payload_hash: str
    timestamp: str
    credential_scope: str

    @property
    def date(self) -> str:
        return self.timestamp[:8]


@dataclass(frozen=True)
class _AuthClaims:
    """Signature material claimed by the caller."""

    auth_type: str  # "header" or "query"
    algorithm: str
    timestamp: str
    credential: str
    signed_headers: tuple[str, ...]
    signature: str
    expires: str | None = None


def uri_encode(value: str) -> str:
    """Percent-encode per RFC 3986, leaving only unreserved characters.

    Unlike a generic URL encoder this escapes ``!'()*`` as well, which is
    what the signer did; anything looser produces a different signature.
    """
    return urllib.parse.quote(value, safe="-_.~")


def detect_auth_type(request: RequestParts) -> str | None:
    """Return ``"query"``, ``"header"`` or None when the request is unsigned."""
    if any(key == "X-Amz-Algorithm" for key, _ in request.query_params()):
        return "query"
    if request.headers.get("authorization"):
        return "header"
    return None


def _extract_claims(request: RequestParts) -> _AuthClaims | None:
    auth_type = detect_auth_type(request)

    if auth_type == "query":
        query = dict(request.query_params())
        return _AuthClaims(
            auth_type="query",
            algorithm=query.get("X-Amz-Algorithm", ""),
            timestamp=query.get("X-Amz-Date", ""),
            credential=query.get("X-Amz-Credential", ""),
            signed_headers=tuple(query.get("X-Amz-SignedHeaders", "host").split(";")),
            signature=query.get(SIGNATURE_PARAM, ""),
            expires=query.get("X-Amz-Expires"),
        )

    if auth_type == "header":
        auth_header = request.headers["authorization"].strip()
        algorithm, _, content = auth_header.partition(" ")

        cred_match = re.search(r"Credential=([^,\s]+)", content)
        headers_match = re.search(r"SignedHeaders=([^,\s]+)", content)
        sig_match = re.search(r"Signature=([a-fA-F0-9]+)", content)

        return _AuthClaims(
            auth_type="header",
            algorithm=algorithm,
            timestamp=request.headers.get("x-amz-date", ""),
            credential=cred_match.group(1) if cred_match else "",
            signed_headers=tuple(headers_match.group(1).split(";")) if headers_match else ("host",),
            signature=sig_match.group(1).lower() if sig_match else "",
        )

    return None


def build_signed_context(
    request: RequestParts,
    signed_headers: tuple[str, ...] | list[str],
    timestamp: str,
    credential_scope: str,
) -> SignedRequestContext:
    """Collect the values the canonical request is built from."""
    params = [(k, v) for k, v in request.query_params() if k != SIGNATURE_PARAM]
    # sorted() is stable, so repeated keys keep their original relative order
    sorted_params = tuple(sorted(params, key=lambda kv: kv[0]))

    names = tuple(h.lower() for h in signed_headers)
    values = []
    for name in names:
        if name == "host":
            values.append(request.host)
        else:
            values.append(request.headers.get(name, "").strip())

    return SignedRequestContext(
        method=request.method.upper(),
        canonical_path=request.raw_path or "/",
        sorted_query_params=sorted_params,
        signed_header_names=names,
        signed_header_values=tuple(values),
        payload_hash=request.headers.get("x-amz-content-sha256", UNSIGNED_PAYLOAD),
        timestamp=timestamp,
        credential_scope=credential_scope,
    )


def build_canonical_request(context: SignedRequestContext) -> str:
    """Build AWS Sig V4 canonical request.

    Format:
        {HTTP_METHOD}\\n
        {URI}\\n
        {QUERY_STRING}\\n
        {CANONICAL_HEADERS}\\n
        {SIGNED_HEADERS}\\n
        {HASHED_PAYLOAD}
    """
    canonical_qs = "&".join(
        f"{uri_encode(key)}={uri_encode(value)}" for key, value in context.sorted_query_params
    )
    canonical_headers = "".join(
        f"{name}:{value}\n"
        for name, value in zip(context.signed_header_names, context.signed_header_values)
    )
    signed_headers_str = ";".join(context.signed_header_names)

    return "\n".join([
        context.method,
        context.canonical_path,
        canonical_qs,
        canonical_headers,
        signed_headers_str,
        context.payload_hash,
    ])


def derive_signing_key(secret_key: str, date: str, region: str, service: str = SERVICE) -> bytes:
    """Derive AWS Sig V4 signing key.

    The signing key is derived as:
        kDate = HMAC("AWS4" + secret_key, date)
        kRegion = HMAC(kDate, region)
        kService = HMAC(kRegion, service)
        kSigning = HMAC(kService, "aws4_request")
    """
    k_date = hmac.new(f"AWS4{secret_key}".encode(), date.encode(), hashlib.sha256).digest()
    k_region = hmac.new(k_date, region.encode(), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode(), hashlib.sha256).digest()
    return hmac.new(k_service, TERMINATOR.encode(), hashlib.sha256).digest()


def build_string_to_sign(context: SignedRequestContext) -> str:
    canonical_request_hash = hashlib.sha256(build_canonical_request(context).encode()).hexdigest()
    return "\n".join([ALGORITHM, context.timestamp, context.credential_scope, canonical_request_hash])


def compute_signature(context: SignedRequestContext, secret_key: str, region: str, service: str = SERVICE) -> str:
    """Hex signature over the request described by ``context``."""
    signing_key = derive_signing_key(secret_key, context.date, region, service)
    return hmac.new(signing_key, build_string_to_sign(context).encode(), hashlib.sha256).hexdigest()


def credential_scope(date: str, region: str, service: str = SERVICE) -> str:
    return f"{date}/{region}/{service}/{TERMINATOR}"


def _parse_amz_date(timestamp: str) -> datetime:
    return datetime.strptime(timestamp, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)


def _is_fresh(claims: _AuthClaims, max_age_seconds: int | None, now: datetime) -> bool:
    request_time = _parse_amz_date(claims.timestamp)

    if claims.auth_type == "query" and claims.expires is not None:
        expires_at = request_time + timedelta(seconds=int(claims.expires))
        if now > expires_at:
            logger.debug("sigv4_presigned_url_expired", expires_at=expires_at.isoformat())
            return False
        return True

    if max_age_seconds:
        age_seconds = abs((now - request_time).total_seconds())
        if age_seconds > max_age_seconds:
            logger.debug("sigv4_request_too_old", age_seconds=age_seconds)
            return False
    return True


def _verify(
    request: RequestParts,
    access_key: str,
    secret_key: str,
    region: str,
    max_age_seconds: int | None,
    now: datetime | None,
) -> bool:
    claims = _extract_claims(request)
    if claims is None:
        logger.debug("sigv4_missing_auth")
        return False

    if claims.algorithm != ALGORITHM:
        logger.debug("sigv4_unsupported_algorithm", algorithm=claims.algorithm[:32])
        return False

    if not claims.timestamp:
        logger.debug("sigv4_missing_date", auth_type=claims.auth_type)
        return False

    if not claims.signature:
        logger.debug("sigv4_missing_signature", auth_type=claims.auth_type)
        return False

    # Credential: access_key/date/region/service/aws4_request
    claimed_access_key, _, claimed_scope = claims.credential.partition("/")
    expected_scope = credential_scope(claims.timestamp[:8], region)
    if claimed_access_key != access_key or claimed_scope != expected_scope:
        logger.debug(
            "sigv4_credential_mismatch",
            provided_access_key=claimed_access_key,
            provided_scope=claimed_scope,
            expected_scope=expected_scope,
        )
        return False

    if not _is_fresh(claims, max_age_seconds, now or datetime.now(timezone.utc)):
        return False

    context = build_signed_context(request, claims.signed_headers, claims.timestamp, expected_scope)
    expected_sig = compute_signature(context, secret_key, region)

    if hmac.compare_digest(expected_sig, claims.signature):
        return True

    logger.debug(
        "sigv4_signature_mismatch",
        auth_type=claims.auth_type,
        expected=expected_sig[:16] + "...",
        provided=claims.signature[:16] + "...",
    )
    return False


def verify_signature(
    request: RequestParts,
    access_key: str,
    secret_key: str,
    region: str,
    *,
    max_age_seconds: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Verify an inbound request's AWS Signature V4.

    Args:
        request: The request as it arrived
        access_key: Configured access key the credential must name
        secret_key: Shared secret the signature must be derived from
        region: Signing region the credential scope must name
        max_age_seconds: Reject header-auth requests older than this (None/0 disables)
        now: Clock override for tests

    Returns:
        True if the signature is valid. Malformed input of any kind yields
        False rather than an exception.
    """
    try:
        return _verify(request, access_key, secret_key, region, max_age_seconds, now)
    except Exception as e:
        logger.warning("sigv4_verification_error", error=str(e), error_type=type(e).__name__)
        return False


def sign_request(
    request: RequestParts,
    access_key: str,
    secret_key: str,
    region: str,
    *,
    service: str = SERVICE,
    payload_hash: str = UNSIGNED_PAYLOAD,
    now: datetime | None = None,
) -> dict[str, str]:
    """Compute header-auth headers for an outbound request.

    Signs ``host``, ``x-amz-content-sha256`` and ``x-amz-date``. The returned
    headers must be sent unchanged alongside the request.
    """
    timestamp = (now or datetime.now(timezone.utc)).strftime(AMZ_DATE_FORMAT)
    extra = {"x-amz-content-sha256": payload_hash, "x-amz-date": timestamp}
    signed = RequestParts(
        method=request.method,
        scheme=request.scheme,
        hostname=request.hostname,
        port=request.port,
        raw_path=request.raw_path,
        query_string=request.query_string,
        headers={**request.headers, **extra},
    )

    scope = credential_scope(timestamp[:8], region, service)
    signed_headers = ("host", "x-amz-content-sha256", "x-amz-date")
    context = build_signed_context(signed, signed_headers, timestamp, scope)
    signature = compute_signature(context, secret_key, region, service)

    return {
        **extra,
        "Authorization": (
            f"{ALGORITHM} Credential={access_key}/{scope}, "
            f"SignedHeaders={';'.join(signed_headers)}, Signature={signature}"
        ),
    }
