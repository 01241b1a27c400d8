from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dispatch.errors import ApiError
from dispatch.lifecycle import CallerIdentity, normalize_role

_REDACTED = "***REDACTED***"
_SENSITIVE_KEYS = frozenset(
    {"authorization", "cookie", "token", "secret", "password", "api_key", "apikey", "access_token"}
)
_SENSITIVE_MARKERS = ("bearer ", "token", "sk-")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    return [part.strip() for part in os.environ.get(name, default).split(",") if part.strip()]


def _unb64(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _numeric_date(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def redact_sensitive(value: object) -> object:
    """Mask credential-looking keys and values before they reach a log line."""
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if str(key).lower() in _SENSITIVE_KEYS else redact_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_sensitive(item) for item in value]
    if isinstance(value, str) and len(value) >= 24 and any(m in value.lower() for m in _SENSITIVE_MARKERS):
        return _REDACTED
    return value


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str = ""
    audience: str = ""
    shared_secret: str = ""
    required_claims: list[str] = field(default_factory=lambda: ["sub", "role", "exp"])
    role_claim: str = "role"
    log_redaction_enabled: bool = True
    trace_id_strict_required: bool = False

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_env_list("JWT_REQUIRED_CLAIMS", "sub,role,exp"),
            role_claim=os.environ.get("JWT_ROLE_CLAIM", "").strip() or "role",
            log_redaction_enabled=_env_flag("SECURITY_LOG_REDACTION_ENABLED", True),
            trace_id_strict_required=_env_flag("TRACE_ID_STRICT_REQUIRED", False),
        )


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise _unauthorized("invalid Authorization header")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


def _decode_segments(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    segments = token.split(".")
    if len(segments) != 3:
        raise _unauthorized("invalid token format")
    try:
        header = json.loads(_unb64(segments[0]))
        claims = json.loads(_unb64(segments[1]))
    except (ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise _unauthorized("invalid token payload")
    return header, claims


def _verify_signature(token: str, header: dict[str, Any], secret: str) -> None:
    if str(header.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not secret:
        raise _unauthorized("jwt shared secret not configured")
    signing_input, _, signature = token.rpartition(".")
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    if not hmac.compare_digest(_b64(digest), signature):
        raise _unauthorized("invalid token signature")


def _check_claims(claims: dict[str, Any], cfg: JwtSecurityConfig) -> None:
    now = int(datetime.now(UTC).timestamp())
    exp = _numeric_date(claims.get("exp"))
    if exp is None or exp <= now:
        raise _unauthorized("token expired")
    nbf = _numeric_date(claims.get("nbf"))
    if nbf is not None and nbf > now:
        raise _unauthorized("token not yet valid")

    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = claims.get("aud")
        audiences = {str(x) for x in aud} if isinstance(aud, list) else {str(aud or "")}
        if cfg.audience not in audiences:
            raise _unauthorized("jwt audience mismatch")

    missing = [name for name in cfg.required_claims if name not in claims]
    if missing:
        raise _unauthorized(f"missing required claim: {missing[0]}")


def _identity_from(subject: Any, role: Any) -> CallerIdentity:
    caller_id = str(subject or "").strip()
    if not caller_id:
        raise _unauthorized("missing caller subject")
    normalized = normalize_role(role)
    if normalized is None:
        raise _unauthorized("missing or unknown caller role")
    return CallerIdentity(id=caller_id, role=normalized)


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> CallerIdentity:
    token = _bearer_token(authorization)
    header, claims = _decode_segments(token)
    _verify_signature(token, header, cfg.shared_secret)
    _check_claims(claims, cfg)
    return _identity_from(claims.get("sub"), claims.get(cfg.role_claim))


def identity_from_gateway_headers(*, caller_id: str | None, caller_role: str | None) -> CallerIdentity:
    """Identity asserted by a trusted upstream gateway when bearer auth is off."""
    return _identity_from(caller_id, caller_role)
