from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import jwt

from batchqa.errors import unauthorized
from batchqa.settings import _split_csv


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str
    name: str = ""


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    role_claim: str
    name_claim: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = env.get("JWT_ISSUER", "").strip()
        audience = env.get("JWT_AUDIENCE", "").strip()
        shared_secret = env.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(env.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            role_claim=env.get("JWT_ROLE_CLAIM", "role").strip() or "role",
            name_claim=env.get("JWT_NAME_CLAIM", "name").strip() or "name",
        )


def _decode_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> dict[str, Any]:
    if not authorization:
        raise unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise unauthorized("empty bearer token")
    if not cfg.shared_secret:
        raise unauthorized("jwt shared secret not configured")

    options: dict[str, Any] = {"require": list(cfg.required_claims)}
    if not cfg.audience:
        options["verify_aud"] = False
    try:
        return jwt.decode(
            token,
            cfg.shared_secret,
            algorithms=["HS256"],
            audience=cfg.audience or None,
            issuer=cfg.issuer or None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise unauthorized("token expired") from None
    except jwt.InvalidIssuerError:
        raise unauthorized("jwt issuer mismatch") from None
    except jwt.InvalidAudienceError:
        raise unauthorized("jwt audience mismatch") from None
    except jwt.MissingRequiredClaimError as exc:
        raise unauthorized(f"missing required claim: {exc.claim}") from None
    except jwt.InvalidTokenError:
        raise unauthorized("invalid token") from None


def resolve_actor(
    *,
    headers: Mapping[str, str],
    cfg: JwtSecurityConfig,
) -> Actor:
    """Resolve the calling actor from a bearer token, or from dev headers when JWT is off."""
    if cfg.enabled:
        claims = _decode_bearer_token(authorization=headers.get("authorization"), cfg=cfg)
        subject = str(claims.get("sub") or "").strip()
        role = str(claims.get(cfg.role_claim) or "").strip().upper()
        if not subject:
            raise unauthorized("missing subject claim")
        return Actor(user_id=subject, role=role, name=str(claims.get(cfg.name_claim) or ""))

    user_id = str(headers.get("x-user-id") or "").strip()
    if not user_id:
        raise unauthorized("missing x-user-id header")
    return Actor(
        user_id=user_id,
        role=str(headers.get("x-user-role") or "").strip().upper(),
        name=str(headers.get("x-user-name") or "").strip(),
    )
