"""
Caller identity from ``Authorization: Bearer <jwt>``.

Tokens are verified with PyJWT against either a shared secret (HS*) or a
JWKS document (RS*/ES*, e.g. Firebase ID tokens). The caller id is one
claim of the verified token, ``sub`` by default.
"""
from __future__ import annotations
import re
import time
from typing import Any, Dict, Optional, Protocol, Sequence

import httpx
import jwt

from core_config.settings import Settings
from core_logging import get_logger, log_stage

from .errors import IdentityInvalid, IdentityRequired

logger = get_logger("fhir_edge")

_BEARER_PREFIX = re.compile(r"^\s*bearer\s*", re.IGNORECASE)


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> str: ...


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    token = _BEARER_PREFIX.sub("", authorization).strip()
    return token or None


async def verify_caller(authorization: Optional[str], verifier: IdentityVerifier) -> str:
    """Caller id for a request; IdentityRequired without a token, IdentityInvalid when rejected."""
    token = parse_bearer(authorization)
    if token is None:
        log_stage(logger, "auth", "identity_missing", level="WARNING")
        raise IdentityRequired()
    return await verifier.verify(token)


class JwtIdentityVerifier:
    def __init__(
        self,
        *,
        secret: Optional[str] = None,
        jwks_url: Optional[str] = None,
        algorithms: Sequence[str] = ("HS256",),
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        caller_claim: str = "sub",
        http_client: Optional[httpx.AsyncClient] = None,
        jwks_ttl_s: float = 3600.0,
    ):
        if jwks_url and http_client is None:
            raise ValueError("a JWKS url needs an http client to fetch it with")
        self._secret = secret
        self._jwks_url = jwks_url
        self._algorithms = list(algorithms)
        self._audience = audience
        self._issuer = issuer
        self._claim = caller_claim
        self._http = http_client
        self._jwks_ttl_s = jwks_ttl_s
        self._jwks: Optional[jwt.PyJWKSet] = None
        self._jwks_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None) -> "JwtIdentityVerifier":
        return cls(
            secret=settings.auth_jwt_secret,
            jwks_url=settings.auth_jwks_url,
            algorithms=settings.auth_jwt_algorithms,
            audience=settings.auth_jwt_audience,
            issuer=settings.auth_jwt_issuer,
            caller_claim=settings.auth_caller_claim,
            http_client=http_client,
        )

    @property
    def configured(self) -> bool:
        return bool(self._secret or self._jwks_url)

    async def _jwk_set(self, *, force: bool = False) -> jwt.PyJWKSet:
        fresh = self._jwks is not None and (time.monotonic() - self._jwks_at) < self._jwks_ttl_s
        if fresh and not force:
            return self._jwks  # type: ignore[return-value]
        resp = await self._http.get(self._jwks_url)  # type: ignore[union-attr, arg-type]
        resp.raise_for_status()
        self._jwks = jwt.PyJWKSet.from_dict(resp.json())
        self._jwks_at = time.monotonic()
        log_stage(logger, "auth", "jwks_refreshed", keys=len(self._jwks.keys))
        return self._jwks

    async def _signing_key(self, token: str) -> Any:
        if self._jwks_url is None:
            return self._secret
        kid = jwt.get_unverified_header(token).get("kid")
        try:
            return (await self._jwk_set())[kid].key
        except KeyError:
            # Keys rotate; one forced refresh before giving up on an unknown kid.
            try:
                return (await self._jwk_set(force=True))[kid].key
            except KeyError as exc:
                raise jwt.InvalidKeyError(f"no JWKS key for kid {kid!r}") from exc

    async def verify(self, token: str) -> str:
        if not self.configured:
            log_stage(logger, "auth", "verifier_not_configured", level="ERROR")
            raise IdentityInvalid("Identity verification is not configured.")
        try:
            key = await self._signing_key(token)
            claims: Dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_aud": self._audience is not None},
            )
        except jwt.PyJWTError as exc:
            log_stage(logger, "auth", "token_rejected", reason=type(exc).__name__, level="WARNING")
            raise IdentityInvalid(details={"reason": type(exc).__name__, "message": str(exc)}) from exc
        except (httpx.HTTPError, ValueError) as exc:
            log_stage(logger, "auth", "jwks_unavailable", error=str(exc), level="ERROR")
            raise IdentityInvalid(details={"reason": "jwks_unavailable"}) from exc

        caller = claims.get(self._claim)
        if not isinstance(caller, str) or not caller:
            raise IdentityInvalid(details={"reason": f"missing {self._claim} claim"})
        return caller


__all__ = ["IdentityVerifier", "JwtIdentityVerifier", "parse_bearer", "verify_caller"]
