from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

import jwt

from .env_utils import env_flag, is_production_env
from .errors import AuthenticationError

logger = logging.getLogger("actions_gateway.security")

BYPASS_SCOPES = ("customer:read", "case:write", "note:write")


@dataclass
class AuthConfig:
    mode: str = "jwt"
    issuer: Optional[str] = None
    audience: Optional[str] = None
    jwks_url: Optional[str] = None
    secret: Optional[str] = None
    algorithms: List[str] = field(default_factory=lambda: ["HS256"])
    bypass_scopes: List[str] = field(default_factory=lambda: list(BYPASS_SCOPES))


@dataclass(frozen=True)
class Principal:
    subject: str
    scopes: FrozenSet[str]


def load_auth_config(auth_cfg: Optional[Mapping[str, Any]] = None) -> AuthConfig:
    auth_cfg = auth_cfg or {}
    mode = str(auth_cfg.get("mode", "jwt"))
    if env_flag("AUTH_BYPASS"):
        mode = "bypass"
    jwks_url = os.getenv("AUTH_JWKS_URL") or auth_cfg.get("jwks_url")
    algorithms = auth_cfg.get("algorithms") or (["RS256", "ES256"] if jwks_url else ["HS256"])
    return AuthConfig(
        mode=mode,
        issuer=os.getenv("AUTH_ISSUER") or auth_cfg.get("issuer"),
        audience=os.getenv("AUTH_AUDIENCE") or auth_cfg.get("audience"),
        jwks_url=jwks_url,
        secret=(os.getenv("AUTH_JWT_SECRET") or auth_cfg.get("secret") or "").strip() or None,
        algorithms=[str(a) for a in algorithms],
        bypass_scopes=[str(s) for s in auth_cfg.get("bypass_scopes", BYPASS_SCOPES)],
    )


def parse_scopes(claims: Mapping[str, Any]) -> FrozenSet[str]:
    raw = claims.get("scope", claims.get("scp", claims.get("scopes")))
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        return frozenset(s for s in raw.split() if s)
    return frozenset(str(s) for s in raw)


def require_scopes(granted: Iterable[str], needed: Iterable[str]) -> bool:
    return set(needed).issubset(set(granted))


class AuthBackend:
    """Verifies bearer tokens. Signature checks are delegated to PyJWT."""

    def __init__(self, auth_config: AuthConfig) -> None:
        self._config = auth_config
        self._jwks_client: Optional[jwt.PyJWKClient] = None
        if auth_config.jwks_url:
            self._jwks_client = jwt.PyJWKClient(auth_config.jwks_url)

    @property
    def mode(self) -> str:
        return self._config.mode

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        if self._config.mode == "bypass":
            return Principal(subject="local-dev", scopes=frozenset(self._config.bypass_scopes))

        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing bearer token")
        token = authorization[len("Bearer "):].strip()

        try:
            claims = await self._decode(token)
        except AuthenticationError:
            raise
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
            logger.warning(f"[Auth] Invalid token: {exc}")
            raise AuthenticationError("Invalid token")

        return Principal(subject=str(claims.get("sub") or ""), scopes=parse_scopes(claims))

    async def _decode(self, token: str) -> Dict[str, Any]:
        options = {"verify_aud": bool(self._config.audience), "verify_iss": bool(self._config.issuer)}
        if self._jwks_client is not None:
            # JWKS fetch is blocking I/O
            signing_key = await asyncio.to_thread(self._jwks_client.get_signing_key_from_jwt, token)
            key: Any = signing_key.key
        elif self._config.secret:
            key = self._config.secret
        else:
            raise AuthenticationError("Verifier not configured")
        return jwt.decode(
            token,
            key,
            algorithms=self._config.algorithms,
            audience=self._config.audience,
            issuer=self._config.issuer,
            options=options,
        )


def build_auth_backend(auth_cfg: Optional[Mapping[str, Any]] = None) -> AuthBackend:
    auth_config = load_auth_config(auth_cfg)
    if auth_config.mode == "bypass":
        if is_production_env():
            raise RuntimeError("AUTH_BYPASS is not allowed in production")
        logger.warning("[Auth] Authentication bypass enabled (local development only)")
    elif not auth_config.jwks_url and not auth_config.secret:
        logger.warning("[Auth] No token verifier configured; all tool calls will be rejected")
    return AuthBackend(auth_config)
