"""Authenticator: API-Key, Bearer-Token (JWT) oder Bypass.

Stellt bereit:
  - AuthMethod: Wie eine Identität zustande kam
  - Identity: Ergebnis einer erfolgreichen Authentifizierung
  - Authenticator: Prüft Credentials gegen die Security-Konfiguration

Identitäten leben nur für einen Request bzw. eine Streaming-Verbindung
und werden nie persistiert.
"""

from __future__ import annotations

import hmac
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import jwt

from rpcgate.errors import AuthError, AuthFailure
from rpcgate.utils.logging import get_logger

if TYPE_CHECKING:
    from rpcgate.config import SecurityConfig

log = get_logger(__name__)

BEARER_PREFIX = "Bearer "
# Base64url von '{"' - jeder JWT-Header beginnt so
JWT_PREFIX = "eyJ"
API_KEY_PREFIX_LEN = 8


class AuthMethod(Enum):
    """Unterstützte Authentifizierungs-Methoden."""

    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"
    BYPASS = "bypass"


@dataclass(frozen=True)
class Identity:
    """Authentifizierte Identität eines Requests oder einer Verbindung.

    ``claims`` ist nur bei BEARER_TOKEN gesetzt.
    """

    method: AuthMethod
    subject: str
    claims: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    authenticated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_bypass(self) -> bool:
        return self.method is AuthMethod.BYPASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method.value,
            "subject": self.subject,
            "authenticated_at": self.authenticated_at.isoformat(),
        }


def redact_api_key(key: str) -> str:
    """Subject für einen API-Key: höchstens 8 Zeichen, höchstens die Hälfte des Keys."""
    visible = min(API_KEY_PREFIX_LEN, len(key) // 2)
    return f"api_key:{key[:visible]}"


class Authenticator:
    """Prüft API-Keys und JWTs gegen die Security-Konfiguration.

    Bei deaktivierter Authentifizierung liefert jede Prüfung eine
    BYPASS-Identität mit Subject ``local``.
    """

    def __init__(
        self,
        *,
        enable_auth: bool = True,
        api_keys: list[str] | set[str] | None = None,
        jwt_secret: str | None = None,
        jwt_algorithms: list[str] | None = None,
        jwt_issuer: str | None = None,
        jwt_audience: str | None = None,
    ) -> None:
        self._enabled = enable_auth
        self._api_keys = frozenset(api_keys or ())
        self._jwt_secret = jwt_secret or None
        self._jwt_algorithms = list(jwt_algorithms or ["HS256"])
        self._jwt_issuer = jwt_issuer
        self._jwt_audience = jwt_audience
        self._successes: Counter[str] = Counter()
        self._failures: Counter[str] = Counter()

    @classmethod
    def from_config(cls, config: SecurityConfig) -> Authenticator:
        return cls(
            enable_auth=config.enable_auth,
            api_keys=config.api_keys,
            jwt_secret=config.jwt_secret,
            jwt_algorithms=config.jwt_algorithms,
            jwt_issuer=config.jwt_issuer,
            jwt_audience=config.jwt_audience,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Prüfungen
    # ------------------------------------------------------------------

    def authenticate_api_key(self, key: str) -> Identity:
        """Erfolg genau dann, wenn der Key konfiguriert ist."""
        if not self._enabled:
            return self._bypass("local")
        if not key:
            raise self._fail("Missing API key", AuthFailure.MISSING_CREDENTIAL)
        # Konstante Laufzeit pro Vergleich
        matched = False
        for candidate in self._api_keys:
            if hmac.compare_digest(candidate.encode(), key.encode()):
                matched = True
        if not matched:
            raise self._fail("Invalid API key", AuthFailure.INVALID_API_KEY)
        self._successes[AuthMethod.API_KEY.value] += 1
        return Identity(method=AuthMethod.API_KEY, subject=redact_api_key(key))

    def authenticate_token(self, token: str) -> Identity:
        """Validiert ein JWT (Signatur, ``exp``, ``sub``, optional iss/aud)."""
        if not self._enabled:
            return self._bypass("local")
        if not token:
            raise self._fail("Missing token", AuthFailure.MISSING_CREDENTIAL)
        if not self._jwt_secret:
            raise self._fail("Token authentication not configured", AuthFailure.NOT_CONFIGURED)

        options: dict[str, Any] = {"require": ["exp", "sub"]}
        try:
            claims = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=self._jwt_algorithms,
                issuer=self._jwt_issuer,
                audience=self._jwt_audience,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise self._fail("Token expired", AuthFailure.INVALID_TOKEN) from exc
        except jwt.InvalidTokenError as exc:
            raise self._fail(f"Invalid token: {exc}", AuthFailure.INVALID_TOKEN) from exc

        self._successes[AuthMethod.BEARER_TOKEN.value] += 1
        return Identity(
            method=AuthMethod.BEARER_TOKEN,
            subject=str(claims["sub"]),
            claims=claims,
        )

    def parse_credential(self, header_value: str | None) -> Identity:
        """Wertet einen Authorization-Header aus.

        ``Bearer eyJ...`` wird als JWT geprüft, jeder andere Bearer-Wert
        als API-Key.
        """
        if not self._enabled:
            return self._bypass("local")
        if not header_value or not header_value.strip():
            raise self._fail("Missing authorization header", AuthFailure.MISSING_CREDENTIAL)
        if not header_value.startswith(BEARER_PREFIX):
            raise self._fail(
                "Invalid authorization header format",
                AuthFailure.UNSUPPORTED_SCHEME,
            )
        credential = header_value[len(BEARER_PREFIX):].strip()
        if credential.startswith(JWT_PREFIX):
            return self.authenticate_token(credential)
        return self.authenticate_api_key(credential)

    def bypass(self, subject: str = "stdio") -> Identity:
        """Identität für lokale Transports (stdio) ohne Credential."""
        return self._bypass(subject)

    # ------------------------------------------------------------------
    # Statistiken
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "api_keys_configured": len(self._api_keys),
            "jwt_configured": self._jwt_secret is not None,
            "successes": dict(self._successes),
            "failures": dict(self._failures),
        }

    def _bypass(self, subject: str) -> Identity:
        self._successes[AuthMethod.BYPASS.value] += 1
        return Identity(method=AuthMethod.BYPASS, subject=subject)

    def _fail(self, message: str, reason: AuthFailure) -> AuthError:
        self._failures[reason.value] += 1
        log.debug("auth_failed", reason=reason.value)
        return AuthError(message, reason=reason)
