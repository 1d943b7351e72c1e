"""rpcgate security module.

Authentifizierung (API-Key, JWT, Bypass) und Eingabe-Validierung.
"""

from rpcgate.security.auth import AuthMethod, Authenticator, Identity, redact_api_key
from rpcgate.security.validation import InputValidator, RequestSanitizer, expression_depth

__all__ = [
    "AuthMethod",
    "Authenticator",
    "Identity",
    "InputValidator",
    "RequestSanitizer",
    "expression_depth",
    "redact_api_key",
]
