"""
Per-request authentication context.

Callers may publish as the service itself, as a service account they supply
(as an object or a JSON-encoded string), or with a bearer access token. The
shape of ``credentials`` is resolved once into one of the variants below.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account

from ..errors import AuthFailure


logger = logging.getLogger(__name__)

PUBSUB_SCOPE = "https://www.googleapis.com/auth/pubsub"
DEFAULT_SCOPES: Tuple[str, ...] = (PUBSUB_SCOPE,)


@dataclass(frozen=True)
class DefaultIdentity:
    scopes: Tuple[str, ...] = DEFAULT_SCOPES


@dataclass(frozen=True)
class ServiceAccount:
    info: Mapping[str, Any] = field(repr=False)
    scopes: Tuple[str, ...] = DEFAULT_SCOPES


@dataclass(frozen=True)
class BearerToken:
    token: str = field(repr=False)
    scopes: Tuple[str, ...] = DEFAULT_SCOPES


AuthContext = Union[DefaultIdentity, ServiceAccount, BearerToken]


def normalize_scopes(scope: Union[None, str, Sequence[str]]) -> Tuple[str, ...]:
    if scope is None:
        return DEFAULT_SCOPES
    if isinstance(scope, str):
        parts = scope.replace(",", " ").split()
    else:
        parts = [s.strip() for s in scope if isinstance(s, str) and s.strip()]
    return tuple(parts) or DEFAULT_SCOPES


def resolve_auth_context(
    credentials: Union[None, str, Mapping[str, Any]],
    scope: Union[None, str, Sequence[str]] = None,
) -> AuthContext:
    scopes = normalize_scopes(scope)

    if credentials is None:
        return DefaultIdentity(scopes=scopes)

    if isinstance(credentials, Mapping):
        return ServiceAccount(info=dict(credentials), scopes=scopes)

    token = credentials.strip()
    if not token:
        return DefaultIdentity(scopes=scopes)

    try:
        parsed = json.loads(token)
    except json.JSONDecodeError:
        return BearerToken(token=token, scopes=scopes)

    if not isinstance(parsed, dict):
        raise AuthFailure(
            message="Credentials string must be a service account JSON object or an access token",
            details=f"Parsed credentials as {type(parsed).__name__}",
        )
    return ServiceAccount(info=parsed, scopes=scopes)


def build_credentials(ctx: AuthContext) -> Optional[Any]:
    """Return google-auth credentials for ``ctx``, or None for the ambient identity."""
    if isinstance(ctx, DefaultIdentity):
        return None

    if isinstance(ctx, ServiceAccount):
        try:
            return service_account.Credentials.from_service_account_info(
                dict(ctx.info), scopes=list(ctx.scopes)
            )
        except (ValueError, KeyError) as exc:
            logger.warning("Rejected malformed service account credentials: %s", type(exc).__name__)
            raise AuthFailure(
                message="Invalid service account credentials",
                details=str(exc),
            ) from exc

    if isinstance(ctx, BearerToken):
        # Sent as "Authorization: Bearer <token>" on every call made with it.
        return oauth2_credentials.Credentials(token=ctx.token, scopes=list(ctx.scopes))

    raise TypeError(f"Unknown auth context: {type(ctx).__name__}")


def describe(ctx: AuthContext) -> str:
    """Loggable name for ``ctx``; never includes credential material."""
    if isinstance(ctx, ServiceAccount):
        return "service_account"
    if isinstance(ctx, BearerToken):
        return "bearer_token"
    return "default"
