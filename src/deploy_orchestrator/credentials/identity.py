"""External identity token loading.

The token is the out-of-band starting point of the delegation chain (for
example a CI provider's OIDC token). Its signature is verified by STS; the
payload is only decoded here to read the repository and ref claims that the
trust predicates match against.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jwt

from deploy_orchestrator.credentials.trust import IdentityClaims
from deploy_orchestrator.errors import AuthenticationError

if TYPE_CHECKING:
    from deploy_orchestrator.config import IdentitySettings


@dataclass(frozen=True)
class WebIdentity:
    token: str = field(repr=False)
    claims: IdentityClaims


def decode_unverified_claims(token: str) -> dict[str, Any]:
    if token.count(".") != 2:
        raise AuthenticationError("Web identity token is not a JWT", "invalid_token")
    try:
        decoded = jwt.decode(token, options={"verify_signature": False})
    except jwt.exceptions.InvalidTokenError as exc:
        raise AuthenticationError(
            f"Web identity token payload could not be decoded: {exc}", "invalid_token"
        ) from exc
    return decoded


def load_web_identity(settings: "IdentitySettings") -> WebIdentity:
    token = os.getenv(settings.token_env, "").strip()
    if not token and settings.token_file:
        path = Path(settings.token_file)
        if path.exists():
            token = path.read_text(encoding="utf-8").strip()
    if not token:
        raise AuthenticationError(
            f"No external identity token found (set {settings.token_env}"
            + (f" or provide {settings.token_file}" if settings.token_file else "")
            + ")",
            "missing_token",
        )

    raw = decode_unverified_claims(token)
    claims = IdentityClaims(
        subject=str(raw.get("sub", "")),
        repository=settings.repository or _optional_str(raw.get("repository")),
        ref=settings.ref or _optional_str(raw.get("ref")),
    )
    return WebIdentity(token=token, claims=claims)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
