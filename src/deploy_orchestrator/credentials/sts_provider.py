"""STS credential provider for each hop of the delegation chain.

The first hop exchanges the external identity token with
AssumeRoleWithWebIdentity (unsigned request). Later hops call AssumeRole
signed with the previous hop's credential. The RoleSessionName is mandatory
for audit traceability.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
from typing import Any

import botocore.session
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from deploy_orchestrator.domain.models import Credential, RoleTier
from deploy_orchestrator.errors import AuthenticationError, TransientInfraError
from deploy_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "InternalFailure",
        "IDPCommunicationError",
    }
)


def _client_config(unsigned: bool) -> Config:
    options: dict[str, Any] = {
        "connect_timeout": 5,
        "read_timeout": 15,
        "retries": {"max_attempts": 2},
    }
    if unsigned:
        options["signature_version"] = UNSIGNED
    return Config(**options)


def translate_client_error(exc: ClientError, role_arn: str) -> Exception:
    error_code = exc.response.get("Error", {}).get("Code", "Unknown")
    error_message = exc.response.get("Error", {}).get("Message", str(exc))
    if error_code in _TRANSIENT_CODES:
        return TransientInfraError(
            f"STS temporarily unavailable for {role_arn}: {error_code}", "sts_transient"
        )

    code_map = {
        "IDPRejectedClaim": "idp_rejected",
        "InvalidIdentityToken": "invalid_token",
        "ExpiredTokenException": "token_expired",
        "ExpiredToken": "token_expired",
        "RegionDisabledException": "region_disabled",
        "AccessDenied": "access_denied",
    }
    return AuthenticationError(
        f"STS rejected {role_arn}: {error_message}",
        code_map.get(error_code, "sts_error"),
    )


class STSCredentialProvider:
    """Thread-safe STS provider for web identity and chained role assumption."""

    def __init__(self, region: str = "us-east-1") -> None:
        self._region = region
        self._client: Any = None
        self._lock = threading.Lock()

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        with self._lock:
            if self._client is not None:
                return self._client

            session = botocore.session.get_session()
            self._client = session.create_client(
                "sts",
                region_name=self._region,
                config=_client_config(unsigned=True),
            )
            logger.info("STS client initialized (UNSIGNED, region=%s)", self._region)
            return self._client

    def _signed_client(self, source: Credential) -> Any:
        session = botocore.session.get_session()
        return session.create_client(
            "sts",
            region_name=self._region,
            aws_access_key_id=source.access_key_id,
            aws_secret_access_key=source.secret_access_key,
            aws_session_token=source.session_token,
            config=_client_config(unsigned=False),
        )

    async def assume_role_with_web_identity(
        self,
        role_arn: str,
        tier: RoleTier,
        web_identity_token: str,
        session_name: str,
        duration_seconds: int = 3600,
    ) -> Credential:
        return await asyncio.to_thread(
            self._assume_web_identity_sync,
            role_arn,
            tier,
            web_identity_token,
            session_name,
            duration_seconds,
        )

    async def assume_role(
        self,
        role_arn: str,
        tier: RoleTier,
        source: Credential,
        session_name: str,
        duration_seconds: int = 3600,
    ) -> Credential:
        return await asyncio.to_thread(
            self._assume_role_sync,
            role_arn,
            tier,
            source,
            session_name,
            duration_seconds,
        )

    def _assume_web_identity_sync(
        self,
        role_arn: str,
        tier: RoleTier,
        web_identity_token: str,
        session_name: str,
        duration_seconds: int,
    ) -> Credential:
        client = self._get_client()
        safe_session_name = self._sanitize_session_name(session_name)
        params: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": safe_session_name,
            "WebIdentityToken": web_identity_token,
            "DurationSeconds": duration_seconds,
        }
        response = self._call(client.assume_role_with_web_identity, params, role_arn)
        return self._to_credential(response, role_arn, tier, safe_session_name)

    def _assume_role_sync(
        self,
        role_arn: str,
        tier: RoleTier,
        source: Credential,
        session_name: str,
        duration_seconds: int,
    ) -> Credential:
        client = self._signed_client(source)
        safe_session_name = self._sanitize_session_name(session_name)
        params: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": safe_session_name,
            "DurationSeconds": duration_seconds,
        }
        response = self._call(client.assume_role, params, role_arn)
        return self._to_credential(response, role_arn, tier, safe_session_name)

    def _call(self, method: Any, params: dict[str, Any], role_arn: str) -> dict[str, Any]:
        try:
            return method(**params)
        except ClientError as exc:
            logger.warning(
                "STS failed: role=%s, session=%s, error=%s",
                role_arn,
                params["RoleSessionName"],
                exc.response.get("Error", {}).get("Code", "Unknown"),
            )
            raise translate_client_error(exc, role_arn) from exc
        except BotoCoreError as exc:
            raise TransientInfraError(
                f"Could not reach STS for {role_arn}: {exc}", "sts_unreachable"
            ) from exc

    @staticmethod
    def _to_credential(
        response: dict[str, Any], role_arn: str, tier: RoleTier, session_name: str
    ) -> Credential:
        creds = response["Credentials"]
        logger.info("Assumed role: %s (%s tier), session=%s", role_arn, tier.value, session_name)
        return Credential(
            role_arn=role_arn,
            session_name=session_name,
            expires_at=creds["Expiration"],
            account_id=role_arn.split(":")[4],
            tier=tier,
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            issued_at=utc_now(),
        )

    def _sanitize_session_name(self, name: str) -> str:
        """Sanitize for STS (2-64 chars, alphanumeric/=.@-)."""
        safe = re.sub(r"[^a-zA-Z0-9=.@-]", "-", name)
        safe = re.sub(r"-+", "-", safe).strip("-")
        if len(safe) > 64:
            suffix = hashlib.sha256(name.encode()).hexdigest()[:8]
            safe = safe[:55] + "-" + suffix
        return safe if len(safe) >= 2 else "deploy-" + safe
