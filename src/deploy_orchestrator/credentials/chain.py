"""Credential delegation chain.

``obtain`` walks the validated delegation tree from the external identity to
the requested tier. Every hop is checked against the trust predicate before
STS is called, and any rejected hop aborts the whole chain: no partial
credential is ever returned. An environment-tier credential can only be
minted from a central-tier credential.

Each PipelineRun owns its own chain instance, so credentials are never
shared between runs.
"""

from __future__ import annotations

import logging
import uuid

from deploy_orchestrator.credentials.cache import CacheKey, CredentialCache
from deploy_orchestrator.credentials.identity import WebIdentity
from deploy_orchestrator.credentials.sts_provider import STSCredentialProvider
from deploy_orchestrator.credentials.trust import DelegationTree
from deploy_orchestrator.domain.models import (
    EXTERNAL_PRINCIPAL,
    Credential,
    CredentialPurpose,
    Environment,
    Role,
    RoleTier,
)
from deploy_orchestrator.errors import AuthenticationError

logger = logging.getLogger(__name__)


class CredentialDelegationChain:
    def __init__(
        self,
        tree: DelegationTree,
        provider: STSCredentialProvider,
        identity: WebIdentity,
        cache: CredentialCache | None = None,
        session_prefix: str = "deploy",
    ) -> None:
        self._tree = tree
        self._provider = provider
        self._identity = identity
        self._cache = cache or CredentialCache()
        self._session_id = f"{session_prefix}-{uuid.uuid4().hex[:8]}"

    async def obtain(
        self,
        environment: Environment,
        purpose: CredentialPurpose = CredentialPurpose.DEPLOY,
    ) -> Credential:
        """Return a credential for ``environment``.

        DEPLOY yields an environment-tier credential reached through the
        central tier; BOOTSTRAP yields a bootstrap-tier credential, used only
        for first-time backend creation.

        Raises:
            AuthenticationError: if any hop is rejected.
            ConfigurationError: if the tree has no path for the environment.
        """
        path = self._tree.path_for(environment.name, purpose)
        logger.debug(
            "Delegation path for %s (%s): %s",
            environment.name.value,
            purpose.value,
            " -> ".join(role.arn for role in path),
        )

        caller = EXTERNAL_PRINCIPAL
        credential: Credential | None = None
        for role in path:
            credential = await self._hop(environment, caller, role, credential)
            caller = role.arn

        if credential is None:
            raise AuthenticationError(
                f"Empty delegation path for {environment.name.value}", "empty_path"
            )
        if purpose is CredentialPurpose.DEPLOY and credential.tier is not RoleTier.ENVIRONMENT:
            raise AuthenticationError(
                f"Delegation chain for {environment.name.value} ended at "
                f"{credential.tier.value} tier instead of environment tier",
                "wrong_tier",
            )
        if credential.tier is RoleTier.ENVIRONMENT and credential.account_id != environment.account_id:
            raise AuthenticationError(
                f"Environment role {credential.role_arn} is not in account "
                f"{environment.account_id} configured for {environment.name.value}",
                "account_mismatch",
            )
        return credential

    async def _hop(
        self,
        environment: Environment,
        caller: str,
        role: Role,
        source: Credential | None,
    ) -> Credential:
        claims = self._identity.claims
        if not self._tree.permits(caller, role, claims):
            logger.warning(
                "Trust rejected: caller=%s role=%s repository=%s ref=%s",
                caller,
                role.arn,
                claims.repository,
                claims.ref,
            )
            raise AuthenticationError(
                f"{role.tier.value}-tier role {role.arn} does not trust {caller} "
                f"for repository={claims.repository!r} ref={claims.ref!r}",
                "trust_rejected",
            )

        key = CacheKey(environment=environment.name, tier=role.tier)
        session_name = f"{self._session_id}-{environment.name.value}-{role.tier.value}"

        async def refresh() -> Credential:
            if source is None:
                return await self._provider.assume_role_with_web_identity(
                    role_arn=role.arn,
                    tier=role.tier,
                    web_identity_token=self._identity.token,
                    session_name=session_name,
                    duration_seconds=role.session_duration_seconds,
                )
            return await self._provider.assume_role(
                role_arn=role.arn,
                tier=role.tier,
                source=source,
                session_name=session_name,
                duration_seconds=role.session_duration_seconds,
            )

        return await self._cache.get_or_refresh(key, refresh)

    def discard(self) -> None:
        self._cache.discard()
