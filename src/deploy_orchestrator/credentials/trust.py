"""Delegation tree: which principal may assume which role.

Roles form a strict tree ``bootstrap -> central -> environment``. The
external identity provider may only mint bootstrap or central credentials;
role-to-role edges must descend exactly one tier. An environment role that
trusts the bootstrap role directly (skipping central) is rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase

from deploy_orchestrator.domain.models import (
    EXTERNAL_PRINCIPAL,
    CredentialPurpose,
    EnvironmentName,
    Role,
    RoleTier,
    TrustStatement,
)
from deploy_orchestrator.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityClaims:
    """Claims asserted by the external identity token."""

    subject: str
    repository: str | None = None
    ref: str | None = None


def edge_violation(caller_tier: RoleTier | None, target_tier: RoleTier) -> str | None:
    """Return why ``caller -> target`` is illegal, or None when it is allowed.

    ``caller_tier`` is None for the external identity provider.
    """
    if caller_tier is None:
        if target_tier is RoleTier.ENVIRONMENT:
            return (
                "environment-tier roles must not trust the external identity "
                "provider directly; they must be reached through the central tier"
            )
        return None
    if target_tier.rank == caller_tier.rank + 1:
        return None
    if target_tier.rank > caller_tier.rank + 1:
        return (
            f"{target_tier.value}-tier role may not trust a {caller_tier.value}-tier "
            "role directly (delegation must not skip a tier)"
        )
    return (
        f"{target_tier.value}-tier role may not trust a {caller_tier.value}-tier role "
        "(trust must flow from a more privileged tier)"
    )


def statement_matches(
    statement: TrustStatement, caller: str, claims: IdentityClaims
) -> bool:
    if statement.principal != caller:
        return False
    if statement.repository is not None and statement.repository != claims.repository:
        return False
    if statement.refs:
        if not claims.ref:
            return False
        if not any(fnmatchcase(claims.ref, pattern) for pattern in statement.refs):
            return False
    return True


class DelegationTree:
    """Validated set of roles and trust edges."""

    def __init__(self, roles: list[Role]) -> None:
        self._by_arn: dict[str, Role] = {}
        for role in roles:
            if role.arn in self._by_arn:
                raise ConfigurationError(f"Duplicate role arn in delegation tree: {role.arn}")
            self._by_arn[role.arn] = role

        for role in roles:
            if role.tier is RoleTier.ENVIRONMENT and role.environment is None:
                raise ConfigurationError(
                    f"Environment-tier role {role.arn} must name its environment"
                )
            for statement in role.trust_scope:
                self._validate_edge(role, statement)

        seen: set[EnvironmentName | None] = set()
        for role in roles:
            if role.tier is not RoleTier.ENVIRONMENT:
                continue
            if role.environment in seen:
                raise ConfigurationError(
                    f"More than one environment-tier role for '{role.environment.value}'"
                )
            seen.add(role.environment)

        logger.debug("Delegation tree validated with %d roles", len(roles))

    def _validate_edge(self, role: Role, statement: TrustStatement) -> None:
        if statement.is_external:
            caller_tier = None
        else:
            caller = self._by_arn.get(statement.principal)
            if caller is None:
                raise ConfigurationError(
                    f"Role {role.arn} trusts unknown principal {statement.principal}"
                )
            caller_tier = caller.tier
        violation = edge_violation(caller_tier, role.tier)
        if violation:
            raise ConfigurationError(f"Invalid trust edge into {role.arn}: {violation}")

    @property
    def roles(self) -> tuple[Role, ...]:
        return tuple(self._by_arn.values())

    def get(self, arn: str) -> Role | None:
        return self._by_arn.get(arn)

    def environment_role(self, environment: EnvironmentName) -> Role:
        for role in self._by_arn.values():
            if role.tier is RoleTier.ENVIRONMENT and role.environment is environment:
                return role
        raise ConfigurationError(
            f"No environment-tier role configured for '{environment.value}'"
        )

    def _first_of_tier(self, tier: RoleTier, environment: EnvironmentName) -> Role:
        scoped = [
            r
            for r in self._by_arn.values()
            if r.tier is tier and r.environment in (environment, None)
        ]
        # Environment-specific roles win over shared ones.
        scoped.sort(key=lambda r: r.environment is None)
        if not scoped:
            raise ConfigurationError(
                f"No {tier.value}-tier role configured for '{environment.value}'"
            )
        return scoped[0]

    def path_for(
        self, environment: EnvironmentName, purpose: CredentialPurpose
    ) -> list[Role]:
        """Roles to assume, in order, starting from the external identity."""
        if purpose is CredentialPurpose.BOOTSTRAP:
            return [self._first_of_tier(RoleTier.BOOTSTRAP, environment)]

        target = self.environment_role(environment)
        for statement in target.trust_scope:
            caller = self._by_arn.get(statement.principal)
            if caller is not None and caller.tier is RoleTier.CENTRAL:
                return [caller, target]
        raise ConfigurationError(
            f"Environment role {target.arn} is not trusted by any central-tier role"
        )

    def permits(self, caller: str, role: Role, claims: IdentityClaims) -> bool:
        """Pure trust predicate for one hop.

        ``caller`` is :data:`EXTERNAL_PRINCIPAL` or the ARN of the role whose
        credential is presented.
        """
        if caller == EXTERNAL_PRINCIPAL:
            caller_tier = None
        else:
            caller_role = self._by_arn.get(caller)
            if caller_role is None:
                return False
            caller_tier = caller_role.tier
        if edge_violation(caller_tier, role.tier) is not None:
            return False
        return any(statement_matches(s, caller, claims) for s in role.trust_scope)
