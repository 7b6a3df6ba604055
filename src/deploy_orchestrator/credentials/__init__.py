"""Tiered credential delegation."""

from deploy_orchestrator.credentials.cache import CacheKey, CredentialCache
from deploy_orchestrator.credentials.trust import DelegationTree, IdentityClaims

__all__ = [
    "CacheKey",
    "CredentialCache",
    "DelegationTree",
    "IdentityClaims",
]
