"""Core domain records shared across the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EnvironmentName(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class EnforcementLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    BLOCKING = "blocking"


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class FindingCategory(str, Enum):
    SECURITY = "security"
    POLICY = "policy"
    COST = "cost"


class DecisionAction(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class RoleTier(str, Enum):
    BOOTSTRAP = "bootstrap"
    CENTRAL = "central"
    ENVIRONMENT = "environment"

    @property
    def rank(self) -> int:
        """Position in the delegation tree; lower is more privileged."""
        return _TIER_RANK[self]


_TIER_RANK = {
    RoleTier.BOOTSTRAP: 0,
    RoleTier.CENTRAL: 1,
    RoleTier.ENVIRONMENT: 2,
}


class TriggerSource(str, Enum):
    PUSH = "push"
    TAG = "tag"
    MANUAL = "manual"
    ROLLBACK = "rollback"


class CredentialPurpose(str, Enum):
    DEPLOY = "deploy"
    BOOTSTRAP = "bootstrap"


class RollbackMethod(str, Enum):
    LAST_KNOWN_GOOD = "last_known_good"
    SPECIFIC_COMMIT = "specific_commit"
    INFRASTRUCTURE_ONLY = "infrastructure_only"
    CONTENT_ONLY = "content_only"


@dataclass(frozen=True)
class Environment:
    """One logical deployment target, immutable for the life of the process."""

    name: EnvironmentName
    account_id: str
    budget_limit: float
    enforcement_level: EnforcementLevel
    severity_threshold: Severity = Severity.HIGH
    region: str = "us-east-1"
    health_check_url: str | None = None
    require_rollback_approval: bool = False


@dataclass(frozen=True)
class ActionSet:
    deploy_infrastructure: bool = True
    deploy_content: bool = True

    @property
    def members(self) -> tuple[str, ...]:
        names: list[str] = []
        if self.deploy_infrastructure:
            names.append("deploy_infrastructure")
        if self.deploy_content:
            names.append("deploy_content")
        return tuple(names)

    @property
    def is_empty(self) -> bool:
        return not (self.deploy_infrastructure or self.deploy_content)

    @classmethod
    def from_members(cls, members: str) -> "ActionSet":
        names = {item.strip() for item in members.split(",") if item.strip()}
        return cls(
            deploy_infrastructure="deploy_infrastructure" in names,
            deploy_content="deploy_content" in names,
        )


@dataclass(frozen=True)
class Trigger:
    """What started a deployment: a push, a tag, or a manual request."""

    source: TriggerSource
    ref: str = ""
    environment_override: EnvironmentName | None = None
    deploy_infrastructure: bool | None = None
    deploy_content: bool | None = None
    actor: str | None = None


EXTERNAL_PRINCIPAL = "external"


@dataclass(frozen=True)
class TrustStatement:
    """Who may assume a role, optionally narrowed to a repository and refs.

    ``principal`` is either :data:`EXTERNAL_PRINCIPAL` (the web identity
    provider) or the ARN of another role.
    """

    principal: str
    repository: str | None = None
    refs: tuple[str, ...] = ()

    @property
    def is_external(self) -> bool:
        return self.principal == EXTERNAL_PRINCIPAL


@dataclass(frozen=True)
class Role:
    tier: RoleTier
    arn: str
    trust_scope: tuple[TrustStatement, ...] = ()
    permitted_actions: tuple[str, ...] = ()
    environment: EnvironmentName | None = None
    session_duration_seconds: int = 3600

    @property
    def account_id(self) -> str:
        return self.arn.split(":")[4]


@dataclass(frozen=True)
class Credential:
    """Short-lived delegated credential. Never persisted."""

    role_arn: str
    session_name: str
    expires_at: datetime
    account_id: str
    tier: RoleTier
    access_key_id: str = field(repr=False)
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    issued_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Credential(role_arn={self.role_arn!r}, tier={self.tier.value}, "
            f"access_key_id={self.access_key_id[:8]}***, "
            f"expires_at={self.expires_at.isoformat()})"
        )

    def as_env(self, region: str | None = None) -> dict[str, str]:
        env = {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
        }
        if region:
            env["AWS_REGION"] = region
            env["AWS_DEFAULT_REGION"] = region
        return env


@dataclass(frozen=True)
class BackendState:
    """Handle to one environment's durable state store."""

    environment: EnvironmentName
    store_locator: str
    lock_table: str
    lock_key: str
    region: str
    exists: bool


@dataclass(frozen=True)
class ArtifactRef:
    stage: str
    location: str
    checksum: str = ""
    commit: str | None = None


@dataclass(frozen=True)
class Finding:
    category: FindingCategory
    severity: Severity
    message: str
    projected_cost: float | None = None

    @classmethod
    def cost(cls, projected_cost: float, message: str | None = None) -> "Finding":
        return cls(
            category=FindingCategory.COST,
            severity=Severity.INFO,
            message=message or f"Projected monthly cost {projected_cost:.2f}",
            projected_cost=projected_cost,
        )

    def describe(self) -> str:
        return f"[{self.category.value}/{self.severity.value}] {self.message}"


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: str
    findings: tuple[Finding, ...] = ()
    budget_exceeded: bool = False
