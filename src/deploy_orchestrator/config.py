"""Configuration management for the deployment orchestrator.

The whole configuration is one immutable ``Settings`` object built at
process start from ``deploy.yaml`` plus a few environment overrides. It is
passed explicitly to every component and never re-read mid-run.
"""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from deploy_orchestrator.credentials.trust import DelegationTree
from deploy_orchestrator.domain.models import (
    EnforcementLevel,
    Environment,
    EnvironmentName,
    Role,
    RoleTier,
    Severity,
    TriggerSource,
    TrustStatement,
)
from deploy_orchestrator.errors import ConfigurationError

_config_logger = logging.getLogger(__name__)

_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
_ROLE_ARN_RE = re.compile(r"^arn:aws(?:-cn|-us-gov)?:iam::\d{12}:role/[\w+=,.@/-]+$")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class LoggingSettings(_Frozen):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(_Frozen):
    history_path: str = Field(default="./data/deploy_history.sqlite")
    sqlite_wal: bool = Field(default=True)


class EnvironmentSettings(_Frozen):
    account_id: str
    budget_limit: float = Field(gt=0)
    enforcement_level: EnforcementLevel
    severity_threshold: Severity = Field(default=Severity.HIGH)
    region: str | None = Field(default=None)
    health_check_url: str | None = Field(default=None)
    require_rollback_approval: bool | None = Field(
        default=None,
        description="Defaults to True for prod and False elsewhere.",
    )

    @field_validator("account_id", mode="before")
    @classmethod
    def _validate_account_id(cls, value: Any) -> str:
        text = str(value).strip()
        if not _ACCOUNT_ID_RE.match(text):
            raise ValueError(f"Invalid account_id: {value!r} (expected 12 digits)")
        return text


class TrustStatementSettings(_Frozen):
    principal: str = Field(description="'external' or the ARN of the trusted role")
    repository: str | None = Field(default=None)
    refs: tuple[str, ...] = Field(default=())


class RoleSettings(_Frozen):
    tier: RoleTier
    arn: str
    environment: EnvironmentName | None = Field(default=None)
    trusted_by: tuple[TrustStatementSettings, ...] = Field(default=())
    permitted_actions: tuple[str, ...] = Field(default=())
    session_duration_seconds: int = Field(default=3600, ge=900, le=3600)

    @field_validator("arn")
    @classmethod
    def _validate_arn(cls, value: str) -> str:
        if not _ROLE_ARN_RE.match(value):
            raise ValueError(f"Invalid role arn: {value}")
        return value


class ResolverRuleSettings(_Frozen):
    source: TriggerSource
    pattern: str
    environment: EnvironmentName

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid resolver pattern '{value}': {exc}") from exc
        return value


def _default_rules() -> tuple[ResolverRuleSettings, ...]:
    return (
        ResolverRuleSettings(
            source=TriggerSource.TAG,
            pattern=r"^v\d+\.\d+\.\d+$",
            environment=EnvironmentName.PROD,
        ),
        ResolverRuleSettings(
            source=TriggerSource.TAG,
            pattern=r"^v\d+\.\d+\.\d+-rc\.?\d+$",
            environment=EnvironmentName.STAGING,
        ),
    )


class RetrySettings(_Frozen):
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=2.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class LockSettings(_Frozen):
    max_attempts: int = Field(default=5, ge=1, le=50)
    delay_seconds: float = Field(default=5.0, ge=0)


class StageTimeouts(_Frozen):
    build_seconds: float = Field(default=20.0, gt=0)
    test_seconds: float = Field(default=35.0, gt=0)
    run_seconds: float = Field(default=120.0, gt=0)


class CommandSettings(_Frozen):
    """External commands driven by the pipeline stages (argv lists)."""

    build: tuple[str, ...] = Field(default=("tofu", "plan", "-out=tfplan-{revision}"))
    scan: tuple[tuple[str, ...], ...] = Field(default=())
    apply: tuple[str, ...] = Field(default=("tofu", "apply", "-auto-approve", "{artifact}"))
    rollback_apply: tuple[str, ...] = Field(
        default=("tofu", "apply", "-auto-approve", "-input=false"),
        description="Applies the checked-out rollback target; empty reuses apply",
    )
    checkout: tuple[str, ...] = Field(
        default=("git", "checkout", "--detach", "{commit}"),
        description="Moves the working tree to a rollback target; empty disables it",
    )
    sync: tuple[str, ...] = Field(default=())
    working_directory: str | None = Field(default=None)
    plan_artifact: str = Field(default="tfplan-{revision}")


class PolicySettings(_Frozen):
    budget_warn_ratio: float = Field(default=0.8, gt=0)
    budget_block_ratio: float = Field(default=1.0, gt=0)


class RollbackSettings(_Frozen):
    min_reason_length: int = Field(default=10, ge=1)
    authorized_approvers: tuple[str, ...] = Field(default=())
    codeowners_path: str | None = Field(default=None)


class IdentitySettings(_Frozen):
    token_env: str = Field(default="DEPLOY_WEB_IDENTITY_TOKEN")
    token_file: str | None = Field(default=None)
    repository: str | None = Field(
        default=None, description="Overrides the token's repository claim"
    )
    ref: str | None = Field(default=None, description="Overrides the token's ref claim")
    sts_region: str = Field(default="us-east-1")


class Settings(_Frozen):
    project: str = Field(default="static-site")
    region: str = Field(default="us-east-1")
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    environments: dict[EnvironmentName, EnvironmentSettings]
    roles: tuple[RoleSettings, ...] = Field(default=())
    rules: tuple[ResolverRuleSettings, ...] = Field(default_factory=_default_rules)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    timeouts: StageTimeouts = Field(default_factory=StageTimeouts)
    commands: CommandSettings = Field(default_factory=CommandSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    rollback: RollbackSettings = Field(default_factory=RollbackSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)

    @field_validator("project")
    @classmethod
    def _validate_project(cls, value: str) -> str:
        if not re.match(r"^[a-z0-9][a-z0-9-]{1,40}$", value):
            raise ValueError(f"Invalid project name: {value!r}")
        return value

    def environment(self, name: str | EnvironmentName) -> Environment:
        try:
            key = EnvironmentName(name)
        except ValueError as exc:
            valid = ", ".join(e.value for e in EnvironmentName)
            raise ConfigurationError(
                f"Unknown environment '{name}'. Valid environments: {valid}"
            ) from exc
        env = self.environments.get(key)
        if env is None:
            raise ConfigurationError(f"Environment '{key.value}' is not configured")
        require_approval = env.require_rollback_approval
        if require_approval is None:
            require_approval = key is EnvironmentName.PROD
        return Environment(
            name=key,
            account_id=env.account_id,
            budget_limit=env.budget_limit,
            enforcement_level=env.enforcement_level,
            severity_threshold=env.severity_threshold,
            region=env.region or self.region,
            health_check_url=env.health_check_url,
            require_rollback_approval=require_approval,
        )

    def role_records(self) -> list[Role]:
        return [
            Role(
                tier=role.tier,
                arn=role.arn,
                trust_scope=tuple(
                    TrustStatement(
                        principal=stmt.principal,
                        repository=stmt.repository,
                        refs=tuple(stmt.refs),
                    )
                    for stmt in role.trusted_by
                ),
                permitted_actions=tuple(role.permitted_actions),
                environment=role.environment,
                session_duration_seconds=role.session_duration_seconds,
            )
            for role in self.roles
        ]


ENV_KEYS = {
    "config_path": "DEPLOY_CONFIG_PATH",
    "region": "DEPLOY_REGION",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "history_path": "DEPLOY_HISTORY_PATH",
    "max_attempts": "DEPLOY_MAX_ATTEMPTS",
}

DEFAULT_CONFIG_PATH = "./deploy.yaml"


def _project_root() -> Path:
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path.cwd()


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root in {path} must be a mapping")
    return data


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    region = os.getenv(ENV_KEYS["region"])
    if region:
        merged["region"] = region

    logging_data = dict(merged.get("logging") or {})
    if os.getenv(ENV_KEYS["log_level"]):
        logging_data["level"] = os.environ[ENV_KEYS["log_level"]]
    if os.getenv(ENV_KEYS["log_file"]):
        logging_data["file"] = os.environ[ENV_KEYS["log_file"]]
    merged["logging"] = logging_data

    storage_data = dict(merged.get("storage") or {})
    if os.getenv(ENV_KEYS["history_path"]):
        storage_data["history_path"] = os.environ[ENV_KEYS["history_path"]]
    merged["storage"] = storage_data

    retry_data = dict(merged.get("retry") or {})
    retry_data["max_attempts"] = _env_int(
        ENV_KEYS["max_attempts"],
        int(retry_data.get("max_attempts", RetrySettings().max_attempts)),
    )
    merged["retry"] = retry_data
    return merged


def settings_from_mapping(data: dict[str, Any]) -> Settings:
    """Validate a raw mapping and check the delegation tree."""
    try:
        settings = Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    for rule_env in {rule.environment for rule in settings.rules}:
        if rule_env not in settings.environments:
            raise ConfigurationError(
                f"Resolver rule targets unconfigured environment '{rule_env.value}'"
            )
    if EnvironmentName.DEV not in settings.environments:
        raise ConfigurationError("The dev environment must be configured (resolver default)")

    if settings.roles:
        DelegationTree(settings.role_records())
    return settings


def load_settings(path: str | None = None) -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached(path)


@lru_cache(maxsize=4)
def _load_settings_cached(path: str | None) -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    config_path = Path(path or os.getenv(ENV_KEYS["config_path"], DEFAULT_CONFIG_PATH))
    data = _apply_env_overrides(_read_yaml(config_path))
    settings = settings_from_mapping(data)
    Path(settings.storage.history_path).parent.mkdir(parents=True, exist_ok=True)
    _config_logger.debug("Loaded configuration from %s", config_path)
    return settings
