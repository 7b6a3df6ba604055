"""Error taxonomy shared by every orchestrator component.

Each error carries a machine ``code``, the process ``exit_code`` the CLI
reports for it, and whether the retry policy may attempt the operation
again. Decision errors (authentication, policy, budget) are never retried.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deploy_orchestrator.domain.models import Decision, Finding

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_POLICY_BLOCKED = 2
EXIT_AUTH_FAILURE = 3
EXIT_UNAUTHORIZED = 4


class OrchestratorError(Exception):
    """Base class for all orchestrator failures."""

    code = "orchestrator_error"
    exit_code = EXIT_FAILURE
    retryable = False

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def reason(self) -> str:
        return str(self)


class ConfigurationError(OrchestratorError):
    """Raised when configuration is malformed or references unknown names."""

    code = "configuration_error"


class AuthenticationError(OrchestratorError):
    """Raised when a delegation-chain hop rejects a credential request."""

    code = "authentication_failed"
    exit_code = EXIT_AUTH_FAILURE


class AuthorizationError(OrchestratorError):
    """Raised when an operation lacks a required authorization signal."""

    code = "unauthorized"
    exit_code = EXIT_UNAUTHORIZED


class LockConflictError(OrchestratorError):
    """Raised when another run holds the environment lock."""

    code = "contended"
    retryable = True

    def __init__(self, message: str, holder: str | None = None) -> None:
        super().__init__(message)
        self.holder = holder


class TransientInfraError(OrchestratorError):
    """Network or rate-limit class failure from an external collaborator."""

    code = "transient_infra"
    retryable = True


class PolicyBlockedError(OrchestratorError):
    """The policy gate returned ``block`` for the run."""

    code = "policy_blocked"
    exit_code = EXIT_POLICY_BLOCKED

    def __init__(self, decision: "Decision", environment: str) -> None:
        self.decision = decision
        self.environment = environment
        super().__init__(
            f"Deployment to {environment} blocked by policy gate: {decision.reason}"
        )

    @property
    def findings(self) -> tuple["Finding", ...]:
        return self.decision.findings


class BudgetExceededError(PolicyBlockedError):
    """A cost finding crossed the blocking threshold."""

    code = "budget_exceeded"


class StageError(OrchestratorError):
    """A stage could not satisfy its postconditions."""

    code = "stage_failed"


class StageTimeoutError(StageError):
    code = "stage_timeout"


class InvalidTransitionError(OrchestratorError):
    """Raised when a pipeline run is asked to move along an illegal edge."""

    code = "invalid_transition"


class RollbackRequestError(OrchestratorError):
    """Raised for malformed rollback requests (short reason, missing target)."""

    code = "invalid_rollback"


class BackendOwnershipError(OrchestratorError):
    """The state store exists but belongs to a different environment."""

    code = "backend_ownership"
