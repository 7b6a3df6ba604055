"""Policy gate evaluation.

Translates scan, policy and cost findings into an allow/warn/block decision
using the environment's enforcement level:

- ``blocking``: block when any finding reaches the severity threshold or a
  cost finding reaches the block ratio of the budget.
- ``warning``: the same findings only warn.
- ``info``: always allow; findings are still carried for audit.

A cost finding at or above the warn ratio warns in warning and blocking
environments. Evaluation is a pure function of its inputs.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from deploy_orchestrator.domain.models import (
    Decision,
    DecisionAction,
    EnforcementLevel,
    Environment,
    Finding,
    FindingCategory,
)

DEFAULT_WARN_RATIO = 0.8
DEFAULT_BLOCK_RATIO = 1.0


@dataclass(frozen=True)
class _Assessment:
    offending: tuple[Finding, ...]
    cost_warnings: tuple[Finding, ...]
    budget_exceeded: bool


class PolicyGate:
    def __init__(
        self,
        warn_ratio: float = DEFAULT_WARN_RATIO,
        block_ratio: float = DEFAULT_BLOCK_RATIO,
    ) -> None:
        if warn_ratio > block_ratio:
            raise ValueError("budget warn ratio must not exceed the block ratio")
        self._warn_ratio = warn_ratio
        self._block_ratio = block_ratio

    def utilization(self, environment: Environment, finding: Finding) -> float | None:
        if finding.category is not FindingCategory.COST or finding.projected_cost is None:
            return None
        return finding.projected_cost / environment.budget_limit

    def evaluate(self, environment: Environment, findings: Iterable[Finding]) -> Decision:
        findings = tuple(findings)
        assessment = self._assess(environment, findings)
        level = environment.enforcement_level
        name = environment.name.value

        if level is EnforcementLevel.INFO:
            return Decision(
                action=DecisionAction.ALLOW,
                reason=(
                    f"{name} enforces at info level; "
                    f"{len(findings)} finding(s) recorded for audit"
                ),
                findings=findings,
            )

        if assessment.offending:
            summary = "; ".join(self._describe(environment, f) for f in assessment.offending)
            if level is EnforcementLevel.BLOCKING:
                return Decision(
                    action=DecisionAction.BLOCK,
                    reason=f"{name} blocks on: {summary}",
                    findings=assessment.offending,
                    budget_exceeded=assessment.budget_exceeded,
                )
            return Decision(
                action=DecisionAction.WARN,
                reason=f"{name} enforces at warning level; would block on: {summary}",
                findings=assessment.offending,
                budget_exceeded=assessment.budget_exceeded,
            )

        if assessment.cost_warnings:
            summary = "; ".join(
                self._describe(environment, f) for f in assessment.cost_warnings
            )
            return Decision(
                action=DecisionAction.WARN,
                reason=f"{name} budget utilization high: {summary}",
                findings=assessment.cost_warnings,
            )

        return Decision(
            action=DecisionAction.ALLOW,
            reason=(
                f"{name}: no finding reached the "
                f"{environment.severity_threshold.value} threshold"
            ),
        )

    def _assess(self, environment: Environment, findings: tuple[Finding, ...]) -> _Assessment:
        offending: list[Finding] = []
        cost_warnings: list[Finding] = []
        budget_exceeded = False
        threshold = environment.severity_threshold.rank

        for finding in findings:
            utilization = self.utilization(environment, finding)
            if utilization is not None:
                if utilization >= self._block_ratio:
                    offending.append(finding)
                    budget_exceeded = True
                elif utilization >= self._warn_ratio:
                    cost_warnings.append(finding)
                continue
            if finding.severity.rank >= threshold:
                offending.append(finding)

        return _Assessment(
            offending=tuple(offending),
            cost_warnings=tuple(cost_warnings),
            budget_exceeded=budget_exceeded,
        )

    def _describe(self, environment: Environment, finding: Finding) -> str:
        utilization = self.utilization(environment, finding)
        if utilization is None:
            return finding.describe()
        return (
            f"{finding.describe()} ({utilization:.0%} of budget "
            f"{environment.budget_limit:.2f})"
        )
