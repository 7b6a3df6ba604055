"""Trigger to environment routing.

First-match-wins over an ordered rule table. An explicit manual override
always wins, and anything unmatched lands in dev.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from deploy_orchestrator.domain.models import (
    ActionSet,
    Environment,
    EnvironmentName,
    Trigger,
    TriggerSource,
)
from deploy_orchestrator.errors import ConfigurationError

if TYPE_CHECKING:
    from deploy_orchestrator.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = EnvironmentName.DEV

_REF_PREFIXES = ("refs/tags/", "refs/heads/")


def short_ref(ref: str) -> str:
    for prefix in _REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass(frozen=True)
class ResolverRule:
    source: TriggerSource
    pattern: re.Pattern[str]
    environment: EnvironmentName

    def matches(self, trigger: Trigger) -> bool:
        if trigger.source is not self.source:
            return False
        return bool(self.pattern.search(short_ref(trigger.ref)))


class EnvironmentResolver:
    """Pure mapping from a trigger to (Environment, ActionSet)."""

    def __init__(
        self,
        rules: list[ResolverRule],
        environments: dict[EnvironmentName, Environment],
    ) -> None:
        if DEFAULT_ENVIRONMENT not in environments:
            raise ValueError("The default environment must be configured")
        self._rules = list(rules)
        self._environments = dict(environments)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "EnvironmentResolver":
        rules = [
            ResolverRule(
                source=rule.source,
                pattern=re.compile(rule.pattern),
                environment=rule.environment,
            )
            for rule in settings.rules
        ]
        environments = {name: settings.environment(name) for name in settings.environments}
        return cls(rules, environments)

    def resolve(self, trigger: Trigger) -> tuple[Environment, ActionSet]:
        target = self._target_for(trigger)
        actions = ActionSet(
            deploy_infrastructure=(
                True if trigger.deploy_infrastructure is None else trigger.deploy_infrastructure
            ),
            deploy_content=True if trigger.deploy_content is None else trigger.deploy_content,
        )
        return self._environments[target], actions

    def _target_for(self, trigger: Trigger) -> EnvironmentName:
        if trigger.environment_override is not None:
            if trigger.environment_override not in self._environments:
                raise ConfigurationError(
                    f"Environment '{trigger.environment_override.value}' is not configured"
                )
            return trigger.environment_override

        for rule in self._rules:
            if rule.matches(trigger):
                logger.debug(
                    "Trigger %s:%s matched rule %s -> %s",
                    trigger.source.value,
                    trigger.ref,
                    rule.pattern.pattern,
                    rule.environment.value,
                )
                return rule.environment

        logger.info(
            "No routing rule matched %s:%s; defaulting to %s",
            trigger.source.value,
            trigger.ref,
            DEFAULT_ENVIRONMENT.value,
        )
        return DEFAULT_ENVIRONMENT
