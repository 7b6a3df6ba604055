"""External collaborators driven by the pipeline stages.

The orchestrator treats the IaC plan/apply tool, the scanners, the content
sync and the health endpoint as opaque. The protocols below are what the
runner needs from them; the ``Command*`` classes run configured argv lists
as subprocesses with the run's delegated credential in the environment.

Argv entries may reference ``{environment}``, ``{account_id}``,
``{project}``, ``{region}``, ``{run_id}``, ``{commit}``, ``{revision}``
(the commit, else the run id), ``{artifact}`` and ``{checksum}`` (the run's
build artifact, which for a rollback is the target's). Any other braces
are passed through untouched.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx

from deploy_orchestrator.domain.models import (
    ArtifactRef,
    Credential,
    Environment,
    Finding,
    FindingCategory,
    Severity,
)
from deploy_orchestrator.errors import ConfigurationError, StageError, TransientInfraError
from deploy_orchestrator.pipeline.state_machine import PipelineRun

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = (
    "throttling",
    "rate exceeded",
    "requestlimitexceeded",
    "slowdown",
    "serviceunavailable",
    "connection reset",
    "connection refused",
    "could not connect",
    "timed out",
    "temporary failure in name resolution",
    "503 service unavailable",
)

_MAX_OUTPUT_CHARS = 4000

_PLACEHOLDER = re.compile(
    r"\{(environment|account_id|project|region|run_id|commit|revision|artifact|checksum)\}"
)


class Builder(Protocol):
    async def build(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef: ...


class Scanner(Protocol):
    async def scan(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> list[Finding]: ...


class Applier(Protocol):
    async def apply(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef: ...


class Syncer(Protocol):
    async def sync(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef: ...


class HealthChecker(Protocol):
    async def check(self, environment: Environment) -> bool: ...


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[-_MAX_OUTPUT_CHARS:]


def looks_transient(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class CommandExecutor:
    """Runs argv lists with delegated credentials exported as ``AWS_*``.

    A rollback run first checks out the target commit with the configured
    ``checkout`` command, once per run, so apply and sync see the target's
    sources.
    """

    def __init__(
        self,
        project: str,
        working_directory: str | None = None,
        checkout: tuple[str, ...] = (),
    ) -> None:
        self._project = project
        self._cwd = working_directory
        self._checkout = checkout
        self._checked_out: set[str] = set()

    @property
    def working_directory(self) -> Path:
        return Path(self._cwd) if self._cwd else Path.cwd()

    def placeholders(self, run: PipelineRun, environment: Environment) -> dict[str, str]:
        build = run.artifacts.get("build")
        commit = run.commit or (build.commit if build else None) or ""
        return {
            "environment": environment.name.value,
            "account_id": environment.account_id,
            "project": self._project,
            "region": environment.region,
            "run_id": run.run_id,
            "commit": commit,
            "revision": commit or run.run_id,
            "artifact": build.location if build else "",
            "checksum": (build.checksum or "") if build else "",
        }

    def render(
        self, argv: tuple[str, ...], run: PipelineRun, environment: Environment
    ) -> tuple[str, ...]:
        values = self.placeholders(run, environment)
        return tuple(_PLACEHOLDER.sub(lambda m: values[m.group(1)], part) for part in argv)

    async def ensure_revision(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> None:
        """Check out the rollback target's commit before anything is deployed."""
        if not run.is_rollback or not self._checkout or run.run_id in self._checked_out:
            return
        if not run.commit:
            raise StageError(
                f"Rollback target {run.rollback_of} has no recorded commit to check out"
            )
        result = await self.run(self._checkout, run, environment, credential)
        self.check(result, f"Checkout of {run.commit}")
        self._checked_out.add(run.run_id)
        logger.info("[%s] checked out %s for rollback", run.run_id, run.commit)

    async def run(
        self,
        argv: tuple[str, ...],
        run: PipelineRun,
        environment: Environment,
        credential: Credential,
    ) -> CommandResult:
        rendered = self.render(argv, run, environment)
        env = dict(os.environ)
        env.update(credential.as_env(environment.region))
        env["DEPLOY_ENVIRONMENT"] = environment.name.value
        env["DEPLOY_RUN_ID"] = run.run_id

        logger.info("[%s] running: %s", run.run_id, " ".join(rendered))
        try:
            proc = await asyncio.create_subprocess_exec(
                *rendered,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=env,
            )
        except FileNotFoundError as exc:
            raise StageError(f"Command not found: {rendered[0]}") from exc

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Let the tool stop on its own terms; it owns its in-flight changes.
            if proc.returncode is None:
                proc.terminate()
                await asyncio.shield(proc.wait())
            raise

        result = CommandResult(
            argv=rendered,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        logger.debug("[%s] %s exited %d", run.run_id, rendered[0], result.returncode)
        return result

    def check(self, result: CommandResult, what: str) -> None:
        if result.ok:
            return
        output = result.tail()
        if looks_transient(output):
            raise TransientInfraError(f"{what} hit a transient error: {output}")
        raise StageError(f"{what} exited with status {result.returncode}: {output}")


class CommandBuilder:
    """Produces the plan artifact (for example ``tofu plan -out=tfplan-{revision}``).

    The artifact path is rendered like argv, so each revision keeps its own
    plan file for a later rollback.
    """

    def __init__(self, executor: CommandExecutor, argv: tuple[str, ...], artifact: str) -> None:
        self._executor = executor
        self._argv = argv
        self._artifact = artifact

    async def build(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef:
        result = await self._executor.run(self._argv, run, environment, credential)
        self._executor.check(result, "Build")
        (relative,) = self._executor.render((self._artifact,), run, environment)
        path = self._executor.working_directory / relative
        if path.exists():
            checksum = _sha256(path.read_bytes())
            location = str(path)
        else:
            checksum = _sha256(result.stdout.encode("utf-8"))
            location = f"stdout:{result.argv[0]}"
        return ArtifactRef(stage="build", location=location, checksum=checksum, commit=run.commit)


def parse_findings(payload: str, source: str) -> list[Finding]:
    """Parse scanner JSON: a list of findings or ``{"findings": [...]}``.

    Each finding has ``category``, ``severity``, ``message`` and, for cost
    findings, ``projected_cost``.
    """
    data: Any = json.loads(payload) if payload.strip() else []
    if isinstance(data, dict):
        data = data.get("findings", [])
    if not isinstance(data, list):
        raise StageError(f"Scanner {source} returned an unexpected document")

    findings: list[Finding] = []
    for item in data:
        if not isinstance(item, dict):
            raise StageError(f"Scanner {source} returned a malformed finding: {item!r}")
        try:
            category = FindingCategory(str(item.get("category", "security")).lower())
            severity = Severity(str(item.get("severity", "info")).lower())
            projected = item.get("projected_cost")
            findings.append(
                Finding(
                    category=category,
                    severity=severity,
                    message=str(item.get("message", "")) or f"{source} finding",
                    projected_cost=float(projected) if projected is not None else None,
                )
            )
        except (TypeError, ValueError) as exc:
            raise StageError(f"Scanner {source} returned a malformed finding: {exc}") from exc
    return findings


class CommandScanner:
    """Runs each configured scanner and collects its JSON findings.

    A scanner that exits non-zero but prints a findings document is
    reporting findings; one that prints nothing parseable has crashed.
    """

    def __init__(self, executor: CommandExecutor, commands: tuple[tuple[str, ...], ...]) -> None:
        self._executor = executor
        self._commands = commands

    async def scan(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> list[Finding]:
        findings: list[Finding] = []
        for argv in self._commands:
            result = await self._executor.run(argv, run, environment, credential)
            try:
                found = parse_findings(result.stdout, argv[0])
            except json.JSONDecodeError:
                self._executor.check(result, f"Scanner {argv[0]}")
                raise StageError(
                    f"Scanner {argv[0]} did not produce a JSON findings document"
                ) from None
            except StageError:
                self._executor.check(result, f"Scanner {argv[0]}")
                raise
            logger.info("[%s] %s reported %d finding(s)", run.run_id, argv[0], len(found))
            findings.extend(found)
        return findings


class CommandApplier:
    """Applies infrastructure changes.

    A rollback checks out the target commit and runs ``rollback_argv`` when
    one is configured, otherwise the regular argv, whose ``{artifact}``
    then names the target's plan.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        argv: tuple[str, ...],
        rollback_argv: tuple[str, ...] = (),
    ) -> None:
        self._executor = executor
        self._argv = argv
        self._rollback_argv = rollback_argv

    async def apply(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef:
        argv = self._argv
        if run.is_rollback:
            await self._executor.ensure_revision(run, environment, credential)
            argv = self._rollback_argv or self._argv
        result = await self._executor.run(argv, run, environment, credential)
        self._executor.check(result, "Infrastructure apply")
        build = run.artifacts.get("build")
        return ArtifactRef(
            stage="apply",
            location=build.location if build else "apply",
            checksum=build.checksum if build else _sha256(result.stdout.encode("utf-8")),
            commit=run.commit,
        )


class CommandSyncer:
    def __init__(self, executor: CommandExecutor, argv: tuple[str, ...]) -> None:
        self._executor = executor
        self._argv = argv

    async def sync(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef:
        if not self._argv:
            raise ConfigurationError(
                "Content deployment requested but no sync command is configured"
            )
        await self._executor.ensure_revision(run, environment, credential)
        result = await self._executor.run(self._argv, run, environment, credential)
        self._executor.check(result, "Content sync")
        return ArtifactRef(
            stage="sync",
            location=" ".join(result.argv),
            checksum=_sha256(result.stdout.encode("utf-8")),
            commit=run.commit,
        )


class HttpHealthChecker:
    def __init__(
        self,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._transport = transport

    async def check(self, environment: Environment) -> bool:
        url = environment.health_check_url
        if not url:
            logger.warning(
                "No health_check_url configured for %s; treating deploy as healthy",
                environment.name.value,
            )
            return True
        try:
            async with httpx.AsyncClient(
                follow_redirects=True, transport=self._transport
            ) as client:
                resp = await client.get(url, timeout=self._timeout)
        except httpx.TransportError as exc:
            raise TransientInfraError(f"Health check of {url} failed: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientInfraError(f"Health check of {url} returned {resp.status_code}")
        healthy = resp.is_success
        logger.info("Health check %s -> %d", url, resp.status_code)
        return healthy
