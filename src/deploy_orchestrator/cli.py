"""Command-line entry point.

Command output goes to stdout; logs and failure explanations go to stderr.
Exit codes: 0 success, 1 failure, 2 policy-blocked, 3 authentication
failure, 4 unauthorized.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from deploy_orchestrator import __version__
from deploy_orchestrator.app import AppContext, get_app_context
from deploy_orchestrator.backend.manager import render_backend_config
from deploy_orchestrator.config import load_settings
from deploy_orchestrator.domain.models import (
    EnvironmentName,
    RollbackMethod,
    Trigger,
    TriggerSource,
)
from deploy_orchestrator.errors import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    AuthorizationError,
    OrchestratorError,
)
from deploy_orchestrator.logging_utils import configure_logging
from deploy_orchestrator.pipeline.state_machine import PipelineRun, Stage

BOOTSTRAP_CONFIRMATION = "BOOTSTRAP"
DECOMMISSION_CONFIRMATION = "DESTROY"

app = typer.Typer(
    name="deploy-orchestrator",
    help="Progressive deployment orchestrator for multi-account environments.",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"deploy-orchestrator {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    ctx: typer.Context,
    config: str | None = typer.Option(
        None, "--config", "-c", envvar="DEPLOY_CONFIG_PATH", help="Path to deploy.yaml"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    ctx.obj = {"config": config, "verbose": verbose}


def _eprint(message: str) -> None:
    typer.echo(message, err=True)


def _abort(exc: OrchestratorError, exit_code: int | None = None) -> typer.Exit:
    _eprint(f"error: {exc}")
    return typer.Exit(code=exc.exit_code if exit_code is None else exit_code)


def _context(ctx: typer.Context) -> AppContext:
    obj = ctx.obj if isinstance(ctx.obj, dict) else {}
    config = obj.get("config")
    try:
        settings = load_settings(config)
        configure_logging(settings, verbose=bool(obj.get("verbose")))
        return get_app_context(config)
    except OrchestratorError as exc:
        raise _abort(exc) from exc


def _run_exit_code(run: PipelineRun) -> int:
    if run.stage in (Stage.RELEASED, Stage.ROLLED_BACK):
        return EXIT_SUCCESS
    if isinstance(run.error, OrchestratorError):
        return run.error.exit_code
    return EXIT_FAILURE


def _print_run(run: PipelineRun) -> None:
    typer.echo(f"run:         {run.run_id}")
    typer.echo(f"environment: {run.environment.value}")
    typer.echo(f"trigger:     {run.trigger_source.value} {run.ref or '-'}")
    if run.rollback_of:
        typer.echo(f"rollback of: {run.rollback_of}")
    typer.echo(f"actions:     {', '.join(run.action_set.members)}")
    typer.echo(f"stages:      {' -> '.join(s.value for s in run.history)}")
    if run.decision is not None:
        typer.echo(f"gate:        {run.decision.action.value}: {run.decision.reason}")
    if run.stage is Stage.FAILED:
        _eprint(f"FAILED ({run.failure_code}): {run.failure_reason}")
        blocking = run.decision.findings if run.decision else ()
        for finding in blocking:
            _eprint(f"  - {finding.describe()}")


@app.command("deploy", help="Build, gate and apply a change to one environment.")
def deploy(
    ctx: typer.Context,
    environment: EnvironmentName | None = typer.Option(
        None,
        "--environment",
        "-e",
        case_sensitive=False,
        help="Explicit target; overrides the routing rules",
    ),
    infra: bool = typer.Option(False, "--infra", help="Deploy infrastructure"),
    content: bool = typer.Option(False, "--content", help="Deploy website content"),
    source: TriggerSource = typer.Option(
        TriggerSource.MANUAL, "--source", case_sensitive=False, help="Trigger kind"
    ),
    ref: str = typer.Option(
        "", "--ref", envvar="GITHUB_REF", help="Branch or tag that triggered the deploy"
    ),
    commit: str | None = typer.Option(
        None, "--commit", envvar=["DEPLOY_COMMIT", "GITHUB_SHA"], help="Commit being deployed"
    ),
    actor: str | None = typer.Option(
        None, "--actor", envvar=["DEPLOY_ACTOR", "GITHUB_ACTOR"], help="Who triggered it"
    ),
) -> None:
    app_ctx = _context(ctx)
    selected = infra or content
    trigger = Trigger(
        source=source,
        ref=ref,
        environment_override=environment,
        deploy_infrastructure=infra if selected else None,
        deploy_content=content if selected else None,
        actor=actor,
    )
    try:
        run = asyncio.run(app_ctx.runner.execute(trigger, commit=commit))
    except OrchestratorError as exc:
        raise _abort(exc) from exc
    _print_run(run)
    raise typer.Exit(code=_run_exit_code(run))


@app.command("bootstrap", help="Create the environment's state backend (idempotent).")
def bootstrap(
    ctx: typer.Context,
    environment: EnvironmentName = typer.Option(
        ..., "--environment", "-e", case_sensitive=False
    ),
    confirm: str = typer.Option(
        "", "--confirm", help=f"Must be exactly {BOOTSTRAP_CONFIRMATION}"
    ),
    output: Path | None = typer.Option(
        None, "--output", help="Directory to write backend-config-<env>.hcl into"
    ),
) -> None:
    if confirm != BOOTSTRAP_CONFIRMATION:
        _eprint(
            f"error: bootstrap of {environment.value} requires "
            f"--confirm {BOOTSTRAP_CONFIRMATION}"
        )
        raise typer.Exit(code=EXIT_FAILURE)

    app_ctx = _context(ctx)
    try:
        env = app_ctx.settings.environment(environment)
        state = asyncio.run(app_ctx.bootstrap(env))
    except OrchestratorError as exc:
        raise _abort(exc, EXIT_FAILURE) from exc

    typer.echo(f"backend:     {state.store_locator}")
    typer.echo(f"lock table:  {state.lock_table}")
    typer.echo(f"region:      {state.region}")
    if output is not None:
        output.mkdir(parents=True, exist_ok=True)
        target = output / f"backend-config-{environment.value}.hcl"
        target.write_text(render_backend_config(state, env), encoding="utf-8")
        typer.echo(f"config:      {target}")


@app.command("rollback", help="Re-deploy an earlier artifact to an environment.")
def rollback(
    ctx: typer.Context,
    environment: EnvironmentName = typer.Option(
        ..., "--environment", "-e", case_sensitive=False
    ),
    method: RollbackMethod = typer.Option(
        RollbackMethod.LAST_KNOWN_GOOD, "--method", "-m", case_sensitive=False
    ),
    reason: str = typer.Option(..., "--reason", help="Why; recorded for audit"),
    commit: str | None = typer.Option(None, "--commit", help="Target commit SHA"),
    approver: str | None = typer.Option(
        None, "--approver", envvar="DEPLOY_APPROVER", help="Authorizing reviewer"
    ),
) -> None:
    app_ctx = _context(ctx)
    try:
        env = app_ctx.settings.environment(environment)
        run = asyncio.run(
            app_ctx.rollback.rollback(
                env, method, reason, commit=commit, approver=approver
            )
        )
    except AuthorizationError as exc:
        raise _abort(exc) from exc
    except OrchestratorError as exc:
        raise _abort(exc, EXIT_FAILURE) from exc
    _print_run(run)
    raise typer.Exit(code=EXIT_SUCCESS if run.stage is Stage.ROLLED_BACK else EXIT_FAILURE)


@app.command("decommission", help="Delete the environment's state backend.")
def decommission(
    ctx: typer.Context,
    environment: EnvironmentName = typer.Option(
        ..., "--environment", "-e", case_sensitive=False
    ),
    confirm: str = typer.Option(
        "", "--confirm", help=f"Must be exactly {DECOMMISSION_CONFIRMATION}"
    ),
) -> None:
    if confirm != DECOMMISSION_CONFIRMATION:
        _eprint(
            f"error: decommissioning {environment.value} deletes its state history; "
            f"pass --confirm {DECOMMISSION_CONFIRMATION}"
        )
        raise typer.Exit(code=EXIT_FAILURE)

    app_ctx = _context(ctx)
    try:
        env = app_ctx.settings.environment(environment)
        state = asyncio.run(app_ctx.decommission(env))
    except OrchestratorError as exc:
        raise _abort(exc, EXIT_FAILURE) from exc
    typer.echo(f"decommissioned: {state.store_locator}, {state.lock_table}")


@app.command("resolve", help="Show which environment and actions a trigger maps to.")
def resolve(
    ctx: typer.Context,
    source: TriggerSource = typer.Option(TriggerSource.PUSH, "--source", case_sensitive=False),
    ref: str = typer.Option("", "--ref"),
    environment: EnvironmentName | None = typer.Option(
        None, "--environment", "-e", case_sensitive=False
    ),
    infra: bool = typer.Option(False, "--infra"),
    content: bool = typer.Option(False, "--content"),
) -> None:
    app_ctx = _context(ctx)
    selected = infra or content
    trigger = Trigger(
        source=source,
        ref=ref,
        environment_override=environment,
        deploy_infrastructure=infra if selected else None,
        deploy_content=content if selected else None,
    )
    try:
        env, actions = app_ctx.resolver.resolve(trigger)
    except OrchestratorError as exc:
        raise _abort(exc) from exc
    typer.echo(f"environment: {env.name.value}")
    typer.echo(f"account:     {env.account_id}")
    typer.echo(f"enforcement: {env.enforcement_level.value}")
    typer.echo(f"actions:     {', '.join(actions.members)}")


@app.command("status", help="List recent runs.")
def status(
    ctx: typer.Context,
    environment: EnvironmentName | None = typer.Option(
        None, "--environment", "-e", case_sensitive=False
    ),
    limit: int = typer.Option(10, "--limit", min=1, max=200),
) -> None:
    app_ctx = _context(ctx)
    runs = app_ctx.history.list_runs(environment, limit=limit)
    if not runs:
        typer.echo("no runs recorded")
        return
    for run in runs:
        target = run.commit[:12] if run.commit else (run.ref or "-")
        line = (
            f"{run.updated_at:%Y-%m-%d %H:%M:%S}  {run.run_id}  "
            f"{run.environment.value:<8} {run.stage.value:<11} "
            f"{run.trigger_source.value:<8} {target}"
        )
        if run.failure_reason:
            line += f"  ({run.failure_reason})"
        typer.echo(line)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
