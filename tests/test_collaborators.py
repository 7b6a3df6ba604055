from __future__ import annotations

import json
import sys

import httpx
import pytest

from conftest import make_credential
from deploy_orchestrator.domain.models import (
    ActionSet,
    ArtifactRef,
    EnvironmentName,
    FindingCategory,
    Severity,
    TriggerSource,
)
from deploy_orchestrator.errors import (
    ConfigurationError,
    StageError,
    TransientInfraError,
)
from deploy_orchestrator.pipeline.collaborators import (
    CommandApplier,
    CommandBuilder,
    CommandExecutor,
    CommandResult,
    CommandScanner,
    CommandSyncer,
    HttpHealthChecker,
    looks_transient,
    parse_findings,
)
from deploy_orchestrator.pipeline.state_machine import PipelineRun


@pytest.fixture
def run() -> PipelineRun:
    return PipelineRun(
        environment=EnvironmentName.PROD,
        trigger_source=TriggerSource.TAG,
        commit="abc123",
        run_id="0123456789ab",
    )


@pytest.fixture
def executor(tmp_path) -> CommandExecutor:
    return CommandExecutor("static-site", str(tmp_path))


def _python(code: str) -> tuple[str, ...]:
    return (sys.executable, "-c", code)


def test_parse_findings_accepts_list_and_document():
    items = [
        {"category": "security", "severity": "CRITICAL", "message": "open bucket"},
        {"category": "cost", "severity": "info", "projected_cost": "42.5"},
    ]
    from_list = parse_findings(json.dumps(items), "checkov")
    from_doc = parse_findings(json.dumps({"findings": items}), "checkov")

    assert from_list == from_doc
    assert from_list[0].severity is Severity.CRITICAL
    assert from_list[1].category is FindingCategory.COST
    assert from_list[1].projected_cost == 42.5
    assert from_list[1].message == "checkov finding"


def test_parse_findings_empty_output_is_clean():
    assert parse_findings("  \n", "tfsec") == []


@pytest.mark.parametrize(
    "payload",
    ['"just a string"', '[1, 2]', '[{"severity": "apocalyptic"}]'],
)
def test_parse_findings_rejects_malformed(payload):
    with pytest.raises(StageError):
        parse_findings(payload, "scanner")


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("Error: Throttling: Rate exceeded", True),
        ("dial tcp: connection refused", True),
        ("Error: invalid resource type", False),
    ],
)
def test_looks_transient(output, expected):
    assert looks_transient(output) is expected


def test_render_fills_placeholders(executor, run, prod):
    argv = executor.render(
        ("tofu", "plan", "-var=env={environment}", "-out={project}-{run_id}.tfplan"), run, prod
    )
    assert argv == ("tofu", "plan", "-var=env=prod", "-out=static-site-0123456789ab.tfplan")


def test_literal_braces_pass_through(executor, run, prod):
    argv = executor.render(
        (
            "aws",
            "s3api",
            "get-bucket-tagging",
            "--query",
            "TagSet[?Key=='Env'].{v:Value}",
            '{"env": "{environment}"}',
            "{nope}",
        ),
        run,
        prod,
    )
    assert argv[4] == "TagSet[?Key=='Env'].{v:Value}"
    assert argv[5] == '{"env": "prod"}'
    assert argv[6] == "{nope}"


def test_render_exposes_the_build_artifact(executor, prod):
    target = PipelineRun(
        environment=EnvironmentName.PROD, trigger_source=TriggerSource.TAG, commit="aaa111"
    )
    target.add_artifact(ArtifactRef("build", "/plans/aaa111.tfplan", "sha-aaa111", "aaa111"))
    rollback = PipelineRun.for_rollback(
        EnvironmentName.PROD, ActionSet(), target, "homepage returns 500"
    )

    argv = executor.render(
        ("tofu", "apply", "{artifact}", "{commit}", "{checksum}", "{revision}"), rollback, prod
    )

    assert argv == ("tofu", "apply", "/plans/aaa111.tfplan", "aaa111", "sha-aaa111", "aaa111")


def test_revision_falls_back_to_run_id(executor, prod):
    bare = PipelineRun(
        environment=EnvironmentName.PROD, trigger_source=TriggerSource.MANUAL, run_id="feedface0000"
    )
    assert executor.render(("{commit}", "{revision}", "{artifact}"), bare, prod) == (
        "",
        "feedface0000",
        "",
    )


def test_check_classifies_failures(executor):
    transient = CommandResult(("tofu",), 1, "", "Error: ThrottlingException")
    fatal = CommandResult(("tofu",), 1, "", "Error: invalid config")
    executor.check(CommandResult(("tofu",), 0, "", ""), "Apply")
    with pytest.raises(TransientInfraError):
        executor.check(transient, "Apply")
    with pytest.raises(StageError, match="exited with status 1"):
        executor.check(fatal, "Apply")


@pytest.mark.asyncio
async def test_executor_exports_delegated_credential(executor, run, prod):
    code = "import os; print(os.environ['AWS_ACCESS_KEY_ID'], os.environ['DEPLOY_ENVIRONMENT'])"
    result = await executor.run(_python(code), run, prod, make_credential())
    assert result.ok
    assert result.stdout.split() == ["ASIATESTKEY0000", "prod"]


@pytest.mark.asyncio
async def test_missing_binary_is_stage_error(executor, run, prod):
    with pytest.raises(StageError, match="Command not found"):
        await executor.run(("definitely-not-a-real-tool-xyz",), run, prod, make_credential())


@pytest.mark.asyncio
async def test_builder_checksums_plan_file(executor, run, prod, tmp_path):
    builder = CommandBuilder(executor, _python("open('tfplan', 'wb').write(b'plan')"), "tfplan")
    artifact = await builder.build(run, prod, make_credential())
    assert artifact.stage == "build"
    assert artifact.location == str(tmp_path / "tfplan")
    assert artifact.commit == "abc123"
    assert len(artifact.checksum) == 64


@pytest.mark.asyncio
async def test_scanner_nonzero_exit_with_findings_reports_findings(executor, run, prod):
    payload = json.dumps([{"category": "security", "severity": "high", "message": "x"}])
    scanner = CommandScanner(
        executor, (_python(f"import sys; print({payload!r}); sys.exit(1)"),)
    )
    findings = await scanner.scan(run, prod, make_credential())
    assert [f.severity for f in findings] == [Severity.HIGH]


@pytest.mark.asyncio
async def test_scanner_crash_is_stage_error(executor, run, prod):
    scanner = CommandScanner(executor, (_python("import sys; print('Traceback'); sys.exit(2)"),))
    with pytest.raises(StageError):
        await scanner.scan(run, prod, make_credential())


@pytest.mark.asyncio
async def test_syncer_requires_command(executor, run, prod):
    with pytest.raises(ConfigurationError, match="no sync command"):
        await CommandSyncer(executor, ()).sync(run, prod, make_credential())


TOOL = """
import pathlib
import sys

mode, *args = sys.argv[1:]
work = pathlib.Path.cwd()
if mode == "checkout":
    (work / "HEAD").write_text(args[0])
    with (work / "checkouts.log").open("a") as log:
        log.write(args[0] + "\\n")
else:
    head = (work / "HEAD").read_text() if (work / "HEAD").exists() else "-"
    with (work / f"{mode}.log").open("a") as log:
        log.write(" ".join([head, *args]) + "\\n")
"""


@pytest.fixture
def tool(tmp_path) -> str:
    path = tmp_path / "tool.py"
    path.write_text(TOOL, encoding="utf-8")
    return str(path)


def _rollback_of(commit: str | None) -> PipelineRun:
    target = PipelineRun(
        environment=EnvironmentName.PROD, trigger_source=TriggerSource.TAG, commit=commit
    )
    target.add_artifact(ArtifactRef("build", f"/plans/{commit}.tfplan", f"sha-{commit}", commit))
    return PipelineRun.for_rollback(
        EnvironmentName.PROD, ActionSet(), target, "homepage returns 500"
    )


@pytest.mark.asyncio
async def test_builder_renders_plan_path_per_revision(executor, run, prod, tmp_path):
    builder = CommandBuilder(
        executor,
        _python("import sys; open(sys.argv[1], 'wb').write(b'plan')") + ("tfplan-{revision}",),
        "tfplan-{revision}",
    )
    artifact = await builder.build(run, prod, make_credential())
    assert artifact.location == str(tmp_path / "tfplan-abc123")


@pytest.mark.asyncio
async def test_rollback_checks_out_target_before_apply_and_sync(tmp_path, tool, prod):
    executor = CommandExecutor(
        "static-site", str(tmp_path), checkout=(sys.executable, tool, "checkout", "{commit}")
    )
    applier = CommandApplier(
        executor,
        (sys.executable, tool, "apply", "{artifact}"),
        rollback_argv=(sys.executable, tool, "rollback-apply", "{commit}"),
    )
    syncer = CommandSyncer(executor, (sys.executable, tool, "sync", "{commit}"))
    rollback = _rollback_of("aaa111")
    credential = make_credential()

    applied = await applier.apply(rollback, prod, credential)
    synced = await syncer.sync(rollback, prod, credential)

    assert (tmp_path / "checkouts.log").read_text().split() == ["aaa111"]
    assert (tmp_path / "rollback-apply.log").read_text() == "aaa111 aaa111\n"
    assert (tmp_path / "sync.log").read_text() == "aaa111 aaa111\n"
    assert not (tmp_path / "apply.log").exists()
    assert applied.location == "/plans/aaa111.tfplan"
    assert applied.checksum == "sha-aaa111"
    assert synced.commit == "aaa111"


@pytest.mark.asyncio
async def test_rollback_apply_without_override_applies_target_plan(tmp_path, tool, prod):
    executor = CommandExecutor("static-site", str(tmp_path))
    applier = CommandApplier(executor, (sys.executable, tool, "apply", "{artifact}"))

    await applier.apply(_rollback_of("aaa111"), prod, make_credential())

    assert (tmp_path / "apply.log").read_text() == "- /plans/aaa111.tfplan\n"
    assert not (tmp_path / "checkouts.log").exists()


@pytest.mark.asyncio
async def test_rollback_target_without_commit_cannot_be_checked_out(tmp_path, tool, prod):
    executor = CommandExecutor(
        "static-site", str(tmp_path), checkout=(sys.executable, tool, "checkout", "{commit}")
    )
    syncer = CommandSyncer(executor, (sys.executable, tool, "sync"))
    with pytest.raises(StageError, match="no recorded commit"):
        await syncer.sync(_rollback_of(None), prod, make_credential())


@pytest.mark.asyncio
async def test_regular_deploy_never_checks_out(tmp_path, tool, run, prod):
    executor = CommandExecutor(
        "static-site", str(tmp_path), checkout=(sys.executable, tool, "checkout", "{commit}")
    )
    syncer = CommandSyncer(executor, (sys.executable, tool, "sync", "{commit}"))
    artifact = await syncer.sync(run, prod, make_credential())
    assert artifact.commit == "abc123"
    assert not (tmp_path / "checkouts.log").exists()


def _checker(handler) -> HttpHealthChecker:
    return HttpHealthChecker(timeout_seconds=1, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_health_check_success(prod):
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, text="ok")

    assert await _checker(handler).check(prod) is True
    assert seen == ["https://www.example.com/"]


@pytest.mark.asyncio
async def test_health_check_client_error_is_unhealthy(prod):
    assert await _checker(lambda request: httpx.Response(404)).check(prod) is False


@pytest.mark.asyncio
async def test_health_check_server_error_is_transient(prod):
    with pytest.raises(TransientInfraError, match="returned 503"):
        await _checker(lambda request: httpx.Response(503)).check(prod)


@pytest.mark.asyncio
async def test_health_check_connection_error_is_transient(prod):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientInfraError):
        await _checker(handler).check(prod)


@pytest.mark.asyncio
async def test_missing_health_url_counts_as_healthy(dev):
    assert await HttpHealthChecker().check(dev) is True
