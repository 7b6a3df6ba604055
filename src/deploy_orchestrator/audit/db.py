"""SQLite run history: stage sequences, artifacts, findings and decisions."""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from deploy_orchestrator.domain.models import (
    ActionSet,
    ArtifactRef,
    Decision,
    DecisionAction,
    EnvironmentName,
    Finding,
    FindingCategory,
    Severity,
    TriggerSource,
)
from deploy_orchestrator.errors import RollbackRequestError
from deploy_orchestrator.pipeline.state_machine import PipelineRun, Stage

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]

_DEPLOYED_STAGES = (Stage.RELEASED.value, Stage.ROLLED_BACK.value)
_LIKE_SPECIAL = re.compile(r"[\\%_]")


def _finding_to_dict(finding: Finding) -> dict[str, Any]:
    return {
        "category": finding.category.value,
        "severity": finding.severity.value,
        "message": finding.message,
        "projected_cost": finding.projected_cost,
    }


def _finding_from_dict(data: dict[str, Any]) -> Finding:
    return Finding(
        category=FindingCategory(data["category"]),
        severity=Severity(data["severity"]),
        message=data["message"],
        projected_cost=data.get("projected_cost"),
    )


def _artifact_to_dict(artifact: ArtifactRef) -> dict[str, Any]:
    return {
        "stage": artifact.stage,
        "location": artifact.location,
        "checksum": artifact.checksum,
        "commit": artifact.commit,
    }


def _decision_to_json(decision: Decision | None) -> str | None:
    if decision is None:
        return None
    return json.dumps(
        {
            "action": decision.action.value,
            "reason": decision.reason,
            "findings": [_finding_to_dict(f) for f in decision.findings],
            "budget_exceeded": decision.budget_exceeded,
        }
    )


def _decision_from_json(payload: str | None) -> Decision | None:
    if not payload:
        return None
    data = json.loads(payload)
    return Decision(
        action=DecisionAction(data["action"]),
        reason=data["reason"],
        findings=tuple(_finding_from_dict(f) for f in data.get("findings", [])),
        budget_exceeded=bool(data.get("budget_exceeded", False)),
    )


def artifact_identity(run: PipelineRun) -> str | None:
    """What a run deployed: its commit, else its build checksum."""
    if run.commit:
        return run.commit
    build = run.artifacts.get("build")
    return build.checksum if build else None


class RunHistoryStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                run_id TEXT PRIMARY KEY,
                environment TEXT NOT NULL,
                trigger_source TEXT NOT NULL,
                stage TEXT NOT NULL,
                ref TEXT NOT NULL,
                commit_sha TEXT,
                actor TEXT,
                action_set TEXT NOT NULL,
                history TEXT NOT NULL,
                artifacts TEXT NOT NULL,
                findings TEXT NOT NULL,
                decision TEXT,
                health_ok INTEGER NOT NULL,
                failure_reason TEXT,
                failure_code TEXT,
                rollback_of TEXT,
                note TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_env_updated
                ON pipeline_runs(environment, updated_at);
            CREATE INDEX IF NOT EXISTS idx_runs_env_stage
                ON pipeline_runs(environment, stage);
            CREATE INDEX IF NOT EXISTS idx_runs_commit ON pipeline_runs(commit_sha);
            """
        )
        self._conn.commit()

    def execute(self, query: str, params: _SqlParams) -> None:
        with self._lock:
            self._conn.execute(query, params)
            self._conn.commit()

    def fetch_all(self, query: str, params: _SqlParams) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def save_run(self, run: PipelineRun) -> None:
        self.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, environment, trigger_source, stage, ref, commit_sha, actor,
                action_set, history, artifacts, findings, decision, health_ok,
                failure_reason, failure_code, rollback_of, note, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                stage = excluded.stage,
                history = excluded.history,
                artifacts = excluded.artifacts,
                findings = excluded.findings,
                decision = excluded.decision,
                health_ok = excluded.health_ok,
                failure_reason = excluded.failure_reason,
                failure_code = excluded.failure_code,
                updated_at = excluded.updated_at
            """,
            (
                run.run_id,
                run.environment.value,
                run.trigger_source.value,
                run.stage.value,
                run.ref,
                run.commit,
                run.actor,
                ",".join(run.action_set.members),
                json.dumps([s.value for s in run.history]),
                json.dumps({k: _artifact_to_dict(v) for k, v in run.artifacts.items()}),
                json.dumps([_finding_to_dict(f) for f in run.findings]),
                _decision_to_json(run.decision),
                int(run.health_ok),
                run.failure_reason,
                run.failure_code,
                run.rollback_of,
                run.note,
                run.created_at.isoformat(),
                run.updated_at.isoformat(),
            ),
        )

    def get_run(self, run_id: str) -> PipelineRun | None:
        rows = self.fetch_all("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        return self._to_run(rows[0]) if rows else None

    def list_runs(
        self, environment: EnvironmentName | None = None, limit: int = 20
    ) -> list[PipelineRun]:
        if environment is None:
            rows = self.fetch_all(
                "SELECT * FROM pipeline_runs ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        else:
            rows = self.fetch_all(
                "SELECT * FROM pipeline_runs WHERE environment = ? "
                "ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (environment.value, limit),
            )
        return [self._to_run(row) for row in rows]

    def current_deployment(self, environment: EnvironmentName) -> PipelineRun | None:
        """Most recent run that left the environment deployed."""
        rows = self.fetch_all(
            "SELECT * FROM pipeline_runs WHERE environment = ? AND stage IN (?, ?) "
            "ORDER BY updated_at DESC, rowid DESC LIMIT 1",
            (environment.value, *_DEPLOYED_STAGES),
        )
        return self._to_run(rows[0]) if rows else None

    def last_known_good(self, environment: EnvironmentName) -> PipelineRun | None:
        """Most recent released run whose artifact differs from what is deployed."""
        current = self.current_deployment(environment)
        deployed = artifact_identity(current) if current else None
        rows = self.fetch_all(
            "SELECT * FROM pipeline_runs WHERE environment = ? AND stage = ? "
            "ORDER BY updated_at DESC, rowid DESC",
            (environment.value, Stage.RELEASED.value),
        )
        for row in rows:
            run = self._to_run(row)
            if "build" not in run.artifacts:
                continue
            if deployed is None or artifact_identity(run) != deployed:
                return run
        return None

    def find_by_commit(self, environment: EnvironmentName, commit: str) -> PipelineRun | None:
        """Most recent deployed run for a commit, given as full SHA or unique prefix.

        ``%`` and ``_`` in the input match only themselves.

        Raises:
            RollbackRequestError: if the prefix matches more than one deployed
                commit.
        """
        pattern = _LIKE_SPECIAL.sub(r"\\\g<0>", commit) + "%"
        rows = self.fetch_all(
            "SELECT * FROM pipeline_runs WHERE environment = ? "
            "AND commit_sha LIKE ? ESCAPE '\\' "
            "AND stage IN (?, ?) ORDER BY updated_at DESC, rowid DESC",
            (environment.value, pattern, *_DEPLOYED_STAGES),
        )
        runs = [run for run in map(self._to_run, rows) if "build" in run.artifacts]
        candidates = sorted({run.commit for run in runs if run.commit})
        if len(candidates) > 1:
            raise RollbackRequestError(
                f"Commit prefix {commit} is ambiguous in {environment.value}: "
                + ", ".join(candidates)
            )
        return runs[0] if runs else None

    def _to_run(self, row: sqlite3.Row) -> PipelineRun:
        artifacts = {
            key: ArtifactRef(**value) for key, value in json.loads(row["artifacts"]).items()
        }
        return PipelineRun(
            run_id=row["run_id"],
            environment=EnvironmentName(row["environment"]),
            trigger_source=TriggerSource(row["trigger_source"]),
            action_set=ActionSet.from_members(row["action_set"]),
            ref=row["ref"],
            commit=row["commit_sha"],
            actor=row["actor"],
            stage=Stage(row["stage"]),
            history=[Stage(s) for s in json.loads(row["history"])],
            artifacts=artifacts,
            findings=[_finding_from_dict(f) for f in json.loads(row["findings"])],
            decision=_decision_from_json(row["decision"]),
            health_ok=bool(row["health_ok"]),
            failure_reason=row["failure_reason"],
            failure_code=row["failure_code"],
            rollback_of=row["rollback_of"],
            note=row["note"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
