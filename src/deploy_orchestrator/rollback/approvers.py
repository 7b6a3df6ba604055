"""Authorized rollback approvers from configuration and CODEOWNERS."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CODEOWNERS_LOCATIONS = (".github/CODEOWNERS", "CODEOWNERS", "docs/CODEOWNERS")


def normalize(handle: str) -> str:
    return handle.strip().lstrip("@").lower()


def parse_codeowners(text: str) -> set[str]:
    """Every owner named on a rule line, without the leading ``@``."""
    owners: set[str] = set()
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        _pattern, *names = line.split()
        owners.update(normalize(name) for name in names if name.startswith("@"))
    return owners


def find_codeowners(root: Path) -> Path | None:
    for relative in CODEOWNERS_LOCATIONS:
        candidate = root / relative
        if candidate.is_file():
            return candidate
    return None


class ApproverSet:
    def __init__(self, approvers: set[str] | frozenset[str] = frozenset()) -> None:
        self._approvers = frozenset(normalize(a) for a in approvers if a.strip())

    @classmethod
    def load(
        cls,
        configured: tuple[str, ...] | list[str],
        codeowners_path: str | None = None,
        root: Path | None = None,
    ) -> "ApproverSet":
        approvers = {normalize(a) for a in configured}
        path = Path(codeowners_path) if codeowners_path else find_codeowners(root or Path.cwd())
        if path is not None:
            if not path.is_file():
                logger.warning("CODEOWNERS file not found: %s", path)
            else:
                owners = parse_codeowners(path.read_text(encoding="utf-8"))
                logger.debug("Loaded %d approver(s) from %s", len(owners), path)
                approvers |= owners
        return cls(approvers)

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, str) and normalize(handle) in self._approvers

    def __len__(self) -> int:
        return len(self._approvers)

    def __bool__(self) -> bool:
        return bool(self._approvers)
