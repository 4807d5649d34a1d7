"""Repository persisting results and contexts as JSON files on disk."""

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from conformance_harness.context import Context
from conformance_harness.models.result import SequenceResult
from conformance_harness.repository.base import Repository

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class FileRepository(Repository):
    """One JSON file per sequence result and per instance context.

    Layout under ``root``::

        results/<result id>.json
        contexts/<instance id>.json

    Files are written to a temporary sibling and renamed into place, so a
    crash mid-write leaves the previous version intact.
    """

    root: Path

    async def load(self, result_id: str) -> SequenceResult | None:
        path = self._result_path(result_id)
        text = await asyncio.to_thread(_read_text, path)
        return None if text is None else SequenceResult.model_validate_json(text)

    async def save(self, result: SequenceResult) -> None:
        await asyncio.to_thread(
            _write_atomic, self._result_path(result.id), result.model_dump_json()
        )

    async def load_context(self, instance_id: str) -> Context:
        text = await asyncio.to_thread(_read_text, self._context_path(instance_id))
        return Context(json.loads(text) if text is not None else None)

    async def save_context(self, instance_id: str, context: Context) -> None:
        await asyncio.to_thread(
            _write_atomic,
            self._context_path(instance_id),
            json.dumps(context.to_dict()),
        )

    async def results_for_instance(self, instance_id: str) -> Sequence[SequenceResult]:
        return await asyncio.to_thread(self._scan_results, instance_id)

    def _scan_results(self, instance_id: str) -> list[SequenceResult]:
        directory = self.root / "results"
        if not directory.is_dir():
            return []
        results = []
        for path in directory.glob("*.json"):
            result = SequenceResult.model_validate_json(path.read_text())
            if result.instance_id == instance_id:
                results.append(result)
        return sorted(results, key=lambda result: result.created_at)

    def _result_path(self, result_id: str) -> Path:
        return self.root / "results" / f"{_safe_name(result_id)}.json"

    def _context_path(self, instance_id: str) -> Path:
        return self.root / "contexts" / f"{_safe_name(instance_id)}.json"


def _safe_name(identifier: str) -> str:
    if identifier in ("", ".", "..") or "/" in identifier or "\\" in identifier:
        raise ValueError(f"Invalid identifier: {identifier!r}")
    return identifier


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text()
    except FileNotFoundError:
        return None


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(text)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
    log.debug("Wrote %s", path)
