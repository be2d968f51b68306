from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from keysync.common.time import getNowIso


@dataclass
class ReportMeta:
    """
    Назначение:
        Метаданные запуска команды.
    """

    run_id: str
    command: str
    started_at: str
    finished_at: str | None = None
    duration_ms: int | None = None
    directory_url: str | None = None


@dataclass
class ReportEnvelope:
    status: str
    meta: ReportMeta
    ops: dict[str, dict[str, int]]
    result: Any
    errors: list[dict[str, Any]]
    context: dict[str, Any] = field(default_factory=dict)


class ReportCollector:
    """
    Назначение/ответственность:
        Единый сборщик отчёта для команд CLI: счётчики операций, результат, ошибки.
    """

    def __init__(self, run_id: str, command: str, started_at: str | None = None) -> None:
        self.meta = ReportMeta(run_id=run_id, command=command, started_at=started_at or getNowIso())
        self.ops: dict[str, dict[str, int]] = {}
        self.result: Any = None
        self.errors: list[dict[str, Any]] = []
        self.context: dict[str, Any] = {}
        self.status: str | None = None

    def set_context(self, name: str, value: dict[str, Any]) -> None:
        self.context[name] = value

    def add_op(self, name: str, *, ok: int = 0, failed: int = 0, count: int = 0) -> None:
        entry = self.ops.setdefault(name, {"ok": 0, "failed": 0, "count": 0})
        entry["ok"] += ok
        entry["failed"] += failed
        entry["count"] += count

    def set_result(self, result: Any) -> None:
        self.result = result

    def add_error(self, error: dict[str, Any]) -> None:
        self.errors.append(error)

    def finish(self, finished_at: str | None = None, duration_ms: int | None = None) -> None:
        self.meta.finished_at = finished_at or getNowIso()
        self.meta.duration_ms = duration_ms
        if self.status is None:
            self.status = self._derive_status()

    def build(self) -> ReportEnvelope:
        return ReportEnvelope(
            status=self.status or self._derive_status(),
            meta=self.meta,
            ops=self.ops,
            result=self.result,
            errors=self.errors,
            context=self.context,
        )

    def _derive_status(self) -> str:
        if not self.errors:
            return "SUCCESS"
        if any(entry["ok"] for entry in self.ops.values()):
            return "PARTIAL"
        return "FAILED"


def asdict_report(envelope: ReportEnvelope) -> dict[str, Any]:
    return {
        "status": envelope.status,
        "meta": asdict(envelope.meta),
        "ops": envelope.ops,
        "result": envelope.result,
        "errors": envelope.errors,
        "context": envelope.context,
    }
