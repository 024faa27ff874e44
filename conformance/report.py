"""
Suite report: one result per scenario, machine-readable for CI.

The JSON document lists every scenario in catalog order with its verdict
(pass / fail / aborted), failure kind, the transition trace of its order(s)
and the reconciliation result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from conformance.core.json_utils import dumps, dumps_bytes
from conformance.core.utils import now_ms

PASS = "pass"
FAIL = "fail"
ABORTED = "aborted"


@dataclass
class ScenarioResult:
    label: str
    verdict: str
    expected_outcome: str
    failure_kind: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    order: Optional[Dict[str, Any]] = None
    setup: Optional[Dict[str, Any]] = None
    built: Optional[Dict[str, Any]] = None
    reconciliation: Optional[Dict[str, Any]] = None
    duration_sec: float = 0.0

    @property
    def passed(self) -> bool:
        return self.verdict == PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "verdict": self.verdict,
            "expected_outcome": self.expected_outcome,
            "failure_kind": self.failure_kind,
            "error": self.error,
            "order": self.order,
            "setup": self.setup,
            "built": self.built,
            "reconciliation": self.reconciliation,
            "duration_sec": round(self.duration_sec, 3),
        }


@dataclass
class SuiteReport:
    venue: str
    profile: str
    started_at_ms: int = field(default_factory=now_ms)
    finished_at_ms: Optional[int] = None
    results: List[ScenarioResult] = field(default_factory=list)
    aborted_reason: Optional[Dict[str, Any]] = None
    holdings_check: Optional[Dict[str, Any]] = None

    def add(self, result: ScenarioResult) -> None:
        self.results.append(result)

    def finish(self) -> None:
        self.finished_at_ms = now_ms()

    def count(self, verdict: str) -> int:
        return sum(1 for r in self.results if r.verdict == verdict)

    @property
    def ok(self) -> bool:
        if self.aborted_reason is not None:
            return False
        if self.holdings_check is not None and not self.holdings_check.get("ok", False):
            return False
        return all(r.passed for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def failures_by_kind(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.results:
            if r.failure_kind:
                out[r.failure_kind] = out.get(r.failure_kind, 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "profile": self.profile,
            "started_at_ms": self.started_at_ms,
            "finished_at_ms": self.finished_at_ms,
            "summary": {
                "total": len(self.results),
                "passed": self.count(PASS),
                "failed": self.count(FAIL),
                "aborted": self.count(ABORTED),
                "failures_by_kind": self.failures_by_kind(),
                "ok": self.ok,
            },
            "aborted_reason": self.aborted_reason,
            "holdings_check": self.holdings_check,
            "scenarios": [r.to_dict() for r in self.results],
        }

    def to_json(self) -> str:
        return dumps(self.to_dict())

    def write(self, path: str) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(dumps_bytes(self.to_dict(), indent=True))

    def render(self, console: Optional[Console] = None) -> None:
        """Print a summary table."""
        console = console or Console()
        table = Table(title=f"Conformance: {self.venue} ({self.profile})")
        table.add_column("Scenario")
        table.add_column("Expected")
        table.add_column("Final state")
        table.add_column("Verdict")
        table.add_column("Failure")
        styles = {PASS: "green", FAIL: "red", ABORTED: "yellow"}
        for r in self.results:
            final = (r.order or {}).get("terminal_state", "-")
            failure = ""
            if r.failure_kind and r.error:
                failure = f"{r.failure_kind}: {r.error.get('message', '')}"
            table.add_row(
                r.label,
                r.expected_outcome,
                str(final),
                f"[{styles.get(r.verdict, 'white')}]{r.verdict}[/]",
                failure,
            )
        console.print(table)
        console.print(
            f"passed={self.count(PASS)} failed={self.count(FAIL)} aborted={self.count(ABORTED)}"
        )
        if self.aborted_reason:
            console.print(f"[yellow]run aborted:[/] {self.aborted_reason.get('message')}")
