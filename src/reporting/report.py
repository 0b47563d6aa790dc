"""Run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from stack_opr.plan import Plan
from stack_opr.state import OperationState


@dataclass
class RunReport:
    """Collects operation results for one apply/destroy and writes reports."""
    stack: str
    verb: str
    report_dir: Path
    operations: list[OperationState] = field(default_factory=list)
    summary: dict = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    serial: Optional[int] = None

    def start(self, plan: Plan):
        """Mark run start."""
        self.started_at = datetime.now()
        self.summary = plan.summary()

    def finish(self, result) -> list[Path]:
        """Record an ApplyResult and write the report files."""
        self.finished_at = datetime.now()
        self.success = result.success
        self.cancelled = result.cancelled
        self.operations = list(result.operations.values())
        self.serial = result.record.serial
        if result.failure is not None:
            self.error = str(result.failure)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(), self._write_markdown()]

    @property
    def status(self) -> str:
        if self.success:
            return 'passed'
        return 'cancelled' if self.cancelled else 'failed'

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        data = {
            'stack': self.stack,
            'verb': self.verb,
            'status': self.status,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': round(self.duration, 2),
            'state_serial': self.serial,
            'summary': self.summary,
            'operations': [s.to_dict() for s in self.operations],
        }
        if self.error:
            data['error'] = self.error
        return data

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        lines = [
            f"# {self.stack} {self.verb}",
            "",
            f"**Status**: {self.status.upper()}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            f"**State serial**: {self.serial}",
        ]
        if self.error:
            lines.append(f"**Error**: {self.error}")
        lines.extend([
            "",
            "## Operations",
            "",
            "| Operation | Status | Attempts | Duration | Error |",
            "|-----------|--------|----------|----------|-------|",
        ])

        for s in self.operations:
            status_emoji = {
                'completed': '✅', 'failed': '❌', 'skipped': '⏭️',
            }.get(s.status, '❓')
            duration = f"{s.duration:.1f}s" if s.duration is not None else '-'
            lines.append(f"| {s.key} | {status_emoji} {s.status} | {s.attempts} "
                         f"| {duration} | {s.error or ''} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        return self.report_dir / f"{timestamp}-{self.verb}.{self.status}.{ext}"
