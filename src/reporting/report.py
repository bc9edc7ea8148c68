"""Run reporting and result tallies."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from common import STATUS_WARNING, StepResult


@dataclass
class RunReport:
    """Collects step results for one CLI run and writes reports."""
    command: str
    report_dir: Path
    steps: list[StepResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    error: str = ''

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()

    def add(self, result: StepResult):
        self.steps.append(result)

    def extend(self, results: list[StepResult]):
        self.steps.extend(results)

    @property
    def passed(self) -> int:
        return sum(1 for s in self.steps if s.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for s in self.steps if s.failed)

    @property
    def warnings(self) -> int:
        return sum(1 for s in self.steps if s.status == STATUS_WARNING)

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def tally_line(self) -> str:
        return f"Results: {self.passed} passed, {self.failed} failed, {self.warnings} warnings"

    def finish(self, success: bool, write: bool = True):
        """Finalize report and, unless write is False, write files."""
        self.finished_at = datetime.now()
        self.success = success and self.failed == 0
        if write:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            self._write_json()
            self._write_markdown()

    def _write_json(self):
        """Write JSON report."""
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    def _write_markdown(self):
        """Write markdown report."""
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# {self.command}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            f"**{self.tally_line()}**",
            "",
            "## Steps",
            "",
            "| Step | Status | Duration | Message |",
            "|------|--------|----------|---------|",
        ]

        for s in self.steps:
            status_emoji = {'ok': '✅', 'failed': '❌', 'skipped': '⏭️',
                            'absent': '➖', 'warning': '⚠️'}.get(s.status, '❓')
            message = s.message.replace('|', '\\|').replace('\n', ' ')
            lines.append(f"| {s.name} | {status_emoji} {s.status} | {s.duration:.1f}s | {message} |")

        if self.error:
            lines.extend(["", f"**Error**: {self.error}"])
        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def _report_filename(self, ext: str) -> Path:
        """Timestamped filename including the command and outcome."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        slug = self.command.replace(' ', '-').replace('/', '-')
        return self.report_dir / f"{timestamp}.{slug}.{status}.{ext}"

    def to_dict(self, context: Optional[dict] = None) -> dict:
        """Return report as dictionary for JSON output.

        Args:
            context: Optional extra values to include (e.g. created ids).
                     Only JSON-serializable values are included.
        """
        result = {
            'command': self.command,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'tally': {'passed': self.passed, 'failed': self.failed, 'warnings': self.warnings},
            'steps': [
                {
                    'name': s.name,
                    'status': s.status,
                    'message': s.message,
                    'duration': round(s.duration, 1),
                }
                for s in self.steps
            ]
        }

        if self.error:
            result['error'] = self.error
        elif not self.success:
            for s in self.steps:
                if s.failed and s.message:
                    result['error'] = s.message
                    break

        if context:
            serializable_context = {}
            for key, value in context.items():
                if key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    serializable_context[key] = value
                except (TypeError, ValueError):
                    pass
            if serializable_context:
                result['context'] = serializable_context

        return result
