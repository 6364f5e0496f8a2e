"""Deployment run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass
class StageRecord:
    """Result of one pipeline stage."""
    name: str
    description: str
    status: str  # 'passed', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class DeploymentReport:
    """Collects stage results and writes JSON + markdown reports."""
    target: str
    report_dir: Path
    run_name: str = 'deploy'
    stages: list[StageRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _current_stage: Optional[str] = field(default=None, repr=False)
    _stage_start: Optional[datetime] = field(default=None, repr=False)
    _descriptions: dict = field(default_factory=dict, repr=False)

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()

    def start_stage(self, name: str, description: str):
        """Mark stage start."""
        self._current_stage = name
        self._stage_start = datetime.now()
        self._descriptions[name] = description

    def pass_stage(self, name: str, message: str = '', duration: float = 0.0):
        """Record passed stage."""
        self._record_stage(name, 'passed', message, duration)

    def fail_stage(self, name: str, message: str = '', duration: float = 0.0):
        """Record failed stage."""
        self._record_stage(name, 'failed', message, duration)

    def skip_stage(self, name: str, description: str, message: str = ''):
        """Record skipped stage."""
        self.stages.append(StageRecord(
            name=name,
            description=description,
            status='skipped',
            message=message,
        ))

    def add_warning(self, message: str):
        self.warnings.append(message)

    def _record_stage(self, name: str, status: str, message: str, duration: float):
        now = datetime.now()
        if duration == 0.0 and self._stage_start:
            duration = (now - self._stage_start).total_seconds()

        self.stages.append(StageRecord(
            name=name,
            description=self._descriptions.get(name, name),
            status=status,
            message=message,
            duration=duration,
            started_at=self._stage_start,
            finished_at=now
        ))
        self._current_stage = None
        self._stage_start = None

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool, write: bool = True):
        """Finalize report and optionally write files."""
        self.finished_at = datetime.now()
        self.success = success
        if write:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            self._write_json()
            self._write_markdown()

    def _write_json(self):
        """Write JSON report."""
        data = {
            'run': self.run_name,
            'target': self.target,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'stages': [
                {
                    'name': s.name,
                    'description': s.description,
                    'status': s.status,
                    'message': s.message,
                    'duration': s.duration
                }
                for s in self.stages
            ],
            'warnings': list(self.warnings),
        }
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def _write_markdown(self):
        """Write markdown report."""
        status = 'SUCCESS' if self.success else 'FAILED'

        lines = [
            f"# {self.run_name}",
            "",
            f"**Target**: {self.target}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Stages",
            "",
            "| Stage | Status | Duration | Message |",
            "|-------|--------|----------|---------|",
        ]

        for s in self.stages:
            status_emoji = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}.get(s.status, '❓')
            message = s.message.replace('\n', '<br>')
            lines.append(f"| {s.name} | {status_emoji} {s.status} | {s.duration:.1f}s | {message} |")

        if self.warnings:
            lines.extend(["", "## Warnings", ""])
            lines.extend(f"- {w}" for w in self.warnings)

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def _report_filename(self, ext: str) -> Path:
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'success' if self.success else 'failed'
        return self.report_dir / f"{timestamp}.{self.run_name}.{status}.{ext}"

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'run': self.run_name,
            'target': self.target,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'stages': [
                {
                    'name': s.name,
                    'status': s.status,
                    'duration': round(s.duration, 1),
                }
                for s in self.stages
            ],
            'warnings': list(self.warnings),
        }

        if not self.success:
            for s in self.stages:
                if s.status == 'failed' and s.message:
                    result['error'] = s.message
                    break

        return result
