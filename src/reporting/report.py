"""Apply reporting."""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from engine.outcome import ApplyResult


@dataclass
class ApplyReport:
    """Writes JSON and markdown reports for an apply or destroy run."""
    result: ApplyResult
    report_dir: Path
    verb: str = 'apply'
    document: str = ''

    def write(self) -> list[Path]:
        """Write both report files and return their paths."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(), self._write_markdown()]

    @property
    def started(self) -> Optional[datetime]:
        if self.result.started_at is None:
            return None
        return datetime.fromtimestamp(self.result.started_at)

    def _status(self) -> str:
        if self.result.success:
            return 'passed'
        if self.result.cancelled:
            return 'cancelled'
        return 'partial' if self.result.partial else 'failed'

    def _write_json(self) -> Path:
        """Write JSON report."""
        data = self.to_dict()
        data['started_at'] = self.started.isoformat() if self.started else None
        data['state'] = [r.to_dict() for r in self.result.records]
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        """Write markdown report."""
        lines = [
            f"# {self.verb} {self.document}".rstrip(),
            "",
            f"**Workspace**: {self.result.workspace}",
            f"**Status**: {self._status().upper()}",
            f"**Date**: {self.started.strftime('%Y-%m-%d %H:%M:%S') if self.started else 'N/A'}",
            f"**Duration**: {self.result.duration:.1f}s",
            "",
            "## Changes",
            "",
            "| Resource | Action | Status | Attempts | Message |",
            "|----------|--------|--------|----------|---------|",
        ]

        for o in self.result.outcomes:
            status_emoji = {
                'applied': '✅', 'failed': '❌', 'blocked': '⛔', 'cancelled': '⏭️',
            }.get(o.status, '❓')
            lines.append(
                f"| {o.address} | {o.action} | {status_emoji} {o.status} | "
                f"{o.attempts} | {o.error or ''} |"
            )

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes the document name so concurrent workspaces do not collide.
        """
        timestamp = self.started.strftime('%Y%m%d-%H%M%S') if self.started else 'unknown'
        slug = f"{self.verb}-{self.document}".rstrip('-').replace('/', '-')
        return self.report_dir / f"{timestamp}.{slug}.{self._status()}.{ext}"

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = self.result.to_dict()
        result['verb'] = self.verb
        if self.document:
            result['document'] = self.document
        result['status'] = self._status()

        # First failure message
        for o in self.result.outcomes:
            if o.status == 'failed' and o.error:
                result['error'] = f"{o.address}: {o.error}"
                break
        return result
