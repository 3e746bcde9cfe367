"""Run issue report.

Persists every Issue raised during a run, plus escalations, so they can be
followed up after the run without stopping it.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from taskforge.engine.models import Task


@dataclass(frozen=True)
class ReportedIssue:
    task_id: str
    task_title: str
    severity: str
    issue_type: str
    title: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "severity": self.severity,
            "type": self.issue_type,
            "title": self.title,
            "details": self.details,
        }
        stable = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        payload["id"] = hashlib.sha1(stable.encode("utf-8")).hexdigest()[:12]
        return payload


def _severity_rank(value: str) -> int:
    order = {
        "critical": 0,
        "high": 1,
        "medium": 2,
        "low": 3,
    }
    return order.get((value or "").lower(), 999)


def collect_issues(tasks: Iterable[Task], escalated: Iterable[str] = ()) -> List[ReportedIssue]:
    """Flatten task issues and escalations into report entries."""
    tasks = list(tasks)
    by_id = {t.id: t for t in tasks}
    issues: List[ReportedIssue] = []
    for task in tasks:
        for issue in task.issues:
            issues.append(ReportedIssue(
                task_id=task.id,
                task_title=task.title,
                severity=issue.severity.value,
                issue_type=issue.category.value,
                title=issue.description,
                details=issue.to_dict(),
            ))

    for task_id in escalated:
        task = by_id.get(task_id)
        issues.append(ReportedIssue(
            task_id=task_id,
            task_title=task.title if task else "",
            severity="high",
            issue_type="escalation",
            title="Task escalated to human",
            details={"status": task.status.value if task else None, "notes": list(task.notes) if task else []},
        ))
    return sorted(issues, key=lambda i: _severity_rank(i.severity))


def write_issue_report(
    output_dir: str,
    run_id: str,
    tasks: List[Task],
    *,
    escalated: Iterable[str] = (),
    run_summary: Optional[Dict[str, Any]] = None,
    filename: Optional[str] = None,
) -> Path:
    """Write ``<output_dir>/<run_id>_issues.json`` and return its path."""
    issues = collect_issues(tasks, escalated)
    payload = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
        "run": run_summary or {},
        "summary": {
            "total_issues": len(issues),
            "critical": sum(1 for i in issues if i.severity == "critical"),
            "high": sum(1 for i in issues if i.severity == "high"),
            "medium": sum(1 for i in issues if i.severity == "medium"),
            "low": sum(1 for i in issues if i.severity == "low"),
            "durable_lessons": sum(1 for i in issues if i.details.get("durable_lesson")),
        },
        "issues": [i.to_dict() for i in issues],
    }

    output_path = Path(output_dir) / (filename or f"{run_id}_issues.json")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False, default=str)

    logger.info(f"Saved run issue report to {output_path}")
    return output_path
