"""Deterministic offline backend for dry runs and demos."""

from __future__ import annotations

import json
import re
from typing import List

from taskforge.engine.prompts import PromptKind, prompt_kind
from taskforge.llm.backend import GenerationOptions, GenerationResult, TokenCounts


_FIELD_RE = r"^{label}:\s*(.*)$"


def _field(prompt: str, label: str, default: str = "") -> str:
    match = re.search(_FIELD_RE.format(label=re.escape(label)), prompt, re.MULTILINE)
    return match.group(1).strip() if match else default


def _options(prompt: str) -> List[str]:
    block = prompt.split("OPTIONS:", 1)[-1]
    return re.findall(r"^\d+\.\s+(\S.*)$", block, re.MULTILINE)


class EchoBackend:
    """Answers every engine prompt with a well-formed, deterministic reply.

    Execution always succeeds and echoes the task title, durability
    classification never commits, and decisions pick the first offered
    option. Token counts are word counts.
    """

    def __init__(self, latency_ms: float = 0.0):
        self.latency_ms = latency_ms
        self.calls = 0

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        self.calls += 1
        kind = prompt_kind(prompt)
        payload = self._reply(kind, prompt)
        content = json.dumps(payload) if isinstance(payload, dict) else str(payload)
        return GenerationResult(
            content=content,
            tokens=TokenCounts(prompt=len(prompt.split()), completion=len(content.split())),
            latency_ms=self.latency_ms,
        )

    def _reply(self, kind, prompt: str):
        if kind == PromptKind.EXECUTION:
            title = _field(prompt, "TASK", "task")
            return {
                "success": True,
                "output": f"Completed: {title}",
                "artifacts": [{"kind": "text", "name": "summary.md", "content": f"# {title}\n"}],
                "quality": 80,
            }
        if kind == PromptKind.REVIEW:
            return {"approved": True, "feedback": "", "quality": 80}
        if kind == PromptKind.DURABILITY:
            return {"shouldCommit": False, "reasoning": "offline backend does not persist lessons"}
        if kind == PromptKind.DECISION:
            offered = _options(prompt)
            chosen = offered[0] if offered else "escalate_to_human"
            return {
                "decision": chosen,
                "reasoning": "first offered option",
                "alternatives": offered[1:],
                "confidence": 50,
                "reversible": True,
            }
        if kind == PromptKind.DECOMPOSITION:
            title = _field(prompt, "TASK", "task")
            return {"subtasks": [
                {"title": f"Plan: {title}", "description": f"Outline the approach for {title}"},
                {"title": f"Implement: {title}", "description": f"Carry out the plan for {title}"},
            ]}
        if kind == PromptKind.REQUIREMENTS:
            return {"description": _field(prompt, "DESCRIPTION"), "required_skills": []}
        if kind == PromptKind.PLANNING:
            goal = prompt.split("GOAL:", 1)[-1].split("TECHNOLOGIES:", 1)[0].strip() or "goal"
            return {
                "summary": f"Offline plan for: {goal[:80]}",
                "tasks": [
                    {"id": "T1", "title": "Analyze requirements", "description": goal,
                     "category": "analysis", "priority": 8, "estimated_duration": 1.0},
                    {"id": "T2", "title": "Implement solution", "description": goal,
                     "category": "coding", "priority": 6, "estimated_duration": 3.0, "dependencies": ["T1"]},
                    {"id": "T3", "title": "Write tests", "description": goal,
                     "category": "testing", "priority": 5, "estimated_duration": 1.5, "dependencies": ["T2"]},
                ],
            }
        return prompt
