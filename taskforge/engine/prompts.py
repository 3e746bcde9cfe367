"""
Engine Prompts
==============
Prompt builders for every reasoning-backend call the engine makes.

Each prompt starts with a header line ``## taskforge:<kind>`` so that replies
can be routed and offline backends can recognise the request type.
"""

import json
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Issue, Task, WorkerProfile


PROMPT_HEADER_PREFIX = "## taskforge:"


class PromptKind(Enum):
    EXECUTION = "execution"
    REVIEW = "review"
    DURABILITY = "durability"
    DECISION = "decision"
    DECOMPOSITION = "decomposition"
    REQUIREMENTS = "requirements"
    PLANNING = "planning"


def header(kind: PromptKind) -> str:
    return f"{PROMPT_HEADER_PREFIX}{kind.value}"


def prompt_kind(prompt: str) -> Optional[PromptKind]:
    """Recover the PromptKind from a prompt's header line, if present."""
    first = prompt.lstrip().split("\n", 1)[0].strip()
    if not first.startswith(PROMPT_HEADER_PREFIX):
        return None
    try:
        return PromptKind(first[len(PROMPT_HEADER_PREFIX):].strip())
    except ValueError:
        return None


# =============================================================================
# Task execution
# =============================================================================

EXECUTION_OUTPUT_FORMAT = """Respond with JSON:
{
  "success": true | false,
  "output": "summary of what was produced",
  "artifacts": [
    {"kind": "code|documentation|test|config|design|analysis|text", "name": "path or label", "content": "..."}
  ],
  "notes": ["issues or dependencies discovered"],
  "quality": 0-100,
  "error": "reason, only when success is false"
}"""


def build_execution_prompt(
    task: Task,
    worker: WorkerProfile,
    dependency_summaries: Sequence[str] = (),
) -> str:
    skills = ", ".join(sorted(task.required_skills)) or "none specified"
    deps = "\n".join(f"- {s}" for s in dependency_summaries) or "- none"
    notes = "\n".join(f"- {n}" for n in task.notes[-5:])
    notes_block = f"\nNOTES FROM EARLIER ATTEMPTS:\n{notes}\n" if notes else ""
    return f"""{header(PromptKind.EXECUTION)}
You are a specialist worker executing this task autonomously.

TASK: {task.title}
DESCRIPTION: {task.description}
TYPE: {task.category.value}
PRIORITY: {task.priority}/10
COMPLEXITY: {task.complexity}/10

REQUIREMENTS:
{skills}

WORKER:
Specializations: {", ".join(sorted(worker.specializations))}
Capabilities: {", ".join(sorted(worker.capabilities))}

COMPLETED DEPENDENCIES:
{deps}
{notes_block}
Execute the task completely and report the result with its artifacts.

{EXECUTION_OUTPUT_FORMAT}"""


def build_review_prompt(task: Task, output: str) -> str:
    return f"""{header(PromptKind.REVIEW)}
Review the result of this task before it is accepted.

TASK: {task.title}
DESCRIPTION: {task.description}

RESULT:
{output[:6000]}

Respond with JSON:
{{"approved": true | false, "feedback": "what must change if rejected", "quality": 0-100}}"""


# =============================================================================
# Failure analysis
# =============================================================================

def build_durability_prompt(issue: Issue, task: Task, worker: Optional[WorkerProfile]) -> str:
    if worker is not None:
        worker_block = (
            f"Specialization: {', '.join(sorted(worker.specializations))}\n"
            f"Performance: {worker.performance.success_rate * 100:.0f}% success rate"
        )
    else:
        worker_block = "unknown"
    return f"""{header(PromptKind.DURABILITY)}
Analyze this error for memory persistence.

ERROR DETAILS:
Category: {issue.category.value}
Severity: {issue.severity.value}
Description: {issue.description}
Context: {issue.context}

TASK CONTEXT:
Title: {task.title}
Type: {task.category.value}
Complexity: {task.complexity}

WORKER CONTEXT:
{worker_block}

Answer:
1. Is this error likely to reoccur in future projects?
2. Does it represent a pattern worth learning from?
3. Would storing it help future task execution?

Respond with JSON:
{{
  "shouldCommit": true | false,
  "reasoning": "why",
  "generalPattern": "general pattern if applicable",
  "tags": ["tag1", "tag2"],
  "importance": 1-10
}}"""


def build_decision_prompt(context: str, options: Sequence[str]) -> str:
    numbered = "\n".join(f"{i}. {opt}" for i, opt in enumerate(options, start=1))
    return f"""{header(PromptKind.DECISION)}
You are the primary director making an autonomous decision.

CONTEXT: {context}

OPTIONS:
{numbered}

Weigh each option, consider long-term implications, and choose exactly one
of the options above, copied verbatim.

Respond with JSON:
{{
  "decision": "chosen option",
  "reasoning": "detailed reasoning",
  "alternatives": ["other considered options"],
  "confidence": 0-100,
  "reversible": true | false,
  "risks": ["potential risks"],
  "benefits": ["expected benefits"]
}}"""


def build_decomposition_prompt(task: Task, issue: Optional[Issue]) -> str:
    failure = f"\nFAILURE: {issue.description}\n" if issue is not None else ""
    return f"""{header(PromptKind.DECOMPOSITION)}
Split this failed task into 2 or more smaller sub-tasks that together achieve it.
Sub-tasks run in the order given.

TASK: {task.title}
DESCRIPTION: {task.description}
TYPE: {task.category.value}
ESTIMATED HOURS: {task.estimated_duration}
{failure}
Respond with JSON:
{{
  "subtasks": [
    {{"title": "...", "description": "...", "category": "{task.category.value}",
      "estimated_duration": 0.5, "required_skills": ["..."]}}
  ]
}}"""


def build_requirements_prompt(task: Task, issue: Optional[Issue]) -> str:
    failure = issue.description if issue is not None else "unknown"
    return f"""{header(PromptKind.REQUIREMENTS)}
This task failed. Rewrite its requirements so that it can succeed while
keeping its intent.

TASK: {task.title}
DESCRIPTION: {task.description}
REQUIRED SKILLS: {", ".join(sorted(task.required_skills)) or "none"}
FAILURE: {failure}

Respond with JSON:
{{"description": "revised description", "required_skills": ["..."], "reasoning": "what changed"}}"""


# =============================================================================
# Goal planning
# =============================================================================

def format_knowledge_context(entries: Iterable[Dict]) -> str:
    lines = []
    for entry in entries:
        lines.append(f"- [{entry.get('category')}] (importance {entry.get('importance')}) {entry.get('content')}")
    return "\n".join(lines) or "No relevant lessons recorded."


def build_planning_prompt(goal: str, technologies: List[str], knowledge_entries: Iterable[Dict]) -> str:
    tech = ", ".join(technologies) or "unspecified"
    return f"""{header(PromptKind.PLANNING)}
You are the primary director analyzing a development goal for autonomous execution.

GOAL:
{goal}

TECHNOLOGIES: {tech}

LESSONS FROM EARLIER RUNS:
{format_knowledge_context(knowledge_entries)}

Break the goal into detailed, executable tasks with dependencies between them.
Dependencies refer to other task ids in the same list.

Respond with JSON:
{json.dumps({
    "summary": "short analysis",
    "tasks": [{
        "id": "T1",
        "title": "task title",
        "description": "detailed description",
        "category": "analysis|coding|testing|documentation|research|integration|deployment|debugging",
        "priority": 5,
        "complexity": 5,
        "estimated_duration": 2.0,
        "required_skills": ["skill"],
        "dependencies": [],
    }],
}, indent=2)}"""
