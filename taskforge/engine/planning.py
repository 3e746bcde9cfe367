"""
Goal Planning
=============
Turns a free-form development goal into a task graph ready for
``OrchestrationEngine.submit_graph``.

The planner asks the backend for a JSON task list, using lessons from the
knowledge store as context. The reply must validate against
``task_plan.schema.json``; anything else raises UnparseableResult.
"""

from __future__ import annotations

import hashlib
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from taskforge.config import GENERATION, KNOWLEDGE
from taskforge.knowledge.store import KnowledgeStore
from taskforge.llm.backend import GenerationOptions
from taskforge.llm.gateway import BackendGateway
from taskforge.utils.schema_validation import Schema

from .errors import KnowledgeStoreUnavailable, UnparseableResult
from .models import Task
from .prompts import build_planning_prompt
from .results import Parsed, parse_reply


PLAN_SCHEMA = Schema.TASK_PLAN
LESSON_TAGS = ("error_pattern", "planning")

Edge = Tuple[str, str]


def plan_prefix(goal: str) -> str:
    return "plan_" + hashlib.sha1(goal.strip().encode("utf-8")).hexdigest()[:8]


class TaskPlanner:
    """Backend-driven goal analysis.

    Args:
        gateway: Backend gateway used for the planning call.
        knowledge: Optional knowledge store queried (read-only) for lessons.
        context_limit: Maximum number of lessons included in the prompt.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        knowledge: Optional[KnowledgeStore] = None,
        context_limit: int = KNOWLEDGE.PLANNING_CONTEXT_LIMIT,
    ):
        self.gateway = gateway
        self.knowledge = knowledge
        self.context_limit = context_limit

    def _lessons(self, technologies: Sequence[str]) -> List[Dict]:
        if self.knowledge is None:
            return []
        try:
            entries = self.knowledge.query(list(LESSON_TAGS) + list(technologies), limit=self.context_limit)
        except (KnowledgeStoreUnavailable, OSError) as e:
            logger.warning(f"Knowledge store unavailable for planning, continuing without lessons: {e}")
            return []
        return [e.to_dict() for e in entries]

    async def plan(self, goal: str, technologies: Sequence[str] = ()) -> Tuple[List[Task], List[Edge]]:
        """Plan ``goal`` into tasks and dependency edges.

        Returns:
            (tasks, edges) where edges are (prerequisite_id, dependent_id).

        Raises:
            BackendUnavailable: the planning call failed.
            UnparseableResult: the reply is not a valid task plan.
        """
        if not goal.strip():
            raise ValueError("goal must not be empty")

        lessons = self._lessons(technologies)
        prompt = build_planning_prompt(goal, list(technologies), lessons)
        options = GenerationOptions(
            max_tokens=GENERATION.PLANNING_MAX_TOKENS,
            temperature=GENERATION.PLANNING_TEMPERATURE,
        )
        result = await self.gateway.call(prompt, options, purpose="planning")

        parsed = parse_reply(result.content, PLAN_SCHEMA)
        if not isinstance(parsed, Parsed):
            raise UnparseableResult(f"Task plan rejected: {parsed.reason}", raw=result.content)

        tasks, edges = self._build(goal, parsed.payload["tasks"])
        logger.info(f"Planned {len(tasks)} task(s) and {len(edges)} dependency edge(s) for goal")
        return tasks, edges

    def _build(self, goal: str, items: List[Dict]) -> Tuple[List[Task], List[Edge]]:
        prefix = plan_prefix(goal)
        ids: Dict[str, str] = {}
        titles: Dict[str, str] = {}
        for item in items:
            local = item["id"].strip()
            if local in ids:
                raise UnparseableResult(f"Task plan repeats id {local!r}")
            ids[local] = f"{prefix}.{local}"
            titles.setdefault(item["title"].strip().lower(), ids[local])

        tasks: List[Task] = []
        edges: List[Edge] = []
        for item in items:
            task_id = ids[item["id"].strip()]
            try:
                task = Task.from_dict({**item, "id": task_id, "dependencies": []})
            except ValueError as e:
                raise UnparseableResult(f"Invalid task in plan: {e}") from e
            tasks.append(task)

            for ref in item.get("dependencies") or []:
                ref = str(ref).strip()
                prerequisite = ids.get(ref) or titles.get(ref.lower())
                if prerequisite is None:
                    logger.warning(f"Plan task {task_id}: dropping unknown dependency {ref!r}")
                    continue
                if prerequisite != task_id and (prerequisite, task_id) not in edges:
                    edges.append((prerequisite, task_id))
        return tasks, edges
