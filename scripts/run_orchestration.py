#!/usr/bin/env python3
"""Run a task graph (or a planned goal) end to end.

Input is either a graph file:

    {"tasks": [{"id": "T1", "title": "...", ...}], "edges": [["T1", "T2"]]}

or a free-form goal planned by the backend first (--goal).

The default backend is the offline echo backend, so a dry run makes no API
calls. Use --backend claude for live runs (needs ANTHROPIC_API_KEY).

Exit code behavior:
- 1 for usage or input errors
- 2 when the run finished with escalated tasks
- 0 otherwise
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an autonomous orchestration")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--graph", help="Path to a task graph JSON file")
    source.add_argument("--goal", help="Development goal to plan and run")
    parser.add_argument(
        "--tech",
        action="append",
        default=[],
        help="Technology hint for goal planning (repeatable)",
    )
    parser.add_argument(
        "--backend",
        choices=["echo", "claude"],
        default="echo",
        help="Reasoning backend. echo is offline and deterministic.",
    )
    parser.add_argument("--max-concurrency", type=int, default=None, help="Concurrent task ceiling")
    parser.add_argument("--tick", type=float, default=None, help="Loop tick in seconds")
    parser.add_argument("--review", action="store_true", help="Route results through a review step")
    parser.add_argument(
        "--knowledge-dir",
        default=None,
        help="Directory holding the knowledge ledger (default: no durable lessons)",
    )
    parser.add_argument(
        "--output",
        default=str(Path("outputs") / "orchestration"),
        help="Where to write the run status and issue report",
    )
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)
    return parser.parse_args()


def _load_graph(path: str):
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, list):
        return data, []
    return data.get("tasks") or [], [tuple(e) for e in data.get("edges") or []]


async def main() -> int:
    args = _parse_args()

    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

    from loguru import logger

    from taskforge.engine.errors import OrchestrationError
    from taskforge.engine.events import EventKind
    from taskforge.engine.orchestrator import EngineConfig, OrchestrationEngine
    from taskforge.engine.planning import TaskPlanner
    from taskforge.knowledge.store import JsonlKnowledgeStore
    from taskforge.llm.echo_backend import EchoBackend
    from taskforge.logging_setup import configure_logging

    configure_logging(args.log_level, args.log_file)

    if args.backend == "claude":
        from taskforge.llm.claude_client import ClaudeClient

        backend = ClaudeClient()
    else:
        backend = EchoBackend()

    overrides = {"enable_review": args.review, "issue_report_dir": args.output}
    if args.max_concurrency is not None:
        overrides["max_concurrency"] = args.max_concurrency
    if args.tick is not None:
        overrides["tick_seconds"] = args.tick

    knowledge = JsonlKnowledgeStore(args.knowledge_dir) if args.knowledge_dir else None
    engine = OrchestrationEngine(backend, knowledge=knowledge, config=EngineConfig(**overrides))

    def _print_event(event) -> None:
        if event.kind in (EventKind.TASK_COMPLETED, EventKind.TASK_FAILED, EventKind.ESCALATION):
            print(f"[{event.kind.value}] {event.task_id}", flush=True)

    engine.add_listener(_print_event)

    try:
        if args.goal:
            planner = TaskPlanner(engine.gateway, knowledge)
            tasks, edges = await planner.plan(args.goal, args.tech)
        else:
            tasks, edges = _load_graph(args.graph)
        run_id = await engine.submit_graph(tasks, edges)
    except (OrchestrationError, OSError, ValueError) as e:
        logger.error(f"Could not start run: {e}")
        return 1

    try:
        status = await engine.wait(run_id)
    except KeyboardInterrupt:
        status = await engine.cancel(run_id)

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"{run_id}_status.json"
    out_path.write_text(json.dumps(status.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")

    metrics = status.metrics
    print("\n" + "=" * 60)
    print("ORCHESTRATION COMPLETE")
    print("=" * 60)
    print(f"Run: {run_id} ({status.state.value})")
    print(f"Progress: {status.progress:.1f}% [{status.phase}]")
    print(f"Quality: {metrics.quality_score:.1f}  Autonomy: {metrics.autonomy_level:.1f}")
    print(f"Tokens: {metrics.tokens}  Cost: ${metrics.cost:.4f}")
    print(f"Status: {out_path}")
    print("=" * 60)

    return 2 if metrics.escalations else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
