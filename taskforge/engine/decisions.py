"""
Autonomous Decisions
====================
Generic "choose one of these options" procedure backed by the reasoning
backend, plus the append-only log of every decision taken in a run.

A decision never fails: when the backend errors, times out, or answers
with something that is not one of the offered options, the caller's safe
default is chosen and the decision is marked ``degraded``.
"""

from __future__ import annotations

import re
from typing import Dict, Iterator, List, Optional, Sequence

from loguru import logger

from taskforge.config import GENERATION
from taskforge.llm.backend import GenerationOptions
from taskforge.llm.gateway import BackendGateway
from taskforge.utils.schema_validation import Schema

from .errors import BackendUnavailable
from .models import Decision
from .prompts import build_decision_prompt
from .results import Parsed, parse_reply


DECISION_SCHEMA = Schema.DECISION
VALID_OUTCOMES = ("success", "failure", "partial")
MIN_SHORT_FORM = 3


def match_option(answer: str, options: Sequence[str]) -> Optional[str]:
    """Map a free-form answer onto one of ``options``.

    Accepts an exact match, a case/whitespace-insensitive match, a numbered
    reference ("2" or "2. option"), an answer that contains exactly one
    option name, or a short form that begins exactly one option name
    ("retry" for "retry_with_different_agent").
    """
    if not answer:
        return None
    cleaned = answer.strip().strip("`'\"").strip()
    lowered = cleaned.lower()
    for opt in options:
        if lowered == opt.lower():
            return opt

    number = re.match(r"^(\d+)[.)]?(\s|$)", cleaned)
    if number:
        idx = int(number.group(1)) - 1
        if 0 <= idx < len(options):
            return options[idx]

    contained = [opt for opt in options if opt.lower() in lowered]
    if len(contained) == 1:
        return contained[0]

    short = lowered.replace(" ", "_")
    if len(short) >= MIN_SHORT_FORM:
        prefixed = [opt for opt in options if opt.lower().startswith(short)]
        if len(prefixed) == 1:
            return prefixed[0]
    return None


class DecisionLog:
    """Append-only record of decisions for one run."""

    def __init__(self):
        self._decisions: List[Decision] = []
        self._by_id: Dict[str, Decision] = {}

    def record(self, decision: Decision) -> Decision:
        self._decisions.append(decision)
        self._by_id[decision.id] = decision
        return decision

    def set_outcome(self, decision_id: str, outcome: str) -> None:
        if outcome not in VALID_OUTCOMES:
            raise ValueError(f"Invalid decision outcome: {outcome}")
        decision = self._by_id.get(decision_id)
        if decision is None:
            raise KeyError(f"Unknown decision: {decision_id}")
        decision.outcome = outcome

    def for_task(self, task_id: str) -> List[Decision]:
        return [d for d in self._decisions if d.task_id == task_id]

    def count_chosen(self, option: str) -> int:
        return sum(1 for d in self._decisions if d.chosen == option)

    def __len__(self) -> int:
        return len(self._decisions)

    def __iter__(self) -> Iterator[Decision]:
        return iter(list(self._decisions))

    def to_list(self) -> List[dict]:
        return [d.to_dict() for d in self._decisions]


class DecisionMaker:
    """Picks one option for a context through the reasoning backend."""

    def __init__(self, gateway: BackendGateway, log: Optional[DecisionLog] = None):
        self.gateway = gateway
        self.log = log if log is not None else DecisionLog()

    async def decide(
        self,
        context: str,
        options: Sequence[str],
        *,
        safe_default: str,
        impact: str = "medium",
        task_id: Optional[str] = None,
    ) -> Decision:
        """Choose one of ``options`` and record the decision.

        ``safe_default`` need not be among ``options``; it is what the engine
        falls back to when the backend cannot give a usable answer.
        """
        options = list(options)
        if not options:
            raise ValueError("decide() needs at least one option")

        prompt = build_decision_prompt(context, options)
        gen = GenerationOptions(
            max_tokens=GENERATION.DECISION_MAX_TOKENS,
            temperature=GENERATION.DECISION_TEMPERATURE,
        )
        try:
            result = await self.gateway.call(prompt, gen, purpose="decision")
        except BackendUnavailable as e:
            logger.warning(f"Decision backend unavailable, falling back to {safe_default}: {e}")
            return self._degraded(context, options, safe_default, impact, task_id, f"backend unavailable: {e}")

        outcome = parse_reply(result.content, DECISION_SCHEMA)
        if not isinstance(outcome, Parsed):
            logger.warning(f"Unparseable decision reply ({outcome.reason}); falling back to {safe_default}")
            return self._degraded(context, options, safe_default, impact, task_id, f"unparseable reply: {outcome.reason}")

        payload = outcome.payload
        chosen = match_option(str(payload["decision"]), options)
        if chosen is None:
            logger.warning(f"Decision '{payload['decision']}' is not an offered option; falling back to {safe_default}")
            return self._degraded(context, options, safe_default, impact, task_id, "answer outside offered options")

        confidence = int(max(0, min(100, payload.get("confidence", 50))))
        decision = Decision(
            context=context,
            chosen=chosen,
            alternatives=[o for o in options if o != chosen],
            confidence=confidence,
            reversible=bool(payload.get("reversible", True)),
            reasoning=str(payload.get("reasoning") or ""),
            impact=impact,
            task_id=task_id,
        )
        logger.info(f"Decision for {task_id or 'engine'}: {chosen} (confidence {confidence})")
        return self.log.record(decision)

    def _degraded(
        self,
        context: str,
        options: List[str],
        safe_default: str,
        impact: str,
        task_id: Optional[str],
        reason: str,
    ) -> Decision:
        decision = Decision(
            context=context,
            chosen=safe_default,
            alternatives=[o for o in options if o != safe_default],
            confidence=0,
            reversible=True,
            reasoning=f"Safe default applied ({reason})",
            impact=impact,
            task_id=task_id,
            degraded=True,
        )
        return self.log.record(decision)
