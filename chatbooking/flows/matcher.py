"""Keyword trigger matching: pick the flow and entry node for inbound text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from chatbooking.flows.schema import FlowGraph, MatchType


@dataclass(frozen=True)
class TriggerMatch:
    flow: FlowGraph
    trigger_id: str
    start_node_id: str

    @property
    def flow_id(self) -> str:
        return self.flow.id


def normalize_text(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def _keyword_matches(message: str, keyword: str, match_type: MatchType) -> bool:
    keyword = normalize_text(keyword)
    if not keyword:
        return False
    if match_type == MatchType.EXACT:
        return message == keyword
    return keyword in message


def match_trigger(text: Optional[str], flows: Iterable[FlowGraph]) -> Optional[TriggerMatch]:
    """Return the first trigger that matches *text*, or None.

    Flows are visited in the order supplied (callers pass them sorted by id),
    triggers in declaration order.  Draft flows and triggers without a start
    node never match.
    """
    message = normalize_text(text)
    if not message:
        return None

    for flow in flows:
        if not flow.is_active:
            continue
        for trigger in flow.triggers:
            if not trigger.start_node_id:
                continue
            if any(_keyword_matches(message, kw, trigger.match_type) for kw in trigger.keywords):
                return TriggerMatch(
                    flow=flow,
                    trigger_id=trigger.id,
                    start_node_id=trigger.start_node_id,
                )
    return None


def list_trigger_keywords(flows: Iterable[FlowGraph], limit: int = 6) -> list[str]:
    """De-duplicated keywords of active, wired triggers, in match order."""
    seen: list[str] = []
    for flow in flows:
        if not flow.is_active:
            continue
        for trigger in flow.triggers:
            if not trigger.start_node_id:
                continue
            for kw in trigger.keywords:
                kw = kw.strip()
                if kw and kw.lower() not in (s.lower() for s in seen):
                    seen.append(kw)
                    if len(seen) >= limit:
                        return seen
    return seen
