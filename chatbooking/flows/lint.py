"""Static checks for flow graphs.

Errors describe references the interpreter cannot follow; warnings describe
flows that load fine but will probably not behave the way their author
intended (unwired buttons, nodes nobody can reach).
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from chatbooking.errors import FlowValidationError
from chatbooking.flows.schema import ButtonsNode, FlowGraph, FreeTextNode
from chatbooking.variables import KNOWN_FIELDS


@dataclass(frozen=True)
class LintIssue:
    code: str
    message: str
    node_id: Optional[str] = None


@dataclass
class LintReport:
    errors: list[LintIssue] = field(default_factory=list)
    warnings: list[LintIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "errors": [issue.__dict__ for issue in self.errors],
            "warnings": [issue.__dict__ for issue in self.warnings],
        }


def lint_flow(flow: FlowGraph) -> LintReport:
    report = LintReport()

    def error(code: str, message: str, node_id: Optional[str] = None) -> None:
        report.errors.append(LintIssue(code, message, node_id))

    def warn(code: str, message: str, node_id: Optional[str] = None) -> None:
        report.warnings.append(LintIssue(code, message, node_id))

    if not flow.nodes:
        warn("empty_flow", f"Flow '{flow.id}' has no nodes")
        return report

    seen_ids: set[str] = set()
    for node in flow.nodes:
        if node.id in seen_ids:
            error("duplicate_node_id", f"Node id '{node.id}' is declared more than once", node.id)
        seen_ids.add(node.id)

    # Edges
    for edge in flow.edges:
        if not flow.has_node(edge.source):
            error("missing_edge_source", f"Edge '{edge.id}' starts at unknown node '{edge.source}'")
        if not flow.has_node(edge.target):
            error(
                "missing_edge_target",
                f"Edge '{edge.id}' points to unknown node '{edge.target}'",
                edge.source,
            )
        if edge.quick_reply_id:
            source = flow.node(edge.source)
            replies = source.quick_replies if isinstance(source, ButtonsNode) else []
            if source is not None and not any(r.id == edge.quick_reply_id for r in replies):
                error(
                    "unknown_quick_reply_edge",
                    f"Edge '{edge.id}' is tagged with quick reply '{edge.quick_reply_id}' "
                    f"which node '{edge.source}' does not have",
                    edge.source,
                )

    # Nodes
    for node in flow.nodes:
        if isinstance(node, ButtonsNode):
            for reply in node.quick_replies:
                if reply.target_node_id and not flow.has_node(reply.target_node_id):
                    error(
                        "missing_quick_reply_target",
                        f"Quick reply '{reply.label}' points to unknown node "
                        f"'{reply.target_node_id}'",
                        node.id,
                    )
                elif flow.quick_reply_target(node.id, reply) is None:
                    warn(
                        "unwired_quick_reply",
                        f"Quick reply '{reply.label}' on node '{node.id}' leads nowhere",
                        node.id,
                    )
            if not node.quick_replies and flow.fallthrough_targets(node.id):
                warn(
                    "buttons_without_replies",
                    f"Node '{node.id}' has outgoing edges but no quick replies to follow them",
                    node.id,
                )
        elif isinstance(node, FreeTextNode):
            fallthrough = flow.fallthrough_targets(node.id)
            if not fallthrough and flow.successors(node.id):
                warn(
                    "freetext_without_fallthrough",
                    f"Free-text node '{node.id}' has only button edges; typed answers lead nowhere",
                    node.id,
                )
            elif not fallthrough:
                warn(
                    "freetext_without_fallthrough",
                    f"Free-text node '{node.id}' has no outgoing edge; the answer is stored "
                    "and the conversation ends",
                    node.id,
                )
            if len(fallthrough) > 1:
                warn(
                    "multiple_fallthrough",
                    f"Free-text node '{node.id}' has more than one untagged outgoing edge; "
                    "only the first is followed",
                    node.id,
                )
        if node.collects_field and node.collects_field not in KNOWN_FIELDS:
            warn(
                "unknown_collects_field",
                f"Node '{node.id}' collects '{node.collects_field}', which is stored as plain text",
                node.id,
            )

    # Triggers
    for trigger in flow.triggers:
        if not trigger.start_node_id:
            warn("trigger_without_start", f"Trigger '{trigger.id}' has no start node")
        elif not flow.has_node(trigger.start_node_id):
            error(
                "missing_trigger_start",
                f"Trigger '{trigger.id}' starts at unknown node '{trigger.start_node_id}'",
            )
        if not any(kw.strip() for kw in trigger.keywords):
            warn("trigger_without_keywords", f"Trigger '{trigger.id}' has no keywords")

    for node_id in _unreachable(flow):
        warn("unreachable_node", f"Node '{node_id}' cannot be reached from any trigger", node_id)

    return report


def _unreachable(flow: FlowGraph) -> list[str]:
    """Node ids not reachable from any trigger start (or from the first node)."""
    roots = [t.start_node_id for t in flow.triggers if flow.has_node(t.start_node_id)]
    if not roots:
        roots = [flow.nodes[0].id]

    visited: set[str] = set()
    queue: deque[str] = deque(roots)
    while queue:
        node_id = queue.popleft()
        if node_id in visited or not flow.has_node(node_id):
            continue
        visited.add(node_id)
        queue.extend(t for t in flow.successors(node_id) if t not in visited)

    unreachable: list[str] = []
    for node in flow.nodes:
        if node.id not in visited and node.id not in unreachable:
            unreachable.append(node.id)
    return unreachable


def ensure_valid(flow: FlowGraph) -> LintReport:
    """Lint *flow* and raise FlowValidationError if it has errors."""
    report = lint_flow(flow)
    if not report.ok:
        summary = "; ".join(issue.message for issue in report.errors[:3])
        raise FlowValidationError(f"Flow '{flow.id}' is invalid: {summary}", report.errors)
    return report
