"""Advance a conversation through a flow graph, one turn at a time.

The interpreter never touches storage.  Each call takes the conversation as
it was before the turn and returns a ``TurnOutcome`` holding an updated copy
plus the single outbound message for the turn; the caller decides whether
to commit it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from chatbooking import variables as fields
from chatbooking.config import settings
from chatbooking.context import TurnContext
from chatbooking.flows.schema import ButtonsNode, FlowGraph, FreeTextNode, QuickReply
from chatbooking.models.conversation import (
    Conversation,
    ConversationStatus,
    OutboundMessage,
    OutboundQuickReply,
)

_STRUCTURED_PAYLOAD_RE = re.compile(r"^flow:(?P<flow>[^:]+):node:(?P<node>.+)$")

AnyNode = Union[ButtonsNode, FreeTextNode]


@dataclass
class TurnOutcome:
    """Result of one interpreter step.

    ``consumed`` is False when the input does not apply to the current node
    (the caller may then try trigger matching); ``dead_end`` means the input
    applied but led nowhere, and the conversation was left unchanged.
    """

    conversation: Conversation
    message: Optional[OutboundMessage] = None
    moved: bool = False
    dead_end: bool = False
    consumed: bool = True
    collected: dict[str, Any] = field(default_factory=dict)

    @property
    def node_id(self) -> Optional[str]:
        return self.conversation.current_node_id


def structured_payload(flow_id: str, node_id: str) -> str:
    return f"flow:{flow_id}:node:{node_id}"


def parse_structured_payload(payload: str) -> Optional[tuple[str, str]]:
    match = _STRUCTURED_PAYLOAD_RE.match(payload or "")
    if not match:
        return None
    return match.group("flow"), match.group("node")


class ConversationInterpreter:
    """Executes flow graphs for conversations.

    Typical use::

        interpreter = ConversationInterpreter()
        outcome = interpreter.enter(ctx, conversation, flow, match.start_node_id)
        ...
        outcome = interpreter.submit_text(ctx, outcome.conversation, flow, "19 Uhr")
    """

    def __init__(self, selection_unavailable_message: str | None = None) -> None:
        self._unavailable_text = (
            selection_unavailable_message or settings.selection_unavailable_message
        )

    # ── Rendering ─────────────────────────────────────────────

    def render(self, flow: FlowGraph, node: AnyNode, variables: dict[str, Any]) -> OutboundMessage:
        """Outbound message for *node* with ``{{placeholders}}`` filled in."""
        replies: list[OutboundQuickReply] = []
        if isinstance(node, ButtonsNode):
            for reply in node.quick_replies:
                replies.append(
                    OutboundQuickReply(
                        label=fields.substitute_variables(reply.label, variables),
                        payload=self._outbound_payload(flow, node, reply),
                    )
                )
        return OutboundMessage(
            text=fields.substitute_variables(node.text, variables),
            image_url=node.image_url,
            quick_replies=replies,
            node_id=node.id,
        )

    def _outbound_payload(self, flow: FlowGraph, node: ButtonsNode, reply: QuickReply) -> str:
        target = flow.quick_reply_target(node.id, reply)
        if not target:
            return reply.payload or reply.label
        shared = sum(1 for r in node.quick_replies if flow.quick_reply_target(node.id, r) == target)
        if node.collects_field or shared > 1:
            # The structured form would not tell the buttons apart
            return reply.id
        return structured_payload(flow.id, target)

    def _dead_end(self, ctx: TurnContext, conversation: Conversation, reason: str) -> TurnOutcome:
        ctx.logger("chatbooking.interpreter").warning(
            "Dead end in flow=%s node=%s: %s",
            conversation.current_flow_id,
            conversation.current_node_id,
            reason,
        )
        return TurnOutcome(
            conversation=conversation,
            message=OutboundMessage(
                text=self._unavailable_text, node_id=conversation.current_node_id
            ),
            dead_end=True,
        )

    # ── Transitions ───────────────────────────────────────────

    def _move(
        self,
        conversation: Conversation,
        flow: FlowGraph,
        target_id: str,
        variables: dict[str, Any],
        collected: dict[str, Any],
    ) -> TurnOutcome:
        node = flow.node(target_id)
        # A free-text node still waits for its answer, even as the last step
        closes = flow.is_terminal(target_id) and not isinstance(node, FreeTextNode)
        status = ConversationStatus.CLOSED if closes else ConversationStatus.ACTIVE
        updated = conversation.model_copy(
            update={
                "current_flow_id": flow.id,
                "current_node_id": target_id,
                "variables": variables,
                "status": status,
                "last_message_at": datetime.now(timezone.utc),
            }
        )
        return TurnOutcome(
            conversation=updated,
            message=self.render(flow, node, variables),
            moved=True,
            collected=collected,
        )

    def enter(
        self,
        ctx: TurnContext,
        conversation: Conversation,
        flow: FlowGraph,
        node_id: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> TurnOutcome:
        """Put *conversation* on *node_id* of *flow* and emit that node's message."""
        if not flow.has_node(node_id):
            return self._dead_end(ctx, conversation, f"entry node {node_id!r} does not exist")
        merged = dict(conversation.variables if variables is None else variables)
        ctx.logger("chatbooking.interpreter").info("Entering flow=%s node=%s", flow.id, node_id)
        return self._move(conversation, flow, node_id, merged, {})

    def _current_node(self, conversation: Conversation, flow: FlowGraph) -> Optional[AnyNode]:
        if conversation.current_flow_id != flow.id:
            return None
        return flow.node(conversation.current_node_id)

    def _find_reply(self, flow: FlowGraph, node: ButtonsNode, payload: str) -> Optional[QuickReply]:
        for reply in node.quick_replies:
            if reply.id == payload:
                return reply
        for reply in node.quick_replies:
            if reply.payload and reply.payload == payload:
                return reply
        parsed = parse_structured_payload(payload)
        if parsed and parsed[0] == flow.id:
            for reply in node.quick_replies:
                if flow.quick_reply_target(node.id, reply) == parsed[1]:
                    return reply
        return None

    def press_button(
        self,
        ctx: TurnContext,
        conversation: Conversation,
        flow: FlowGraph,
        payload: str,
    ) -> TurnOutcome:
        """Follow the quick reply identified by *payload* on the current node."""
        node = self._current_node(conversation, flow)
        if node is None:
            if conversation.current_flow_id == flow.id and conversation.current_node_id:
                return self._dead_end(ctx, conversation, "current node no longer exists")
            return TurnOutcome(conversation=conversation, consumed=False)
        if not isinstance(node, ButtonsNode):
            return TurnOutcome(conversation=conversation, consumed=False)

        reply = self._find_reply(flow, node, payload)
        if reply is None:
            parsed = parse_structured_payload(payload)
            if parsed and parsed[0] == flow.id:
                return self._dead_end(ctx, conversation, f"stale button for node {parsed[1]!r}")
            return TurnOutcome(conversation=conversation, consumed=False)
        return self._follow(ctx, conversation, flow, node, reply)

    def _follow(
        self,
        ctx: TurnContext,
        conversation: Conversation,
        flow: FlowGraph,
        node: ButtonsNode,
        reply: QuickReply,
    ) -> TurnOutcome:
        target = flow.quick_reply_target(node.id, reply)
        if not target or not flow.has_node(target):
            return self._dead_end(
                ctx, conversation, f"quick reply {reply.id!r} has no reachable target"
            )

        collected: dict[str, Any] = {}
        if node.collects_field:
            value = fields.normalize(node.collects_field, reply.payload or reply.label)
            if value is not None:
                collected[node.collects_field] = value
        merged = fields.merge_variables(conversation.variables, collected)
        return self._move(conversation, flow, target, merged, collected)

    def submit_text(
        self,
        ctx: TurnContext,
        conversation: Conversation,
        flow: FlowGraph,
        text: str,
        today: Optional[date] = None,
    ) -> TurnOutcome:
        """Apply typed *text* to the current node.

        On a free-text node the text is normalized into the node's field and
        the fallthrough edge is followed; a free-text node without outgoing
        edges stores the answer and closes the conversation.  On a buttons
        node, text equal to a button label (or, for nodes that collect a
        field, text normalizing to a button's value) counts as pressing that
        button.
        """
        node = self._current_node(conversation, flow)
        if node is None:
            if conversation.current_flow_id == flow.id and conversation.current_node_id:
                return self._dead_end(ctx, conversation, "current node no longer exists")
            return TurnOutcome(conversation=conversation, consumed=False)

        if isinstance(node, ButtonsNode):
            if flow.is_terminal(node.id):
                return TurnOutcome(conversation=conversation, consumed=False)
            reply = self._reply_for_text(node, text)
            if reply is None:
                return TurnOutcome(conversation=conversation, consumed=False)
            return self._follow(ctx, conversation, flow, node, reply)

        if flow.is_terminal(node.id):
            collected = self._collect_text(ctx, node, text, today)
            merged = fields.merge_variables(conversation.variables, collected)
            return self._finish(conversation, node, merged, collected)

        target = flow.fallthrough_target(node.id)
        if not target or not flow.has_node(target):
            return self._dead_end(ctx, conversation, "free-text node has no fallthrough edge")

        collected = self._collect_text(ctx, node, text, today)
        merged = fields.merge_variables(conversation.variables, collected)
        return self._move(conversation, flow, target, merged, collected)

    def _collect_text(
        self,
        ctx: TurnContext,
        node: FreeTextNode,
        text: str,
        today: Optional[date],
    ) -> dict[str, Any]:
        collected: dict[str, Any] = {}
        if not node.collects_field:
            return collected
        value = fields.normalize(node.collects_field, text, today=today)
        if value is not None:
            collected[node.collects_field] = value
        if node.collects_field == fields.TIME:
            # "16.03. um 19 Uhr" answers both questions
            companion = fields.extract_explicit_date(text, today=today)
            if companion:
                collected[fields.DATE] = companion
        ctx.logger("chatbooking.interpreter").debug(
            "Collected %s on node=%s (stored=%s)",
            node.collects_field,
            node.id,
            value is not None,
        )
        return collected

    def _finish(
        self,
        conversation: Conversation,
        node: FreeTextNode,
        variables: dict[str, Any],
        collected: dict[str, Any],
    ) -> TurnOutcome:
        """Close the conversation after the answer to a final free-text node."""
        updated = conversation.model_copy(
            update={
                "variables": variables,
                "status": ConversationStatus.CLOSED,
                "last_message_at": datetime.now(timezone.utc),
            }
        )
        return TurnOutcome(
            conversation=updated,
            message=OutboundMessage(text=settings.text_received_message, node_id=node.id),
            moved=True,
            collected=collected,
        )

    def _reply_for_text(self, node: ButtonsNode, text: str) -> Optional[QuickReply]:
        wanted = (text or "").strip().lower()
        if not wanted:
            return None
        for reply in node.quick_replies:
            if reply.label.strip().lower() == wanted:
                return reply
        if node.collects_field:
            value = fields.normalize(node.collects_field, text)
            if value is not None:
                for reply in node.quick_replies:
                    if fields.normalize(node.collects_field, reply.payload) == value:
                        return reply
        return None
