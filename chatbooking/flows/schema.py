"""Pydantic models for keyword-triggered conversation flows.

A flow is a directed (and in general cyclic) graph of nodes.  Each node is
either a *buttons* node that offers quick replies or a *free-text* node that
waits for typed input, optionally storing it under a booking field.  Edges
tagged with a quick-reply id are button transitions; an untagged edge out of
a free-text node is the fallthrough taken once the text was collected.

The JSON document produced by the flow editor uses camelCase keys; models
accept both that shape and the older editor export where node fields live
under ``data`` and trigger fields under ``config``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="ignore",
)


class FlowStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"


class MatchType(str, Enum):
    EXACT = "Exact"
    CONTAINS = "Contains"


_STATUS_ALIASES = {"draft": "Draft", "entwurf": "Draft", "active": "Active", "aktiv": "Active"}
_MATCH_ALIASES = {"exact": "Exact", "contains": "Contains"}
_INPUT_MODE_ALIASES = {
    "buttons": "Buttons",
    "button": "Buttons",
    "freetext": "FreeText",
    "free_text": "FreeText",
    "text": "FreeText",
}


class QuickReply(BaseModel):
    """A button on a node."""

    model_config = _MODEL_CONFIG

    id: str
    label: str
    payload: str = ""
    target_node_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_payload(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("payload"):
            data = dict(data)
            data["payload"] = data.get("label", "")
        return data


class _NodeBase(BaseModel):
    model_config = _MODEL_CONFIG

    id: str
    text: str = ""
    image_url: Optional[str] = None
    collects_field: Optional[str] = None


class ButtonsNode(_NodeBase):
    input_mode: Literal["Buttons"] = "Buttons"
    quick_replies: list[QuickReply] = []


class FreeTextNode(_NodeBase):
    input_mode: Literal["FreeText"] = "FreeText"
    placeholder: Optional[str] = None


Node = Annotated[Union[ButtonsNode, FreeTextNode], Field(discriminator="input_mode")]


class Edge(BaseModel):
    model_config = _MODEL_CONFIG

    id: str = ""
    source: str
    target: str
    quick_reply_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = dict(data)
            data["id"] = f"e-{data.get('source', '')}-{data.get('target', '')}"
        return data


class Trigger(BaseModel):
    model_config = _MODEL_CONFIG

    id: str
    keywords: list[str] = []
    match_type: MatchType = MatchType.CONTAINS
    start_node_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_config(cls, data: Any) -> Any:
        # Older exports: {"type": "KEYWORD", "config": {"keywords": [...], "matchType": ...}}
        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            data = {**data, **data["config"]}
            data.pop("config", None)
        return data

    @field_validator("match_type", mode="before")
    @classmethod
    def _match_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _MATCH_ALIASES.get(value.strip().lower(), value)
        return value


def _normalize_node(raw: Any) -> Any:
    """Lift ``data.*`` fields and settle the input mode of one raw node dict."""
    if not isinstance(raw, dict):
        return raw
    node = dict(raw)
    data = node.pop("data", None)
    if isinstance(data, dict):
        for key in ("text", "imageUrl", "quickReplies", "collectsField", "placeholder", "inputMode"):
            if key in data and key not in node:
                node[key] = data[key]
        if "collects" in data and "collectsField" not in node:
            node["collectsField"] = data["collects"]
        if not node.get("text") and data.get("label"):
            node["text"] = data["label"]

    mode = node.get("inputMode") or node.get("input_mode")
    if isinstance(mode, str):
        mode = _INPUT_MODE_ALIASES.get(mode.strip().lower(), mode)
    if not mode:
        has_buttons = bool(node.get("quickReplies") or node.get("quick_replies"))
        has_field = bool(node.get("collectsField") or node.get("collects_field"))
        mode = "FreeText" if has_field and not has_buttons else "Buttons"
    node.pop("input_mode", None)
    node["inputMode"] = mode
    if mode == "FreeText":
        node.pop("quickReplies", None)
        node.pop("quick_replies", None)
    return node


class FlowGraph(BaseModel):
    """Immutable snapshot of one automation: nodes, edges and triggers.

    Nodes live in a flat list (the arena); after validation the graph
    precomputes an id → index map and adjacency maps so interpreter and
    linter lookups never scan the node or edge lists.
    """

    model_config = _MODEL_CONFIG

    id: str
    name: str = ""
    status: FlowStatus = FlowStatus.DRAFT
    # Owning account; None means the flow is shared by every account
    account_id: Optional[str] = None
    nodes: list[Node] = []
    edges: list[Edge] = []
    triggers: list[Trigger] = []

    _index: dict[str, int] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[Edge]] = PrivateAttr(default_factory=dict)
    _fallthrough: dict[str, list[str]] = PrivateAttr(default_factory=dict)
    _qr_edges: dict[tuple[str, str], str] = PrivateAttr(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def _status_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _STATUS_ALIASES.get(value.strip().lower(), value)
        return value

    @field_validator("nodes", mode="before")
    @classmethod
    def _normalize_nodes(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_normalize_node(n) for n in value]
        return value

    def model_post_init(self, __context: Any) -> None:
        index: dict[str, int] = {}
        for i, node in enumerate(self.nodes):
            # First declaration wins; duplicates are reported by the linter.
            index.setdefault(node.id, i)
        outgoing: dict[str, list[Edge]] = {}
        fallthrough: dict[str, list[str]] = {}
        qr_edges: dict[tuple[str, str], str] = {}
        for edge in self.edges:
            outgoing.setdefault(edge.source, []).append(edge)
            if edge.quick_reply_id:
                qr_edges.setdefault((edge.source, edge.quick_reply_id), edge.target)
            else:
                fallthrough.setdefault(edge.source, []).append(edge.target)
        self._index = index
        self._outgoing = outgoing
        self._fallthrough = fallthrough
        self._qr_edges = qr_edges

    # ── Lookups ────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    def has_node(self, node_id: Optional[str]) -> bool:
        return node_id is not None and node_id in self._index

    def node(self, node_id: Optional[str]) -> Optional[Union[ButtonsNode, FreeTextNode]]:
        if node_id is None:
            return None
        i = self._index.get(node_id)
        return self.nodes[i] if i is not None else None

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def fallthrough_targets(self, node_id: str) -> list[str]:
        """Targets of untagged edges leaving *node_id*, in declaration order."""
        return list(self._fallthrough.get(node_id, []))

    def fallthrough_target(self, node_id: str) -> Optional[str]:
        targets = self._fallthrough.get(node_id)
        return targets[0] if targets else None

    def quick_reply_target(self, node_id: str, reply: QuickReply) -> Optional[str]:
        """Where pressing *reply* on *node_id* leads: its own target, else its tagged edge."""
        return reply.target_node_id or self._qr_edges.get((node_id, reply.id))

    def successors(self, node_id: str) -> list[str]:
        """Every node id reachable in one step, edges first, then button targets."""
        seen: list[str] = [e.target for e in self._outgoing.get(node_id, [])]
        node = self.node(node_id)
        if isinstance(node, ButtonsNode):
            for reply in node.quick_replies:
                if reply.target_node_id:
                    seen.append(reply.target_node_id)
        return seen

    def is_terminal(self, node_id: str) -> bool:
        """No outgoing edges and no quick reply with a target."""
        if self._outgoing.get(node_id):
            return False
        node = self.node(node_id)
        if isinstance(node, ButtonsNode):
            return not any(r.target_node_id for r in node.quick_replies)
        return True

    def collector_for(self, field: str) -> Optional[str]:
        """Id of the first node that collects *field*, if any."""
        for node in self.nodes:
            if node.collects_field == field:
                return node.id
        return None

    def collected_fields(self) -> set[str]:
        return {n.collects_field for n in self.nodes if n.collects_field}

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize back to the editor's camelCase JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
