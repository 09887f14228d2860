"""Flow graphs: schema, loading, trigger matching and static checks."""

from .lint import LintIssue, LintReport, ensure_valid, lint_flow
from .loader import load_flow_file, load_flows_dir, load_flows_jsonl, save_flow_json
from .matcher import TriggerMatch, list_trigger_keywords, match_trigger
from .schema import (
    ButtonsNode,
    Edge,
    FlowGraph,
    FlowStatus,
    FreeTextNode,
    MatchType,
    QuickReply,
    Trigger,
)

__all__ = [
    "ButtonsNode",
    "Edge",
    "FlowGraph",
    "FlowStatus",
    "FreeTextNode",
    "LintIssue",
    "LintReport",
    "MatchType",
    "QuickReply",
    "Trigger",
    "TriggerMatch",
    "ensure_valid",
    "lint_flow",
    "list_trigger_keywords",
    "load_flow_file",
    "load_flows_dir",
    "load_flows_jsonl",
    "match_trigger",
    "save_flow_json",
]
