"""Load flow definitions from JSON / JSONL files into FlowGraph objects."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from chatbooking.flows.schema import FlowGraph

log = logging.getLogger("chatbooking.flows.loader")


def load_flow_file(path: str | Path) -> FlowGraph:
    """Load a single flow from a ``.json`` or ``.jsonl`` file.

    A JSONL file is expected to carry one JSON object per line; the first
    non-empty line is taken.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8").strip()

    if path.suffix == ".jsonl":
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            return FlowGraph.model_validate(json.loads(line))
        raise ValueError(f"No flow found in {path}")

    if not text:
        raise ValueError(f"No flow found in {path}")
    return FlowGraph.model_validate(json.loads(text))


def load_flows_jsonl(path: str | Path) -> dict[str, FlowGraph]:
    """Load multiple flows from a JSONL file (one per line).

    Returns a dict keyed by flow ID.
    """
    path = Path(path)
    flows: dict[str, FlowGraph] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        flow = FlowGraph.model_validate(json.loads(line))
        flows[flow.id] = flow
    return flows


def load_flows_dir(directory: str | Path) -> dict[str, FlowGraph]:
    """Load every ``*.json`` and ``*.jsonl`` flow in *directory*, sorted by file name.

    A file that fails to parse is logged and skipped so one broken export
    does not keep the rest from loading.
    """
    directory = Path(directory)
    flows: dict[str, FlowGraph] = {}
    if not directory.is_dir():
        log.warning("Flows directory %s does not exist", directory)
        return flows

    for path in sorted(directory.iterdir()):
        try:
            if path.suffix == ".jsonl":
                flows.update(load_flows_jsonl(path))
            elif path.suffix == ".json":
                flow = load_flow_file(path)
                flows[flow.id] = flow
        except (OSError, ValueError) as e:
            # pydantic.ValidationError and json.JSONDecodeError are ValueErrors
            log.error("Skipping flow file %s: %s", path.name, e)
    log.info("Loaded %d flow(s) from %s", len(flows), directory)
    return flows


def save_flow_json(flow: FlowGraph, path: str | Path) -> None:
    """Persist a flow back to disk in the editor's JSON shape."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = flow.to_json_dict()
    if path.suffix == ".jsonl":
        path.write_text(json.dumps(data, ensure_ascii=False) + "\n", encoding="utf-8")
    else:
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
