"""Built-in flows: the review flow and a reservation flow per business vertical.

The review flow ships as JSON next to the package; reservation flows are
generated from the per-vertical copy so a new account can start taking
bookings before anyone opens the editor.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from chatbooking.flows.loader import load_flow_file
from chatbooking.flows.schema import FlowGraph, FlowStatus

REVIEW_ENTRY_NODE_ID = "review-rating"

_DATA_DIR = Path(__file__).resolve().parent.parent / "data" / "flows"
_REVIEW_FLOW_PATH = _DATA_DIR / "review.json"


@dataclass(frozen=True)
class VerticalCopy:
    """German texts used to generate a vertical's reservation flow."""

    greeting_question: str
    start_quick_reply: str
    confirmation_text: str
    date_prompt: str
    time_prompt: str
    participants_prompt: Optional[str]
    trigger_keywords: tuple[str, ...]
    flow_name_suffix: str


VERTICAL_COPY: dict[str, VerticalCopy] = {
    "gastro": VerticalCopy(
        greeting_question="Möchtest du einen Tisch reservieren?",
        start_quick_reply="Ja, reservieren",
        confirmation_text="Wir bestätigen dir die Reservierung in Kürze.",
        date_prompt="Für welchen Tag möchtest du reservieren?",
        time_prompt="Welche Uhrzeit passt dir am besten?",
        participants_prompt="Für wie viele Personen möchtest du reservieren? (z. B. 4 Personen)",
        trigger_keywords=("reservieren", "tisch", "reservierung", "buchen"),
        flow_name_suffix="Reservierung",
    ),
    "fitness": VerticalCopy(
        greeting_question="Möchtest du einen Termin buchen?",
        start_quick_reply="Termin buchen",
        confirmation_text="Wir bestätigen dir den Termin in Kürze.",
        date_prompt="Für welchen Tag möchtest du den Termin?",
        time_prompt="Welche Uhrzeit passt dir am besten?",
        participants_prompt=None,
        trigger_keywords=("termin", "training", "session", "buchen"),
        flow_name_suffix="Terminbuchung",
    ),
    "beauty": VerticalCopy(
        greeting_question="Möchtest du einen Termin buchen?",
        start_quick_reply="Termin buchen",
        confirmation_text="Wir bestätigen dir den Termin in Kürze.",
        date_prompt="Für welchen Tag möchtest du den Termin?",
        time_prompt="Welche Uhrzeit passt dir am besten?",
        participants_prompt=None,
        trigger_keywords=("termin", "buchen", "behandlung", "kosmetik", "haare"),
        flow_name_suffix="Terminbuchung",
    ),
}


def load_review_flow() -> FlowGraph:
    return load_flow_file(_REVIEW_FLOW_PATH)


def build_reservation_flow(
    vertical: str = "gastro",
    business_name: str = "",
    flow_id: Optional[str] = None,
) -> FlowGraph:
    """Generate the default booking flow for *vertical*.

    greeting → date → time → (guests) → name → confirmation.  Verticals
    without a participants prompt skip the guest-count step.
    """
    copy = VERTICAL_COPY.get(vertical, VERTICAL_COPY["gastro"])
    greeting = f"Hallo! Willkommen bei {business_name}. " if business_name else "Hallo! "

    steps: list[tuple[str, str, str]] = [
        ("ask-date", copy.date_prompt, "date"),
        ("ask-time", copy.time_prompt, "time"),
    ]
    if copy.participants_prompt:
        steps.append(("ask-guests", copy.participants_prompt, "guestCount"))
    steps.append(("ask-name", "Wie ist dein Name?", "name"))

    if copy.participants_prompt:
        summary = "für {{guestCount}} Personen am {{date}} um {{time}} Uhr"
    else:
        summary = "am {{date}} um {{time}} Uhr"

    nodes: list[dict] = [
        {
            "id": "start",
            "text": greeting + copy.greeting_question,
            "inputMode": "Buttons",
            "quickReplies": [
                {
                    "id": "qr-start",
                    "label": copy.start_quick_reply,
                    "payload": "start_booking",
                    "targetNodeId": steps[0][0],
                }
            ],
        }
    ]
    edges: list[dict] = [
        {"id": "e-start", "source": "start", "target": steps[0][0], "quickReplyId": "qr-start"}
    ]
    for i, (node_id, prompt, field) in enumerate(steps):
        nodes.append(
            {"id": node_id, "text": prompt, "inputMode": "FreeText", "collectsField": field}
        )
        target = steps[i + 1][0] if i + 1 < len(steps) else "confirm"
        edges.append({"id": f"e-{node_id}", "source": node_id, "target": target})
    nodes.append(
        {
            "id": "confirm",
            "text": f"Danke {{{{name}}}}! Deine Anfrage {summary} ist eingegangen. "
            + copy.confirmation_text,
            "inputMode": "Buttons",
            "quickReplies": [],
        }
    )

    return FlowGraph.model_validate(
        {
            "id": flow_id or f"{vertical}-booking",
            "name": f"{business_name} {copy.flow_name_suffix}".strip(),
            "status": FlowStatus.ACTIVE.value,
            "nodes": nodes,
            "edges": edges,
            "triggers": [
                {
                    "id": "trigger-booking",
                    "keywords": list(copy.trigger_keywords),
                    "matchType": "Contains",
                    "startNodeId": "start",
                }
            ],
        }
    )


def review_entry_node(flow: FlowGraph) -> Optional[str]:
    """Node a review request starts on.

    The first trigger start that exists wins, then the built-in rating
    node, then the flow's first node.
    """
    for trigger in flow.triggers:
        if trigger.start_node_id and flow.has_node(trigger.start_node_id):
            return trigger.start_node_id
    if flow.has_node(REVIEW_ENTRY_NODE_ID):
        return REVIEW_ENTRY_NODE_ID
    return flow.nodes[0].id if flow.nodes else None
