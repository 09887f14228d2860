"""FastAPI application: HTTP endpoints for the chat booking service.

Endpoints:

  GET  /health                        Health check
  POST /webhooks/messages             Inbound chat event → bot reply for the turn
  GET  /api/flows/{flow_id}           Flow definition (editor JSON shape)
  PUT  /api/flows/{flow_id}           Validate, store and persist a flow
  GET  /api/flows/{flow_id}/lint      Lint report for a stored flow
  POST /api/flows/templates/{vertical}  Generate the default booking flow
  GET  /api/accounts/{account_id}     Per-account settings
  PUT  /api/accounts/{account_id}     Replace per-account settings
  POST /api/reviews/sweep             Send due review requests (cron)

Flows are loaded from FLOWS_DIR at startup together with the built-in
review flow.  Everything lives in the in-memory store on ``app.state``.
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

# Configure root logger early so all chatbooking.* loggers have a handler
# when run via `uvicorn chatbooking.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatbooking.auth import require_admin_token, require_cron_secret
from chatbooking.availability import AvailabilityCache, AvailabilityResolver
from chatbooking.channels.base import MessageChannel
from chatbooking.channels.instagram import InstagramChannel
from chatbooking.config import settings
from chatbooking.context import TurnContext, redact_metadata
from chatbooking.errors import FlowValidationError
from chatbooking.flows.lint import ensure_valid, lint_flow
from chatbooking.flows.loader import load_flows_dir, save_flow_json
from chatbooking.flows.schema import FlowGraph
from chatbooking.flows.templates import VERTICAL_COPY, build_reservation_flow, load_review_flow
from chatbooking.interpreter import ConversationInterpreter
from chatbooking.locks import KeyedLocks
from chatbooking.models import AccountSettings
from chatbooking.repository import Store
from chatbooking.reservations import ReservationCreator
from chatbooking.reviews import ReviewDispatcher
from chatbooking.service import InboundEvent, MessageService, ProviderFactory, default_provider_factory

log = logging.getLogger("chatbooking.app")

_START_TIME = time.time()
_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def _bad_id(value: str) -> Optional[JSONResponse]:
    if not _ID_PATTERN.match(value):
        return JSONResponse({"error": "Invalid id"}, status_code=400)
    return None


async def load_flows(store: Store, flows_dir: str) -> int:
    """Put the built-in review flow and every flow under *flows_dir* into *store*."""
    await store.flows.upsert(load_review_flow())
    count = 1
    if flows_dir:
        for flow in load_flows_dir(flows_dir).values():
            await store.flows.upsert(flow)
            count += 1
    return count


def create_app(
    store: Store | None = None,
    channel: MessageChannel | None = None,
    provider_factory: ProviderFactory = default_provider_factory,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    store = store or Store()
    if channel is None and settings.instagram_page_access_token:
        channel = InstagramChannel(
            settings.instagram_page_access_token,
            graph_version=settings.instagram_graph_version,
            timeout_seconds=settings.send_timeout_seconds,
        )

    locks = KeyedLocks()
    interpreter = ConversationInterpreter()
    resolver = AvailabilityResolver(
        AvailabilityCache(
            ttl_seconds=settings.availability_cache_ttl_seconds,
            max_entries=settings.availability_cache_max_entries,
        ),
        timeout_seconds=settings.calendar_timeout_seconds,
    )
    creator = ReservationCreator(store, resolver)
    reviews = (
        ReviewDispatcher(store, channel, interpreter, locks=locks) if channel is not None else None
    )
    service = MessageService(
        store,
        interpreter,
        creator,
        reviews=reviews,
        provider_factory=provider_factory,
        locks=locks,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        for warning in settings.validate_startup():
            log.warning(warning)
        count = await load_flows(store, settings.flows_dir)
        log.info("Loaded %d flows", count)
        yield
        if channel is not None:
            await channel.close()

    app = FastAPI(
        title="Chat Booking",
        description="Flow-driven reservation chatbot with calendar sync and review requests",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.service = service
    app.state.reviews = reviews

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Inbound messages ───────────────────────────────────────

    @app.post("/webhooks/messages")
    async def inbound_message(request: Request) -> JSONResponse:
        """Run one conversation turn for an inbound chat event."""
        try:
            body = await request.json()
            log.debug("Inbound event %s", redact_metadata(body))
            event = InboundEvent.model_validate(body)
        except (ValidationError, ValueError) as e:
            return JSONResponse({"error": f"Invalid event: {e}"}, status_code=400)
        response = await service.handle(event)
        return JSONResponse(response.model_dump(mode="json", by_alias=True))

    # ── Flow management ────────────────────────────────────────

    @app.get("/api/flows/{flow_id}", dependencies=[Depends(require_admin_token)])
    async def get_flow(flow_id: str) -> JSONResponse:
        """Return the full flow definition as JSON."""
        if (bad := _bad_id(flow_id)) is not None:
            return bad
        flow = await store.flows.get(flow_id)
        if flow is None:
            return JSONResponse({"error": "Flow not found"}, status_code=404)
        return JSONResponse(flow.to_json_dict())

    @app.get("/api/flows/{flow_id}/lint", dependencies=[Depends(require_admin_token)])
    async def get_flow_lint(flow_id: str) -> JSONResponse:
        if (bad := _bad_id(flow_id)) is not None:
            return bad
        flow = await store.flows.get(flow_id)
        if flow is None:
            return JSONResponse({"error": "Flow not found"}, status_code=404)
        return JSONResponse(lint_flow(flow).to_dict())

    @app.put("/api/flows/{flow_id}", dependencies=[Depends(require_admin_token)])
    async def save_flow(flow_id: str, request: Request) -> JSONResponse:
        """Save a complete flow (from the editor) and persist it to FLOWS_DIR."""
        if (bad := _bad_id(flow_id)) is not None:
            return bad
        body = await request.json()
        if isinstance(body, dict):
            body = {**body, "id": flow_id}
        try:
            flow = FlowGraph.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"error": f"Invalid flow: {e}"}, status_code=400)

        try:
            report = ensure_valid(flow)
        except FlowValidationError as e:
            return JSONResponse(
                {"error": str(e), "issues": [issue.__dict__ for issue in e.issues]},
                status_code=422,
            )

        await store.flows.upsert(flow)
        if settings.flows_dir:
            path = Path(settings.flows_dir) / f"{flow_id}.json"
            save_flow_json(flow, path)
            log.info("Flow %s persisted to %s", flow_id, path)
        return JSONResponse({"flow": flow.to_json_dict(), "lint": report.to_dict()})

    @app.post("/api/flows/templates/{vertical}", dependencies=[Depends(require_admin_token)])
    async def create_template_flow(vertical: str, request: Request) -> JSONResponse:
        """Generate the default booking flow for a business vertical."""
        if vertical not in VERTICAL_COPY:
            return JSONResponse({"error": "Unknown vertical"}, status_code=404)
        body = await request.json() if await request.body() else {}
        account_id = body.get("accountId")
        business_name = body.get("businessName", "")
        if not business_name and account_id:
            account = await store.accounts.get(account_id)
            business_name = account.business_name if account else ""
        flow = build_reservation_flow(vertical, business_name, flow_id=body.get("flowId"))
        if account_id:
            flow = flow.model_copy(update={"account_id": account_id})
        await store.flows.upsert(flow)
        log.info("Template flow %s created for vertical %s", flow.id, vertical)
        return JSONResponse(flow.to_json_dict(), status_code=201)

    # ── Account settings ───────────────────────────────────────

    @app.get("/api/accounts/{account_id}", dependencies=[Depends(require_admin_token)])
    async def get_account(account_id: str) -> JSONResponse:
        if (bad := _bad_id(account_id)) is not None:
            return bad
        account = await store.accounts.get(account_id)
        if account is None:
            return JSONResponse({"error": "Account not found"}, status_code=404)
        return JSONResponse(account.model_dump(mode="json", exclude={"calendar_access_token"}))

    @app.put("/api/accounts/{account_id}", dependencies=[Depends(require_admin_token)])
    async def save_account(account_id: str, request: Request) -> JSONResponse:
        if (bad := _bad_id(account_id)) is not None:
            return bad
        body = await request.json()
        try:
            account = AccountSettings.model_validate({**body, "account_id": account_id})
        except (ValidationError, TypeError) as e:
            return JSONResponse({"error": f"Invalid settings: {e}"}, status_code=400)
        await store.accounts.upsert(account)
        # Calendar link or hours may have changed
        resolver.cache.invalidate_account(account_id)
        log.info("Account %s settings updated", account_id)
        return JSONResponse(account.model_dump(mode="json", exclude={"calendar_access_token"}))

    # ── Reviews ────────────────────────────────────────────────

    @app.post("/api/reviews/sweep", dependencies=[Depends(require_cron_secret)])
    async def review_sweep() -> JSONResponse:
        """Send every review request that is due."""
        if reviews is None:
            return JSONResponse({"error": "No message channel configured"}, status_code=503)
        report = await reviews.sweep(TurnContext(account_id="*", correlation_id="review-sweep"))
        return JSONResponse(report.to_dict())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-24s %(levelname)-7s %(message)s"
    )

    uvicorn.run(
        "chatbooking.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
