from __future__ import annotations
import logging
import os
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

import redis.asyncio as redis

from . import config
from .auth import AuthGate
from .checkin import check_in
from .errors import SignatureError, TransientStoreError
from .helpers import bearer_token, to_iso
from .infra.sql import make_database
from .infra.timings import snapshot, timeit
from .issuance import ISSUED, IssuancePipeline
from .lookup import lookup
from .mailer import deliver, new_mailer
from .model.db import create_schema
from .model.ledger import new_ledger
from .model.store import TicketStore
from .payments import new_adapter

logger = logging.getLogger(__name__)

app = FastAPI(
    title="TicketGate",
    default_response_class=ORJSONResponse,
)


# ---
# dependencies
# ---
def get_store(request: Request) -> TicketStore:
    return request.app.state.store


def get_auth(request: Request) -> AuthGate:
    return request.app.state.auth


def get_pipeline(request: Request) -> IssuancePipeline:
    return request.app.state.pipeline


def get_mailer(request: Request):
    return request.app.state.mailer


async def require_operator(
    request: Request,
    auth: AuthGate = Depends(get_auth),
) -> None:
    token = bearer_token(request.headers.get("authorization"))
    if not await auth.is_valid(token):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _logging_start():
    config.configure_logging()
    logger.info(
        "TicketGate starting: ledger=%s provider=%s",
        config.LEDGER_BACKEND, config.PAYMENT_PROVIDER,
    )


@app.on_event("startup")
async def _db_init():
    url = config.DATABASE_URL
    if url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
    db = make_database(url)
    async with db.engine.begin() as conn:
        await create_schema(conn)
    app.state.db = db
    app.state.store = TicketStore(db)


@app.on_event("startup")
async def _ledger_start():
    app.state.redis = None
    if config.LEDGER_BACKEND != "pg":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.ledger = new_ledger(db=app.state.db, r=app.state.redis)
    app.state.auth = AuthGate(
        app.state.ledger,
        secret=config.operator_secret,
        ttl_seconds=config.SESSION_TTL_SECONDS,
    )


@app.on_event("startup")
async def _pipeline_start():
    app.state.pipeline = IssuancePipeline(
        adapter=new_adapter(config.PAYMENT_PROVIDER),
        store=app.state.store,
        ledger=app.state.ledger,
        ttl_seconds=config.IDEMPOTENCY_TTL_SECONDS,
        store_timeout=config.STORE_TIMEOUT_SECONDS,
    )
    # ConfigError here stops the process: no half-configured mail
    app.state.mailer = new_mailer(config.load_mail_settings())


@app.on_event("shutdown")
async def _mailer_stop():
    mailer = getattr(app.state, "mailer", None)
    if mailer is not None:
        await mailer.aclose()
        app.state.mailer = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()
        app.state.db = None


# ----------------------------
# Health
# ----------------------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: IssuancePipeline = Depends(get_pipeline),
    mailer=Depends(get_mailer),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        async with timeit("webhook.handle"):
            result = await pipeline.handle(payload, headers)
    except SignatureError as e:
        logger.warning("webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except TransientStoreError as e:
        # provider retries; the idempotency record was released
        raise HTTPException(status_code=500, detail=str(e))

    if result.status == ISSUED and result.mail is not None:
        # runs after the response is sent, never affects it
        background_tasks.add_task(deliver, mailer, result.mail)

    return {"ok": True, "status": result.status}


# ----------------------------
# Operator login
# ----------------------------
@app.post("/auth/login")
async def auth_login(
    request: Request,
    auth: AuthGate = Depends(get_auth),
):
    try:
        body = await request.json()
    except ValueError:
        body = None
    code = body.get("privateCode") if isinstance(body, dict) else None
    token = await auth.login(code if isinstance(code, str) else None)
    if token is None:
        raise HTTPException(status_code=401, detail="Invalid private code")
    return {"token": token}


@app.get("/auth/check", dependencies=[Depends(require_operator)])
async def auth_check():
    return {"ok": True}


# ----------------------------
# Check-in
# ----------------------------
@app.post("/scan", dependencies=[Depends(require_operator)])
async def scan(
    request: Request,
    store: TicketStore = Depends(get_store),
):
    content_type = request.headers.get("content-type") or ""
    if "application/json" not in content_type:
        raise HTTPException(status_code=400,
                            detail="Expected application/json")
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    ticket_id = body.get("ticketId")
    event_id = body.get("eventId")
    if not ticket_id or not isinstance(ticket_id, str):
        raise HTTPException(status_code=400, detail="ticketId is required")
    if not event_id or not isinstance(event_id, str):
        raise HTTPException(status_code=400, detail="eventId is required")

    result = await check_in(store, ticket_id.strip(), event_id)
    return result.to_dict()


# ----------------------------
# Lookup
# ----------------------------
@app.get("/lookup", dependencies=[Depends(require_operator)])
async def lookup_tickets(
    q: Optional[str] = None,
    store: TicketStore = Depends(get_store),
):
    rows = await lookup(store, q or "")
    return {"results": [
        {
            "ticket_id": r["ticket_id"],
            "event_id": r["event_id"],
            "email": r["email"],
            "student_name": r["student_name"],
            "scanned_at": to_iso(r["scanned_at"]),
            "created_at": to_iso(r["created_at"]),
        }
        for r in rows
    ]}


# ----------------------------
# Events
# ----------------------------
@app.get("/events", dependencies=[Depends(require_operator)])
async def list_events(store: TicketStore = Depends(get_store)):
    rows = await store.list_events_with_stats()
    return {"events": [
        {
            "id": r["id"],
            "name": r["name"],
            "stripe_price_id": r["stripe_price_id"],
            "created_at": to_iso(r["created_at"]),
            "updated_at": to_iso(r["updated_at"]),
            "ticketCount": int(r["ticket_count"] or 0),
            "scannedCount": int(r["scanned_count"] or 0),
        }
        for r in rows
    ]}


# ---- Admin JSON feed: store/ledger timings ----
@app.get("/api/admin/timings", dependencies=[Depends(require_operator)])
async def api_admin_timings():
    return {"items": snapshot()}
