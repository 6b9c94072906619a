from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from app.logging_config import get_logger
from app.services.gateway_service import ingest_raw_payload, verify_handshake, verify_signature

logger = get_logger("whatsapp_webhook")

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


def _handshake(
    tenant_slug: Optional[str],
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
):
    accepted = verify_handshake(mode, token, challenge)
    if accepted is None:
        logger.warning("Webhook verification refused", extra={"context": {"tenant_slug": tenant_slug, "mode": mode}})
        return PlainTextResponse("forbidden", status_code=403)
    logger.info("Webhook verified", extra={"context": {"tenant_slug": tenant_slug}})
    return PlainTextResponse(accepted)


async def _receive(
    request: Request,
    background_tasks: BackgroundTasks,
    tenant_slug: Optional[str],
    signature: Optional[str],
):
    raw_body = await request.body()
    if not verify_signature(raw_body, signature):
        client_host = request.client.host if request.client else None
        logger.warning(
            "Webhook signature rejected",
            extra={"context": {"tenant_slug": tenant_slug, "client": client_host, "has_signature": bool(signature)}},
        )
        return JSONResponse({"status": "rejected"}, status_code=401)

    background_tasks.add_task(ingest_raw_payload, raw_body, tenant_slug)
    return {"status": "ok"}


@router.get("/webhook")
async def verify_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    plain_mode: Optional[str] = Query(default=None, alias="mode"),
    plain_token: Optional[str] = Query(default=None, alias="verify_token"),
    plain_challenge: Optional[str] = Query(default=None, alias="challenge"),
):
    return _handshake(None, mode or plain_mode, token or plain_token, challenge or plain_challenge)


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
):
    """Deliveries without a tenant slug are routed by metadata.phone_number_id."""
    return await _receive(request, background_tasks, None, x_hub_signature_256)


@router.get("/webhook/{tenant_slug}")
async def verify_tenant_webhook(
    tenant_slug: str,
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    plain_mode: Optional[str] = Query(default=None, alias="mode"),
    plain_token: Optional[str] = Query(default=None, alias="verify_token"),
    plain_challenge: Optional[str] = Query(default=None, alias="challenge"),
):
    return _handshake(tenant_slug, mode or plain_mode, token or plain_token, challenge or plain_challenge)


@router.post("/webhook/{tenant_slug}")
async def receive_tenant_webhook(
    tenant_slug: str,
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
):
    return await _receive(request, background_tasks, tenant_slug, x_hub_signature_256)
