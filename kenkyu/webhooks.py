"""
Webhook ingestion for provider completion callbacks.

Lookup is by the unique external response id. Only a running job is ever
changed, so duplicate and out-of-order deliveries are no-ops.
"""
import hashlib
import hmac
import logging
import os
from typing import Optional, Union

from kenkyu.database import SessionLocal
from kenkyu.errors import SignatureError
from kenkyu.events import CompletedEvent, ProviderEvent, UnknownEvent, decode_event
from kenkyu.jobs import apply_event
from kenkyu.models import ResearchJob
from kenkyu.provider import provider
from kenkyu.tasks import tasks

logger = logging.getLogger(__name__)

WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET")
SIGNATURE_HEADER = "X-Webhook-Signature"


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Check a hex HMAC-SHA256 of the raw body, optionally prefixed "sha256=".
    With no secret configured every request passes.
    """
    if not secret:
        return True
    if not signature:
        return False
    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256="):]
    # Header values may carry arbitrary characters; compare as bytes
    return hmac.compare_digest(sign(body, secret).encode("ascii"), signature.lower().encode("utf-8", "replace"))


def ingest(event: ProviderEvent) -> str:
    """
    Apply a decoded event. Returns one of: not_found, duplicate, completed,
    resolving, retrying, failed, in_progress, ignored.
    """
    if isinstance(event, UnknownEvent):
        logger.info(f"[WEBHOOK] Ignoring status '{event.status}' for {event.external_id}")
        return "ignored"

    session = SessionLocal()
    try:
        job = session.query(ResearchJob).filter(ResearchJob.external_job_id == event.external_id).first()
        job_id = job.id if job else None
        status = job.status if job else None
    finally:
        session.close()

    if job_id is None:
        logger.warning(f"[WEBHOOK] No research job for response {event.external_id}")
        return "not_found"
    if status != "running":
        logger.info(f"[WEBHOOK] Duplicate delivery for job {job_id} ({status})")
        return "duplicate"

    if isinstance(event, CompletedEvent) and event.output is None:
        # Envelope-only delivery: fetch the result from the provider
        tasks.enqueue(resolve_from_provider, job_id, event.external_id)
        return "resolving"

    outcome = apply_event(job_id, event)
    logger.info(f"[WEBHOOK] Job {job_id}: {outcome}")
    return outcome


def resolve_from_provider(job_id: int, external_id: str) -> str:
    """Retrieve a finished response and apply it."""
    event = decode_event(provider.retrieve(external_id))
    if isinstance(event, CompletedEvent) and event.output is None:
        event = CompletedEvent(event.external_id, "", event.usage)
    outcome = apply_event(job_id, event)
    logger.info(f"[WEBHOOK] Job {job_id} resolved from provider: {outcome}")
    return outcome


def handle_webhook(body: Union[bytes, str], signature: Optional[str] = None,
                   secret: Optional[str] = None) -> str:
    """Verify, decode and ingest a raw webhook body. Raises on bad signature or payload."""
    if not verify_signature(body if isinstance(body, bytes) else body.encode("utf-8"), signature, secret):
        raise SignatureError("Invalid webhook signature")
    return ingest(decode_event(body))
