"""GitHub webhook ingestion."""

from __future__ import annotations

import json
import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from testgen.config import Settings
from testgen.dependencies import settings_dependency
from testgen.logger import get_logger, log_failure, log_success, log_timing, log_with_context
from testgen.queue import enqueue_webhook_event
from testgen.queue.models import (
    PullRequestEndpoint,
    PullRequestInfo,
    PullRequestPayload,
    RepositoryInfo,
    WebhookEvent,
)
from testgen.utils.security import verify_github_signature

router = APIRouter()

logger = get_logger()

DELIVERY_TTL_SECONDS = 60 * 60  # retain delivery IDs for one hour
SUPPORTED_EVENT = "pull_request"
SUPPORTED_PR_ACTIONS = frozenset({"opened", "synchronize", "reopened"})
_delivery_cache: Dict[str, float] = {}


class IgnoreEventError(RuntimeError):
    """Raised when a webhook event should be acknowledged but not processed."""


def _prune_delivery_cache(now: float) -> None:
    expiry_threshold = now - DELIVERY_TTL_SECONDS
    expired = [key for key, timestamp in _delivery_cache.items() if timestamp < expiry_threshold]
    for key in expired:
        _delivery_cache.pop(key, None)


def _mark_delivery(delivery_id: str, now: float) -> None:
    _delivery_cache[delivery_id] = now


def _is_duplicate(delivery_id: str, now: float) -> bool:
    _prune_delivery_cache(now)
    return delivery_id in _delivery_cache


def reset_delivery_cache() -> None:
    """Forget every seen delivery (primarily for tests)."""
    _delivery_cache.clear()


def build_pull_request_payload(event: str, payload: Dict[str, Any]) -> PullRequestPayload:
    if event != SUPPORTED_EVENT:
        raise IgnoreEventError(f"Event '{event}' is not handled.")

    action = payload.get("action")
    if action not in SUPPORTED_PR_ACTIONS:
        raise IgnoreEventError(f"Pull request action '{action}' not actionable.")

    installation = payload.get("installation") or {}
    repository = payload.get("repository") or {}
    pull_request = payload.get("pull_request") or {}

    if not installation.get("id"):
        raise ValueError("Pull request event missing installation id.")
    if not repository.get("full_name"):
        raise ValueError("Pull request event missing repository metadata.")
    if not pull_request.get("number"):
        raise ValueError("Pull request payload missing number.")

    head = pull_request.get("head") or {}
    base = pull_request.get("base") or {}
    logger.debug(
        f"Building PullRequestPayload: repo={repository.get('full_name')}, PR#{pull_request.get('number')}, "
        f"action={action}, head_sha={head.get('sha')}, base_sha={base.get('sha')}"
    )

    return PullRequestPayload(
        installation_id=installation["id"],
        repository=RepositoryInfo(
            id=repository.get("id"),
            full_name=repository.get("full_name"),
            owner=(repository.get("owner") or {}).get("login"),
            name=repository.get("name"),
            clone_url=repository.get("clone_url"),
        ),
        action=action,
        pull_request=PullRequestInfo(
            number=pull_request.get("number"),
            title=pull_request.get("title"),
            body=pull_request.get("body"),
            url=pull_request.get("html_url"),
            head=PullRequestEndpoint(ref=head.get("ref"), sha=head.get("sha")),
            base=PullRequestEndpoint(ref=base.get("ref"), sha=base.get("sha")),
        ),
        sender=payload.get("sender") or {},
    )


@router.post("/webhook", summary="Receive GitHub webhooks")
async def receive_webhook(
    request: Request,
    settings: Settings = Depends(settings_dependency),
) -> Dict[str, str]:
    """Verify webhook signatures, filter and dedupe deliveries, and enqueue pull request events."""

    start_time = time.time()
    logger.info("=== WEBHOOK RECEIVED ===")

    delivery_id = request.headers.get("X-GitHub-Delivery")
    event = request.headers.get("X-GitHub-Event")

    if not settings.github_webhook_secret:
        log_failure(logger, "GITHUB_WEBHOOK_SECRET is not configured", delivery_id=delivery_id, event_type=event)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Configuration error: GITHUB_WEBHOOK_SECRET is not set",
        )

    raw_body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256")

    if not delivery_id:
        log_failure(logger, "Missing X-GitHub-Delivery header", event_type=event)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-GitHub-Delivery header")

    if not event:
        log_failure(logger, "Missing X-GitHub-Event header", delivery_id=delivery_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-GitHub-Event header")

    ctx_logger = log_with_context(logger, delivery_id=delivery_id, event_type=event)
    ctx_logger.info(f"Processing {event} event")

    if not verify_github_signature(settings.github_webhook_secret, raw_body, signature):
        log_failure(logger, "Webhook signature verification failed", delivery_id=delivery_id, event_type=event)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log_failure(logger, "Invalid JSON payload", exc, delivery_id=delivery_id, event_type=event)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    now = time.time()
    if _is_duplicate(delivery_id, now):
        ctx_logger.info("Duplicate delivery ignored")
        return {"status": "ignored", "reason": "duplicate"}

    try:
        pr_payload = build_pull_request_payload(event, payload)
    except IgnoreEventError as exc:
        ctx_logger.info(f"Webhook ignored: {exc}")
        return {"status": "ignored", "reason": str(exc)}
    except (ValueError, ValidationError) as exc:
        log_failure(logger, f"Invalid payload structure: {exc}", exc, delivery_id=delivery_id, event_type=event)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    repo_name = pr_payload.repository.full_name
    ctx_logger = log_with_context(
        logger,
        delivery_id=delivery_id,
        event_type=event,
        repository=repo_name,
        pr_number=pr_payload.pull_request.number,
    )

    webhook_event = WebhookEvent(
        delivery_id=delivery_id,
        event_type=event,
        action=pr_payload.action,
        payload=pr_payload,
        raw_payload=payload,
    )
    with log_timing(ctx_logger, "enqueue_webhook_event"):
        enqueue_webhook_event(webhook_event)

    _mark_delivery(delivery_id, now)
    processing_time = time.time() - start_time
    log_success(
        logger,
        f"Webhook accepted and enqueued {event}/{pr_payload.action} for {repo_name} "
        f"(processed in {processing_time:.3f}s)",
        delivery_id=delivery_id,
        event_type=event,
        repository=repo_name,
    )
    return {"status": "accepted"}
