"""GitHub webhook ingestion."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from mergemonk.config import Settings
from mergemonk.dependencies import review_processor_dependency, settings_dependency
from mergemonk.logger import get_logger, log_failure, log_success, log_with_context
from mergemonk.models.events import (
    PullRequestInfo,
    PullRequestPayload,
    RepositoryInfo,
    ReviewJob,
)
from mergemonk.services.review_processor import ReviewProcessor, ReviewProcessorError

router = APIRouter()

logger = get_logger()

SIGNATURE_PREFIX = "sha256="
_supported_pr_actions = {"opened", "reopened", "synchronize", "ready_for_review"}


class IgnoreEventError(RuntimeError):
    """Raised when a webhook event should be acknowledged but not processed."""


def signature_matches(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body."""

    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len(SIGNATURE_PREFIX):])


def _build_review_job(delivery_id: str | None, payload: Dict[str, Any]) -> ReviewJob:
    action = payload.get("action")
    if action not in _supported_pr_actions:
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

    return ReviewJob(
        delivery_id=delivery_id,
        payload=PullRequestPayload(
            installation_id=installation["id"],
            repository=RepositoryInfo(full_name=repository["full_name"]),
            action=action,
            pull_request=PullRequestInfo(number=pull_request["number"]),
        ),
    )


@router.post("/webhook", summary="Receive GitHub webhooks")
async def receive_webhook(
    request: Request,
    settings: Settings = Depends(settings_dependency),
    processor: ReviewProcessor = Depends(review_processor_dependency),
) -> Dict[str, Any]:
    """Verify the delivery, then review the pull request before responding."""

    start_time = time.time()
    delivery_id = request.headers.get("X-GitHub-Delivery")
    event = request.headers.get("X-GitHub-Event")
    ctx_logger = log_with_context(logger, delivery_id=delivery_id, event_type=event)

    if not event:
        log_failure(logger, "Missing X-GitHub-Event header", delivery_id=delivery_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-GitHub-Event header")

    raw_body = await request.body()
    if settings.github_webhook_secret:
        signature = request.headers.get("X-Hub-Signature-256")
        if not signature_matches(settings.github_webhook_secret, raw_body, signature):
            log_failure(logger, "Webhook signature verification failed", delivery_id=delivery_id, event_type=event)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    else:
        ctx_logger.warning("GITHUB_WEBHOOK_SECRET not set; skipping signature verification")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        log_failure(logger, "Invalid JSON payload", exc, delivery_id=delivery_id, event_type=event)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc

    if event != "pull_request":
        ctx_logger.debug(f"Event '{event}' ignored")
        return {"status": "ignored", "reason": f"Event '{event}' is not handled."}

    try:
        job = _build_review_job(delivery_id, payload)
    except IgnoreEventError as exc:
        ctx_logger.debug(f"Webhook ignored: {exc}")
        return {"status": "ignored", "reason": str(exc)}
    except (ValueError, ValidationError) as exc:
        log_failure(logger, f"Invalid payload structure: {exc}", exc, delivery_id=delivery_id, event_type=event)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    target = f"{job.payload.repository.full_name}#{job.payload.pull_request.number}"
    try:
        outcome = await processor(job)
    except ReviewProcessorError as exc:
        log_failure(logger, f"Review failed at {exc.step}", exc, delivery_id=delivery_id, event_type=event)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Review failed: {exc}",
        ) from exc

    log_success(logger, f"Review posted for {target} in {time.time() - start_time:.3f}s",
                delivery_id=delivery_id, event_type=event)
    suggestion = outcome.suggestion
    return {
        "ok": True,
        "status": "reviewed",
        "comments": outcome.comments_posted,
        "patch_pull_request": suggestion.pull_request_url if suggestion else None,
    }
