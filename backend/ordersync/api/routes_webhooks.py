"""Inbound provider notifications.

The endpoint acknowledges once the event is durably stored and queued; the
worker pool processes it afterwards. Any non-2xx answer makes the provider
redeliver, so only requests that can never succeed are rejected.
"""

import json
import logging
from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ordersync.api.problem_details import PROBLEM_TYPE_PAYLOAD_TOO_LARGE, problem_details
from ordersync.domain.alerts.schemas import Alert, AlertSeverity, AlertType
from ordersync.domain.errors import AuthenticationError, ValidationError
from ordersync.domain.events import service as event_service
from ordersync.domain.queue import service as queue_service
from ordersync.domain.webhooks.schemas import WebhookEnvelope, parse_envelope
from ordersync.domain.webhooks.signature import (
    VerificationReason,
    VerificationResult,
    check_freshness,
    verify_signature,
)
from ordersync.infra.db import as_utc, get_db_session, utcnow
from ordersync.infra.logging import update_log_context
from ordersync.infra.metrics import metrics
from ordersync.infra.security import is_known_source, resolve_client_ip
from ordersync.services import resolve_services
from ordersync.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/v1/webhooks/square"


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


def _select_secret(request: Request, app_settings) -> str | None:
    environment = (request.headers.get(app_settings.webhook_environment_header) or "").strip().lower()
    if environment == "sandbox" and app_settings.webhook_sandbox_signature_key:
        return app_settings.webhook_sandbox_signature_key
    return app_settings.webhook_signature_key


def _reject(result: VerificationResult) -> AuthenticationError:
    reason = result.reason.value.lower()
    metrics.record_webhook("rejected")
    metrics.record_webhook_error(reason)
    logger.warning("webhook_signature_rejected", extra={"extra": {"reason": reason}})
    return AuthenticationError(f"Webhook signature rejected: {result.reason.value}", reason=reason)


def _check_envelope_age(envelope: WebhookEnvelope, result: VerificationResult, app_settings, now) -> None:
    created_at = as_utc(envelope.created_at)
    if created_at is None:
        return
    if result.signed_at is None and result.reason == VerificationReason.OK:
        # notification_url scheme without a timestamp header: freshness comes from the envelope
        if not check_freshness(
            created_at,
            now,
            tolerance_seconds=app_settings.webhook_timestamp_tolerance_seconds,
            future_skew_seconds=app_settings.webhook_future_skew_seconds,
        ):
            raise _reject(VerificationResult(ok=False, reason=VerificationReason.EXPIRED_TIMESTAMP))
    max_age = app_settings.webhook_max_event_age_seconds
    if max_age and now - created_at > timedelta(seconds=max_age):
        metrics.record_webhook("rejected")
        metrics.record_webhook_error("event_too_old")
        raise ValidationError(f"Event is older than {max_age} seconds", reason="event_too_old")


def _queue_alert(request: Request, background_tasks: BackgroundTasks, alert: Alert) -> None:
    services = resolve_services(request.app)
    if services is not None:
        background_tasks.add_task(services.alert_dispatcher.dispatch, alert)


async def _guard_ingress(request: Request, app_settings, background_tasks: BackgroundTasks):
    client_ip = resolve_client_ip(
        request,
        trust_proxy_headers=app_settings.trust_proxy_headers,
        trusted_proxies=app_settings.trusted_proxies,
    )
    services = resolve_services(request.app)
    if app_settings.webhook_rate_limit_per_minute > 0 and services is not None:
        limiter = services.rate_limiter
        if not await limiter.allow(client_ip):
            metrics.record_webhook("rejected")
            metrics.record_webhook_error("rate_limited")
            logger.warning(
                "webhook_rate_limited",
                extra={"extra": {"client_ip": client_ip, "limit": app_settings.webhook_rate_limit_per_minute}},
            )
            _queue_alert(
                request,
                background_tasks,
                Alert(
                    alert_type=AlertType.WEBHOOK_SECURITY,
                    severity=AlertSeverity.MEDIUM,
                    title="Webhook rate limit exceeded",
                    description=f"{client_ip} exceeded {app_settings.webhook_rate_limit_per_minute} deliveries "
                    f"per {limiter.window_seconds}s.",
                    data={"client_ip": client_ip},
                    dedupe_key=f"webhook_rate_limit:{client_ip}",
                ),
            )
            return problem_details(
                request,
                status=status.HTTP_429_TOO_MANY_REQUESTS,
                title="Too Many Requests",
                detail="Webhook rate limit exceeded",
                headers={"Retry-After": str(limiter.window_seconds)},
            )

    allowed_cidrs = app_settings.webhook_allowed_source_cidrs
    if is_known_source(client_ip, allowed_cidrs):
        return None
    metrics.record_webhook_error("unknown_source")
    logger.warning(
        "webhook_unknown_source",
        extra={"extra": {"client_ip": client_ip, "rejected": app_settings.webhook_reject_unknown_sources}},
    )
    _queue_alert(
        request,
        background_tasks,
        Alert(
            alert_type=AlertType.WEBHOOK_SECURITY,
            severity=AlertSeverity.LOW,
            title="Webhook from unknown source",
            description=f"Delivery from {client_ip}, outside the configured provider ranges.",
            data={"client_ip": client_ip, "allowed_ranges": allowed_cidrs},
            dedupe_key=f"webhook_source:{client_ip}",
        ),
    )
    if not app_settings.webhook_reject_unknown_sources:
        return None
    metrics.record_webhook("rejected")
    return problem_details(
        request,
        status=status.HTTP_403_FORBIDDEN,
        title="Forbidden",
        detail="Webhook source address is not allowed",
    )


@router.post(WEBHOOK_PATH, status_code=status.HTTP_200_OK)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db_session),
):
    app_settings = _app_settings(request)
    rejection = await _guard_ingress(request, app_settings, background_tasks)
    if rejection is not None:
        return rejection
    max_bytes = app_settings.webhook_max_body_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        metrics.record_webhook_error("payload_too_large")
        return problem_details(
            request,
            status=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            title="Payload Too Large",
            detail=f"Webhook body exceeds {max_bytes} bytes",
            type_=PROBLEM_TYPE_PAYLOAD_TOO_LARGE,
        )
    raw_body = await request.body()
    if len(raw_body) > max_bytes:
        metrics.record_webhook_error("payload_too_large")
        return problem_details(
            request,
            status=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            title="Payload Too Large",
            detail=f"Webhook body exceeds {max_bytes} bytes",
            type_=PROBLEM_TYPE_PAYLOAD_TOO_LARGE,
        )

    now = utcnow()
    signature = request.headers.get(app_settings.webhook_signature_header)
    timestamp = request.headers.get(app_settings.webhook_timestamp_header)
    result = verify_signature(
        raw_body,
        signature,
        timestamp,
        _select_secret(request, app_settings),
        now=now,
        tolerance_seconds=app_settings.webhook_timestamp_tolerance_seconds,
        future_skew_seconds=app_settings.webhook_future_skew_seconds,
        scheme=app_settings.webhook_signature_scheme,
        notification_url=app_settings.webhook_notification_url,
        policy=app_settings.webhook_signature_policy,
    )
    if not result.ok:
        raise _reject(result)

    try:
        envelope = parse_envelope(raw_body)
    except ValidationError as exc:
        metrics.record_webhook("rejected")
        metrics.record_webhook_error(exc.reason)
        raise
    update_log_context(event_id=envelope.event_id, event_type=envelope.type)
    _check_envelope_age(envelope, result, app_settings, now)

    if result.flagged:
        metrics.record_signature_flagged()
        logger.warning(
            "webhook_signature_flagged",
            extra={"extra": {"reason": result.reason.value, "policy": app_settings.webhook_signature_policy}},
        )
    elif signature:
        await event_service.check_signature_replay(
            session,
            signature=signature.strip(),
            signed_timestamp=(timestamp or "").strip() or None,
            event_id=envelope.event_id,
            now=now,
        )

    recorded = await event_service.record_event(
        session,
        envelope,
        json.loads(raw_body),
        signature_valid=result.reason == VerificationReason.OK,
        signature_flagged=result.flagged,
        signed_at=result.signed_at,
        now=now,
    )
    if recorded.is_new:
        await queue_service.enqueue(session, recorded.event, now=now)
    await session.commit()

    outcome = "queued" if recorded.is_new else "duplicate"
    metrics.record_webhook(outcome)
    logger.info(
        "webhook_received",
        extra={"extra": {"outcome": outcome, "partition_key": recorded.event.partition_key}},
    )
    return {"received": True, "duplicate": not recorded.is_new, "event_id": envelope.event_id}
