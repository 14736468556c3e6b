"""
Dify workflow webhook support.

Dify can push a workflow run summary to
``/api/v1/traces/webhook/{connection_id}``. This module verifies the optional
HMAC-SHA256 signature and converts the payload into a Trace.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from loguru import logger

from traceval.models import Trace
from traceval.utils import get_utc_datetime, parse_timestamp


class WebhookSignatureError(Exception):
    """Raised when a webhook signature is missing or does not match."""
    pass


SIGNATURE_HEADER = "X-Dify-Signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Check a webhook signature against the raw request body.

    Verification is skipped when no secret is configured. Both ``<hex>`` and
    ``sha256=<hex>`` forms are accepted.

    Raises:
        WebhookSignatureError: If the signature is missing or wrong
    """
    if not secret:
        return
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")

    expected = compute_signature(raw_body, secret)
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8")):
        raise WebhookSignatureError("Webhook signature mismatch")


def _dump(value: Any) -> str:
    if not value:
        return ""
    return json.dumps(value, ensure_ascii=False, default=str)


def convert_dify_to_trace(connection_id: str, payload: Dict[str, Any]) -> Trace:
    """
    Convert a Dify workflow webhook payload into a Trace.

    Args:
        connection_id: Webhook connection id from the URL
        payload: Decoded webhook body

    Returns:
        Trace: Trace keyed by the workflow run id
    """
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    event = payload.get("event") or "unknown"
    status = data.get("status") or "unknown"
    workflow_id = data.get("workflow_id") or ""

    trace_id = data.get("id") or payload.get("workflow_run_id")
    if not trace_id:
        trace_id = f"trace-{int(get_utc_datetime().timestamp() * 1000)}"
        logger.warning("Webhook payload without run id, generated one", trace_id=trace_id)

    elapsed = data.get("elapsed_time")
    latency_ms = round(elapsed * 1000) if isinstance(elapsed, (int, float)) and elapsed > 0 else None
    total_tokens = data.get("total_tokens")

    return Trace(
        id=str(trace_id),
        project_id=connection_id.split("-")[0] or "default",
        dify_connection_id=connection_id,
        workflow_name=workflow_id or None,
        name=payload.get("event") or "unknown",
        timestamp=parse_timestamp(data.get("created_at")) or get_utc_datetime(),
        input=_dump(data.get("inputs")),
        output=_dump(data.get("outputs")),
        metadata={
            "event": payload.get("event") or "",
            "status": data.get("status") or "",
            "workflow_id": workflow_id,
        },
        tags=[event, status],
        total_tokens=total_tokens if isinstance(total_tokens, int) and total_tokens >= 0 else None,
        latency_ms=latency_ms,
        status="success" if status == "succeeded" else status,
    )


__all__ = [
    'WebhookSignatureError',
    'SIGNATURE_HEADER',
    'compute_signature',
    'verify_signature',
    'convert_dify_to_trace',
]
