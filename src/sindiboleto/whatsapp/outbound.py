"""Outbound WhatsApp messaging via Evolution API.

Credentials are per tenant (EvolutionConfig), passed in by the caller.
Security: NEVER log the recipient number or text. Only log hashes and lengths.
"""

import json
import re
import time
import urllib.error
import urllib.request

from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import hash_identifier, safe_log_context

from .models import EvolutionConfig

logger = get_logger(__name__)

# Timeout for HTTP requests (seconds)
HTTP_TIMEOUT = 5

# Retry config
MAX_RETRIES = 1
RETRY_DELAY = 0.2

BRAZIL_COUNTRY_CODE = "55"


def normalize_number(phone: str) -> str:
    """Digits only, with the Brazilian country code prepended when missing."""
    digits = re.sub(r"\D", "", phone)
    if not digits.startswith(BRAZIL_COUNTRY_CODE) or len(digits) <= 11:
        digits = BRAZIL_COUNTRY_CODE + digits
    return digits


def _do_request(url: str, data: bytes, headers: dict[str, str]) -> int:
    """Execute HTTP POST request and return the status. Raises on non-2xx.

    The body is drained but not parsed: any 2xx means the gateway accepted
    the message, whatever it answered.
    """
    req = urllib.request.Request(url, data=data, headers=headers, method="POST")
    with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as resp:
        resp.read()
        return resp.status


def send_text_via_evolution(
    config: EvolutionConfig,
    *,
    to_ref: str,
    text: str,
    correlation_id: str | None = None,
) -> None:
    """Send text message via Evolution API.

    POST {api_url}/message/sendText/{instance_name} with body {number, text}.

    Args:
        config: Tenant gateway credentials.
        to_ref: Recipient phone. NEVER logged.
        text: Message text. NEVER logged.
        correlation_id: Optional correlation ID for tracing.

    Raises:
        urllib.error.URLError: On network/HTTP errors after retry.
    """
    url = f"{config.api_url.rstrip('/')}/message/sendText/{config.instance_name}"

    payload = {
        "number": normalize_number(to_ref),
        "text": text,
    }

    headers = {
        "Content-Type": "application/json",
        "apikey": config.api_key,
    }

    data = json.dumps(payload).encode("utf-8")

    # Safe logging context - NEVER include to_ref or text
    log_ctx = safe_log_context(
        correlationId=correlation_id or "",
        to_hash=hash_identifier(to_ref),
        text_len=len(text),
    )

    logger.info("sending outbound message", extra={"extra_fields": log_ctx})

    for attempt in range(MAX_RETRIES + 1):
        try:
            _do_request(url, data, headers)
            logger.info(
                "outbound message sent",
                extra={"extra_fields": safe_log_context(**log_ctx, attempt=attempt)},
            )
            return
        except (urllib.error.URLError, TimeoutError) as e:
            # HTTPError is a URLError: retry only 5xx, any other status is final
            is_5xx = isinstance(e, urllib.error.HTTPError) and 500 <= e.code < 600
            is_network = not isinstance(e, urllib.error.HTTPError)

            if attempt < MAX_RETRIES and (is_5xx or is_network):
                logger.warning(
                    "outbound send failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, error_type=type(e).__name__
                        )
                    },
                )
                time.sleep(RETRY_DELAY)
                continue

            logger.error(
                "outbound send failed",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, attempt=attempt, error_type=type(e).__name__
                    )
                },
            )
            raise
