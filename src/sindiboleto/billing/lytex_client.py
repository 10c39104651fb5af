"""Lytex payment API client: issues and cancels boleto/PIX invoices.

The access token is cached per client instance and refreshed five minutes
before it expires.
"""

from __future__ import annotations

import re
import threading
import time
from datetime import date
from typing import Any, Callable

import requests

from sindiboleto.domain.errors import ConfigurationError, InvoiceFailure
from sindiboleto.domain.ports import Invoice, InvoiceIssuer
from sindiboleto.domain.states import Employer
from sindiboleto.infra.settings import LytexCredentials
from sindiboleto.observability.logging import get_logger
from sindiboleto.observability.redaction import safe_log_context

logger = get_logger(__name__)

HTTP_TIMEOUT = 15

# Refresh the token this many seconds before it expires
_TOKEN_REFRESH_MARGIN = 300


class LytexClient(InvoiceIssuer):
    def __init__(
        self,
        credentials: LytexCredentials,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not credentials.client_id or not credentials.client_secret:
            raise ConfigurationError("Lytex credentials not configured")
        self._credentials = credentials
        self._http = session or requests.Session()
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self._credentials.api_url}{path}"

    def _access_token(self) -> str:
        with self._token_lock:
            now = self._clock()
            if self._token and self._token_expires_at > now + _TOKEN_REFRESH_MARGIN:
                return self._token

            try:
                resp = self._http.post(
                    self._url("/auth/obtain_token"),
                    json={
                        "clientId": self._credentials.client_id,
                        "clientSecret": self._credentials.client_secret,
                    },
                    timeout=HTTP_TIMEOUT,
                )
                resp.raise_for_status()
                data = resp.json()
            except (requests.RequestException, ValueError) as exc:
                logger.error(
                    "lytex authentication failed",
                    extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
                )
                raise InvoiceFailure("Lytex authentication failed") from exc

            token = data.get("accessToken") if isinstance(data, dict) else None
            if not token or not isinstance(token, str):
                raise InvoiceFailure("Lytex authentication returned no token")
            try:
                expires_in = float(data.get("expiresIn") or 0)
            except (TypeError, ValueError) as exc:
                raise InvoiceFailure("Lytex authentication returned a bad expiry") from exc
            self._token = token
            self._token_expires_at = now + expires_in
            logger.info("lytex access token refreshed")
            return token

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._access_token()}",
        }

    def create_invoice(
        self,
        *,
        employer: Employer,
        value_cents: int,
        due_date: date,
        description: str,
        reference_id: str,
    ) -> Invoice:
        """Create a boleto+PIX invoice.

        Raises:
            InvoiceFailure: On authentication, network or API errors.
        """
        payload = build_invoice_payload(
            employer=employer,
            value_cents=value_cents,
            due_date=due_date,
            description=description,
            reference_id=reference_id,
        )
        log_ctx = safe_log_context(reference_id=reference_id, value_cents=value_cents)

        try:
            resp = self._http.post(
                self._url("/invoices"),
                json=payload,
                headers=self._headers(),
                timeout=HTTP_TIMEOUT,
            )
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error(
                "lytex invoice request failed",
                extra={"extra_fields": safe_log_context(**log_ctx, error_type=type(exc).__name__)},
            )
            raise InvoiceFailure("Lytex invoice request failed") from exc

        if not resp.ok:
            logger.error(
                "lytex invoice rejected",
                extra={"extra_fields": safe_log_context(**log_ctx, status=resp.status_code)},
            )
            message = data.get("message") if isinstance(data, dict) else None
            raise InvoiceFailure(message or f"Lytex invoice rejected: {resp.status_code}")

        invoice = parse_invoice(data)
        logger.info(
            "lytex invoice created",
            extra={"extra_fields": safe_log_context(**log_ctx, invoice_id=invoice.id)},
        )
        return invoice

    def cancel_invoice(self, invoice_id: str) -> None:
        """Mark an invoice as cancelled.

        Raises:
            InvoiceFailure: If Lytex refused or could not be reached.
        """
        try:
            resp = self._http.put(
                self._url(f"/invoices/{invoice_id}"),
                json={"status": "cancelled"},
                headers=self._headers(),
                timeout=HTTP_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise InvoiceFailure(f"Lytex cancellation failed for {invoice_id}") from exc
        logger.info(
            "lytex invoice cancelled",
            extra={"extra_fields": safe_log_context(invoice_id=invoice_id)},
        )


def build_invoice_payload(
    *,
    employer: Employer,
    value_cents: int,
    due_date: date,
    description: str,
    reference_id: str,
) -> dict[str, Any]:
    document = re.sub(r"\D", "", employer.cnpj)
    client: dict[str, Any] = {
        "type": "pj" if len(document) == 14 else "pf",
        "name": employer.name,
        "cpfCnpj": document,
    }
    if employer.email:
        client["email"] = employer.email
    if employer.phone:
        client["cellphone"] = re.sub(r"\D", "", employer.phone)

    return {
        "client": client,
        "items": [{"name": description, "quantity": 1, "value": value_cents}],
        "dueDate": due_date.isoformat(),
        "paymentMethods": {
            "pix": {"enable": True},
            "boleto": {"enable": True},
            "creditCard": {"enable": False},
        },
        "referenceId": reference_id,
    }


def parse_invoice(data: Any) -> Invoice:
    """Map a Lytex invoice response to Invoice.

    Raises:
        InvoiceFailure: If the response is not an invoice object.
    """
    if not isinstance(data, dict):
        raise InvoiceFailure("Lytex response is not an object")
    invoice_id = data.get("_id")
    if not invoice_id:
        raise InvoiceFailure("Lytex response has no invoice id")

    boleto = data.get("boleto")
    if not isinstance(boleto, dict):
        boleto = {}
    pix = data.get("pix")
    if not isinstance(pix, dict):
        pix = {}
    return Invoice(
        id=str(invoice_id),
        url=data.get("linkCheckout") or data.get("linkBoleto") or data.get("invoiceUrl"),
        pix_code=pix.get("code"),
        pix_qrcode=pix.get("qrCode"),
        barcode=boleto.get("barCode"),
        digitable_line=boleto.get("digitableLine"),
    )
