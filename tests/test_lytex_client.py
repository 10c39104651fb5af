"""Tests for the Lytex invoice client (HTTP mocked at the requests.Session level)."""

from datetime import date
from unittest.mock import MagicMock

import pytest
import requests
from fakes import EMPLOYER

from sindiboleto.billing.lytex_client import LytexClient, build_invoice_payload, parse_invoice
from sindiboleto.domain.errors import ConfigurationError, InvoiceFailure
from sindiboleto.domain.states import Employer
from sindiboleto.infra.settings import LytexCredentials

CREDENTIALS = LytexCredentials(api_url="https://api.lytex.test/v2", client_id="cid", client_secret="csecret")

INVOICE_RESPONSE = {
    "_id": "lytex-inv-1",
    "linkCheckout": "https://pay.lytex.test/lytex-inv-1",
    "pix": {"code": "00020126pix", "qrCode": "data:image/png;base64,AAA"},
    "boleto": {"barCode": "23790000", "digitableLine": "23790.00000"},
}


def response(status=200, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = body if body is not None else {}
    if resp.ok:
        resp.raise_for_status.return_value = None
    else:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status}")
    return resp


def token_response(token="tok-1", expires_in=3600):
    return response(200, {"accessToken": token, "expiresIn": expires_in})


def create(client):
    return client.create_invoice(
        employer=EMPLOYER,
        value_cents=35000,
        due_date=date(2025, 9, 10),
        description="Mensalidade Sindical - Agosto/2025",
        reference_id="contrib-1",
    )


class TestCreateInvoice:
    def test_authenticates_then_creates(self):
        http = MagicMock()
        http.post.side_effect = [token_response(), response(201, INVOICE_RESPONSE)]

        invoice = create(LytexClient(CREDENTIALS, session=http))

        assert invoice.id == "lytex-inv-1"
        assert invoice.url == "https://pay.lytex.test/lytex-inv-1"
        assert invoice.pix_code == "00020126pix"
        assert invoice.digitable_line == "23790.00000"

        auth_call, invoice_call = http.post.call_args_list
        assert auth_call.args[0] == "https://api.lytex.test/v2/auth/obtain_token"
        assert auth_call.kwargs["json"] == {"clientId": "cid", "clientSecret": "csecret"}
        assert invoice_call.args[0] == "https://api.lytex.test/v2/invoices"
        assert invoice_call.kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert invoice_call.kwargs["json"]["referenceId"] == "contrib-1"

    def test_token_is_reused_until_refresh_margin(self):
        http = MagicMock()
        http.post.side_effect = [
            token_response(expires_in=3600),
            response(201, INVOICE_RESPONSE),
            response(201, INVOICE_RESPONSE),
            token_response("tok-2"),
            response(201, INVOICE_RESPONSE),
        ]
        now = [1000.0]
        client = LytexClient(CREDENTIALS, session=http, clock=lambda: now[0])

        create(client)
        create(client)
        now[0] += 3600 - 299
        create(client)

        urls = [c.args[0] for c in http.post.call_args_list]
        assert urls.count("https://api.lytex.test/v2/auth/obtain_token") == 2
        assert http.post.call_args_list[-1].kwargs["headers"]["Authorization"] == "Bearer tok-2"

    def test_rejected_invoice_raises(self):
        http = MagicMock()
        http.post.side_effect = [token_response(), response(422, {"message": "dueDate inválida"})]

        with pytest.raises(InvoiceFailure, match="dueDate inválida"):
            create(LytexClient(CREDENTIALS, session=http))

    def test_network_error_raises(self):
        http = MagicMock()
        http.post.side_effect = [token_response(), requests.ConnectionError("down")]

        with pytest.raises(InvoiceFailure):
            create(LytexClient(CREDENTIALS, session=http))

    def test_auth_failure_raises(self):
        http = MagicMock()
        http.post.return_value = response(401, {"message": "invalid client"})

        with pytest.raises(InvoiceFailure, match="authentication"):
            create(LytexClient(CREDENTIALS, session=http))

    def test_auth_without_token_raises(self):
        http = MagicMock()
        http.post.return_value = response(200, {})

        with pytest.raises(InvoiceFailure, match="no token"):
            create(LytexClient(CREDENTIALS, session=http))

    def test_auth_reply_not_an_object_raises(self):
        http = MagicMock()
        http.post.return_value = response(200, ["tok-1"])

        with pytest.raises(InvoiceFailure, match="no token"):
            create(LytexClient(CREDENTIALS, session=http))

    @pytest.mark.parametrize("body", [["unexpected"], "ok", 42])
    def test_invoice_reply_not_an_object_raises(self, body):
        http = MagicMock()
        http.post.side_effect = [token_response(), response(200, body)]

        with pytest.raises(InvoiceFailure, match="not an object"):
            create(LytexClient(CREDENTIALS, session=http))

    def test_rejected_with_non_object_body_raises(self):
        http = MagicMock()
        http.post.side_effect = [token_response(), response(500, ["boom"])]

        with pytest.raises(InvoiceFailure, match="rejected: 500"):
            create(LytexClient(CREDENTIALS, session=http))


class TestCancelInvoice:
    def test_cancel_puts_cancelled_status(self):
        http = MagicMock()
        http.post.return_value = token_response()
        http.put.return_value = response(200, {})

        LytexClient(CREDENTIALS, session=http).cancel_invoice("old-inv")

        call = http.put.call_args
        assert call.args[0] == "https://api.lytex.test/v2/invoices/old-inv"
        assert call.kwargs["json"] == {"status": "cancelled"}

    def test_cancel_failure_raises(self):
        http = MagicMock()
        http.post.return_value = token_response()
        http.put.return_value = response(404, {})

        with pytest.raises(InvoiceFailure):
            LytexClient(CREDENTIALS, session=http).cancel_invoice("old-inv")


class TestPayload:
    def test_company_payload(self):
        employer = Employer(
            id="emp-1",
            cnpj="12.345.678/0001-99",
            name="Padaria Central Ltda",
            email="financeiro@padaria.test",
            phone="(11) 3333-4444",
        )
        payload = build_invoice_payload(
            employer=employer,
            value_cents=35000,
            due_date=date(2025, 9, 10),
            description="Mensalidade Sindical - Agosto/2025",
            reference_id="contrib-1",
        )

        assert payload["client"] == {
            "type": "pj",
            "name": "Padaria Central Ltda",
            "cpfCnpj": "12345678000199",
            "email": "financeiro@padaria.test",
            "cellphone": "1133334444",
        }
        assert payload["items"] == [{"name": "Mensalidade Sindical - Agosto/2025", "quantity": 1, "value": 35000}]
        assert payload["dueDate"] == "2025-09-10"
        assert payload["paymentMethods"]["boleto"] == {"enable": True}

    def test_parse_invoice_requires_id(self):
        with pytest.raises(InvoiceFailure):
            parse_invoice({"linkCheckout": "https://x"})

    def test_parse_invoice_falls_back_to_boleto_link(self):
        invoice = parse_invoice({"_id": "i1", "linkBoleto": "https://boleto"})

        assert invoice.url == "https://boleto"
        assert invoice.pix_code is None

    def test_parse_invoice_ignores_malformed_pix_and_boleto(self):
        invoice = parse_invoice({"_id": "i1", "pix": "00020126", "boleto": ["23790"]})

        assert invoice.pix_code is None
        assert invoice.barcode is None


def test_missing_credentials_rejected():
    with pytest.raises(ConfigurationError):
        LytexClient(LytexCredentials(api_url="https://x", client_id="", client_secret=""))
