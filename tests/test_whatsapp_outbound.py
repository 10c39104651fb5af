"""Tests for WhatsApp outbound messaging - verifies NO PII in logs."""

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest
from fakes import GATEWAY_A, LogRecorder

from sindiboleto.whatsapp.outbound import normalize_number, send_text_via_evolution

PHONE = "5511999990000"
MESSAGE_TEXT = "dummy_text"


class TestSendText:
    def test_posts_to_instance_endpoint(self):
        with patch("sindiboleto.whatsapp.outbound._do_request", return_value=200) as request:
            send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT)

        url, data, headers = request.call_args.args
        assert url == "http://evolution.local/message/sendText/sindicato-a"
        assert json.loads(data) == {"number": PHONE, "text": MESSAGE_TEXT}
        assert headers["apikey"] == "key-a"

    def test_network_error_retried_once(self):
        with patch("sindiboleto.whatsapp.outbound.time.sleep"), patch(
            "sindiboleto.whatsapp.outbound._do_request",
            side_effect=[urllib.error.URLError("connection refused"), 200],
        ) as request:
            send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT)

        assert request.call_count == 2

    def test_client_error_not_retried(self):
        error = urllib.error.HTTPError(url="http://test", code=400, msg="Bad Request", hdrs={}, fp=None)
        with patch("sindiboleto.whatsapp.outbound._do_request", side_effect=error) as request:
            with pytest.raises(urllib.error.HTTPError):
                send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT)

        assert request.call_count == 1

    def test_server_error_gives_up_after_retry(self):
        error = urllib.error.HTTPError(url="http://test", code=502, msg="Bad Gateway", hdrs={}, fp=None)
        with patch("sindiboleto.whatsapp.outbound.time.sleep"), patch(
            "sindiboleto.whatsapp.outbound._do_request", side_effect=error
        ) as request:
            with pytest.raises(urllib.error.HTTPError):
                send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT)

        assert request.call_count == 2

    @pytest.mark.parametrize("body", [b"OK", b"", b"<html>accepted</html>", b'{"key": {"id": "x"}}'])
    def test_any_2xx_body_counts_as_sent(self, body):
        resp = MagicMock(status=201)
        resp.read.return_value = body
        resp.__enter__.return_value = resp
        with patch("sindiboleto.whatsapp.outbound.urllib.request.urlopen", return_value=resp) as urlopen:
            send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT)

        assert urlopen.call_count == 1


class TestNormalizeNumber:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("5511999990000", "5511999990000"),
            ("11999990000", "5511999990000"),
            ("(11) 99999-0000", "5511999990000"),
            ("+55 11 99999-0000", "5511999990000"),
        ],
    )
    def test_country_code(self, raw, expected):
        assert normalize_number(raw) == expected


class TestNoPiiLeakage:
    def test_send_text_logs_no_pii(self):
        recorder = LogRecorder()

        with patch("sindiboleto.whatsapp.outbound.logger", recorder), patch(
            "sindiboleto.whatsapp.outbound._do_request", return_value=200
        ):
            send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT, correlation_id="corr-1")

        all_logged = recorder.get_all_logged_content()
        assert PHONE not in all_logged
        assert MESSAGE_TEXT not in all_logged
        assert len(recorder.calls) >= 1
        assert recorder.has_extra_field("to_hash")
        assert recorder.has_extra_field("text_len")

    def test_retry_and_error_logs_no_pii(self):
        recorder = LogRecorder()

        with patch("sindiboleto.whatsapp.outbound.logger", recorder), patch(
            "sindiboleto.whatsapp.outbound.time.sleep"
        ), patch(
            "sindiboleto.whatsapp.outbound._do_request",
            side_effect=urllib.error.URLError("connection refused"),
        ):
            with pytest.raises(urllib.error.URLError):
                send_text_via_evolution(GATEWAY_A, to_ref=PHONE, text=MESSAGE_TEXT)

        all_logged = recorder.get_all_logged_content()
        assert PHONE not in all_logged
        assert MESSAGE_TEXT not in all_logged
        assert any("retrying" in str(args) for _, args, _ in recorder.calls)
        assert any(level == "error" for level, _, _ in recorder.calls)
