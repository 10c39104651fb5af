"""Tests for normalize(): Evolution messages.upsert payload -> NormalizedInbound."""

import pytest

from sindiboleto.whatsapp.evolution_adapter import InvalidPayloadError, normalize, phone_from_jid


def payload(message_type="conversation", message=None, **key):
    return {
        "event": "messages.upsert",
        "instance": "sindicato-a",
        "data": {
            "key": {"id": "MSG001", "remoteJid": "5511999990000@s.whatsapp.net", **key},
            "messageType": message_type,
            "message": message if message is not None else {"conversation": "dummy_text"},
        },
    }


class TestNormalize:
    def test_conversation_extracts_phone_and_text(self):
        result = normalize(payload())

        assert result.message_id == "MSG001"
        assert result.instance == "sindicato-a"
        assert result.remote_jid == "5511999990000@s.whatsapp.net"
        assert result.phone == "5511999990000"
        assert result.text == "dummy_text"
        assert result.kind == "conversation"
        assert result.is_processable

    def test_extended_text_message(self):
        result = normalize(
            payload("extendedTextMessage", {"extendedTextMessage": {"text": "dummy_extended_text"}})
        )

        assert result.text == "dummy_extended_text"

    def test_button_reply_uses_display_text(self):
        result = normalize(
            payload("buttonsResponseMessage", {"buttonsResponseMessage": {"selectedDisplayText": "1"}})
        )

        assert result.text == "1"

    def test_list_reply_uses_title(self):
        result = normalize(payload("listResponseMessage", {"listResponseMessage": {"title": "Vencido"}}))

        assert result.text == "Vencido"

    def test_media_has_no_text(self):
        result = normalize(payload("imageMessage", {"imageMessage": {}}))

        assert result.text is None
        assert not result.is_processable

    def test_from_me_not_processable(self):
        result = normalize(payload(fromMe=True))

        assert result.from_me is True
        assert not result.is_processable

    def test_group_not_processable(self):
        result = normalize(payload(remoteJid="120363000000000000@g.us"))

        assert result.is_group is True
        assert not result.is_processable

    def test_event_name_variants_accepted(self):
        body = payload()
        body["event"] = "MESSAGES_UPSERT"

        assert normalize(body).message_id == "MSG001"

    def test_missing_event_accepted(self):
        body = payload()
        del body["event"]

        assert normalize(body).message_id == "MSG001"


class TestInvalidPayloads:
    def test_other_event(self):
        body = payload()
        body["event"] = "connection.update"

        with pytest.raises(InvalidPayloadError, match="unsupported event"):
            normalize(body)

    def test_missing_instance(self):
        body = payload()
        del body["instance"]

        with pytest.raises(InvalidPayloadError, match="missing instance"):
            normalize(body)

    def test_missing_message_id(self):
        body = payload()
        del body["data"]["key"]["id"]

        with pytest.raises(InvalidPayloadError, match="message_id"):
            normalize(body)

    def test_missing_remote_jid(self):
        body = payload()
        del body["data"]["key"]["remoteJid"]

        with pytest.raises(InvalidPayloadError, match="missing remoteJid"):
            normalize(body)

    def test_remote_jid_without_digits(self):
        with pytest.raises(InvalidPayloadError, match="no phone"):
            normalize(payload(remoteJid="status@broadcast"))

    def test_not_an_object(self):
        with pytest.raises(InvalidPayloadError):
            normalize(["not", "a", "dict"])  # type: ignore[arg-type]

    def test_data_as_list(self):
        body = payload()
        body["data"] = [{"key": {}}]

        with pytest.raises(InvalidPayloadError, match="data"):
            normalize(body)

    def test_key_as_string(self):
        body = payload()
        body["data"]["key"] = "MSG001"

        with pytest.raises(InvalidPayloadError, match="key"):
            normalize(body)

    def test_message_as_string(self):
        with pytest.raises(InvalidPayloadError, match="message"):
            normalize(payload(message="oi"))

    @pytest.mark.parametrize(
        "message_type",
        ["extendedTextMessage", "buttonsResponseMessage", "listResponseMessage"],
    )
    def test_wrongly_typed_inner_message_has_no_text(self, message_type):
        result = normalize(payload(message_type, {message_type: "oi"}))

        assert result.text is None


class TestPhoneFromJid:
    @pytest.mark.parametrize(
        "jid,phone",
        [
            ("5511999990000@s.whatsapp.net", "5511999990000"),
            ("5511999990000:12@s.whatsapp.net", "5511999990000"),
            ("5511999990000", "5511999990000"),
        ],
    )
    def test_extracts_digits(self, jid, phone):
        assert phone_from_jid(jid) == phone
