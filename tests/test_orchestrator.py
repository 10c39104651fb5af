"""Tests for ConversationOrchestrator: one message, one transaction."""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from itertools import count
from unittest.mock import MagicMock

import pytest

from sindiboleto.domain.states import (
    BoletoSession,
    Competence,
    Error,
    Finished,
    WaitingValue,
)
from sindiboleto.infra.settings import Settings
from sindiboleto.services.orchestrator import ConversationOrchestrator, InboundTurn
from fakes import (
    A_VENCER_SCRIPT,
    CLINIC_A,
    CLINIC_B,
    EMPLOYER,
    EMPLOYER_CNPJ,
    GATEWAY_A,
    MENSALIDADE,
    FakeDatabase,
)

NOW = datetime(2025, 7, 15, 13, 0, tzinfo=timezone.utc)
PHONE = "5511999990000"
SETTINGS = Settings(database_url="postgresql://test@localhost/test")


@pytest.fixture
def db():
    db = FakeDatabase()
    db.add_tenant(CLINIC_A, GATEWAY_A)
    db.add_tenant(CLINIC_B)
    db.add_employer(CLINIC_A, EMPLOYER)
    db.add_type(CLINIC_A, MENSALIDADE)
    return db


@pytest.fixture
def send_text():
    return MagicMock()


def make_orchestrator(db, send_text, *, unit_of_work=None, invoices=None, clock=None):
    ids = count(1)
    return ConversationOrchestrator(
        SETTINGS,
        unit_of_work or db.unit_of_work,
        invoices=invoices,
        send_text=send_text,
        clock=clock or (lambda: NOW),
        new_id=lambda: f"sess-{next(ids)}",
    )


def via_webhook(text, message_id=None, **kwargs):
    return InboundTurn(phone=PHONE, text=text, message_id=message_id, instance=GATEWAY_A.instance_name, **kwargs)


def stored(db, clinic_id=CLINIC_A) -> BoletoSession:
    return db.sessions[(clinic_id, PHONE)]


class TestHandleInbound:
    def test_first_message_creates_session_and_replies(self, db, send_text):
        outcome = make_orchestrator(db, send_text).handle_inbound(via_webhook("oi", "m1"))

        assert outcome.status == "ok"
        assert outcome.state == "SELECT_BOLETO_TYPE"
        assert outcome.delivered is True
        assert stored(db).state_name == "SELECT_BOLETO_TYPE"
        assert stored(db).version == 1
        send_text.assert_called_once()
        args, kwargs = send_text.call_args
        assert args == (GATEWAY_A,)
        assert kwargs["to_ref"] == PHONE
        assert "Boleto de Contribuição" in kwargs["text"]

    def test_full_conversation(self, db, send_text):
        orchestrator = make_orchestrator(db, send_text)

        for n, text in enumerate(A_VENCER_SCRIPT):
            outcome = orchestrator.handle_inbound(via_webhook(text, f"m{n}"))

        assert outcome.state == "FINISHED"
        assert outcome.contribution_id is not None
        records = db.contributions_of(CLINIC_A)
        assert len(records) == 1
        assert (records[0].competence, records[0].value_cents) == (Competence(8, 2025), 35000)
        assert db.commits == len(A_VENCER_SCRIPT)

    def test_direct_call_by_clinic_without_gateway(self, db, send_text):
        turn = InboundTurn(phone=PHONE, text="oi", clinic_id=CLINIC_B)
        outcome = make_orchestrator(db, send_text).handle_inbound(turn)

        assert outcome.status == "ok"
        assert outcome.delivered is False
        assert "Boleto de Contribuição" in outcome.response
        send_text.assert_not_called()


class TestTenantResolution:
    def test_unknown_instance_is_ignored(self, db, send_text):
        turn = InboundTurn(phone=PHONE, text="oi", instance="unknown")
        outcome = make_orchestrator(db, send_text).handle_inbound(turn)

        assert outcome.status == "ignored"
        assert db.sessions == {}
        send_text.assert_not_called()

    def test_unknown_clinic_is_ignored(self, db, send_text):
        turn = InboundTurn(phone=PHONE, text="oi", clinic_id="nope")
        outcome = make_orchestrator(db, send_text).handle_inbound(turn)

        assert outcome.status == "ignored"

    def test_turn_without_tenant_reference_is_ignored(self, db, send_text):
        outcome = make_orchestrator(db, send_text).handle_inbound(InboundTurn(phone=PHONE, text="oi"))

        assert outcome.status == "ignored"

    def test_same_phone_in_two_tenants_has_two_sessions(self, db, send_text):
        orchestrator = make_orchestrator(db, send_text)
        orchestrator.handle_inbound(via_webhook("oi"))
        orchestrator.handle_inbound(InboundTurn(phone=PHONE, text="oi", clinic_id=CLINIC_B))

        assert stored(db, CLINIC_A).id != stored(db, CLINIC_B).id


class TestSessionLifecycle:
    def _seed(self, db, state, *, expires_at, version=3):
        db.sessions[(CLINIC_A, PHONE)] = BoletoSession(
            id="old",
            clinic_id=CLINIC_A,
            phone=PHONE,
            state=state,
            expires_at=expires_at,
            version=version,
        )

    def test_expired_session_starts_over(self, db, send_text):
        state = WaitingValue(employer=EMPLOYER, contribution_type=MENSALIDADE, competence=Competence(8, 2025))
        self._seed(db, state, expires_at=NOW - timedelta(seconds=1))

        outcome = make_orchestrator(db, send_text).handle_inbound(via_webhook("150,00"))

        assert outcome.state == "SELECT_BOLETO_TYPE"
        assert outcome.session_id != "old"
        assert stored(db).version == 4
        assert db.contributions_of(CLINIC_A) == []

    def test_live_session_continues(self, db, send_text):
        state = WaitingValue(employer=EMPLOYER, contribution_type=MENSALIDADE, competence=Competence(8, 2025))
        self._seed(db, state, expires_at=NOW + timedelta(minutes=5))

        outcome = make_orchestrator(db, send_text).handle_inbound(via_webhook("150,00"))

        assert outcome.state == "CONFIRM_BOLETO"
        assert outcome.session_id == "old"

    @pytest.mark.parametrize("state", [Finished(), Error(reason="billing_failure")])
    def test_terminal_session_starts_over(self, db, send_text, state):
        self._seed(db, state, expires_at=NOW + timedelta(minutes=5))

        outcome = make_orchestrator(db, send_text).handle_inbound(via_webhook("oi"))

        assert outcome.state == "SELECT_BOLETO_TYPE"
        assert outcome.session_id != "old"

    def test_force_restart(self, db, send_text):
        state = WaitingValue(employer=EMPLOYER, contribution_type=MENSALIDADE, competence=Competence(8, 2025))
        self._seed(db, state, expires_at=NOW + timedelta(minutes=5))

        outcome = make_orchestrator(db, send_text).handle_inbound(via_webhook("oi", force_restart=True))

        assert outcome.state == "SELECT_BOLETO_TYPE"


class TestRedelivery:
    def test_redelivered_message_is_applied_once(self, db, send_text):
        orchestrator = make_orchestrator(db, send_text)
        orchestrator.handle_inbound(via_webhook("oi", "m1"))
        orchestrator.handle_inbound(via_webhook("1", "m2"))

        outcome = orchestrator.handle_inbound(via_webhook("1", "m2"))

        assert outcome.status == "duplicate"
        assert outcome.state == "WAITING_CNPJ"
        assert stored(db).turn == 2
        assert stored(db).version == 2

    def test_redelivery_after_finish_does_not_restart(self, db, send_text):
        orchestrator = make_orchestrator(db, send_text)
        for n, text in enumerate(A_VENCER_SCRIPT):
            orchestrator.handle_inbound(via_webhook(text, f"m{n}"))

        last = f"m{len(A_VENCER_SCRIPT) - 1}"
        outcome = orchestrator.handle_inbound(via_webhook(A_VENCER_SCRIPT[-1], last))

        assert outcome.status == "duplicate"
        assert outcome.state == "FINISHED"
        assert len(db.contributions_of(CLINIC_A)) == 1


class TestConcurrencyAndDelivery:
    def test_lost_version_race_discards_turn(self, db, send_text):
        @contextmanager
        def racing_unit_of_work():
            with db.unit_of_work() as stores:
                load = stores.sessions.load_or_create

                def load_then_race(**kwargs):
                    session = load(**kwargs)
                    key = (session.clinic_id, session.phone)
                    db.sessions[key] = replace(session, version=session.version + 1)
                    return session

                stores.sessions.load_or_create = load_then_race
                yield stores

        outcome = make_orchestrator(db, send_text, unit_of_work=racing_unit_of_work).handle_inbound(
            via_webhook("oi")
        )

        assert outcome.status == "stale"
        assert db.rollbacks == 1
        send_text.assert_not_called()

    def test_replies_sent_after_commit(self, db):
        commits_at_send = []
        send_text = MagicMock(side_effect=lambda *a, **kw: commits_at_send.append(db.commits))

        make_orchestrator(db, send_text).handle_inbound(via_webhook("oi"))

        assert commits_at_send == [1]

    def test_delivery_failure_keeps_committed_turn(self, db):
        send_text = MagicMock(side_effect=OSError("gateway down"))

        outcome = make_orchestrator(db, send_text).handle_inbound(via_webhook("oi"))

        assert outcome.status == "ok"
        assert outcome.delivered is False
        assert stored(db).state_name == "SELECT_BOLETO_TYPE"

    def test_database_fault_rolls_back_and_propagates(self, db, send_text):
        @contextmanager
        def broken_unit_of_work():
            with db.unit_of_work() as stores:
                stores.sessions.save = MagicMock(side_effect=RuntimeError("connection lost"))
                yield stores

        with pytest.raises(RuntimeError):
            make_orchestrator(db, send_text, unit_of_work=broken_unit_of_work).handle_inbound(
                via_webhook("oi")
            )

        assert db.sessions == {}
        send_text.assert_not_called()

    def test_billing_failure_commits_error_state(self, db, send_text):
        db.fail_on.add("find_employer_by_cnpj")
        orchestrator = make_orchestrator(db, send_text)
        for text in ("oi", "1"):
            orchestrator.handle_inbound(via_webhook(text))

        outcome = orchestrator.handle_inbound(via_webhook(EMPLOYER_CNPJ))

        assert outcome.state == "ERROR"
        assert stored(db).state == Error(reason="repository_failure")
