"""
CoinJoin client session state machine tests
"""

import json

import pytest

from services.coinjoin.schemas import (
    BlindSignature,
    CommitmentsCollected,
    ErrorMessage,
    Joined,
    ParticipantCount,
    RequestBlindedCommitment,
    RequestInputAddress,
    RequestUnblindedCommitment,
    SessionAborted,
    SessionStarting,
    TransactionComplete,
    TransactionReady,
    parse_inbound,
    parse_outbound,
)
from services.coinjoin.session import CoinJoinSession, SessionState
from services.crypto_core.blind_sig import hex_to_int, int_to_hex
from services.errors import ErrorCode, SessionError

from tests.conftest import ONE_SOL


def types_of(outs):
    return [o.message.type for o in outs]


@pytest.fixture
def session(vault, wallet):
    return CoinJoinSession(vault.generate(ONE_SOL), wallet)


def joined(signer):
    return Joined(session_id="s1", participant_id="p1", rsa_public_key=signer.public_key.to_json())


def drive_to_signature_wait(session, signer):
    """Walk the session up to WAITING_FOR_SIGNATURE; returns the blinded value."""
    session.start(timestamp_ms=1)
    session.handle(joined(signer))
    session.handle(SessionStarting(participants=3))
    (out,) = session.handle(RequestBlindedCommitment())
    return hex_to_int(out.message.blinded_commitment)


class TestMessages:
    """Tests for message validation at the channel boundary."""

    def test_parse_known_message(self):
        msg = parse_inbound('{"type": "PARTICIPANT_COUNT", "count": 2, "needed": 3}')
        assert isinstance(msg, ParticipantCount) and msg.count == 2

    def test_unknown_type_rejected(self):
        with pytest.raises(SessionError) as exc:
            parse_inbound('{"type": "NOPE"}')
        assert exc.value.code is ErrorCode.INVALID_MESSAGE

    def test_bad_json_rejected(self):
        with pytest.raises(SessionError):
            parse_inbound("{not json")

    def test_outbound_signature_must_be_128_hex(self):
        with pytest.raises(SessionError):
            parse_outbound({"type": "SUBMIT_SIGNATURE", "signature": "ab"})

    def test_aliases_on_the_wire(self):
        msg = Joined(session_id="s", participant_id="p", rsa_public_key="{}")
        assert msg.dump()["sessionId"] == "s"
        assert json.loads(msg.to_json())["rsaPublicKey"] == "{}"


class TestSessionFlow:
    """Tests for the happy path through the state machine."""

    def test_start_sends_signed_join(self, session, wallet):
        out = session.start(timestamp_ms=1234)
        assert out.message.type == "JOIN"
        assert out.message.denomination == str(ONE_SOL)
        assert out.message.public_key == wallet.public_key_b58
        assert len(out.message.signature) == 128
        assert session.state is SessionState.CONNECTING

    def test_start_twice(self, session):
        session.start(timestamp_ms=1)
        with pytest.raises(SessionError):
            session.start(timestamp_ms=2)

    def test_full_flow(self, session, signer, wallet):
        """JOINED through TRANSACTION_COMPLETE ends COMPLETED with secrets wiped."""
        session.start(timestamp_ms=1)
        assert types_of(session.handle(joined(signer))) == ["READY"]
        assert session.state is SessionState.WAITING_FOR_PARTICIPANTS

        session.handle(ParticipantCount(count=2, needed=3))
        session.handle(SessionStarting(participants=3))
        assert session.state is SessionState.BLINDING

        (blinded_out,) = session.handle(RequestBlindedCommitment())
        assert blinded_out.message.type == "SUBMIT_BLINDED"
        assert session.state is SessionState.WAITING_FOR_SIGNATURE

        blinded = hex_to_int(blinded_out.message.blinded_commitment)
        assert session.handle(BlindSignature(signature=int_to_hex(signer.sign_blinded(blinded)))) == []
        assert session.state is SessionState.SUBMITTING_UNBLINDED

        (unblinded_out,) = session.handle(RequestUnblindedCommitment())
        assert unblinded_out.anonymous
        assert unblinded_out.message.session_id == "s1"
        assert unblinded_out.message.unblinded_commitment == session.note.commitment_hex
        assert signer.verify(session.note.commitment, hex_to_int(unblinded_out.message.blind_signature))
        assert session.state is SessionState.BUILDING_TX

        session.handle(CommitmentsCollected(count=3))
        (input_out,) = session.handle(RequestInputAddress())
        assert input_out.message.input_address == wallet.public_key_b58

        tx = json.dumps({
            "sessionId": "s1",
            "denomination": str(ONE_SOL),
            "inputs": ["x" * 44, wallet.public_key_b58],
            "commitments": ["00" * 32, session.note.commitment_hex],
        })
        (sig_out,) = session.handle(TransactionReady(transaction=tx, input_index=1))
        assert sig_out.message.type == "SUBMIT_SIGNATURE"
        assert session.state is SessionState.BROADCASTING

        session.handle(TransactionComplete(tx_signature="sig123"))
        assert session.state is SessionState.COMPLETED
        assert session.tx_signature == "sig123"
        assert not session.has_secrets


class TestSessionGuards:
    """Tests for ignored, rejected and failing messages."""

    def test_blind_signature_ignored_while_waiting_for_participants(self, session, signer):
        """BLIND_SIGNATURE before blinding changes nothing."""
        session.start(timestamp_ms=1)
        session.handle(joined(signer))
        assert session.handle(BlindSignature(signature="ab" * 32)) == []
        assert session.state is SessionState.WAITING_FOR_PARTICIPANTS

    def test_blind_signature_accepted_while_waiting_for_signature(self, session, signer):
        blinded = drive_to_signature_wait(session, signer)
        session.handle(BlindSignature(signature=int_to_hex(signer.sign_blinded(blinded))))
        assert session.state is SessionState.SUBMITTING_UNBLINDED

    def test_bad_blind_signature_fails(self, session, signer):
        """A signature that does not unblind to a valid one is a crypto failure."""
        drive_to_signature_wait(session, signer)
        outs = session.handle(BlindSignature(signature=int_to_hex(12345)))
        assert types_of(outs) == ["ABORT"]
        assert session.state is SessionState.FAILED
        assert session.error.code is ErrorCode.BLIND_SIGNATURE_FAILED
        assert not session.error.recoverable
        assert not session.has_secrets

    def test_weak_coordinator_key_fails(self, session):
        session.start(timestamp_ms=1)
        weak = json.dumps({"n": str((1 << 1023) + 1), "e": "65537"})
        outs = session.handle(Joined(session_id="s", participant_id="p", rsa_public_key=weak))
        assert types_of(outs) == ["ABORT"]
        assert session.state is SessionState.FAILED

    def test_coordinator_abort(self, session, signer):
        session.start(timestamp_ms=1)
        session.handle(joined(signer))
        session.handle(SessionAborted(reason="timeout"))
        assert session.state is SessionState.FAILED
        assert session.error.code is ErrorCode.SESSION_ABORTED

    def test_error_message_fails(self, session):
        session.start(timestamp_ms=1)
        session.handle(ErrorMessage(message="Rate limited"))
        assert session.state is SessionState.FAILED

    def test_terminal_state_ignores_everything(self, session, signer):
        session.start(timestamp_ms=1)
        session.handle(SessionAborted(reason="x"))
        assert session.handle(joined(signer)) == []
        assert session.state is SessionState.FAILED

    def test_user_abort_wipes(self, session, signer):
        drive_to_signature_wait(session, signer)
        assert session.has_secrets
        assert types_of(session.abort()) == ["ABORT"]
        assert session.state is SessionState.FAILED
        assert not session.has_secrets

    def test_transaction_without_our_commitment(self, session, signer, wallet):
        blinded = drive_to_signature_wait(session, signer)
        session.handle(BlindSignature(signature=int_to_hex(signer.sign_blinded(blinded))))
        session.handle(RequestUnblindedCommitment())
        tx = json.dumps({
            "sessionId": "s1",
            "denomination": str(ONE_SOL),
            "inputs": [wallet.public_key_b58],
            "commitments": ["00" * 32],
        })
        outs = session.handle(TransactionReady(transaction=tx, input_index=0))
        assert types_of(outs) == ["ABORT"]
        assert session.error.code is ErrorCode.TRANSACTION_BUILD_FAILED
        # after the anonymous submission a failure is never retried
        assert not session.error.recoverable

    def test_history_records_transitions(self, session, signer):
        session.start(timestamp_ms=1)
        session.handle(joined(signer))
        assert session.history == [
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
            SessionState.WAITING_FOR_PARTICIPANTS,
        ]
