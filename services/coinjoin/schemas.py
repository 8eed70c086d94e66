# services/coinjoin/schemas.py
from __future__ import annotations

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from services.errors import ErrorCode, SessionError

HEX = r"^[0-9a-fA-F]+$"
SIG_HEX = r"^[0-9a-fA-F]{128}$"


class _Msg(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# =========================
# Coordinator -> client
# =========================

class Joined(_Msg):
    type: Literal["JOINED"] = "JOINED"
    session_id: str = Field(..., alias="sessionId", min_length=1, description="Coordinator session id.")
    participant_id: str = Field(..., alias="participantId", min_length=1)
    rsa_public_key: str = Field(..., alias="rsaPublicKey", description='JSON {"n": str, "e": str}.')


class ParticipantCount(_Msg):
    type: Literal["PARTICIPANT_COUNT"] = "PARTICIPANT_COUNT"
    count: int = Field(..., ge=0)
    needed: int = Field(..., ge=0)


class SessionStarting(_Msg):
    type: Literal["SESSION_STARTING"] = "SESSION_STARTING"
    participants: int = Field(..., ge=1)


class RequestBlindedCommitment(_Msg):
    type: Literal["REQUEST_BLINDED_COMMITMENT"] = "REQUEST_BLINDED_COMMITMENT"


class BlindSignature(_Msg):
    type: Literal["BLIND_SIGNATURE"] = "BLIND_SIGNATURE"
    signature: str = Field(..., pattern=HEX, max_length=2048)


class RequestUnblindedCommitment(_Msg):
    type: Literal["REQUEST_UNBLINDED_COMMITMENT"] = "REQUEST_UNBLINDED_COMMITMENT"


class CommitmentsCollected(_Msg):
    type: Literal["COMMITMENTS_COLLECTED"] = "COMMITMENTS_COLLECTED"
    count: int = Field(..., ge=0)


class RequestInputAddress(_Msg):
    type: Literal["REQUEST_INPUT_ADDRESS"] = "REQUEST_INPUT_ADDRESS"


class TransactionReady(_Msg):
    type: Literal["TRANSACTION_READY"] = "TRANSACTION_READY"
    transaction: str = Field(..., min_length=1, description="Serialized transaction payload (JSON).")
    input_index: int = Field(..., alias="inputIndex", ge=0)


class TransactionComplete(_Msg):
    type: Literal["TRANSACTION_COMPLETE"] = "TRANSACTION_COMPLETE"
    tx_signature: str = Field(..., alias="txSignature", min_length=1)


class SessionAborted(_Msg):
    type: Literal["SESSION_ABORTED"] = "SESSION_ABORTED"
    reason: str = ""


class ErrorMessage(_Msg):
    type: Literal["ERROR"] = "ERROR"
    message: str = ""


InboundMessage = Annotated[
    Union[
        Joined,
        ParticipantCount,
        SessionStarting,
        RequestBlindedCommitment,
        BlindSignature,
        RequestUnblindedCommitment,
        CommitmentsCollected,
        RequestInputAddress,
        TransactionReady,
        TransactionComplete,
        SessionAborted,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

# =========================
# Client -> coordinator
# =========================

class Join(_Msg):
    type: Literal["JOIN"] = "JOIN"
    denomination: str = Field(..., pattern=r"^[0-9]+$", description="Lamports, decimal string.")
    public_key: str = Field(..., alias="publicKey", min_length=32, max_length=44)
    timestamp: int = Field(..., ge=0, description="Milliseconds since epoch.")
    signature: str = Field(..., pattern=SIG_HEX)


class Ready(_Msg):
    type: Literal["READY"] = "READY"


class SubmitBlinded(_Msg):
    type: Literal["SUBMIT_BLINDED"] = "SUBMIT_BLINDED"
    blinded_commitment: str = Field(..., alias="blindedCommitment", pattern=HEX, max_length=2048)


class SubmitUnblinded(_Msg):
    type: Literal["SUBMIT_UNBLINDED"] = "SUBMIT_UNBLINDED"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    unblinded_commitment: str = Field(..., alias="unblindedCommitment", pattern=r"^[0-9a-fA-F]{64}$")
    blind_signature: str = Field(..., alias="blindSignature", pattern=HEX, max_length=2048)


class SubmitInput(_Msg):
    type: Literal["SUBMIT_INPUT"] = "SUBMIT_INPUT"
    input_address: str = Field(..., alias="inputAddress", min_length=32, max_length=44)


class SubmitSignature(_Msg):
    type: Literal["SUBMIT_SIGNATURE"] = "SUBMIT_SIGNATURE"
    signature: str = Field(..., pattern=SIG_HEX)


class Abort(_Msg):
    type: Literal["ABORT"] = "ABORT"


OutboundMessage = Annotated[
    Union[Join, Ready, SubmitBlinded, SubmitUnblinded, SubmitInput, SubmitSignature, Abort],
    Field(discriminator="type"),
]

_INBOUND = TypeAdapter(InboundMessage)
_OUTBOUND = TypeAdapter(OutboundMessage)


def _parse(adapter: TypeAdapter, raw):
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
        return adapter.validate_python(data)
    except (json.JSONDecodeError, PydanticValidationError) as e:
        # the offending payload is not echoed back
        raise SessionError("malformed coordination message", code=ErrorCode.INVALID_MESSAGE) from e


def parse_inbound(raw) -> InboundMessage:
    """Validate a coordinator frame (str/bytes JSON or dict) into its typed message."""
    return _parse(_INBOUND, raw)


def parse_outbound(raw) -> OutboundMessage:
    """Validate a client frame; used on the coordinator side."""
    return _parse(_OUTBOUND, raw)


__all__ = [
    "Joined",
    "ParticipantCount",
    "SessionStarting",
    "RequestBlindedCommitment",
    "BlindSignature",
    "RequestUnblindedCommitment",
    "CommitmentsCollected",
    "RequestInputAddress",
    "TransactionReady",
    "TransactionComplete",
    "SessionAborted",
    "ErrorMessage",
    "InboundMessage",
    "Join",
    "Ready",
    "SubmitBlinded",
    "SubmitUnblinded",
    "SubmitInput",
    "SubmitSignature",
    "Abort",
    "OutboundMessage",
    "parse_inbound",
    "parse_outbound",
]
