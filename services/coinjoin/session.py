# services/coinjoin/session.py
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Awaitable, Dict, FrozenSet, List, Optional, Tuple, Type

from services.coinjoin.auth import WalletSigner
from services.coinjoin.channel import ChannelFactory, CoordinationChannel
from services.coinjoin.schemas import (
    Abort,
    BlindSignature,
    CommitmentsCollected,
    ErrorMessage,
    InboundMessage,
    Join,
    Joined,
    OutboundMessage,
    ParticipantCount,
    Ready,
    RequestBlindedCommitment,
    RequestInputAddress,
    RequestUnblindedCommitment,
    SessionAborted,
    SessionStarting,
    SubmitBlinded,
    SubmitInput,
    SubmitSignature,
    SubmitUnblinded,
    TransactionComplete,
    TransactionReady,
    parse_inbound,
)
from services.coinjoin.timing import MAX_JOIN_DELAY_MS, MIN_JOIN_DELAY_MS, random_delay_ms, random_join_delay
from services.crypto_core import blind_sig
from services.crypto_core.blind_sig import BlindingContext, RsaPublicKey
from services.crypto_core.commitments import CommitmentVault, Note
from services.errors import (
    ConnectionFailure,
    CryptoError,
    ErrorCategory,
    ErrorCode,
    PoolError,
    SessionError,
    wrap_error,
)

LOG = logging.getLogger("coinjoin.session")
LOG.addHandler(logging.NullHandler())


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_FOR_PARTICIPANTS = "waiting"
    BLINDING = "blinding"
    WAITING_FOR_SIGNATURE = "waiting_sig"
    SUBMITTING_UNBLINDED = "submitting"
    BUILDING_TX = "building_tx"
    SIGNING_TX = "signing_tx"
    BROADCASTING = "broadcasting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})

# the unblinded submission is ledger-visible from here on
IRREVERSIBLE_STATES = frozenset({
    SessionState.BUILDING_TX,
    SessionState.SIGNING_TX,
    SessionState.BROADCASTING,
    SessionState.COMPLETED,
})


@dataclass
class Outbound:
    message: OutboundMessage
    anonymous: bool = False


@dataclass
class CoinJoinResult:
    tx_signature: str
    note: Note = field(repr=False)
    session_id: str = ""


class CoinJoinSession:
    """
    Client half of one blind-signature CoinJoin round.

    Pure state machine: handle() takes one validated inbound message and
    returns the messages to send. Messages not valid in the current state
    are ignored; SESSION_ABORTED and ERROR fail the session from any
    non-terminal state. Secret material is wiped on every terminal path.
    """

    def __init__(self, note: Note, wallet: WalletSigner, min_key_bits: int = blind_sig.MIN_KEY_BITS) -> None:
        self.note = note
        self.wallet = wallet
        self.min_key_bits = min_key_bits
        self.state = SessionState.DISCONNECTED
        self.session_id: Optional[str] = None
        self.participant_id: Optional[str] = None
        self.rsa_key: Optional[RsaPublicKey] = None
        self.participants = 0
        self.needed = 0
        self.commitments_collected = 0
        self.tx_signature: Optional[str] = None
        self.error: Optional[PoolError] = None
        self.history: List[SessionState] = [self.state]
        self._blinding: Optional[BlindingContext] = None
        self._blind_signature = 0
        self._unblinded_signature = 0

    # ---------- helpers ----------
    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def has_secrets(self) -> bool:
        return bool(self._blinding is not None or self._blind_signature or self._unblinded_signature)

    def _move(self, state: SessionState) -> None:
        if state is not self.state:
            LOG.info(f"session {self.session_id or '-'}: {self.state.value} -> {state.value}")
            self.state = state
            self.history.append(state)

    def wipe(self) -> None:
        if self._blinding is not None:
            self._blinding.wipe()
        self._blinding = None
        self._blind_signature = 0
        self._unblinded_signature = 0

    def fail(self, error: PoolError) -> None:
        if self.is_terminal:
            return
        if self.state in IRREVERSIBLE_STATES and error.recoverable:
            error.recoverable = False
        self.error = error
        self._move(SessionState.FAILED)
        self.wipe()
        LOG.warning(f"session {self.session_id or '-'} failed: {error.code.value}")

    # ---------- protocol ----------
    def start(self, timestamp_ms: Optional[int] = None) -> Outbound:
        if self.state is not SessionState.DISCONNECTED:
            raise SessionError("session already started", code=ErrorCode.INVALID_STATE, recoverable=False)
        timestamp_ms = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        self._move(SessionState.CONNECTING)
        return Outbound(Join(
            denomination=str(self.note.denomination),
            public_key=self.wallet.public_key_b58,
            timestamp=timestamp_ms,
            signature=self.wallet.sign_auth(timestamp_ms, self.note.denomination),
        ))

    def handle(self, message: InboundMessage) -> List[Outbound]:
        if self.is_terminal:
            return []
        if isinstance(message, (SessionAborted, ErrorMessage)):
            return self._on_abort(message)

        allowed, handler_name = _HANDLERS[type(message)]
        if self.state not in allowed:
            LOG.debug(f"ignoring {message.type} in state {self.state.value}")
            return []
        try:
            return getattr(self, handler_name)(message)
        except PoolError as e:
            self.fail(e)
        except Exception as e:
            self.fail(wrap_error(e))
        return [Outbound(Abort())]

    def abort(self, reason: str = "aborted by user") -> List[Outbound]:
        """User-initiated abort. After the anonymous submission this only asks the coordinator to stop."""
        if self.is_terminal:
            return []
        if self.state in IRREVERSIBLE_STATES:
            LOG.warning("aborting after the unblinded submission; the submitted commitment cannot be withdrawn")
        self.fail(SessionError(reason, code=ErrorCode.SESSION_ABORTED))
        return [Outbound(Abort())]

    # ---------- handlers ----------
    def _on_joined(self, msg: Joined) -> List[Outbound]:
        self.rsa_key = RsaPublicKey.from_json(msg.rsa_public_key, self.min_key_bits)
        self.session_id = msg.session_id
        self.participant_id = msg.participant_id
        self._move(SessionState.WAITING_FOR_PARTICIPANTS)
        return [Outbound(Ready())]

    def _on_participant_count(self, msg: ParticipantCount) -> List[Outbound]:
        self.participants, self.needed = msg.count, msg.needed
        LOG.info(f"waiting for participants: {msg.count}/{msg.needed}")
        return []

    def _on_session_starting(self, msg: SessionStarting) -> List[Outbound]:
        self.participants = msg.participants
        self._move(SessionState.BLINDING)
        return []

    def _on_request_blinded(self, msg: RequestBlindedCommitment) -> List[Outbound]:
        self._blinding = blind_sig.blind(self.note.commitment, self.rsa_key)
        self._move(SessionState.WAITING_FOR_SIGNATURE)
        return [Outbound(SubmitBlinded(blinded_commitment=blind_sig.int_to_hex(self._blinding.blinded)))]

    def _on_blind_signature(self, msg: BlindSignature) -> List[Outbound]:
        self._blind_signature = blind_sig.hex_to_int(msg.signature)
        unblinded = blind_sig.unblind(self._blind_signature, self._blinding.r, self.rsa_key)
        if not blind_sig.verify(self.note.commitment, unblinded, self.rsa_key):
            raise CryptoError(ErrorCode.BLIND_SIGNATURE_FAILED)
        self._unblinded_signature = unblinded
        # r is no longer needed once the signature checks out
        self._blinding.wipe()
        self._blinding = None
        self._move(SessionState.SUBMITTING_UNBLINDED)
        return []

    def _on_request_unblinded(self, msg: RequestUnblindedCommitment) -> List[Outbound]:
        out = SubmitUnblinded(
            session_id=self.session_id,
            unblinded_commitment=self.note.commitment_hex,
            blind_signature=blind_sig.int_to_hex(self._unblinded_signature),
        )
        self._move(SessionState.BUILDING_TX)
        return [Outbound(out, anonymous=True)]

    def _on_commitments_collected(self, msg: CommitmentsCollected) -> List[Outbound]:
        self.commitments_collected = msg.count
        return []

    def _on_request_input(self, msg: RequestInputAddress) -> List[Outbound]:
        return [Outbound(SubmitInput(input_address=self.wallet.public_key_b58))]

    def _on_transaction_ready(self, msg: TransactionReady) -> List[Outbound]:
        self._move(SessionState.SIGNING_TX)
        try:
            tx = json.loads(msg.transaction)
            inputs = tx["inputs"]
            commitments = tx["commitments"]
        except (ValueError, KeyError, TypeError) as e:
            raise SessionError("unreadable transaction", code=ErrorCode.TRANSACTION_BUILD_FAILED) from e
        if msg.input_index >= len(inputs) or inputs[msg.input_index] != self.wallet.public_key_b58:
            raise SessionError("transaction input does not match our wallet", code=ErrorCode.TRANSACTION_BUILD_FAILED)
        if self.note.commitment_hex not in commitments:
            raise SessionError("transaction does not include our commitment", code=ErrorCode.TRANSACTION_BUILD_FAILED)
        if str(tx.get("denomination")) != str(self.note.denomination):
            raise SessionError("transaction denomination mismatch", code=ErrorCode.TRANSACTION_BUILD_FAILED)
        try:
            signature = self.wallet.sign_transaction(msg.transaction, msg.input_index)
        except Exception as e:
            raise SessionError("wallet refused to sign", code=ErrorCode.SIGNING_FAILED) from e
        self._move(SessionState.BROADCASTING)
        return [Outbound(SubmitSignature(signature=signature))]

    def _on_transaction_complete(self, msg: TransactionComplete) -> List[Outbound]:
        self.tx_signature = msg.tx_signature
        self._move(SessionState.COMPLETED)
        self.wipe()
        return []

    def _on_abort(self, msg) -> List[Outbound]:
        text = msg.reason if isinstance(msg, SessionAborted) else msg.message
        LOG.info(f"coordinator ended session {self.session_id or '-'}: {text or 'no reason'}")
        self.fail(SessionError(text or "session aborted by coordinator", code=ErrorCode.SESSION_ABORTED))
        return []


_ABORT = object()

S = SessionState
_HANDLERS: Dict[Type, Tuple[FrozenSet[SessionState], str]] = {
    Joined: (frozenset({S.CONNECTING}), "_on_joined"),
    ParticipantCount: (frozenset({S.WAITING_FOR_PARTICIPANTS}), "_on_participant_count"),
    SessionStarting: (frozenset({S.WAITING_FOR_PARTICIPANTS}), "_on_session_starting"),
    RequestBlindedCommitment: (frozenset({S.BLINDING}), "_on_request_blinded"),
    BlindSignature: (frozenset({S.WAITING_FOR_SIGNATURE}), "_on_blind_signature"),
    RequestUnblindedCommitment: (frozenset({S.SUBMITTING_UNBLINDED}), "_on_request_unblinded"),
    CommitmentsCollected: (frozenset({S.BUILDING_TX}), "_on_commitments_collected"),
    RequestInputAddress: (frozenset({S.BUILDING_TX}), "_on_request_input"),
    TransactionReady: (frozenset({S.BUILDING_TX}), "_on_transaction_ready"),
    TransactionComplete: (frozenset({S.BROADCASTING}), "_on_transaction_complete"),
}


class CoinJoinClient:
    """
    Drives CoinJoinSession over a coordination channel.

    One reader task feeds raw frames into a queue; this task validates and
    handles them one at a time. The anonymous submission goes out on a
    fresh channel from the same factory. Connection failures before the
    unblinded submission are retried with a new note and a new join delay.
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        vault: CommitmentVault,
        wallet: WalletSigner,
        denomination: int,
        min_join_delay_ms: int = MIN_JOIN_DELAY_MS,
        max_join_delay_ms: int = MAX_JOIN_DELAY_MS,
        anonymous_jitter_ms: int = 2_000,
        max_attempts: int = 3,
        session_timeout: float = 120.0,
        min_key_bits: int = blind_sig.MIN_KEY_BITS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.channel_factory = channel_factory
        self.vault = vault
        self.wallet = wallet
        self.denomination = denomination
        self.min_join_delay_ms = min_join_delay_ms
        self.max_join_delay_ms = max_join_delay_ms
        self.anonymous_jitter_ms = anonymous_jitter_ms
        self.max_attempts = max_attempts
        self.session_timeout = session_timeout
        self.min_key_bits = min_key_bits
        self.sleep = sleep
        self.session: Optional[CoinJoinSession] = None
        self._abort_requested = False
        self._queue: Optional[asyncio.Queue] = None

    async def run(self) -> CoinJoinResult:
        for attempt in range(1, self.max_attempts + 1):
            # a fresh note per attempt: a commitment is never reused across sessions
            note = self.vault.generate(self.denomination)
            self.session = CoinJoinSession(note, self.wallet, self.min_key_bits)
            try:
                return await self._run_once(self.session)
            except PoolError as e:
                retry = (
                    e.recoverable
                    and e.category in (ErrorCategory.CONNECTION,)
                    and attempt < self.max_attempts
                    and not self._abort_requested
                )
                if not retry:
                    raise
                LOG.warning(f"coinjoin attempt {attempt}/{self.max_attempts} failed ({e.code.value}), retrying")
        raise ConnectionFailure("coinjoin attempts exhausted", recoverable=False)

    def abort(self) -> None:
        """Request an abort; handled by the session task between messages."""
        self._abort_requested = True
        if self._queue is not None:
            self._queue.put_nowait(_ABORT)

    async def _pump(self, channel: CoordinationChannel, queue: "asyncio.Queue") -> None:
        while True:
            try:
                frame = await channel.receive()
            except PoolError as e:
                await queue.put(e)
                return
            await queue.put(frame)

    async def _send(self, channel: CoordinationChannel, out: Outbound) -> None:
        if not out.anonymous:
            await channel.send(out.message.dump())
            return
        if self.anonymous_jitter_ms:
            await self.sleep(random_delay_ms(0, self.anonymous_jitter_ms) / 1000.0)
        anon = await self.channel_factory()
        try:
            await anon.send(out.message.dump())
        finally:
            await anon.close()

    async def _run_once(self, session: CoinJoinSession) -> CoinJoinResult:
        delay = random_join_delay(self.min_join_delay_ms, self.max_join_delay_ms)
        LOG.info(f"waiting {delay:.1f}s before joining (timing protection)")
        await self.sleep(delay)
        if self._abort_requested:
            session.abort()
            raise session.error

        channel = await self.channel_factory()
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue
        reader = asyncio.create_task(self._pump(channel, queue))
        deadline = asyncio.get_running_loop().time() + self.session_timeout
        try:
            await self._send(channel, session.start())
            while not session.is_terminal:
                remaining = deadline - asyncio.get_running_loop().time()
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=max(remaining, 0.0))
                except asyncio.TimeoutError:
                    session.fail(SessionError("session timed out", code=ErrorCode.SESSION_EXPIRED))
                    await channel.send(Abort().dump())
                    break
                if item is _ABORT:
                    for out in session.abort():
                        await self._send(channel, out)
                    break
                if isinstance(item, PoolError):
                    session.fail(item)
                    break
                try:
                    message = parse_inbound(item)
                except SessionError:
                    LOG.warning("dropping malformed coordinator message")
                    continue
                for out in session.handle(message):
                    await self._send(channel, out)
        except PoolError as e:
            session.fail(e)
        except asyncio.CancelledError:
            session.fail(SessionError("session cancelled", code=ErrorCode.SESSION_ABORTED, recoverable=False))
            raise
        finally:
            reader.cancel()
            self._queue = None
            session.wipe()
            await channel.close()

        if session.state is SessionState.COMPLETED:
            return CoinJoinResult(tx_signature=session.tx_signature, note=session.note, session_id=session.session_id or "")
        raise session.error or SessionError("session ended without completing")


__all__ = [
    "SessionState",
    "TERMINAL_STATES",
    "IRREVERSIBLE_STATES",
    "Outbound",
    "CoinJoinResult",
    "CoinJoinSession",
    "CoinJoinClient",
]
