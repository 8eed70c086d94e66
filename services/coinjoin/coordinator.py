# services/coinjoin/coordinator.py
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

import websockets

from services.coinjoin.auth import verify_auth, verify_ed25519
from services.coinjoin.channel import CoordinationChannel, MemoryChannel, WebSocketChannel
from services.coinjoin.schemas import (
    Abort,
    BlindSignature,
    CommitmentsCollected,
    ErrorMessage,
    Join,
    Joined,
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
    parse_outbound,
)
from services.crypto_core.blind_sig import BlindSigner, hex_to_int, int_to_hex
from services.errors import PoolError

LOG = logging.getLogger("coinjoin.coordinator")
LOG.addHandler(logging.NullHandler())

Reply = Tuple[str, dict]
Broadcaster = Callable[[str, Dict[str, str]], Awaitable[str]]


class RoundState(str, Enum):
    WAITING = "waiting"
    COLLECTING_BLINDED = "blinded"
    COLLECTING_UNBLINDED = "unblinded"
    COLLECTING_INPUTS = "inputs"
    COLLECTING_SIGNATURES = "signatures"
    BROADCASTING = "broadcasting"
    COMPLETED = "completed"
    ABORTED = "aborted"


class RateLimiter:
    """Sliding one-minute window per client key."""

    WINDOW = 60.0

    def __init__(self, per_minute: int = 30, clock: Callable[[], float] = time.monotonic) -> None:
        self.per_minute = per_minute
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def _expire(self, hits: Deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.WINDOW:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        for key in list(self._hits):
            self._expire(self._hits[key], now)
            if not self._hits[key]:
                del self._hits[key]
        self._last_sweep = now

    def allow(self, key: str) -> bool:
        now = self.clock()
        if now - self._last_sweep >= self.WINDOW:
            self._sweep(now)
        hits = self._hits.get(key)
        if hits is not None:
            self._expire(hits, now)
        if hits and len(hits) >= self.per_minute:
            return False
        if hits is None:
            hits = self._hits[key] = deque()
        hits.append(now)
        return True

    def __len__(self) -> int:
        return len(self._hits)


@dataclass
class Participant:
    participant_id: str
    conn_id: str
    public_key: str
    ready: bool = False
    blind_signed: bool = False
    input_address: Optional[str] = None
    tx_signature: Optional[str] = None


@dataclass
class Round:
    session_id: str
    denomination: int
    created_at: float
    state: RoundState = RoundState.WAITING
    participants: Dict[str, Participant] = field(default_factory=dict)
    commitments: List[str] = field(default_factory=list)
    used_signatures: set = field(default_factory=set)
    inputs: List[str] = field(default_factory=list)
    transaction: Optional[str] = None

    def conns(self, exclude: Optional[str] = None) -> List[str]:
        return [p.conn_id for p in self.participants.values() if p.conn_id != exclude]


class Coordinator:
    """
    Server half of the blind-signature CoinJoin. Transport-agnostic:
    handle() takes a frame from a connection and returns (conn_id, message)
    pairs to deliver. Unblinded submissions are accepted from any
    connection; they are matched to a round by sessionId only.
    """

    def __init__(
        self,
        signer: BlindSigner,
        broadcast: Broadcaster,
        denominations: Iterable[int],
        min_participants: int = 3,
        max_participants: int = 10,
        session_timeout: float = 120.0,
        auth_max_age: float = 300.0,
        rate_limit_per_minute: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if min_participants < 2:
            raise ValueError("a CoinJoin needs at least 2 participants")
        self.signer = signer
        self.broadcast = broadcast
        self.denominations = set(denominations)
        self.min_participants = min_participants
        self.max_participants = max_participants
        self.session_timeout = session_timeout
        self.auth_max_age = auth_max_age
        self.clock = clock
        self.rate_limiter = RateLimiter(rate_limit_per_minute)
        self.rounds: Dict[str, Round] = {}
        self._conn_index: Dict[str, Tuple[str, str]] = {}

    # ---------- helpers ----------
    @staticmethod
    def _error(conn_id: str, text: str) -> List[Reply]:
        return [(conn_id, ErrorMessage(message=text).dump())]

    def _to_all(self, rnd: Round, msg, exclude: Optional[str] = None) -> List[Reply]:
        payload = msg.dump()
        return [(c, payload) for c in rnd.conns(exclude)]

    def _abort(self, rnd: Round, reason: str, exclude: Optional[str] = None) -> List[Reply]:
        rnd.state = RoundState.ABORTED
        LOG.info(f"round {rnd.session_id} aborted: {reason}")
        out = self._to_all(rnd, SessionAborted(reason=reason), exclude)
        for p in rnd.participants.values():
            self._conn_index.pop(p.conn_id, None)
        return out

    def _open_round(self, denomination: int) -> Round:
        for rnd in self.rounds.values():
            if (rnd.state is RoundState.WAITING and rnd.denomination == denomination
                    and len(rnd.participants) < self.max_participants):
                return rnd
        rnd = Round(session_id=secrets.token_hex(16), denomination=denomination, created_at=self.clock())
        self.rounds[rnd.session_id] = rnd
        LOG.info(f"opened round {rnd.session_id} for denomination {denomination}")
        return rnd

    def _lookup(self, conn_id: str) -> Optional[Tuple[Round, Participant]]:
        ref = self._conn_index.get(conn_id)
        if ref is None:
            return None
        rnd = self.rounds.get(ref[0])
        if rnd is None:
            return None
        return rnd, rnd.participants[ref[1]]

    # ---------- entry points ----------
    async def handle(self, conn_id: str, raw, client_key: Optional[str] = None) -> List[Reply]:
        if not self.rate_limiter.allow(client_key or conn_id):
            return self._error(conn_id, "Rate limited")
        try:
            msg = parse_outbound(raw)
        except PoolError:
            return self._error(conn_id, "Invalid message")

        if isinstance(msg, Join):
            return self._on_join(conn_id, msg)
        if isinstance(msg, SubmitUnblinded):
            return self._on_unblinded(conn_id, msg)

        found = self._lookup(conn_id)
        if found is None:
            return self._error(conn_id, "Not in a session")
        rnd, participant = found
        if isinstance(msg, Ready):
            return self._on_ready(rnd, participant)
        if isinstance(msg, SubmitBlinded):
            return self._on_blinded(rnd, participant, msg)
        if isinstance(msg, SubmitInput):
            return self._on_input(rnd, participant, msg)
        if isinstance(msg, SubmitSignature):
            return await self._on_signature(rnd, participant, msg)
        if isinstance(msg, Abort):
            if rnd.state in (RoundState.COMPLETED, RoundState.ABORTED):
                return []
            return self._abort(rnd, "Participant aborted", exclude=conn_id)
        return []

    def disconnect(self, conn_id: str) -> List[Reply]:
        found = self._lookup(conn_id)
        if found is None:
            return []
        rnd, participant = found
        self._conn_index.pop(conn_id, None)
        if rnd.state is RoundState.WAITING:
            del rnd.participants[participant.participant_id]
            return self._to_all(rnd, ParticipantCount(count=len(rnd.participants), needed=self.min_participants))
        if rnd.state in (RoundState.COMPLETED, RoundState.ABORTED):
            return []
        return self._abort(rnd, "Participant disconnected", exclude=conn_id)

    def expire(self) -> List[Reply]:
        now = self.clock()
        out: List[Reply] = []
        for rnd in list(self.rounds.values()):
            if rnd.state in (RoundState.COMPLETED, RoundState.ABORTED):
                del self.rounds[rnd.session_id]
                continue
            if now - rnd.created_at > self.session_timeout:
                out.extend(self._abort(rnd, "Session timed out"))
                del self.rounds[rnd.session_id]
        return out

    # ---------- protocol steps ----------
    def _on_join(self, conn_id: str, msg: Join) -> List[Reply]:
        if conn_id in self._conn_index:
            return self._error(conn_id, "Already joined")
        denomination = int(msg.denomination)
        if denomination not in self.denominations:
            return self._error(conn_id, "Invalid denomination")
        if not verify_auth(msg.public_key, msg.timestamp, denomination, msg.signature,
                           self.auth_max_age, now_ms=int(self.clock() * 1000)):
            return self._error(conn_id, "Authentication failed")

        rnd = self._open_round(denomination)
        participant = Participant(secrets.token_hex(8), conn_id, msg.public_key)
        rnd.participants[participant.participant_id] = participant
        self._conn_index[conn_id] = (rnd.session_id, participant.participant_id)

        joined = Joined(
            session_id=rnd.session_id,
            participant_id=participant.participant_id,
            rsa_public_key=self.signer.public_key.to_json(),
        )
        count = ParticipantCount(count=len(rnd.participants), needed=self.min_participants)
        return [(conn_id, joined.dump())] + self._to_all(rnd, count)

    def _on_ready(self, rnd: Round, participant: Participant) -> List[Reply]:
        if rnd.state is not RoundState.WAITING:
            return []
        participant.ready = True
        ready = [p for p in rnd.participants.values() if p.ready]
        if len(ready) < self.min_participants or len(ready) != len(rnd.participants):
            return []
        rnd.state = RoundState.COLLECTING_BLINDED
        LOG.info(f"round {rnd.session_id} starting with {len(ready)} participants")
        return (self._to_all(rnd, SessionStarting(participants=len(ready)))
                + self._to_all(rnd, RequestBlindedCommitment()))

    def _on_blinded(self, rnd: Round, participant: Participant, msg: SubmitBlinded) -> List[Reply]:
        if rnd.state is not RoundState.COLLECTING_BLINDED or participant.blind_signed:
            return self._error(participant.conn_id, "Unexpected blinded commitment")
        try:
            signature = self.signer.sign_blinded(hex_to_int(msg.blinded_commitment))
        except PoolError:
            return self._error(participant.conn_id, "Invalid blinded commitment")
        participant.blind_signed = True
        out: List[Reply] = [(participant.conn_id, BlindSignature(signature=int_to_hex(signature)).dump())]
        if all(p.blind_signed for p in rnd.participants.values()):
            rnd.state = RoundState.COLLECTING_UNBLINDED
            out += self._to_all(rnd, RequestUnblindedCommitment())
        return out

    def _on_unblinded(self, conn_id: str, msg: SubmitUnblinded) -> List[Reply]:
        rnd = self.rounds.get(msg.session_id)
        if rnd is None or rnd.state is not RoundState.COLLECTING_UNBLINDED:
            return self._error(conn_id, "Unexpected unblinded commitment")
        commitment = msg.unblinded_commitment.lower()
        signature = hex_to_int(msg.blind_signature)
        if commitment in rnd.commitments or signature in rnd.used_signatures:
            return self._error(conn_id, "Duplicate commitment")
        if not self.signer.verify(bytes.fromhex(commitment), signature):
            return self._error(conn_id, "Invalid signature")
        rnd.commitments.append(commitment)
        rnd.used_signatures.add(signature)
        if len(rnd.commitments) < len(rnd.participants):
            return []
        secrets.SystemRandom().shuffle(rnd.commitments)
        rnd.state = RoundState.COLLECTING_INPUTS
        return (self._to_all(rnd, CommitmentsCollected(count=len(rnd.commitments)))
                + self._to_all(rnd, RequestInputAddress()))

    def _on_input(self, rnd: Round, participant: Participant, msg: SubmitInput) -> List[Reply]:
        if rnd.state is not RoundState.COLLECTING_INPUTS or participant.input_address:
            return self._error(participant.conn_id, "Unexpected input")
        if msg.input_address != participant.public_key:
            return self._error(participant.conn_id, "Input address does not match joined key")
        participant.input_address = msg.input_address
        pending = [p for p in rnd.participants.values() if not p.input_address]
        if pending:
            return []

        inputs = [p.input_address for p in rnd.participants.values()]
        secrets.SystemRandom().shuffle(inputs)
        rnd.inputs = inputs
        rnd.transaction = json.dumps({
            "sessionId": rnd.session_id,
            "denomination": str(rnd.denomination),
            "inputs": inputs,
            "commitments": rnd.commitments,
        }, separators=(",", ":"))
        rnd.state = RoundState.COLLECTING_SIGNATURES
        return [
            (p.conn_id, TransactionReady(transaction=rnd.transaction, input_index=inputs.index(p.input_address)).dump())
            for p in rnd.participants.values()
        ]

    async def _on_signature(self, rnd: Round, participant: Participant, msg: SubmitSignature) -> List[Reply]:
        if rnd.state is not RoundState.COLLECTING_SIGNATURES or participant.tx_signature:
            return self._error(participant.conn_id, "Unexpected signature")
        if not verify_ed25519(participant.input_address, rnd.transaction.encode(), msg.signature):
            return self._abort(rnd, "Invalid transaction signature")
        participant.tx_signature = msg.signature
        if any(not p.tx_signature for p in rnd.participants.values()):
            return []

        rnd.state = RoundState.BROADCASTING
        signatures = {p.input_address: p.tx_signature for p in rnd.participants.values()}
        try:
            tx_signature = await self.broadcast(rnd.transaction, signatures)
        except Exception as e:
            LOG.error(f"round {rnd.session_id} broadcast failed: {type(e).__name__}")
            return self._abort(rnd, "Broadcast failed")
        rnd.state = RoundState.COMPLETED
        LOG.info(f"round {rnd.session_id} completed: {tx_signature}")
        out = self._to_all(rnd, TransactionComplete(tx_signature=tx_signature))
        for p in rnd.participants.values():
            self._conn_index.pop(p.conn_id, None)
        return out


class CoordinatorHub:
    """Runs a Coordinator over live channels (websocket or in-memory)."""

    def __init__(self, coordinator: Coordinator) -> None:
        self.coordinator = coordinator
        self._channels: Dict[str, CoordinationChannel] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

    async def _deliver(self, replies: List[Reply]) -> None:
        for conn_id, payload in replies:
            channel = self._channels.get(conn_id)
            if channel is None:
                continue
            try:
                await channel.send(payload)
            except PoolError:
                LOG.debug(f"dropping message for closed connection {conn_id}")

    async def serve_channel(self, channel: CoordinationChannel, client_key: str = "") -> None:
        conn_id = f"c{next(self._ids)}"
        self._channels[conn_id] = channel
        try:
            while True:
                try:
                    frame = await channel.receive()
                except PoolError:
                    break
                async with self._lock:
                    replies = await self.coordinator.handle(conn_id, frame, client_key or conn_id)
                await self._deliver(replies)
        finally:
            async with self._lock:
                replies = self.coordinator.disconnect(conn_id)
            self._channels.pop(conn_id, None)
            await self._deliver(replies)

    async def connect_memory(self, client_key: str = "") -> MemoryChannel:
        """Client end of a new in-memory connection; the server end is served in the background."""
        client, server = MemoryChannel.pair()
        self._tasks.append(asyncio.create_task(self.serve_channel(server, client_key)))
        return client

    async def sweep(self) -> None:
        async with self._lock:
            replies = self.coordinator.expire()
        await self._deliver(replies)

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


async def serve_websocket(hub: CoordinatorHub, host: str = "0.0.0.0", port: int = 8080):
    async def _handler(ws) -> None:
        peer = ws.remote_address[0] if ws.remote_address else ""
        await hub.serve_channel(WebSocketChannel(ws), client_key=peer)

    LOG.info(f"coordinator listening on ws://{host}:{port}")
    return await websockets.serve(_handler, host, port)


__all__ = ["RoundState", "RateLimiter", "Participant", "Round", "Coordinator", "CoordinatorHub", "serve_websocket"]
