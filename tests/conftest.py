"""
Shared fixtures for the pool test-suite
"""

import itertools
from typing import List, Tuple

import pytest

from services.batching.accountant import AnonymityAccountant
from services.bridge.interfaces import PublicInputs, Witness
from services.bridge.ledger import RpcError
from services.coinjoin.auth import WalletSigner
from services.config import DENOMINATIONS
from services.crypto_core.blind_sig import BlindSigner
from services.crypto_core.commitments import CommitmentVault
from services.crypto_core.stealth import keys_from_seed
from services.database.kv_store import MemoryKVStore
from services.database.note_store import NoteStore

ONE_SOL = DENOMINATIONS[0]


class FakeClock:
    """Manually advanced clock, usable for both time.time and time.monotonic."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """LedgerClient double: records instructions, can fail the first N submissions."""

    def __init__(self, fail_times: int = 0, error: Exception = None, confirm_result: bool = True) -> None:
        self.submitted: List = []
        self.fail_times = fail_times
        self.error = error or ConnectionError("connection reset")
        self.confirm_result = confirm_result
        self._ids = itertools.count(1)

    async def submit(self, instruction) -> str:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        self.submitted.append(instruction)
        return f"tx{next(self._ids)}"

    async def confirm(self, tx_id: str) -> bool:
        return self.confirm_result


class FakeProofEngine:
    """Echoes the witness public inputs and accepts every proof."""

    def __init__(self, valid: bool = True) -> None:
        self.valid = valid
        self.witnesses: List[Witness] = []

    async def generate_proof(self, witness: Witness) -> Tuple[bytes, PublicInputs]:
        self.witnesses.append(witness)
        return b"\x01" * 64, witness.public

    async def verify_proof(self, proof: bytes, public_inputs: PublicInputs) -> bool:
        return self.valid


async def no_sleep(_seconds: float) -> None:
    return None


def already_settled_error() -> RpcError:
    return RpcError("sendTransaction", "custom program error: BatchAlreadySettled (already settled)", -32002)


@pytest.fixture(scope="session")
def signer() -> BlindSigner:
    """One 2048-bit coordinator key for the whole run; keygen is slow."""
    return BlindSigner.generate(2048)


@pytest.fixture
def vault() -> CommitmentVault:
    """Vault restricted to the default denominations."""
    return CommitmentVault(DENOMINATIONS)


@pytest.fixture
def wallet() -> WalletSigner:
    """Deterministic wallet key."""
    return WalletSigner.from_seed(bytes(range(32)))


@pytest.fixture
def stealth_keys():
    """Recipient scan/spend keys from a fixed seed."""
    return keys_from_seed(bytes([7]) * 32)


@pytest.fixture
def kv() -> MemoryKVStore:
    return MemoryKVStore()


@pytest.fixture
def note_store(kv) -> NoteStore:
    return NoteStore(kv)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accountant(clock) -> AnonymityAccountant:
    """Accountant with the default threshold of 3 and a manual clock."""
    return AnonymityAccountant(threshold=3, max_commitments=10, timeout_seconds=600, clock=clock)
