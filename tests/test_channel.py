"""
Coordination transport, join auth, timing and configuration tests
"""

import asyncio
import json
import time

import pytest

from services.coinjoin.auth import AUTH_PREFIX, WalletSigner, build_auth_message, verify_auth, verify_ed25519
from services.coinjoin.channel import MemoryChannel, WebSocketChannel, check_ip_privacy
from services.coinjoin.coordinator import Coordinator, CoordinatorHub, serve_websocket
from services.coinjoin.timing import random_delay_ms, random_join_delay
from services.config import DENOMINATIONS, Settings
from services.errors import ConnectionFailure, ErrorCode

from tests.conftest import ONE_SOL


class TestJoinAuth:
    """Tests for the signed JOIN challenge."""

    def test_message_format(self):
        assert build_auth_message("Abc", 12, 34) == f"{AUTH_PREFIX}:Abc:12:34".encode()

    def test_sign_and_verify(self, wallet):
        now = int(time.time() * 1000)
        signature = wallet.sign_auth(now, ONE_SOL)
        assert len(signature) == 128
        assert verify_auth(wallet.public_key_b58, now, ONE_SOL, signature)
        assert not verify_auth(wallet.public_key_b58, now, ONE_SOL * 10, signature)

    def test_expired(self, wallet):
        then = int(time.time() * 1000) - 301_000
        assert not verify_auth(wallet.public_key_b58, then, ONE_SOL, wallet.sign_auth(then, ONE_SOL))

    def test_garbage_signature(self, wallet):
        assert not verify_ed25519(wallet.public_key_b58, b"m", "zz")
        assert not verify_ed25519(wallet.public_key_b58, b"m", "00" * 64)

    def test_transaction_signature(self, wallet):
        signature = wallet.sign_transaction('{"inputs":[]}', 0)
        assert verify_ed25519(wallet.public_key_b58, b'{"inputs":[]}', signature)


class TestTiming:
    """Tests for the join delay window."""

    def test_within_window(self):
        for _ in range(50):
            assert 5_000 <= random_delay_ms(5_000, 35_000) <= 35_000

    def test_degenerate_window(self):
        assert random_delay_ms(0, 0) == 0
        assert random_join_delay(1500, 1500) == 1.5

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            random_delay_ms(10, 5)


class TestIpPrivacy:
    """Tests for the coordinator URL privacy check."""

    def test_onion(self):
        assert check_ip_privacy("ws://abcdefghijklmnop.onion:8080").likely_protected

    def test_clearnet(self):
        privacy = check_ip_privacy("wss://coordinator.example.com")
        assert not privacy.likely_protected
        assert "Tor" in privacy.warning


class TestMemoryChannel:
    """Tests for the in-process transport."""

    @pytest.mark.asyncio
    async def test_duplex(self):
        a, b = MemoryChannel.pair()
        await a.send({"type": "READY"})
        assert json.loads(await b.receive()) == {"type": "READY"}
        await b.send({"type": "JOINED"})
        assert json.loads(await a.receive())["type"] == "JOINED"

    @pytest.mark.asyncio
    async def test_close_reaches_peer(self):
        a, b = MemoryChannel.pair()
        await a.close()
        with pytest.raises(ConnectionFailure) as exc:
            await b.receive()
        assert exc.value.code is ErrorCode.CONNECTION_CLOSED
        with pytest.raises(ConnectionFailure):
            await a.send({"type": "READY"})


class TestWebSocket:
    """Tests for the websocket transport against a local coordinator."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_join_over_websocket(self, signer, wallet):
        async def broadcast(transaction, signatures):
            return "unused"

        hub = CoordinatorHub(Coordinator(signer, broadcast, DENOMINATIONS))
        server = await serve_websocket(hub, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            channel = await WebSocketChannel.connect(f"ws://127.0.0.1:{port}")
            now = int(time.time() * 1000)
            await channel.send({
                "type": "JOIN",
                "denomination": str(ONE_SOL),
                "publicKey": wallet.public_key_b58,
                "timestamp": now,
                "signature": wallet.sign_auth(now, ONE_SOL),
            })
            joined = json.loads(await asyncio.wait_for(channel.receive(), 10))
            assert joined["type"] == "JOINED"
            count = json.loads(await asyncio.wait_for(channel.receive(), 10))
            assert count == {"type": "PARTICIPANT_COUNT", "count": 1, "needed": 3}
            await channel.close()
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_unreachable_coordinator(self):
        with pytest.raises(ConnectionFailure):
            await WebSocketChannel.connect("ws://127.0.0.1:9", open_timeout=2)


class TestSettings:
    """Tests for environment-driven configuration."""

    def test_defaults(self):
        settings = Settings()
        assert settings.denominations == DENOMINATIONS
        assert settings.merkle_depth >= 1
        assert "notes_key_hex" not in repr(settings)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BATCH_THRESHOLD", "5")
        monkeypatch.setenv("DENOMINATIONS", "1000,2000")
        monkeypatch.setenv("BATCH_TIMEOUT_POLICY", "settle")
        settings = Settings.from_env()
        assert settings.batch_threshold == 5
        assert settings.denominations == (1000, 2000)
        assert settings.batch_timeout_policy == "settle"


def test_wallet_from_seed_is_stable():
    assert WalletSigner.from_seed(b"\x01" * 32).public_key_b58 == WalletSigner.from_seed(b"\x01" * 32).public_key_b58
