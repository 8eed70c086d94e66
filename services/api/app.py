# services/api/app.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from services.api import health_checks as hc
from services.api.logging_config import get_logger, setup_logging
from services.api.schemas_api import (
    BatchStatusRes,
    MerkleProofRes,
    MerkleStatus,
    PubkeyRes,
    SettleRes,
)
from services.batching.accountant import AnonymityAccountant, SettlementOutcome, TimeoutPolicy
from services.batching.status import BatchStatusService
from services.bridge.interfaces import SettlementBridge
from services.bridge.ledger import JsonRpcLedgerClient
from services.bridge.settlement import LedgerSettlementBridge, settle_ready
from services.config import Settings
from services.crypto_core.blind_sig import RsaPublicKey
from services.crypto_core.merkle import MerkleAccumulator
from services.database.kv_store import EncryptedKVStore, KeyValueStore, SqliteKVStore
from services.database.note_store import NoteStore
from services.errors import ErrorCategory, PoolError

logger = get_logger("api")

_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.SESSION: 409,
    ErrorCategory.CAPACITY: 409,
    ErrorCategory.CRYPTO: 422,
    ErrorCategory.LEDGER: 502,
    ErrorCategory.CONNECTION: 503,
    ErrorCategory.INTERNAL: 500,
}


def _hex32(x: int) -> str:
    return format(x, "x").zfill(64)


def http_error(e: PoolError) -> HTTPException:
    detail = e.to_dict()
    detail["userMessage"] = e.to_user_message()
    return HTTPException(status_code=_STATUS_BY_CATEGORY.get(e.category, 500), detail=detail)


@dataclass
class ApiContext:
    tree: MerkleAccumulator
    accountant: AnonymityAccountant
    status: BatchStatusService
    bridge: Optional[SettlementBridge] = None
    coinjoin_pubkey: Optional[RsaPublicKey] = None
    store: Optional[KeyValueStore] = None
    rpc_url: Optional[str] = None
    rpc_client: Optional[httpx.AsyncClient] = None
    notes: Optional[NoteStore] = None

    def reload(self) -> None:
        """Pick up batches and tree state written by other processes sharing the store."""
        if self.notes is None:
            return
        self.notes.load_batches(self.accountant)
        tree = self.notes.load_tree()
        if tree is not None:
            self.tree = tree


def create_app(ctx: ApiContext) -> FastAPI:
    app = FastAPI(title="StealthSol Pool API", version="0.1.0")
    app.state.ctx = ctx

    @app.exception_handler(PoolError)
    async def _pool_error(_request, e: PoolError):
        err = http_error(e)
        return JSONResponse(status_code=err.status_code, content={"detail": err.detail})

    # ---------- Merkle ----------
    @app.get("/merkle/status", response_model=MerkleStatus)
    def merkle_status():
        ctx.reload()
        tree = ctx.tree
        return MerkleStatus(depth=tree.depth, root_hex=_hex32(tree.root()), leaves=len(tree), capacity=tree.capacity)

    @app.get("/merkle/proof/{leaf_index}", response_model=MerkleProofRes)
    def merkle_proof(leaf_index: int):
        ctx.reload()
        try:
            proof = ctx.tree.proof(leaf_index)
        except IndexError:
            raise HTTPException(status_code=404, detail=f"leaf {leaf_index} not in tree")
        return MerkleProofRes(
            leaf_index=leaf_index,
            root_hex=_hex32(ctx.tree.root()),
            siblings=[_hex32(s) for s in proof.siblings],
            path_indices=proof.path_indices,
        )

    # ---------- Batch ----------
    @app.get("/batch", response_model=BatchStatusRes)
    async def batch_status(refresh: bool = False):
        st = await ctx.status.get(force_refresh=refresh)
        return BatchStatusRes(
            batch_id=st.batch_id,
            pending_count=st.pending_count,
            threshold=st.threshold,
            total_amount=st.total_amount,
            is_ready=st.is_ready,
            ready_reason=st.ready_reason.value,
            time_remaining=st.time_remaining,
            settled_batches=st.settled_batches,
            last_settled_at=st.last_settled_at,
            just_settled=ctx.status.just_settled(st),
        )

    @app.post("/batch/settle", response_model=SettleRes)
    async def batch_settle():
        if ctx.bridge is None:
            raise HTTPException(status_code=503, detail="settlement bridge not configured")
        ctx.reload()
        result = await settle_ready(ctx.accountant, ctx.bridge)
        ctx.status.invalidate()
        if result is None:
            current = ctx.accountant.status()
            return SettleRes(
                batch_id=current.batch_id,
                outcome=SettlementOutcome.NOT_READY.value,
                settled_batches=current.settled_batches,
            )
        logger.info(f"settle request: batch {result.batch_id} -> {result.outcome.value}")
        return SettleRes(
            batch_id=result.batch_id,
            outcome=result.outcome.value,
            settled_batches=result.settled_batches,
            tx_id=result.tx_id,
        )

    # ---------- CoinJoin ----------
    @app.get("/coinjoin/pubkey", response_model=PubkeyRes)
    def coinjoin_pubkey():
        key = ctx.coinjoin_pubkey
        if key is None:
            raise HTTPException(status_code=503, detail="coordinator key not configured")
        return PubkeyRes(n=str(key.n), e=str(key.e), bits=key.n.bit_length())

    # ---------- Health ----------
    @app.get("/health")
    async def health():
        return await hc.comprehensive_health_check(ctx.store, ctx.rpc_url, ctx.rpc_client)

    @app.get("/health/live")
    async def health_live():
        return {"alive": await hc.liveness_check()}

    @app.get("/health/ready")
    async def health_ready():
        if not await hc.readiness_check(ctx.store, ctx.rpc_url, ctx.rpc_client):
            raise HTTPException(status_code=503, detail="not ready")
        return {"ready": True}

    return app


def build_context(settings: Optional[Settings] = None) -> ApiContext:
    """Wire the API against on-disk state and the configured RPC endpoint."""
    settings = settings or Settings.from_env()
    os.makedirs(settings.data_dir, exist_ok=True)
    store: KeyValueStore = SqliteKVStore(os.path.join(settings.data_dir, "pool.db"))
    if settings.notes_key_hex:
        store = EncryptedKVStore(store, bytes.fromhex(settings.notes_key_hex))
    notes = NoteStore(store)

    tree = notes.load_tree()
    if tree is None:
        tree = MerkleAccumulator(settings.merkle_depth)
    accountant = AnonymityAccountant(
        threshold=settings.batch_threshold,
        max_commitments=settings.batch_max_commitments,
        timeout_seconds=settings.batch_timeout_seconds,
        timeout_policy=TimeoutPolicy(settings.batch_timeout_policy),
    )
    notes.load_batches(accountant)
    accountant.on_change = notes.save_batches
    ledger = JsonRpcLedgerClient(settings.rpc_url, confirm_timeout=settings.tx_confirm_timeout_ms / 1000.0)
    bridge = LedgerSettlementBridge(
        ledger, max_retries=settings.tx_max_retries, base_delay=settings.tx_retry_delay_ms / 1000.0
    )
    pubkey_json = os.getenv("COINJOIN_RSA_PUBKEY", "")
    ctx = ApiContext(tree=tree, accountant=accountant, status=None, notes=notes)

    async def _status_source():
        ctx.reload()
        return accountant.status()

    ctx.status = BatchStatusService(
        _status_source,
        ttl_seconds=settings.status_cache_ttl_seconds,
        just_settled_seconds=settings.just_settled_display_seconds,
    )
    ctx.bridge = bridge
    ctx.coinjoin_pubkey = RsaPublicKey.from_json(pubkey_json) if pubkey_json else None
    ctx.store = store
    ctx.rpc_url = settings.rpc_url
    return ctx


def app_from_env() -> FastAPI:
    """Factory for `uvicorn --factory services.api.app:app_from_env`."""
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    return create_app(build_context(settings))
