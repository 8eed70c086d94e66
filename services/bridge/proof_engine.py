# services/bridge/proof_engine.py
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from services.bridge.interfaces import PublicInputs, Witness
from services.bridge.retry import run_with_retry
from services.errors import ErrorCode, PoolError

LOG = logging.getLogger("proof_engine")
LOG.addHandler(logging.NullHandler())


class ProofEngineError(PoolError):
    """External prover returned unusable output."""


class SubprocessProofEngine:
    """
    Delegates proving to external commands. The witness JSON goes to the
    prover's stdin; it must print {"proof": "<hex>", "publicInputs": {...}}.
    The verifier gets {"proof", "publicInputs"} on stdin and prints
    {"valid": true|false}.
    """

    def __init__(
        self,
        prove_cmd: List[str],
        verify_cmd: List[str],
        cwd: Optional[Path] = None,
        timeout: int = 120,
        max_retries: int = 2,
    ) -> None:
        self.prove_cmd = prove_cmd
        self.verify_cmd = verify_cmd
        self.cwd = cwd
        self.timeout = timeout
        self.max_retries = max_retries

    def _run_json(self, cmd: List[str], payload: dict, description: str) -> dict:
        result = run_with_retry(
            cmd,
            max_retries=self.max_retries,
            timeout=self.timeout,
            cwd=self.cwd,
            input_text=json.dumps(payload),
            description=description,
        )
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProofEngineError(f"{description} output is not JSON", code=ErrorCode.INTERNAL_ERROR) from e

    async def generate_proof(self, witness: Witness) -> Tuple[bytes, PublicInputs]:
        out = await asyncio.to_thread(self._run_json, self.prove_cmd, witness.to_dict(), "Proof generation")
        try:
            proof = bytes.fromhex(out["proof"])
            public = PublicInputs.from_dict(out["publicInputs"])
        except (KeyError, ValueError, TypeError) as e:
            raise ProofEngineError("prover output is missing fields", code=ErrorCode.INTERNAL_ERROR) from e
        LOG.info(f"proof generated ({len(proof)} bytes)")
        return proof, public

    async def verify_proof(self, proof: bytes, public_inputs: PublicInputs) -> bool:
        out = await asyncio.to_thread(
            self._run_json,
            self.verify_cmd,
            {"proof": proof.hex(), "publicInputs": public_inputs.to_dict()},
            "Proof verification",
        )
        return out.get("valid") is True


__all__ = ["ProofEngineError", "SubprocessProofEngine"]
