#!/usr/bin/env python3
# clients/cli/pool_cli.py
# Command-line helpers for the shielded pool: keys, stealth addresses, notes
# and read-only status from the pool API.

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import List, Optional

import requests

from services.config import DENOMINATIONS, LAMPORTS_PER_SOL
from services.crypto_core.commitments import CommitmentVault
from services.crypto_core.stealth import (
    StealthAddressDeriver,
    encode_meta_address,
    generate_keys,
    keys_from_seed,
    parse_meta_address,
)
from services.errors import PoolError

API_URL = os.getenv("POOL_API_URL", "http://127.0.0.1:8001")
HTTP_TIMEOUT = 10


class C:
    OK = "\033[92m"
    WARN = "\033[93m"
    ERR = "\033[91m"
    DIM = "\033[2m"
    RST = "\033[0m"


def _lamports(sol: str) -> int:
    return int(round(float(sol) * LAMPORTS_PER_SOL))


def _get(path: str, api_url: str) -> dict:
    r = requests.get(api_url.rstrip("/") + path, timeout=HTTP_TIMEOUT)
    r.raise_for_status()
    return r.json()


# ======== Commands ========
def cmd_keygen(args: argparse.Namespace) -> int:
    keys = keys_from_seed(bytes.fromhex(args.seed_hex)) if args.seed_hex else generate_keys()
    out = {"metaAddress": encode_meta_address(keys.meta_address)}
    if args.show_secrets:
        out["scanSecret"] = keys.scan_secret.hex()
        out["spendSecret"] = keys.spend_secret.hex()
    print(json.dumps(out, indent=2))
    return 0


def cmd_stealth_derive(args: argparse.Namespace) -> int:
    meta = parse_meta_address(args.meta_address)
    derivation = StealthAddressDeriver().derive_for(meta)
    print(json.dumps(derivation.payment.to_dict(), indent=2))
    return 0


def cmd_note_new(args: argparse.Namespace) -> int:
    note = CommitmentVault(DENOMINATIONS).generate(_lamports(args.amount_sol))
    blob = json.dumps(note.to_dict(), indent=2)
    if args.out:
        with open(args.out, "w") as f:
            f.write(blob)
        os.chmod(args.out, 0o600)
        print(f"{C.OK}note written to {args.out}{C.RST} commitment={note.commitment_hex}")
    else:
        print(f"{C.WARN}the note below spends your deposit; store it offline{C.RST}", file=sys.stderr)
        print(blob)
    return 0


def cmd_batch_status(args: argparse.Namespace) -> int:
    st = _get("/batch", args.api_url)
    if st.get("just_settled"):
        print(f"{C.OK}batch just settled{C.RST}")
    state = "ready" if st["is_ready"] else "waiting"
    print(f"batch {st['batch_id']}: {st['pending_count']}/{st['threshold']} deposits ({state})")
    print(f"{C.DIM}settled batches: {st['settled_batches']}, timeout in {st['time_remaining']:.0f}s{C.RST}")
    return 0


def cmd_merkle_status(args: argparse.Namespace) -> int:
    st = _get("/merkle/status", args.api_url)
    print(f"root   {st['root_hex']}")
    print(f"leaves {st['leaves']}/{st['capacity']} (depth {st['depth']})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pool-cli")
    parser.add_argument("--api-url", default=API_URL, help="Pool API base URL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("keygen", help="Create scan/spend keys and print the meta-address")
    p.add_argument("--seed-hex", default=None, help="Deterministic keys from a 32-byte hex seed")
    p.add_argument("--show-secrets", action="store_true", help="Also print the scan and spend secrets")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("stealth-derive", help="Derive a one-time address for a meta-address")
    p.add_argument("meta_address")
    p.set_defaults(func=cmd_stealth_derive)

    p = sub.add_parser("note-new", help="Generate a deposit note")
    p.add_argument("amount_sol", help="Denomination in SOL: " + ", ".join(str(d // LAMPORTS_PER_SOL) for d in DENOMINATIONS))
    p.add_argument("--out", default=None, help="Write the note to this file (mode 600)")
    p.set_defaults(func=cmd_note_new)

    p = sub.add_parser("batch-status", help="Show the current anonymity batch")
    p.set_defaults(func=cmd_batch_status)

    p = sub.add_parser("merkle-status", help="Show the pool Merkle root")
    p.set_defaults(func=cmd_merkle_status)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except PoolError as e:
        print(f"{C.ERR}{e.code.value}: {e.to_user_message()}{C.RST}", file=sys.stderr)
        return 2
    except requests.RequestException as e:
        print(f"{C.ERR}API request failed: {e}{C.RST}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
