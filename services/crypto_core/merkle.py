# services/crypto_core/merkle.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from services.crypto_core.field import FieldHasher, bytes_to_field
from services.crypto_core.poseidon import DEFAULT_HASHER
from services.errors import MerkleTreeFullError, ValidationError

LOG = logging.getLogger("merkle")
LOG.addHandler(logging.NullHandler())

DEFAULT_DEPTH = 8


def zero_hashes(depth: int, hasher: FieldHasher = DEFAULT_HASHER) -> List[int]:
    """Empty-subtree digests per level: z[0] = 0, z[i] = H(z[i-1], z[i-1])."""
    zeros = [0]
    for _ in range(depth):
        zeros.append(hasher.hash(zeros[-1], zeros[-1]))
    return zeros


@dataclass
class MerkleProof:
    siblings: List[int]
    path_indices: List[int]  # LSB first; 0 = node is a left child

    def to_dict(self) -> dict:
        return {
            "siblings": [format(s, "x").zfill(64) for s in self.siblings],
            "pathIndices": list(self.path_indices),
        }

    @classmethod
    def from_dict(cls, d: Mapping) -> "MerkleProof":
        return cls(
            siblings=[int(s, 16) for s in d["siblings"]],
            path_indices=[int(b) for b in d["pathIndices"]],
        )


@dataclass
class InsertResult:
    leaf_index: int
    root: int
    proof: MerkleProof = field(repr=False)


def compute_root(leaf: int, proof: MerkleProof, hasher: FieldHasher = DEFAULT_HASHER) -> int:
    cur = leaf
    for sibling, bit in zip(proof.siblings, proof.path_indices):
        cur = hasher.hash(sibling, cur) if bit else hasher.hash(cur, sibling)
    return cur


def verify_proof(leaf: int, proof: MerkleProof, root: int, hasher: FieldHasher = DEFAULT_HASHER) -> bool:
    if len(proof.siblings) != len(proof.path_indices):
        return False
    return compute_root(leaf, proof, hasher) == root


def _as_leaf(commitment) -> int:
    if isinstance(commitment, (bytes, bytearray)):
        return bytes_to_field(bytes(commitment))
    return int(commitment)


class MerkleAccumulator:
    """
    Append-only incremental Merkle tree using the filled-subtree algorithm.

    Leaves are field elements (commitments). Insertion order is leaf index.
    The tree keeps every leaf so proof(i) can be produced for any inserted
    leaf against the current root; insert() additionally returns the path that
    was valid at insertion time.
    """

    def __init__(self, depth: int = DEFAULT_DEPTH, hasher: FieldHasher = DEFAULT_HASHER) -> None:
        if depth < 1:
            raise ValueError("depth must be >= 1")
        self.depth = depth
        self.hasher = hasher
        self.zeros = zero_hashes(depth, hasher)
        self.filled_subtrees: List[int] = list(self.zeros[:depth])
        self.leaves: List[int] = []
        self._size = 0
        # False once restored from a snapshot that omitted the leaf list
        self._has_leaves = True
        self._root = self.zeros[depth]
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def next_index(self) -> int:
        return self._size

    def __len__(self) -> int:
        return self._size

    def root(self) -> int:
        return self._root

    def insert(self, commitment) -> InsertResult:
        leaf = _as_leaf(commitment)
        with self._lock:
            index = self._size
            if index >= self.capacity:
                raise MerkleTreeFullError()

            siblings: List[int] = []
            bits: List[int] = []
            cur = leaf
            idx = index
            for level in range(self.depth):
                if idx % 2 == 0:
                    siblings.append(self.zeros[level])
                    bits.append(0)
                    self.filled_subtrees[level] = cur
                    cur = self.hasher.hash(cur, self.zeros[level])
                else:
                    siblings.append(self.filled_subtrees[level])
                    bits.append(1)
                    cur = self.hasher.hash(self.filled_subtrees[level], cur)
                idx //= 2

            if self._has_leaves:
                self.leaves.append(leaf)
            self._size += 1
            self._root = cur

        LOG.debug(f"inserted leaf {index}, tree size {index + 1}/{self.capacity}")
        return InsertResult(leaf_index=index, root=cur, proof=MerkleProof(siblings, bits))

    def proof(self, leaf_index: int) -> MerkleProof:
        """Path for an inserted leaf against the current root."""
        if not self._has_leaves:
            raise ValidationError("tree was restored without its leaves; rebuild from the ledger")
        if not 0 <= leaf_index < self._size:
            raise IndexError(f"leaf {leaf_index} not in tree (size {self._size})")
        siblings: List[int] = []
        bits: List[int] = []
        level_nodes = list(self.leaves)
        idx = leaf_index
        for level in range(self.depth):
            sib_idx = idx ^ 1
            siblings.append(level_nodes[sib_idx] if sib_idx < len(level_nodes) else self.zeros[level])
            bits.append(idx & 1)
            nxt = []
            for i in range(0, len(level_nodes), 2):
                left = level_nodes[i]
                right = level_nodes[i + 1] if i + 1 < len(level_nodes) else self.zeros[level]
                nxt.append(self.hasher.hash(left, right))
            level_nodes = nxt
            idx //= 2
        return MerkleProof(siblings, bits)

    def find_proof(self, commitment) -> Optional[Tuple[int, MerkleProof]]:
        leaf = _as_leaf(commitment)
        try:
            i = self.leaves.index(leaf)
        except ValueError:
            return None
        return i, self.proof(i)

    # ---------- snapshot ----------
    def export_state(self, include_leaves: bool = True) -> Dict:
        state = {
            "depth": self.depth,
            "nextIndex": self._size,
            "root": format(self._root, "x").zfill(64),
            "filledSubtrees": [format(x, "x").zfill(64) for x in self.filled_subtrees],
        }
        if include_leaves and self._has_leaves:
            state["leaves"] = [format(x, "x").zfill(64) for x in self.leaves]
        return state

    @classmethod
    def from_state(cls, state: Mapping, hasher: FieldHasher = DEFAULT_HASHER) -> "MerkleAccumulator":
        tree = cls(depth=int(state["depth"]), hasher=hasher)
        next_index = int(state.get("nextIndex", 0))
        if "leaves" in state:
            leaves = [int(x, 16) for x in state["leaves"]]
            if len(leaves) != next_index:
                raise ValidationError("snapshot leaf count does not match nextIndex")
            for leaf in leaves:
                tree.insert(leaf)
        else:
            # accumulator only: appends keep working, proofs for old leaves do not
            filled = [int(x, 16) for x in state["filledSubtrees"]]
            if len(filled) != tree.depth:
                raise ValidationError("snapshot filledSubtrees has the wrong depth")
            tree.filled_subtrees = filled
            tree._root = int(state["root"], 16)
            tree._size = next_index
            tree._has_leaves = next_index == 0
        if int(state["root"], 16) != tree.root():
            raise ValidationError("snapshot root does not match its leaves")
        return tree


def rebuild_from_leaves(
    leaves_by_index: Mapping[int, int],
    depth: int = DEFAULT_DEPTH,
    expected_root: Optional[int] = None,
    hasher: FieldHasher = DEFAULT_HASHER,
) -> MerkleAccumulator:
    """Rebuild a tree from (leaf_index -> commitment) as read from the ledger."""
    tree = MerkleAccumulator(depth=depth, hasher=hasher)
    for expected, index in enumerate(sorted(leaves_by_index)):
        if index != expected:
            raise ValidationError(f"missing leaf at index {expected}")
        tree.insert(leaves_by_index[index])
    if expected_root is not None and tree.root() != expected_root:
        LOG.warning("rebuilt root does not match the on-chain root")
        raise ValidationError("rebuilt root does not match expected root")
    return tree


__all__ = [
    "DEFAULT_DEPTH",
    "zero_hashes",
    "MerkleProof",
    "InsertResult",
    "compute_root",
    "verify_proof",
    "MerkleAccumulator",
    "rebuild_from_leaves",
]
