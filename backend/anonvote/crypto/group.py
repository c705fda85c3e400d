"""
Voter groups as lean incremental Merkle trees

Leaves are commitments in insertion order. A level with an odd node count
promotes its last node unchanged to the next level, so the tree grows one
leaf at a time without padding. Removal writes 0 into the member's slot;
slots are never reused or renumbered, so a leaf index is a permanent
handle for the member.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from anonvote.crypto import curve

EMPTY_ROOT = 0
NOT_FOUND = -1


@dataclass
class MerkleProof:
    root: int
    leaf: int
    index: int
    siblings: List[int] = field(default_factory=list)
    path_indices: List[int] = field(default_factory=list)


def hash_pair(left: int, right: int) -> int:
    return curve.hash_to_field("merkle", left, right)


def compute_root(leaves: List[int]) -> int:
    """Root of the ordered leaf list; 0 for an empty list"""
    if not leaves:
        return EMPTY_ROOT
    nodes = list(leaves)
    while len(nodes) > 1:
        next_level = []
        for i in range(0, len(nodes), 2):
            if i + 1 < len(nodes):
                next_level.append(hash_pair(nodes[i], nodes[i + 1]))
            else:
                next_level.append(nodes[i])
        nodes = next_level
    return nodes[0]


def generate_group_id(role_id: str, category: Union[str, Enum]) -> str:
    """Stable group key derived from the external role and category"""
    if isinstance(category, Enum):
        category = category.value
    digest = hashlib.sha256(f"anonvote-group:{role_id}:{category}".encode("utf-8"))
    return digest.hexdigest()


class Group:
    """
    Ordered member log with tombstones

    Usage:
        group = Group()
        group.add_member(identity.commitment)
        proof = group.generate_merkle_proof(identity.commitment)
        assert Group.verify_merkle_proof(proof)
    """

    def __init__(self, members: Optional[Iterable[int]] = None):
        self._leaves: List[int] = []
        self._positions: Dict[int, int] = {}
        self._root: Optional[int] = None
        for leaf in members or []:
            leaf = int(leaf)
            if leaf == 0:
                self._leaves.append(0)
                continue
            if leaf in self._positions:
                raise ValueError("duplicate member in leaf list")
            self._positions[leaf] = len(self._leaves)
            self._leaves.append(leaf)

    @property
    def members(self) -> List[int]:
        """Ordered leaves, 0 where a member was removed"""
        return list(self._leaves)

    @property
    def size(self) -> int:
        return len(self._leaves)

    @property
    def member_count(self) -> int:
        return len(self._positions)

    @property
    def active_members(self) -> List[int]:
        return [leaf for leaf in self._leaves if leaf != 0]

    @property
    def root(self) -> int:
        if self._root is None:
            self._root = compute_root(self._leaves)
        return self._root

    def index_of(self, commitment: int) -> int:
        return self._positions.get(int(commitment), NOT_FOUND)

    def add_member(self, commitment: int) -> int:
        """Append a commitment; raises ValueError if it is already an active member"""
        commitment = int(commitment)
        if commitment <= 0:
            raise ValueError("commitment must be a positive integer")
        if commitment in self._positions:
            raise ValueError("commitment is already a member")
        index = len(self._leaves)
        self._leaves.append(commitment)
        self._positions[commitment] = index
        self._root = None
        return index

    def add_members(self, commitments: Iterable[int]) -> List[int]:
        return [self.add_member(c) for c in commitments]

    def remove_member(self, commitment: int) -> int:
        """Tombstone a member's slot; raises ValueError for a non-member"""
        index = self.index_of(commitment)
        if index == NOT_FOUND:
            raise ValueError("commitment is not a member")
        self._leaves[index] = 0
        del self._positions[int(commitment)]
        self._root = None
        return index

    def generate_merkle_proof(self, commitment: int) -> MerkleProof:
        index = self.index_of(commitment)
        if index == NOT_FOUND:
            raise ValueError("commitment is not a member")

        siblings: List[int] = []
        path_indices: List[int] = []
        nodes = list(self._leaves)
        position = index
        while len(nodes) > 1:
            if position % 2 == 1:
                siblings.append(nodes[position - 1])
                path_indices.append(1)
            elif position + 1 < len(nodes):
                siblings.append(nodes[position + 1])
                path_indices.append(0)
            # otherwise the node is promoted and no sibling is recorded
            next_level = []
            for i in range(0, len(nodes), 2):
                if i + 1 < len(nodes):
                    next_level.append(hash_pair(nodes[i], nodes[i + 1]))
                else:
                    next_level.append(nodes[i])
            nodes = next_level
            position //= 2

        return MerkleProof(
            root=nodes[0],
            leaf=int(commitment),
            index=index,
            siblings=siblings,
            path_indices=path_indices,
        )

    @staticmethod
    def verify_merkle_proof(proof: MerkleProof) -> bool:
        if len(proof.siblings) != len(proof.path_indices):
            return False
        node = proof.leaf
        for sibling, direction in zip(proof.siblings, proof.path_indices):
            if direction:
                node = hash_pair(sibling, node)
            else:
                node = hash_pair(node, sibling)
        return node == proof.root
