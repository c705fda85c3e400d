"""
Anonymous vote proofs

A vote proof is a scoped linkable ring signature (LSAG) over the active
members of a group, bound to the group's Merkle root, the poll scope and
the chosen option.

    scope      = H_scalar("scope", poll_id)
    H_scope    = H_point("scope-base", scope)
    nullifier  = x * H_scope

The nullifier depends only on the identity secret and the poll, so the
same identity voting twice on one poll produces the same nullifier while
its nullifiers on different polls are unlinkable. The ring signature
shows the nullifier was made with the secret behind one of the ring's
commitments without revealing which one.

Verification recomputes the root from the listed members, so a proof only
says "some member of the group with this root"; callers compare the root
against the group they expect.
"""

import logging
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Union

from anonvote.crypto import curve
from anonvote.crypto.group import Group, compute_root
from anonvote.crypto.identity import Identity

logger = logging.getLogger(__name__)


@dataclass
class Proof:
    merkle_tree_root: str
    members: List[str]
    nullifier: str
    message: str
    scope: str
    points: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proof":
        """Strict structural parse; raises ValueError on any malformed field"""
        if not isinstance(data, dict):
            raise ValueError("proof must be an object")
        try:
            members = data["members"]
            points = data["points"]
            proof = cls(
                merkle_tree_root=str(data["merkle_tree_root"]),
                members=[str(m) for m in members],
                nullifier=str(data["nullifier"]),
                message=str(data["message"]),
                scope=str(data["scope"]),
                points={
                    "c0": str(points["c0"]),
                    "responses": [str(s) for s in points["responses"]],
                },
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed proof: {e}") from e
        if not isinstance(members, list) or not isinstance(points["responses"], list):
            raise ValueError("malformed proof: members and responses must be lists")
        for value in [proof.merkle_tree_root, proof.nullifier, proof.message, proof.scope,
                      proof.points["c0"], *proof.members, *proof.points["responses"]]:
            if not curve.is_decimal(value):
                raise ValueError("malformed proof: expected decimal integers")
        return proof


def poll_scope(poll_id: Union[int, str]) -> int:
    """External nullifier for a poll"""
    return curve.hash_to_scalar("scope", str(poll_id))


def _scope_base(scope: int):
    return curve.hash_to_point("scope-base", scope)


def _challenge(root: int, scope: int, message: int, nullifier: int, left, right) -> int:
    return curve.hash_to_scalar(
        "vote-challenge",
        root,
        scope,
        message,
        nullifier,
        curve.encode_point(left),
        curve.encode_point(right),
    )


def _commit(response: int, challenge: int, public, scope_base, key_image):
    left = curve.point_add(
        curve.scalar_mult(curve.GENERATOR, response),
        curve.scalar_mult(public, challenge),
    )
    right = curve.point_add(
        curve.scalar_mult(scope_base, response),
        curve.scalar_mult(key_image, challenge),
    )
    return left, right


def generate_nullifier(identity: Identity, poll_id: Union[int, str]) -> int:
    return curve.encode_point(curve.scalar_mult(_scope_base(poll_scope(poll_id)), identity.private_scalar))


def generate_vote_proof(
    identity: Identity,
    group: Group,
    poll_id: Union[int, str],
    option_index: int,
    randbelow: Callable[[int], int] = secrets.randbelow,
) -> Proof:
    """
    Client-side proof that an unnamed group member votes option_index on
    poll_id. Raises ValueError when the identity is not an active member.
    """
    if group.index_of(identity.commitment) < 0:
        raise ValueError("identity is not a member of the group")
    if isinstance(option_index, bool) or not isinstance(option_index, int) or option_index < 0:
        raise ValueError("option index must be a non-negative integer")

    order = curve.CURVE_ORDER
    ring_commitments = group.active_members
    ring = [curve.decode_point(c) for c in ring_commitments]
    size = len(ring)
    signer = ring_commitments.index(identity.commitment)

    root = group.root
    scope = poll_scope(poll_id)
    scope_base = _scope_base(scope)
    x = identity.private_scalar
    key_image = curve.scalar_mult(scope_base, x)
    nullifier = curve.encode_point(key_image)

    challenges = [0] * size
    responses = [0] * size

    alpha = randbelow(order - 1) + 1
    challenges[(signer + 1) % size] = _challenge(
        root, scope, option_index, nullifier,
        curve.scalar_mult(curve.GENERATOR, alpha),
        curve.scalar_mult(scope_base, alpha),
    )

    i = (signer + 1) % size
    while i != signer:
        responses[i] = randbelow(order - 1) + 1
        left, right = _commit(responses[i], challenges[i], ring[i], scope_base, key_image)
        challenges[(i + 1) % size] = _challenge(root, scope, option_index, nullifier, left, right)
        i = (i + 1) % size

    responses[signer] = (alpha - challenges[signer] * x) % order

    return Proof(
        merkle_tree_root=str(root),
        members=[str(m) for m in group.members],
        nullifier=str(nullifier),
        message=str(option_index),
        scope=str(scope),
        points={"c0": str(challenges[0]), "responses": [str(s) for s in responses]},
    )


def _verify(proof: Proof) -> bool:
    order = curve.CURVE_ORDER
    leaves = [int(m) for m in proof.members]
    root = int(proof.merkle_tree_root)
    if not leaves or compute_root(leaves) != root:
        return False

    active = [leaf for leaf in leaves if leaf != 0]
    if len(set(active)) != len(active):
        return False
    responses = [int(s) for s in proof.points["responses"]]
    if not active or len(responses) != len(active):
        return False

    c0 = int(proof.points["c0"])
    if not 0 < c0 < order or any(not 0 <= s < order for s in responses):
        return False

    scope = int(proof.scope)
    message = int(proof.message)
    nullifier = int(proof.nullifier)
    scope_base = _scope_base(scope)
    key_image = curve.decode_point(nullifier)
    ring = [curve.decode_point(leaf) for leaf in active]

    challenge = c0
    for public, response in zip(ring, responses):
        left, right = _commit(response, challenge, public, scope_base, key_image)
        challenge = _challenge(root, scope, message, nullifier, left, right)
    return challenge == c0


def verify_proof(proof: Union[Proof, Dict[str, Any]]) -> bool:
    """Check a vote proof. Never raises."""
    try:
        if not isinstance(proof, Proof):
            proof = Proof.from_dict(proof)
        return _verify(proof)
    except Exception as e:
        logger.debug(f"Proof verification error: {type(e).__name__}")
        return False
