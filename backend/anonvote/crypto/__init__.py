"""
Cryptographic building blocks: RSA blind signatures, BN254 identities,
Merkle groups and linkable vote proofs
"""

from anonvote.crypto.blind_rsa import BlindRSASuite, BlindingResult, BlindSignatureError, hash_token
from anonvote.crypto.identity import Identity, generate_identity
from anonvote.crypto.group import Group, MerkleProof, generate_group_id
from anonvote.crypto.proof import Proof, generate_vote_proof, poll_scope, verify_proof

__all__ = [
    "BlindRSASuite",
    "BlindingResult",
    "BlindSignatureError",
    "hash_token",
    "Identity",
    "generate_identity",
    "Group",
    "MerkleProof",
    "generate_group_id",
    "Proof",
    "generate_vote_proof",
    "poll_scope",
    "verify_proof",
]
