"""
Voter identities

An identity is a client-held secret. Its private scalar x is derived from
the secret by hashing, and the public commitment is the compressed
encoding of x*G. Recovering the secret from the commitment is a discrete
log problem on BN254.
"""

import secrets
from dataclasses import dataclass, field
from typing import Union

from anonvote.crypto import curve


@dataclass(frozen=True)
class Identity:
    secret: str
    commitment: int
    private_scalar: int = field(repr=False)

    @property
    def public_point(self):
        return curve.scalar_mult(curve.GENERATOR, self.private_scalar)


def derive_private_scalar(secret: Union[str, bytes]) -> int:
    return curve.hash_to_scalar("identity", secret)


def generate_identity(secret: Union[str, bytes, None] = None) -> Identity:
    """
    Build an identity from a secret; the same secret always yields the
    same commitment. A fresh random secret is drawn when none is given.
    """
    if secret is None:
        secret = secrets.token_hex(32)
    if isinstance(secret, bytes):
        secret = secret.hex()
    if not secret:
        raise ValueError("identity secret must not be empty")

    x = derive_private_scalar(secret)
    commitment = curve.encode_point(curve.scalar_mult(curve.GENERATOR, x))
    return Identity(secret=secret, commitment=commitment, private_scalar=x)


def parse_commitment(value: Union[str, int]) -> int:
    """Parse a decimal commitment and check it decodes to a curve point"""
    if isinstance(value, bool):
        raise ValueError("commitment must be a decimal integer")
    if isinstance(value, str):
        if not curve.is_decimal(value):
            raise ValueError("commitment must be a decimal integer")
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValueError("commitment must be a positive integer")
    curve.decode_point(value)
    return value
