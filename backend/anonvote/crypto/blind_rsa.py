"""
RSA Blind Signatures (RSABSSA, RFC 9474)

Suite: SHA-384, PSS padding with MGF1-SHA-384 and a 48-byte salt. The
randomized variant prepends 32 random bytes to the message before
encoding; the deterministic variant signs the message as-is. Clients and
server must agree on the variant or signatures stop cross-verifying.

Flow:
    suite = BlindRSASuite()
    prepared = suite.prepare(b"poll-7-abc")                       # client
    blinding = suite.blind(public_key, prepared)                  # client
    blind_sig = suite.blind_sign(private_key, blinding.blinded_message)  # server
    signature = suite.finalize(public_key, prepared, blind_sig, blinding.inverse)
    suite.verify(public_key, signature, prepared)                 # anyone
"""

import base64
import binascii
import hashlib
import logging
import math
import secrets
from dataclasses import dataclass
from typing import Callable, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.exceptions import InvalidSignature

logger = logging.getLogger(__name__)

SUITE_RANDOMIZED = "RSABSSA-SHA384-PSS-Randomized"
SUITE_DETERMINISTIC = "RSABSSA-SHA384-PSS-Deterministic"

PREPARE_PREFIX_LENGTH = 32
SALT_LENGTH = 48
HASH_LENGTH = 48


class BlindSignatureError(Exception):
    """Blinding, signing or unblinding could not be completed"""
    pass


@dataclass
class BlindingResult:
    """Output of blind(); inverse stays on the client and is never sent"""

    blinded_message: bytes
    inverse: bytes


# ============================================================================
# Encoding helpers
# ============================================================================

def _i2osp(value: int, length: int) -> bytes:
    return value.to_bytes(length, "big")


def _os2ip(data: bytes) -> int:
    return int.from_bytes(data, "big")


def _mgf1_sha384(seed: bytes, length: int) -> bytes:
    output = b""
    counter = 0
    while len(output) < length:
        output += hashlib.sha384(seed + counter.to_bytes(4, "big")).digest()
        counter += 1
    return output[:length]


def _modulus_length(public_key: rsa.RSAPublicKey) -> int:
    return (public_key.key_size + 7) // 8


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def from_base64(value: str) -> bytes:
    """Strict standard-alphabet decode; raises ValueError on bad input"""
    if not isinstance(value, str) or not value:
        raise ValueError("expected a non-empty base64 string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("invalid base64") from e


def hash_token(token: Union[str, bytes]) -> str:
    """SHA-256 hex digest used as the consumed-token key"""
    if isinstance(token, str):
        token = token.encode("utf-8")
    return hashlib.sha256(token).hexdigest()


# ============================================================================
# Key material
# ============================================================================

def generate_key_pair(bits: int = 2048) -> rsa.RSAPrivateKey:
    if bits < 2048:
        raise BlindSignatureError(f"Key size too small: {bits}")
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def load_private_key(pem: Union[str, bytes]) -> rsa.RSAPrivateKey:
    if isinstance(pem, str):
        pem = pem.encode("utf-8")
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise BlindSignatureError("Private key is not an RSA key")
    return key


def load_public_key(pem: Union[str, bytes]) -> rsa.RSAPublicKey:
    if isinstance(pem, str):
        pem = pem.encode("utf-8")
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise BlindSignatureError("Public key is not an RSA key")
    return key


def public_key_pem(public_key: rsa.RSAPublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def private_key_pem(private_key: rsa.RSAPrivateKey) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


# ============================================================================
# Suite
# ============================================================================

class BlindRSASuite:
    """
    RSABSSA-SHA384-PSS blind signature suite

    Randomness sources are injectable so tests can pin the output.
    """

    def __init__(
        self,
        randomize_message: bool = True,
        token_bytes: Callable[[int], bytes] = secrets.token_bytes,
        randbelow: Callable[[int], int] = secrets.randbelow,
    ):
        self.randomize_message = randomize_message
        self._token_bytes = token_bytes
        self._randbelow = randbelow
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def name(self) -> str:
        return SUITE_RANDOMIZED if self.randomize_message else SUITE_DETERMINISTIC

    def prepare(self, message: bytes) -> bytes:
        if not isinstance(message, (bytes, bytearray)):
            raise BlindSignatureError("message must be bytes")
        if not self.randomize_message:
            return bytes(message)
        return self._token_bytes(PREPARE_PREFIX_LENGTH) + bytes(message)

    def _emsa_pss_encode(self, message: bytes, em_bits: int) -> bytes:
        m_hash = hashlib.sha384(message).digest()
        em_len = (em_bits + 7) // 8
        if em_len < HASH_LENGTH + SALT_LENGTH + 2:
            raise BlindSignatureError("Encoding error: modulus too small")

        salt = self._token_bytes(SALT_LENGTH)
        h = hashlib.sha384(b"\x00" * 8 + m_hash + salt).digest()

        ps = b"\x00" * (em_len - SALT_LENGTH - HASH_LENGTH - 2)
        db = ps + b"\x01" + salt
        db_mask = _mgf1_sha384(h, em_len - HASH_LENGTH - 1)
        masked_db = bytearray(a ^ b for a, b in zip(db, db_mask))

        # Clear the bits above em_bits in the leading octet
        masked_db[0] &= 0xFF >> (8 * em_len - em_bits)
        return bytes(masked_db) + h + b"\xbc"

    def blind(self, public_key: rsa.RSAPublicKey, prepared: bytes) -> BlindingResult:
        numbers = public_key.public_numbers()
        n, e = numbers.n, numbers.e
        k = _modulus_length(public_key)

        encoded = self._emsa_pss_encode(prepared, public_key.key_size - 1)
        m = _os2ip(encoded)
        if math.gcd(m, n) != 1:
            raise BlindSignatureError("Invalid input: message not coprime with modulus")

        while True:
            r = self._randbelow(n - 1) + 1
            if math.gcd(r, n) == 1:
                break

        inverse = pow(r, -1, n)
        blinded = (m * pow(r, e, n)) % n
        return BlindingResult(
            blinded_message=_i2osp(blinded, k),
            inverse=_i2osp(inverse, k),
        )

    def blind_sign(self, private_key: rsa.RSAPrivateKey, blinded_message: bytes) -> bytes:
        private_numbers = private_key.private_numbers()
        public_numbers = private_numbers.public_numbers
        n, e, d = public_numbers.n, public_numbers.e, private_numbers.d
        k = _modulus_length(private_key.public_key())

        if len(blinded_message) != k:
            raise BlindSignatureError("Unexpected input size")
        m = _os2ip(blinded_message)
        if m >= n:
            raise BlindSignatureError("Message representative out of range")

        s = pow(m, d, n)
        if pow(s, e, n) != m:
            raise BlindSignatureError("Signing failure")
        return _i2osp(s, k)

    def finalize(
        self,
        public_key: rsa.RSAPublicKey,
        prepared: bytes,
        blind_signature: bytes,
        inverse: bytes,
    ) -> bytes:
        n = public_key.public_numbers().n
        k = _modulus_length(public_key)
        if len(blind_signature) != k or len(inverse) != k:
            raise BlindSignatureError("Unexpected input size")

        z = _os2ip(blind_signature)
        s = (z * _os2ip(inverse)) % n
        signature = _i2osp(s, k)

        if not self.verify(public_key, signature, prepared):
            raise BlindSignatureError("Finalized signature does not verify")
        return signature

    def verify(self, public_key: rsa.RSAPublicKey, signature: bytes, message: bytes) -> bool:
        """RSASSA-PSS verification. Never raises."""
        try:
            public_key.verify(
                signature,
                message,
                padding.PSS(mgf=padding.MGF1(hashes.SHA384()), salt_length=SALT_LENGTH),
                hashes.SHA384(),
            )
            return True
        except InvalidSignature:
            return False
        except Exception as e:
            self.logger.debug(f"Signature verification error: {type(e).__name__}")
            return False
