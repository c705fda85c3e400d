"""
RSA blind signature suite tests
"""

import pytest

from anonvote.crypto import blind_rsa
from anonvote.crypto.blind_rsa import BlindRSASuite, BlindSignatureError


def _sign_round_trip(suite, private_key, message: bytes):
    public_key = private_key.public_key()
    prepared = suite.prepare(message)
    blinding = suite.blind(public_key, prepared)
    blind_sig = suite.blind_sign(private_key, blinding.blinded_message)
    signature = suite.finalize(public_key, prepared, blind_sig, blinding.inverse)
    return prepared, blinding, blind_sig, signature


def test_round_trip_verifies(rsa_private_key):
    """Finalized signature verifies over the prepared message"""
    suite = BlindRSASuite()
    prepared, _, _, signature = _sign_round_trip(suite, rsa_private_key, b"poll-1-abc")

    assert len(prepared) == blind_rsa.PREPARE_PREFIX_LENGTH + len(b"poll-1-abc")
    assert prepared.endswith(b"poll-1-abc")
    assert suite.verify(rsa_private_key.public_key(), signature, prepared) is True


def test_signer_never_sees_final_signature(rsa_private_key):
    """Blinded message and blind signature are unrelated to what is redeemed"""
    suite = BlindRSASuite()
    prepared, blinding, blind_sig, signature = _sign_round_trip(suite, rsa_private_key, b"poll-1-abc")

    assert blind_sig != signature
    assert prepared not in blinding.blinded_message

    # Blinding the same message twice gives unrelated values
    again = suite.blind(rsa_private_key.public_key(), prepared)
    assert again.blinded_message != blinding.blinded_message


def test_deterministic_suite_signs_message_as_is(rsa_private_key):
    suite = BlindRSASuite(randomize_message=False)
    assert suite.name == blind_rsa.SUITE_DETERMINISTIC
    assert suite.prepare(b"poll-2-xyz") == b"poll-2-xyz"

    _, _, _, signature = _sign_round_trip(suite, rsa_private_key, b"poll-2-xyz")
    assert suite.verify(rsa_private_key.public_key(), signature, b"poll-2-xyz")


def test_verify_fails_closed(rsa_private_key):
    """Wrong message, wrong key or garbage input yields False, never an exception"""
    suite = BlindRSASuite()
    prepared, _, _, signature = _sign_round_trip(suite, rsa_private_key, b"poll-1-abc")
    public_key = rsa_private_key.public_key()
    other_key = blind_rsa.generate_key_pair(2048).public_key()

    assert suite.verify(public_key, signature, prepared + b"x") is False
    assert suite.verify(other_key, signature, prepared) is False
    assert suite.verify(public_key, b"\x00" * 5, prepared) is False
    assert suite.verify(public_key, b"", prepared) is False


def test_blind_sign_rejects_bad_input(rsa_private_key):
    suite = BlindRSASuite()
    n = rsa_private_key.public_key().public_numbers().n
    k = (rsa_private_key.key_size + 7) // 8

    with pytest.raises(BlindSignatureError):
        suite.blind_sign(rsa_private_key, b"\x01" * (k - 1))

    with pytest.raises(BlindSignatureError):
        suite.blind_sign(rsa_private_key, n.to_bytes(k, "big"))


def test_finalize_with_wrong_inverse_raises(rsa_private_key):
    suite = BlindRSASuite()
    public_key = rsa_private_key.public_key()
    prepared = suite.prepare(b"poll-1-abc")
    blinding = suite.blind(public_key, prepared)
    other = suite.blind(public_key, prepared)
    blind_sig = suite.blind_sign(rsa_private_key, blinding.blinded_message)

    with pytest.raises(BlindSignatureError):
        suite.finalize(public_key, prepared, blind_sig, other.inverse)


def test_injected_randomness_is_reproducible(rsa_private_key):
    """Pinned randomness makes prepare and blind deterministic"""
    public_key = rsa_private_key.public_key()

    def make_suite():
        return BlindRSASuite(token_bytes=lambda n: b"\x07" * n, randbelow=lambda n: 123456789)

    first, second = make_suite(), make_suite()
    prepared = first.prepare(b"poll-3-nonce")
    assert prepared == second.prepare(b"poll-3-nonce")
    assert first.blind(public_key, prepared) == second.blind(public_key, prepared)


def test_small_keys_rejected():
    with pytest.raises(BlindSignatureError):
        blind_rsa.generate_key_pair(1024)


def test_key_pem_round_trip(rsa_private_key):
    pem = blind_rsa.public_key_pem(rsa_private_key.public_key())
    loaded = blind_rsa.load_public_key(pem)
    assert loaded.public_numbers() == rsa_private_key.public_key().public_numbers()

    private = blind_rsa.load_private_key(blind_rsa.private_key_pem(rsa_private_key))
    assert private.private_numbers() == rsa_private_key.private_numbers()


def test_base64_decoding_is_strict():
    assert blind_rsa.from_base64(blind_rsa.to_base64(b"\x00\x01\xff")) == b"\x00\x01\xff"
    for bad in ["", "not base64!", "abc", "é"]:
        with pytest.raises(ValueError):
            blind_rsa.from_base64(bad)


def test_hash_token():
    assert blind_rsa.hash_token("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert blind_rsa.hash_token(b"abc") == blind_rsa.hash_token("abc")
