"""Tests for webhook signature verification.

Covers the fixed GitHub vector, determinism, and rejection of any
single-byte change to either the payload or the signature.
"""

import pytest
from hypothesis import given, settings, strategies as st

from src.autopr.webhook.signature import (
    SIGNATURE_PREFIX,
    SignatureVerifier,
    compute_signature,
    verify_signature,
)


SECRET = "s3cret"
PAYLOAD = b'{"zen":"ok"}'
EXPECTED = "sha256=e783d601aedcf89273a3ee81436eb2a40ed376765bd34c7a7e40d0cecba9a6c3"


def _flip_last_hex_char(signature: str) -> str:
    last = signature[-1]
    return signature[:-1] + ("0" if last != "0" else "1")


class TestKnownVector:
    def test_compute_signature_matches_known_digest(self):
        assert compute_signature(PAYLOAD, SECRET) == EXPECTED

    def test_known_signature_verifies(self):
        assert verify_signature(PAYLOAD, EXPECTED, SECRET) is True

    def test_changed_last_hex_char_is_rejected(self):
        assert verify_signature(PAYLOAD, _flip_last_hex_char(EXPECTED), SECRET) is False

    def test_reserialized_payload_is_rejected(self):
        # Same JSON value, different bytes
        assert verify_signature(b'{"zen": "ok"}', EXPECTED, SECRET) is False


class TestMalformedHeaders:
    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "e783d601aedcf89273a3ee81436eb2a40ed376765bd34c7a7e40d0cecba9a6c3",
            "sha1=e783d601aedcf89273a3ee81436eb2a40ed376765bd34c7a7e40d0cecba9a6c3",
            "sha256=",
            "sha256=not-hex",
            "sha256=é783d601aedcf89273a3ee81436eb2a40ed376765bd34c7a7e40d0cecba9a6c3",
        ],
    )
    def test_malformed_header_returns_false(self, header):
        assert verify_signature(PAYLOAD, header, SECRET) is False

    def test_wrong_secret_is_rejected(self):
        assert verify_signature(PAYLOAD, EXPECTED, "other") is False


class TestSignatureVerifier:
    def test_empty_secret_is_rejected_at_construction(self):
        with pytest.raises(ValueError):
            SignatureVerifier("")

    def test_whitespace_secret_is_rejected_at_construction(self):
        with pytest.raises(ValueError):
            SignatureVerifier("   ")

    def test_verify_uses_bound_secret(self):
        verifier = SignatureVerifier(SECRET)
        assert verifier.verify(PAYLOAD, EXPECTED)
        assert not verifier.verify(PAYLOAD + b" ", EXPECTED)


class TestSignatureProperties:
    @settings(max_examples=100)
    @given(payload=st.binary(max_size=512), secret=st.text(min_size=1, max_size=40))
    def test_signature_is_deterministic_and_verifies(self, payload, secret):
        first = compute_signature(payload, secret)
        second = compute_signature(payload, secret)

        assert first == second
        assert first.startswith(SIGNATURE_PREFIX)
        assert len(first) == len(SIGNATURE_PREFIX) + 64
        assert verify_signature(payload, first, secret)

    @settings(max_examples=100)
    @given(payload=st.binary(min_size=1, max_size=256), data=st.data())
    def test_any_single_byte_flip_in_payload_is_rejected(self, payload, data):
        signature = compute_signature(payload, SECRET)
        index = data.draw(st.integers(min_value=0, max_value=len(payload) - 1))
        mask = data.draw(st.integers(min_value=1, max_value=255))

        tampered = bytearray(payload)
        tampered[index] ^= mask

        assert not verify_signature(bytes(tampered), signature, SECRET)

    @settings(max_examples=100)
    @given(payload=st.binary(max_size=256), data=st.data())
    def test_any_single_hex_char_change_in_signature_is_rejected(self, payload, data):
        signature = compute_signature(payload, SECRET)
        index = data.draw(
            st.integers(min_value=len(SIGNATURE_PREFIX), max_value=len(signature) - 1)
        )
        replacement = data.draw(
            st.sampled_from("0123456789abcdef").filter(lambda c: c != signature[index])
        )
        tampered = signature[:index] + replacement + signature[index + 1:]

        assert not verify_signature(payload, tampered, SECRET)
