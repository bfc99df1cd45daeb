"""
Tests for signature verification and answer sanitizing.
"""

import hashlib

import pytest

from gateway.utils import compute_signature, sanitize_answer, verify_signature


SECRET = "test-token"
TIMESTAMP = "1700000000"
NONCE = "84732911"


def _mutate(signature: str, index: int) -> str:
    replacement = "0" if signature[index] != "0" else "1"
    return signature[:index] + replacement + signature[index + 1:]


class TestComputeSignature:
    """Test the signing half."""

    def test_matches_sorted_sha1(self):
        """Signature is SHA-1 over the lexicographically sorted values."""
        expected = hashlib.sha1("".join(sorted([SECRET, TIMESTAMP, NONCE])).encode()).hexdigest()
        assert compute_signature(SECRET, TIMESTAMP, NONCE) == expected

    def test_order_of_arguments_does_not_matter(self):
        """Sorting makes the digest independent of argument order."""
        assert compute_signature(SECRET, TIMESTAMP, NONCE) == compute_signature(NONCE, SECRET, TIMESTAMP)


class TestVerifySignature:
    """Test verification, including fail-closed behavior."""

    @pytest.mark.parametrize("secret,timestamp,nonce", [
        ("test-token", "1700000000", "84732911"),
        ("abc", "1", "2"),
        ("token with spaces", "1699999999", "nonce-xyz"),
    ])
    def test_valid_signature(self, secret, timestamp, nonce):
        signature = compute_signature(secret, timestamp, nonce)
        assert verify_signature(secret, signature, timestamp, nonce) is True

    def test_upper_case_signature_accepted(self):
        """Hex comparison is case-insensitive."""
        signature = compute_signature(SECRET, TIMESTAMP, NONCE).upper()
        assert verify_signature(SECRET, signature, TIMESTAMP, NONCE) is True

    def test_every_single_character_mutation_rejected(self):
        signature = compute_signature(SECRET, TIMESTAMP, NONCE)
        for index in range(len(signature)):
            assert verify_signature(SECRET, _mutate(signature, index), TIMESTAMP, NONCE) is False

    def test_wrong_secret_rejected(self):
        signature = compute_signature("other-token", TIMESTAMP, NONCE)
        assert verify_signature(SECRET, signature, TIMESTAMP, NONCE) is False

    @pytest.mark.parametrize("field", ["secret", "signature", "timestamp", "nonce"])
    @pytest.mark.parametrize("blank", [None, "", "   "])
    def test_blank_input_fails_closed(self, field, blank):
        """Any missing or blank value returns False and never raises."""
        values = {
            "secret": SECRET,
            "signature": compute_signature(SECRET, TIMESTAMP, NONCE),
            "timestamp": TIMESTAMP,
            "nonce": NONCE,
        }
        values[field] = blank
        assert verify_signature(**values) is False


class TestSanitizeAnswer:
    """Test cleaning of answers before archival."""

    def test_strips_control_characters(self):
        assert sanitize_answer("line one\nline two\r\n\tend") == "line oneline twoend"

    def test_removes_leading_assistant_label(self):
        assert sanitize_answer("AI: hello there") == "hello there"

    def test_label_after_newline_is_removed(self):
        """Control characters go first, so a label behind a newline is still leading."""
        assert sanitize_answer("\nAI: hi") == "hi"

    def test_label_in_the_middle_is_kept(self):
        assert sanitize_answer("Ask the AI: it knows") == "Ask the AI: it knows"

    def test_plain_answer_unchanged(self):
        assert sanitize_answer("hi there") == "hi there"
