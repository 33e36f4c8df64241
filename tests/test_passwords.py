"""
tests/test_passwords.py -- Unit tests for auth/passwords.py and auth/validation.py.

Covers:
  - bcrypt hash/verify, per-hash salt, configured cost factor
  - Malformed stored hashes verify as a mismatch
  - dummy_verify() runs without an account
  - Password strength, username and email rules
"""

from __future__ import annotations

import pytest

from auth.passwords import MAX_PASSWORD_LENGTH, PasswordHasher, password_problems
from auth.validation import email_problems, username_problems


@pytest.fixture(scope="module")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


class TestPasswordHasher:
    def test_hash_then_verify(self, hasher):
        hashed = hasher.hash("Correct-Horse-7")
        assert hashed != "Correct-Horse-7"
        assert hasher.verify("Correct-Horse-7", hashed)
        assert not hasher.verify("correct-horse-7", hashed)

    def test_same_password_gets_distinct_salts(self, hasher):
        assert hasher.hash("Correct-Horse-7") != hasher.hash("Correct-Horse-7")

    def test_cost_factor_is_encoded_in_hash(self, hasher):
        assert hasher.hash("Correct-Horse-7").startswith("$2b$04$")

    @pytest.mark.parametrize("stored", ["", "not-a-bcrypt-hash", "$2b$04$short"])
    def test_malformed_hash_is_a_mismatch(self, hasher, stored):
        assert hasher.verify("anything", stored) is False

    def test_password_longer_than_72_bytes(self, hasher):
        """Long passwords hash and verify instead of raising."""
        long_password = "Aa1!" * 30
        assert hasher.verify(long_password, hasher.hash(long_password))

    def test_dummy_verify_returns_nothing(self, hasher):
        assert hasher.dummy_verify("whatever") is None


class TestPasswordPolicy:
    def test_strong_password_has_no_problems(self):
        assert password_problems("Correct-Horse-7") == []

    @pytest.mark.parametrize(
        "password,fragment",
        [
            ("Sh0rt!", "at least 8"),
            ("alllowercase1!", "uppercase"),
            ("ALLUPPERCASE1!", "lowercase"),
            ("NoDigitsHere!", "digit"),
            ("NoSpecial123", "special"),
        ],
    )
    def test_each_rule_reports_itself(self, password, fragment):
        problems = password_problems(password)
        assert len(problems) == 1
        assert fragment in problems[0]

    def test_too_long(self):
        problems = password_problems("Aa1!" * (MAX_PASSWORD_LENGTH // 4 + 1))
        assert any("must not exceed" in p for p in problems)


class TestFieldRules:
    @pytest.mark.parametrize("username", ["bob", "alice.smith", "ops_admin-2"])
    def test_valid_usernames(self, username):
        assert username_problems(username) == []

    @pytest.mark.parametrize("username", ["ab", "x" * 51, "has space", "semi;colon", "bob\n"])
    def test_invalid_usernames(self, username):
        assert username_problems(username)

    @pytest.mark.parametrize("email", ["a@b.co", "first.last@example.com"])
    def test_valid_emails(self, email):
        assert email_problems(email) == []

    @pytest.mark.parametrize("email", ["plain", "a@b", "a@@b.com", "a b@c.com", "a@b.com\n"])
    def test_invalid_emails(self, email):
        assert email_problems(email)
