"""Unit tests for password hashing and the strength policy."""

import pytest
from argon2 import PasswordHasher, Type

from heimdall.service.passwords import (
    PasswordConfig,
    PasswordHashError,
    PasswordPolicy,
    WeakPasswordError,
)


@pytest.fixture
def policy():
    return PasswordPolicy(cost=10)


class TestHashing:
    def test_verify_accepts_own_hash(self, policy):
        hashed = policy.hash("S3cure!!Pass")
        assert hashed.startswith("$2")
        assert policy.verify("S3cure!!Pass", hashed) is True

    def test_verify_rejects_wrong_password(self, policy):
        hashed = policy.hash("S3cure!!Pass")
        assert policy.verify("S3cure!!Pasz", hashed) is False

    def test_hashes_are_salted(self, policy):
        assert policy.hash("S3cure!!Pass") != policy.hash("S3cure!!Pass")

    def test_cost_is_encoded_in_hash(self, policy):
        assert policy.hash("S3cure!!Pass").split("$")[2] == "10"

    def test_cost_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            PasswordPolicy(cost=9)
        with pytest.raises(ValueError):
            PasswordPolicy(cost=16)

    def test_malformed_hash_is_server_error(self, policy):
        with pytest.raises(PasswordHashError) as excinfo:
            policy.verify("S3cure!!Pass", "plaintext-not-a-hash")
        assert excinfo.value.kind == "malformed_hash"
        assert excinfo.value.status_code == 500

    def test_long_password_truncated_consistently(self):
        long_policy = PasswordPolicy(cost=10, config=PasswordConfig(max_length=200))
        password = "Ab1!" + "x" * 100
        hashed = long_policy.hash(password)
        assert long_policy.verify(password, hashed)

    def test_legacy_argon2_hash_verifies_and_needs_rehash(self, policy):
        legacy = PasswordHasher(type=Type.ID).hash("Legacy-Pass-1")
        assert policy.verify("Legacy-Pass-1", legacy) is True
        assert policy.verify("Legacy-Pass-2", legacy) is False
        assert policy.needs_rehash(legacy) is True

    def test_needs_rehash_on_cost_change(self, policy):
        hashed = policy.hash("S3cure!!Pass")
        assert policy.needs_rehash(hashed) is False
        assert PasswordPolicy(cost=11).needs_rehash(hashed) is True


class TestStrength:
    def test_min_length_boundary(self, policy):
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_strength("Ab1!xyz")
        assert excinfo.value.kind == "too_short"
        policy.check_strength("Ab1!xyzw")

    def test_max_length_boundary(self, policy):
        policy.check_strength("Ab1!" + "x" * 124)
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_strength("Ab1!" + "x" * 125)
        assert excinfo.value.kind == "too_long"

    def test_common_password_rejected(self):
        policy = PasswordPolicy(cost=10, config=PasswordConfig(min_length=6, min_classes=0))
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_strength("Password")
        assert excinfo.value.kind == "common"

    def test_non_printable_rejected(self, policy):
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_strength("Ab1!xyz\x00w")
        assert excinfo.value.kind == "invalid_chars"

    def test_too_few_character_classes(self, policy):
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_strength("lowercaseonly1")
        assert excinfo.value.kind == "weak"
        assert excinfo.value.error_code == "weak_password"
        assert excinfo.value.status_code == 400

    def test_required_class_enforced(self):
        policy = PasswordPolicy(cost=10, config=PasswordConfig(require_symbol=True, min_classes=0))
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_strength("NoSymbols123")
        assert "symbol" in excinfo.value.message

    def test_hash_runs_strength_check(self, policy):
        with pytest.raises(WeakPasswordError):
            policy.hash("short")

    def test_password_containing_username_rejected(self, policy):
        with pytest.raises(WeakPasswordError) as excinfo:
            policy.check_for_user("Alice-2024!", "alice", "ops@example.com")
        assert excinfo.value.kind == "contains_identifier"

    def test_password_containing_email_local_part_rejected(self, policy):
        with pytest.raises(WeakPasswordError):
            policy.check_for_user("xOps-Team-9", "alice", "ops-team@example.com")


class TestScore:
    def test_short_password_scores_zero(self, policy):
        assert policy.score("Ab1!") == 0

    def test_varied_password_scores_higher_than_pattern(self, policy):
        assert policy.score("Tidal-Lantern-42") > policy.score("abcdefgh")

    def test_score_is_bounded(self, policy):
        assert 0 <= policy.score("Zq8#" * 30) <= 100

    @pytest.mark.parametrize(
        "lower,mixed",
        [
            ("qwertyUIOP1!", "QWERTYuiop1!"),
            ("abcX9!zz", "ABCx9!zz"),
            ("asdfGH12#k", "ASDFgh12#k"),
        ],
    )
    def test_common_patterns_ignore_case(self, policy, lower, mixed):
        assert policy.score(mixed) == policy.score(lower)

    def test_uppercase_keyboard_walk_is_penalised(self, policy):
        assert policy.score("QWERTYuiop1!") < policy.score("PLUMBYuiop1!")
