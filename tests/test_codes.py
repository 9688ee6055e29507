import pytest

from credlife.services import codes
from credlife.services.hashing import (
    hash_password,
    hash_recovery_code,
    hash_secret,
    verify_password,
    verify_recovery_code,
)


def test_otp_is_fixed_width_digits():
    for _ in range(200):
        otp = codes.generate_otp(6)
        assert len(otp) == 6
        assert otp.isdigit()


def test_link_tokens_are_url_safe_and_unique():
    tokens = {codes.generate_link_token() for _ in range(500)}
    assert len(tokens) == 500
    for token in tokens:
        assert len(token) >= 43
        assert set(token) <= set(
            "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
        )


def test_recovery_batch_uses_unambiguous_alphabet():
    batch = codes.generate_recovery_codes(10, 10)
    assert len(batch) == 10
    for code in batch:
        assert len(code) == 10
        assert set(code) <= set(codes.RECOVERY_CODE_ALPHABET)
        assert not set(code) & set("01IO")


def test_large_recovery_batch_has_no_duplicates():
    batch = codes.generate_recovery_codes(10_000, 8)
    assert len(set(batch)) == 10_000


@pytest.mark.parametrize("length", [7, 11])
def test_recovery_code_length_bounds(length):
    with pytest.raises(ValueError):
        codes.generate_recovery_codes(10, length)


def test_normalizers_strip_separators():
    assert codes.normalize_recovery_code(" abcd-efgh 23 ") == "ABCDEFGH23"
    assert codes.normalize_otp(" 123 456 ") == "123456"


def test_hash_binds_purpose_and_identity():
    base = hash_secret("123456", "sms_enroll", 7, key="k")
    assert base == hash_secret("123456", "sms_enroll", 7, key="k")
    assert base != hash_secret("123456", "sms_login", 7, key="k")
    assert base != hash_secret("123456", "sms_enroll", 8, key="k")
    assert base != hash_secret("123456", "sms_enroll", 7, key="other")
    assert "123456" not in base


def test_recovery_code_hash_is_salted_and_identity_bound():
    first = hash_recovery_code("ABCDEFGH23", 1, rounds=4)
    second = hash_recovery_code("ABCDEFGH23", 1, rounds=4)
    assert first != second
    assert verify_recovery_code("ABCDEFGH23", 1, first)
    assert verify_recovery_code("ABCDEFGH23", 1, second)
    assert not verify_recovery_code("ABCDEFGH23", 2, first)
    assert not verify_recovery_code("ABCDEFGH24", 1, first)
    assert not verify_recovery_code("ABCDEFGH23", 1, "not-a-bcrypt-hash")


def test_password_hash_round_trip():
    stored = hash_password("Correct-Horse-42", rounds=4)
    assert verify_password("Correct-Horse-42", stored)
    assert not verify_password("correct-horse-42", stored)
