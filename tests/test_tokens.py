import pytest

from credlife.services.tokens import (
    TokenError,
    create_access_token,
    create_mfa_token,
    decode_access_token,
    decode_mfa_token,
)


def test_access_token_round_trip():
    data = decode_access_token(create_access_token(5, "session-abc"))
    assert data.user_id == 5
    assert data.session_id == "session-abc"


def test_mfa_token_carries_method():
    data = decode_mfa_token(create_mfa_token(5, "sms"))
    assert data.user_id == 5
    assert data.method == "sms"


def test_token_types_are_not_interchangeable():
    with pytest.raises(TokenError):
        decode_access_token(create_mfa_token(5, "totp"))
    with pytest.raises(TokenError):
        decode_mfa_token(create_access_token(5, "session-abc"))


@pytest.mark.parametrize("token", ["", "not-a-jwt"])
def test_garbage_tokens_are_rejected(token):
    with pytest.raises(TokenError):
        decode_access_token(token)
