import pytest
from itsdangerous import URLSafeTimedSerializer

from cinefans.auth import (
    SessionUser, decode_session_token, issue_session_token,
)
from cinefans.errors import Unauthorized
from cinefans.helpers import (
    format_cents, is_valid_email, percent_of, to_cents, to_iso, to_units,
)


def test_token_roundtrip():
    user = SessionUser(user_id="u-1", email="a@b.co", is_admin=True,
                       membership_id="tier-gold")
    assert decode_session_token(issue_session_token(user)) == user


def test_token_rejected():
    with pytest.raises(Unauthorized) as exc:
        decode_session_token("garbage")
    assert exc.value.reason == "Invalid session"

    forged = URLSafeTimedSerializer(
        "someone-elses-secret", salt="cinefans.session"
    ).dumps({"user_id": "u-1"})
    with pytest.raises(Unauthorized):
        decode_session_token(forged)


def test_token_expired():
    token = issue_session_token(SessionUser(user_id="u-1", email=""))
    with pytest.raises(Unauthorized) as exc:
        decode_session_token(token, max_age=-1)
    assert exc.value.reason == "Session expired"


def test_helpers():
    assert percent_of(3000, 10) == 300
    assert percent_of(5, 10) == 1
    assert percent_of(4, 10) == 0
    assert is_valid_email(" bob@example.com ")
    assert not is_valid_email("bob@example")
    assert not is_valid_email(None)
    assert to_iso(None) is None
    assert to_iso(0).startswith("1970-01-01T00:00:00")
    assert to_units(3150) == 31.5
    assert to_cents(31.5) == 3150
    assert to_cents("19.99") == 1999
    assert to_cents(None) == 0
    assert format_cents(705) == "7.05"
