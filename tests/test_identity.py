"""Tests for Signal identity validation."""
import pytest

from signal_auth.errors import IdentityValidationError
from signal_auth.identity import IdentityKind, validate_identity


class TestUsername:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("alice.12", "alice.12"),
            ("ALICE.12", "alice.12"),
            ("_bob.00", "_bob.00"),
            ("a_1.99", "a_1.99"),
            ("a" + "b" * 31 + ".42", "a" + "b" * 31 + ".42"),
        ],
    )
    def test_accepts_and_lowercases(self, raw, expected):
        identity = validate_identity(username=raw)
        assert identity.kind == IdentityKind.USERNAME
        assert identity.identifier == expected
        assert identity.username == expected
        assert identity.phone is None

    @pytest.mark.parametrize(
        "raw",
        [
            "ab.12",              # too short (needs 3 chars before the digits)
            "a" + "b" * 32 + ".42",  # too long
            "1alice.12",          # bad leading character
            ".alice.12",
            "alice.1",            # one trailing digit
            "alice.123",          # three trailing digits
            "alice12",            # missing separator
            "alice-x.12",         # character outside [a-z0-9_]
            "alice.12\n",
            "alice.١٢",           # non-ASCII digits
        ],
    )
    def test_rejects(self, raw):
        with pytest.raises(IdentityValidationError):
            validate_identity(username=raw)


class TestPhone:
    @pytest.mark.parametrize("raw", ["+12223334444", "+8522223334444", "+441234567890"])
    def test_accepts(self, raw):
        identity = validate_identity(phone=raw)
        assert identity.kind == IdentityKind.PHONE
        assert identity.identifier == raw
        assert identity.phone == raw
        assert identity.username is None

    @pytest.mark.parametrize(
        "raw",
        [
            "12223334444",        # missing +
            "+2223334444",        # no country code
            "+123422233344445",   # country code too long
            "+1222333444a",
            "+1 2223334444",
            "+12223334444\n",
        ],
    )
    def test_rejects(self, raw):
        with pytest.raises(IdentityValidationError):
            validate_identity(phone=raw)


class TestExactlyOne:
    def test_neither(self):
        with pytest.raises(IdentityValidationError, match="Neither"):
            validate_identity()

    def test_empty_strings_count_as_absent(self):
        with pytest.raises(IdentityValidationError):
            validate_identity(username="", phone="")

    def test_both(self):
        with pytest.raises(IdentityValidationError, match="not both"):
            validate_identity(username="alice.12", phone="+12223334444")


def test_safe_message_never_echoes_input():
    raw = "<script>Evil.1"
    with pytest.raises(IdentityValidationError) as exc_info:
        validate_identity(username=raw)
    err = exc_info.value
    assert raw not in err.safe_message
    assert raw.lower() not in str(err.safe_props)
    assert raw in err.unsafe_detail
    assert err.status_code == 400


def test_public_view():
    assert validate_identity(username="Alice.12").public_view() == {
        "identifier": "alice.12",
        "username": "alice.12",
    }
    assert validate_identity(phone="+12223334444").public_view() == {
        "identifier": "+12223334444",
        "phone": "+12223334444",
    }
