from __future__ import annotations

import pytest

from wagateway.formatter import PhoneNumberError, format_phone_number


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("6281234567890", "6281234567890@c.us"),
        ("+62 812-3456-7890", "6281234567890@c.us"),
        ("081234567890", "6281234567890@c.us"),
        (6281234567890, "6281234567890@c.us"),
        ("6281234567890@c.us", "6281234567890@c.us"),
        ("  (62) 812 3456 7890 ", "6281234567890@c.us"),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_local_prefix_uses_given_country_code():
    assert format_phone_number("0712345678", country_code="44") == "44712345678@c.us"


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("", "empty"),
        ("abc", "empty"),
        ("unreachable-id", "empty"),
        ("1234", "invalid_length"),
        ("1234567890123456", "invalid_length"),
        ("6281234567890@g.us", "invalid_domain"),
    ],
)
def test_format_phone_number_rejects(raw, reason):
    with pytest.raises(PhoneNumberError) as excinfo:
        format_phone_number(raw)
    assert str(excinfo.value) == reason
