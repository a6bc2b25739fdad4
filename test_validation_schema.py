"""Tests for per-game player ID formats."""

import pytest

from validation_schema import DEFAULT_FORMAT_ERROR, FormatValidator, get_schema


@pytest.fixture
def validator():
    return FormatValidator()


@pytest.mark.parametrize(
    "game,text",
    [
        ("mobile-legends", "12345678 (1234)"),
        ("mobile-legends", "12345678 1234"),
        ("free-fire", "1234567890"),
        ("valorant", "RiotUser#ID1"),
        ("genshin-impact", "812345678 asia"),
        ("point-blank", "pb_user.01"),
    ],
)
def test_valid_ids(validator, game, text):
    assert validator.validate(text, game).is_valid


def test_mobile_legends_rejects_short_id(validator):
    result = validator.validate("1234", "mobile-legends")
    assert not result.is_valid
    assert "Mobile Legends" in result.error
    assert get_schema("mobile-legends").example in result.error


def test_free_fire_length_bounds(validator):
    assert not validator.validate("1234567", "free-fire").is_valid
    assert not validator.validate("123456789012345", "free-fire").is_valid


def test_unknown_game_accepts_digits_only(validator):
    assert validator.validate(" 123456 ", "some-new-game").is_valid
    result = validator.validate("abc123", "some-new-game")
    assert not result.is_valid
    assert result.error == DEFAULT_FORMAT_ERROR


def test_genshin_clean_text_uses_server_code(validator):
    result = validator.validate("812345678 (europe)", "genshin-impact")
    assert result.is_valid
    assert result.clean_text == "812345678 os_euro"


def test_get_schema_without_code():
    assert get_schema(None) is None
    assert get_schema("") is None
