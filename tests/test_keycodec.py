"""
Tests for recovery key cleaning, formatting and comparison.
"""

from securewipe import keycodec


KEY = "12345678901234567890"


# ── clean / format ─────────────────────────────────────────────────────

def test_clean_strips_non_digits():
    assert keycodec.clean("1234 5678-9012\t3456\n7890") == KEY
    assert keycodec.clean("abc") == ""
    assert keycodec.clean("") == ""


def test_format_groups_of_four():
    assert keycodec.format(KEY) == "1234 5678 9012 3456 7890"
    assert keycodec.format("123456") == "1234 56"
    assert keycodec.format("") == ""


def test_clean_format_round_trip_keeps_digits():
    for raw in [KEY, "1 2 3", "00001111", "x9y8z7", "", "0000 0000 0000 0000 0001"]:
        assert keycodec.clean(keycodec.format(keycodec.clean(raw))) == keycodec.clean(raw)


# ── generate / validate ────────────────────────────────────────────────

def test_generate_is_twenty_digits():
    key = keycodec.generate()
    assert len(key) == 20
    assert key.isdigit()
    assert keycodec.is_well_formed(key)


def test_is_well_formed_counts_digits_only():
    assert keycodec.is_well_formed("1234 5678 9012 3456 7890")
    assert not keycodec.is_well_formed("1234 5678")
    assert not keycodec.is_well_formed(KEY + "1")


# ── matches ────────────────────────────────────────────────────────────

def test_matches_ignores_spacing():
    assert keycodec.matches("1234 5678 9012 3456 7890", KEY)
    assert keycodec.matches(KEY, "1234 5678 9012 3456 7890")


def test_matches_is_string_compare_not_numeric():
    stored = "00012345678901234567"
    assert keycodec.matches("0001 2345 6789 0123 4567", stored)
    assert not keycodec.matches("12345678901234567", stored)


def test_matches_rejects_different_or_empty():
    assert not keycodec.matches("12345678901234567891", KEY)
    assert not keycodec.matches(KEY, "")


def test_masked_shows_last_four():
    assert keycodec.masked(KEY) == "**** **** **** **** 7890"
    assert keycodec.masked("") == "<none>"


def test_non_ascii_digits_are_stripped():
    fullwidth = "".join(chr(0xFF10 + int(c)) for c in KEY)
    arabic_indic = "".join(chr(0x0660 + int(c)) for c in KEY)
    assert keycodec.clean(fullwidth) == ""
    assert keycodec.clean(arabic_indic) == ""
    assert not keycodec.is_well_formed(fullwidth)
    assert not keycodec.matches(fullwidth, KEY)
