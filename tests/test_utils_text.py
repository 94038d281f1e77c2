"""Search matching, error messages and video helpers."""

from datetime import timedelta

import pytest

from karatapp.core.errors import StorageError
from karatapp.utils.messages import auth_message, clean_error_message, friendly_message, validation_message
from karatapp.utils.search import (
    matches_exact_number,
    matches_normalized,
    normalize_search_text,
    ordinal_forms,
    search_number,
    split_into_words,
    starts_with_normalized,
)
from karatapp.utils.video import (
    format_duration,
    format_file_size,
    is_valid_video_url,
    is_video_file,
    validate_video_upload,
    video_file_name,
    video_quality,
)


def test_normalize_search_text():
    assert normalize_search_text("  Café   Crème ") == "cafe creme"
    assert normalize_search_text("Don’t – stop") == "don't - stop"
    assert normalize_search_text("") == ""
    assert matches_normalized("Kihon Café", "CAFE")
    assert starts_with_normalized("Énergie", "ener")
    assert split_into_words("Gedan-barai_links.voor  rechts") == ["gedan", "barai", "links", "voor", "rechts"]


@pytest.mark.parametrize(
    ("query", "expected"),
    [("5", "5"), ("ohyo5", "5"), ("Ohyo 12", "12"), ("o-5", "5"), ("o.7", "7"), ("05", "5"), ("fifth", None)],
)
def test_search_number(query, expected):
    assert search_number(query) == expected


def test_ordinals_and_exact_numbers():
    assert ordinal_forms("1") == ["1", "1st", "first"]
    assert ordinal_forms("22") == ["22", "22th"]
    assert ordinal_forms("x") == []

    assert matches_exact_number("ohyo 7", "7")
    assert matches_exact_number("the seventh form", "7")
    assert not matches_exact_number("ohyo 17", "7")
    assert not matches_exact_number("ohyo 70", "7")
    assert not matches_exact_number("ohyo 7", "seven")


def test_clean_error_message():
    assert clean_error_message("Exception: something broke") == "Something broke."
    assert clean_error_message("Error: value: null") == "Value."
    assert clean_error_message("  ") == "An error occurred."
    assert clean_error_message("Already done.") == "Already done."


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        ("Connection refused", "Verbindingsprobleem"),
        ("Invalid email or password", "Inloggen mislukt"),
        (StorageError("Bucket not found"), "Bestandsbewerking mislukt"),
        ("HTTP 503 from gateway", "Server is tijdelijk"),
        ("Too many requests", "Te veel verzoeken"),
        ("Access denied for user", "Toegang geweigerd"),
    ],
)
def test_friendly_message(error, expected):
    assert friendly_message(error).startswith(expected)


def test_friendly_message_falls_back_to_cleaned_text():
    assert friendly_message(ValueError("Exception: title missing")) == "Title missing."


def test_auth_and_validation_messages():
    assert auth_message(None).startswith("Authenticatie mislukt")
    assert auth_message("Invalid email or password") == "E-mailadres of wachtwoord is onjuist."
    assert auth_message("Email address is already registered").startswith("Dit e-mailadres")
    assert auth_message("Invalid email address") == "Voer een geldig e-mailadres in."
    assert auth_message("Password is too short").startswith("Controleer je wachtwoord")
    assert validation_message("Error: name required") == "Controleer je invoer: Name required."


def test_video_helpers():
    assert is_video_file("clips/kata.MP4")
    assert not is_video_file("clips/kata.gif")
    assert not is_video_file("noext")
    assert is_valid_video_url(" https://youtu.be/abc ")
    assert not is_valid_video_url("ftp://example.com/a.mp4")
    assert not is_valid_video_url("youtube.com/watch")

    assert format_file_size(512) == "512 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(5 * 1024 * 1024) == "5.0 MB"
    assert format_duration(timedelta(seconds=75)) == "01:15"
    assert format_duration(3725) == "01:02:05"
    assert video_quality(30 * 1024 * 1024) == "High"
    assert video_file_name(3, "clip.MOV", now_ms=1000) == "3_video_1000.mov"
    assert video_file_name(3, "clip", now_ms=1000) == "3_video_1000.mp4"


def test_validate_video_upload():
    ok = validate_video_upload("kata.webm", 2 * 1024 * 1024)
    assert ok.is_valid
    assert ok.quality == "Low"
    assert ok.size_text == "2.0 MB"

    too_big = validate_video_upload("kata.mp4", 60 * 1024 * 1024)
    assert not too_big.is_valid
    assert too_big.errors == ["Video file is too large. Maximum size: 50.0 MB"]

    wrong_format = validate_video_upload("kata.gif", 10)
    assert wrong_format.errors[0].startswith("Unsupported video format")
