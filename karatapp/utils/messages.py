"""User-facing (Dutch) messages for technical errors."""

from __future__ import annotations

import re

_PREFIX_RE = re.compile(r"^(?:Exception:\s*|Error:\s*|Failed to\s*)")
_NULL_SUFFIX_RE = re.compile(r":\s*null$")

_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("network", "connection", "timeout", "socket"),
        "Verbindingsprobleem. Controleer je internetverbinding en probeer opnieuw.",
    ),
    (
        ("unauthorized", "invalid email or password", "authentication"),
        "Inloggen mislukt. Controleer je gegevens en probeer opnieuw.",
    ),
    (("storage", "upload", "bucket"), "Bestandsbewerking mislukt. Probeer het opnieuw."),
    (
        ("server error", "500", "502", "503"),
        "Server is tijdelijk niet beschikbaar. Probeer het later opnieuw.",
    ),
    (("rate limit", "too many requests"), "Te veel verzoeken. Wacht even en probeer opnieuw."),
    (
        ("permission", "access denied", "forbidden"),
        "Toegang geweigerd. Controleer je machtigingen en probeer opnieuw.",
    ),
)


def clean_error_message(error: str) -> str:
    """Strip technical prefixes, capitalise and end with a period."""
    cleaned = _NULL_SUFFIX_RE.sub("", _PREFIX_RE.sub("", error.strip()))
    if not cleaned:
        return "An error occurred."
    cleaned = cleaned[0].upper() + cleaned[1:]
    if not cleaned.endswith("."):
        cleaned += "."
    return cleaned


def friendly_message(error: BaseException | str) -> str:
    """Map an error to a message fit for end users."""
    text = getattr(error, "message", None) or str(error)
    lowered = text.lower()
    for markers, message in _RULES:
        if any(marker in lowered for marker in markers):
            return message
    return clean_error_message(text)


def auth_message(details: str | None) -> str:
    if details is None:
        return "Authenticatie mislukt. Probeer opnieuw in te loggen."
    lowered = details.lower()
    if "invalid email or password" in lowered:
        return "E-mailadres of wachtwoord is onjuist."
    if "already registered" in lowered:
        return "Dit e-mailadres is al geregistreerd. Log in met dit adres."
    if "email" in lowered:
        return "Voer een geldig e-mailadres in."
    if "password" in lowered:
        return "Controleer je wachtwoord en probeer opnieuw."
    return "Authenticatie mislukt. Probeer het opnieuw."


def validation_message(message: str) -> str:
    return f"Controleer je invoer: {clean_error_message(message)}"
