import hashlib
from typing import Any, cast

import pytest

from karatapp.services.password import BREACHED_MESSAGE, BreachChecker, PasswordPolicy, validate_new_password


def test_policy_accepts_strong_password():
    assert PasswordPolicy().check("Mawashi#Geri9") == []


def test_policy_lists_every_violation():
    violations = PasswordPolicy().check("abc")

    assert violations == [
        "Password must be at least 8 characters long",
        "Password must contain at least one uppercase letter",
        "Password must contain at least one number",
        "Password must contain at least one special character",
    ]


def test_policy_rejects_common_password():
    assert "Password is too common. Please choose a stronger password" in PasswordPolicy().check("Password1")


def test_hash_parts_split_sha1():
    digest = hashlib.sha1(b"Mawashi#Geri9").hexdigest().upper()

    assert BreachChecker.hash_parts("Mawashi#Geri9") == (digest[:5], digest[5:])


def test_suffix_count():
    body = "0018A45C4D1DEF81644B54AB7F969B88D65:1\r\nABCDEF:42\nBROKEN:x\n"

    assert BreachChecker.suffix_count(body, "ABCDEF") == 42
    assert BreachChecker.suffix_count(body, "BROKEN") == 0
    assert BreachChecker.suffix_count(body, "MISSING") == 0


class _FakeChecker:
    def __init__(self, breached: bool):
        self.breached = breached
        self.calls = 0

    async def is_breached(self, password: str) -> bool:
        self.calls += 1
        return self.breached


@pytest.mark.asyncio
async def test_validate_new_password_skips_lookup_when_rules_fail():
    checker = _FakeChecker(breached=True)

    violations = await validate_new_password("short", policy=PasswordPolicy(), breach_checker=cast("Any", checker))

    assert violations
    assert checker.calls == 0


@pytest.mark.asyncio
async def test_validate_new_password_reports_breach():
    checker = _FakeChecker(breached=True)

    violations = await validate_new_password(
        "Mawashi#Geri9", policy=PasswordPolicy(), breach_checker=cast("Any", checker)
    )

    assert violations == [BREACHED_MESSAGE]


@pytest.mark.asyncio
async def test_validate_new_password_without_checks():
    assert await validate_new_password("x", policy=None, breach_checker=None) == []


@pytest.mark.asyncio
async def test_breach_checker_requires_http_session(container):
    checker = BreachChecker(container)

    with pytest.raises(RuntimeError, match="not set up properly"):
        await checker.is_breached("Mawashi#Geri9")
