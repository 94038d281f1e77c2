"""Password strength rules and the breached-password check."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from typing import TYPE_CHECKING

import aiohttp

from ..core.metrics import BREACH_CHECK_DURATION

if TYPE_CHECKING:
    from ..core.container import Container

log = logging.getLogger("password")

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "123456789", "qwerty", "abc123",
        "password123", "admin", "letmein", "welcome", "monkey",
        "12345678", "football", "iloveyou", "princess", "dragon",
        "password1", "sunshine", "master", "hello", "freedom",
        "whatever", "qazwsx", "trustno1", "jordan23", "harley",
        "robert", "matthew", "jordan", "michelle", "daniel",
        "christopher", "anthony", "william", "joshua", "andrew",
    }
)  # fmt: skip

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile(r'[!@#$%^&*(),.?":{}|<>]')

BREACHED_MESSAGE = (
    "This password has been found in data breaches and is not secure. Please choose a different password."
)


class PasswordPolicy:
    """Client-side strength rules applied before sign-up."""

    min_length = 8

    def check(self, password: str) -> list[str]:
        """Return every rule the password violates, empty when it passes."""
        violations = []
        if len(password) < self.min_length:
            violations.append(f"Password must be at least {self.min_length} characters long")
        if not _UPPER_RE.search(password):
            violations.append("Password must contain at least one uppercase letter")
        if not _LOWER_RE.search(password):
            violations.append("Password must contain at least one lowercase letter")
        if not _DIGIT_RE.search(password):
            violations.append("Password must contain at least one number")
        if not _SPECIAL_RE.search(password):
            violations.append("Password must contain at least one special character")
        if password.lower() in COMMON_PASSWORDS:
            violations.append("Password is too common. Please choose a stronger password")
        return violations


class BreachChecker:
    """Have I Been Pwned range lookup (k-anonymity).

    Only the first five hex characters of the SHA-1 hash leave the process.
    Any failure (network, timeout, rate limit, unexpected status) is treated
    as "not breached" so sign-up is never blocked by the third-party API.
    """

    USER_AGENT = "Karate-Flutter-App-Security-Check"

    def __init__(self, container: Container):
        self.container = container
        self.api_url = container.config.auth.breach_api_url.rstrip("/")
        self.timeout = container.config.auth.breach_timeout_seconds

    @staticmethod
    def hash_parts(password: str) -> tuple[str, str]:
        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        return digest[:5], digest[5:]

    @staticmethod
    def suffix_count(body: str, suffix: str) -> int:
        for line in body.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate == suffix:
                try:
                    return int(count)
                except ValueError:
                    return 0
        return 0

    async def _fetch_range(self, prefix: str) -> str | None:
        session = self.container.http_session
        limiter = self.container.limiter
        semaphore = self.container.semaphore
        if session is None or limiter is None or semaphore is None:
            raise RuntimeError("Container is not set up properly.")

        async with semaphore, limiter:
            async with session.get(
                f"{self.api_url}/{prefix}",
                headers={"User-Agent": self.USER_AGENT, "Add-Padding": "true"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 429:
                    log.warning("Breach check rate limited")
                    return None
                if response.status != 200:
                    log.warning("Breach check returned HTTP %d", response.status)
                    return None
                return await response.text()

    async def is_breached(self, password: str) -> bool:
        prefix, suffix = self.hash_parts(password)
        start = time.perf_counter()
        status = "ok"
        try:
            body = await self._fetch_range(prefix)
        except (aiohttp.ClientError, TimeoutError) as e:
            log.warning("Breach check failed, assuming password is safe: %s", e)
            status = "error"
            return False
        finally:
            BREACH_CHECK_DURATION.labels(status=status).observe(time.perf_counter() - start)

        if body is None:
            return False
        return self.suffix_count(body, suffix) > 0


async def validate_new_password(
    password: str,
    *,
    policy: PasswordPolicy | None,
    breach_checker: BreachChecker | None,
) -> list[str]:
    """Run the strength rules and, when they pass, the breach lookup."""
    violations = policy.check(password) if policy is not None else []
    if violations or breach_checker is None:
        return violations
    if await breach_checker.is_breached(password):
        return [BREACHED_MESSAGE]
    return []
