"""
Breached-password check (k-anonymity range API).

Only the first five hex characters of the SHA-1 of the password leave the
process; the suffix is matched locally against the returned range. Any
HTTP or network failure fails open so that signup is not blocked by an
unavailable third party.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

DEFAULT_PWNED_API_URL = "https://api.pwnedpasswords.com/range/"

logger = logging.getLogger("hold_vault.pwned")


@dataclass(frozen=True)
class PwnedCheckResult:
    is_pwned: bool
    count: int


NOT_PWNED = PwnedCheckResult(is_pwned=False, count=0)


def password_hash_parts(password: str) -> tuple[str, str]:
    """Return the (prefix, suffix) of the uppercase SHA-1 hex digest."""
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    return digest[:5], digest[5:]


def match_suffix(body: str, suffix: str) -> PwnedCheckResult:
    """Find ``suffix`` in a range response made of ``SUFFIX:COUNT`` lines."""
    for line in body.splitlines():
        candidate, _, count = line.strip().partition(":")
        if candidate.upper() == suffix:
            try:
                return PwnedCheckResult(is_pwned=True, count=int(count))
            except ValueError:
                return PwnedCheckResult(is_pwned=True, count=1)
    return NOT_PWNED


async def check_pwned_password(
    password: str,
    session: Optional[aiohttp.ClientSession] = None,
    api_url: str = DEFAULT_PWNED_API_URL,
    timeout: float = 5.0,
) -> PwnedCheckResult:
    """Check whether ``password`` appears in the breach corpus.

    Args:
        password: Candidate password.
        session: Optional shared aiohttp session.
        api_url: Range endpoint; the 5-char prefix is appended.
        timeout: Total request timeout in seconds.
    """
    if not password:
        return NOT_PWNED
    prefix, suffix = password_hash_parts(password)
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout)
        )
    try:
        async with session.get(f"{api_url}{prefix}") as response:
            if response.status != 200:
                logger.warning("Pwned range API error: status=%s", response.status)
                return NOT_PWNED
            body = await response.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as err:
        logger.warning("Pwned range API unreachable: %s", err)
        return NOT_PWNED
    finally:
        if owns_session:
            await session.close()
    return match_suffix(body, suffix)
