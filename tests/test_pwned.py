"""
Tests for the breached-password range check.

No network access: the aiohttp session is replaced by a stub.
"""
import hashlib

import aiohttp
import pytest

from hold_vault.pwned import (
    NOT_PWNED,
    check_pwned_password,
    match_suffix,
    password_hash_parts,
)

PASSWORD = "password123"


class FakeResponse:

    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:

    def __init__(self, status=200, body="", error=None):
        self.status = status
        self.body = body
        self.error = error
        self.urls = []
        self.closed = False

    def get(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status, self.body)

    async def close(self):
        self.closed = True


class TestHashParts:

    def test_split(self):
        prefix, suffix = password_hash_parts(PASSWORD)
        digest = hashlib.sha1(PASSWORD.encode()).hexdigest().upper()
        assert prefix + suffix == digest
        assert len(prefix) == 5

    def test_match_suffix(self):
        _, suffix = password_hash_parts(PASSWORD)
        body = f"0000000000000000000000000000000000A:3\r\n{suffix.lower()}:2413945\r\n"
        result = match_suffix(body, suffix)
        assert result.is_pwned is True
        assert result.count == 2413945

    def test_no_match(self):
        assert match_suffix("ABC:1\nDEF:2", "XYZ") == NOT_PWNED


class TestCheck:

    @pytest.mark.asyncio
    async def test_only_prefix_is_sent(self):
        prefix, suffix = password_hash_parts(PASSWORD)
        session = FakeSession(body=f"{suffix}:12")
        result = await check_pwned_password(PASSWORD, session=session, api_url="https://pwned.test/range/")
        assert result.count == 12
        assert session.urls == [f"https://pwned.test/range/{prefix}"]
        assert suffix not in session.urls[0]
        assert session.closed is False

    @pytest.mark.asyncio
    async def test_http_error_fails_open(self):
        session = FakeSession(status=503)
        assert await check_pwned_password(PASSWORD, session=session) == NOT_PWNED

    @pytest.mark.asyncio
    async def test_network_error_fails_open(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("down"))
        assert await check_pwned_password(PASSWORD, session=session) == NOT_PWNED

    @pytest.mark.asyncio
    async def test_empty_password(self):
        session = FakeSession()
        assert await check_pwned_password("", session=session) == NOT_PWNED
        assert session.urls == []
