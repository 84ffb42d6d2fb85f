"""Tests for anti-forgery tokens bound to sessions."""

from unittest.mock import AsyncMock

import pytest

from taskboard.core.errors import StoreUnavailable
from taskboard.services.csrf import CsrfGuard


@pytest.fixture
def csrf(memory_store):
    return CsrfGuard(memory_store, ttl_seconds=3600)


async def test_issued_token_validates_for_its_session(csrf):
    token = await csrf.issue_for("session-1")
    assert await csrf.validate(token, "session-1") is True


async def test_token_does_not_validate_for_other_session(csrf):
    token = await csrf.issue_for("session-1")
    assert await csrf.validate(token, "session-2") is False


async def test_wrong_or_missing_token_fails(csrf):
    await csrf.issue_for("session-1")
    assert await csrf.validate("forged", "session-1") is False
    assert await csrf.validate(None, "session-1") is False
    assert await csrf.validate("anything", None) is False


async def test_token_expires(csrf, fake_timer):
    token = await csrf.issue_for("session-1")
    fake_timer.advance(3601)
    assert await csrf.validate(token, "session-1") is False


async def test_store_failure_validates_false():
    store = AsyncMock()
    store.get.side_effect = StoreUnavailable("down")
    assert await CsrfGuard(store).validate("token", "session") is False


async def test_transfer_moves_token_to_new_session(csrf):
    token = await csrf.issue_for("old")
    moved = await csrf.transfer("old", "new")

    assert moved == token
    assert await csrf.validate(token, "new") is True
    assert await csrf.validate(token, "old") is False


async def test_transfer_without_existing_token_issues_one(csrf):
    token = await csrf.issue_for("unused")
    fresh = await csrf.transfer("old", "new")
    assert fresh != token
    assert await csrf.validate(fresh, "new") is True
