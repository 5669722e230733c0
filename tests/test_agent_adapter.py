from __future__ import annotations

import asyncio

import pytest

from threadhub.agent_adapter import AgentAbortedError, CancelToken


def test_cancel_token_keeps_first_reason() -> None:
    token = CancelToken()
    assert token.cancelled is False
    token.raise_if_cancelled()

    token.cancel("user_stop")
    token.cancel("timeout")

    assert token.cancelled is True
    assert token.reason == "user_stop"
    with pytest.raises(AgentAbortedError, match="user_stop"):
        token.raise_if_cancelled()


def test_cancel_token_wakes_waiters() -> None:
    async def scenario() -> str | None:
        token = CancelToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)
        return token.reason

    assert asyncio.run(scenario()) == "cancelled"
