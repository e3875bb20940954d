import asyncio
from unittest.mock import MagicMock

from agent_runtime.cancellation import Canceled, CancellationRegistry, CancellationToken, race

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_registry_cancels_most_recent_operation():
    registry = CancellationRegistry()
    first_cb, second_cb = MagicMock(), MagicMock()
    first = registry.register("first", first_cb)
    second = registry.register("second", second_cb)

    assert registry.active() is second
    assert registry.cancel("esc") is True
    second_cb.assert_called_once_with("esc")
    first_cb.assert_not_called()
    assert registry.active() is first
    assert len(registry) == 1


def test_registration_cancel_is_one_shot():
    registry = CancellationRegistry()
    callback = MagicMock()
    registration = registry.register("op", callback)
    assert registration.cancel("a") is True
    assert registration.cancel("b") is False
    callback.assert_called_once_with("a")
    assert registration.is_canceled()


def test_unregister_is_idempotent():
    registry = CancellationRegistry()
    registration = registry.register("op")
    registration.unregister()
    registration.unregister()
    assert len(registry) == 0
    assert registry.cancel() is False


def test_failing_cancel_callback_still_unregisters():
    registry = CancellationRegistry()
    registry.register("op", MagicMock(side_effect=RuntimeError("boom")))
    assert registry.cancel() is True
    assert len(registry) == 0


# ---------------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------------

def test_trigger_resolves_every_waiter_with_payload():
    async def scenario():
        token = CancellationToken()
        waiters = [token.waiter(), token.waiter()]
        token.trigger({"reason": "esc"})
        return [await waiter for waiter in waiters], token.pending_waiters

    results, pending = asyncio.run(scenario())
    assert results == [{"reason": "esc"}, {"reason": "esc"}]
    assert pending == 0


def test_subscribers_are_notified_until_unsubscribed():
    token = CancellationToken()
    listener = MagicMock()
    unsubscribe = token.subscribe(listener)
    token.trigger("one")
    unsubscribe()
    token.reset()
    token.trigger("two")
    listener.assert_called_once_with("one")


def test_reset_prevents_stale_cancellation_of_next_pass():
    async def scenario():
        token = CancellationToken()
        token.trigger("esc")
        stale = await race(asyncio.sleep(0, result="work"), token)

        token.reset()
        fresh = await race(asyncio.sleep(0, result="work"), token)
        return stale, fresh, token

    stale, fresh, token = asyncio.run(scenario())
    assert isinstance(stale, Canceled)
    assert stale.payload == "esc"
    assert fresh == "work"
    assert token.triggered is False
    assert token.payload is None


# ---------------------------------------------------------------------------
# race()
# ---------------------------------------------------------------------------

def test_race_without_token_just_awaits():
    assert asyncio.run(race(asyncio.sleep(0, result=42), None)) == 42


def test_race_cancels_the_losing_work():
    cancelled = []

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.trigger, "esc")
        return await race(slow(), token), token

    result, token = asyncio.run(scenario())
    assert isinstance(result, Canceled)
    assert result.payload == "esc"
    assert cancelled == [True]
    assert token.pending_waiters == 0
