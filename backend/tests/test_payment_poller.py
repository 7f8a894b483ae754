"""Tests for payment confirmation polling.

Tests cover:
- Refresh exactly once after PAID
- Transport errors not counting toward the attempt cap
- Tag-and-discard of results for intents no longer awaited
- One poller per intent and cancellation through the registry
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import NOW
from leiloom_billing.core.exceptions import ConfirmationTimeoutError, TransportError
from leiloom_billing.models import PaymentStatus

PROCESSING = PaymentStatus.PROCESSING
PAID = PaymentStatus.PAID


@pytest.fixture
def intent_id(api, basic_plan):
    enrollment_id, _ = api.seed_enrollment("client-1", "basic", NOW, NOW + timedelta(days=30))
    return api.seed_intent("client-1", enrollment_id)


class TestPoller:

    @pytest.mark.asyncio
    async def test_processing_processing_paid_refreshes_once(self, api, poller, fake_sleep, intent_id):
        """Three polls five seconds apart; the refresh happens only after PAID."""
        api.status_script[intent_id] = [PROCESSING, PROCESSING, PAID]
        refresh = AsyncMock()

        outcome = await poller.run(intent_id, max_attempts=10, on_paid=refresh)

        assert outcome.status == PAID
        assert outcome.refreshed is True
        assert outcome.attempts == 3
        assert fake_sleep.delays == [5.0, 5.0, 5.0]
        assert len(api.calls_named("get_payment_intent")) == 3
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_stops_without_refresh(self, api, poller, intent_id):
        api.status_script[intent_id] = [PROCESSING, PaymentStatus.CANCELLED]
        refresh = AsyncMock()

        outcome = await poller.run(intent_id, max_attempts=10, on_paid=refresh)

        assert outcome.status == PaymentStatus.CANCELLED
        assert outcome.refreshed is False
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overdue_keeps_polling(self, api, poller, intent_id):
        api.status_script[intent_id] = [PaymentStatus.OVERDUE, PaymentStatus.REFUNDED]

        outcome = await poller.run(intent_id, max_attempts=10, on_paid=AsyncMock())

        assert outcome.status == PaymentStatus.REFUNDED
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_transport_errors_do_not_count(self, api, poller, fake_sleep, intent_id):
        api.status_script[intent_id] = [
            PROCESSING,
            TransportError(status=503),
            TransportError(),
            PROCESSING,
            PAID,
        ]
        refresh = AsyncMock()

        outcome = await poller.run(intent_id, max_attempts=3, on_paid=refresh)

        assert outcome.status == PAID
        assert len(fake_sleep.delays) == 5
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cap_reached_raises_timeout(self, api, poller, intent_id):
        api.status_script[intent_id] = [PROCESSING] * 5
        refresh = AsyncMock()

        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await poller.run(intent_id, max_attempts=3, on_paid=refresh)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_status == "PROCESSING"
        assert exc_info.value.retryable is True
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_untracked_result_is_discarded(self, api, poller, intent_id):
        """A PAID answer for an intent no longer awaited never refreshes the ledger."""
        api.status_script[intent_id] = [PAID]
        tracked = {intent_id}
        fetch = api.get_payment_intent

        async def get_and_untrack(target):
            result = await fetch(target)
            tracked.discard(target)
            return result

        api.get_payment_intent = get_and_untrack
        refresh = AsyncMock()

        outcome = await poller.run(intent_id, 10, on_paid=refresh, is_tracked=lambda i: i in tracked)

        assert outcome.discarded is True
        refresh.assert_not_awaited()


class TestPollerRegistry:

    @pytest.mark.asyncio
    async def test_single_poller_per_intent(self, api, pollers, intent_id):
        api.status_script[intent_id] = [PROCESSING, PAID]

        first = pollers.start("client-1", intent_id)
        second = pollers.start("client-1", intent_id)

        assert first is second
        outcome = await first
        assert outcome.refreshed is True
        assert pollers.get_handle(intent_id) is None
        assert pollers.is_awaiting(intent_id) is False

    @pytest.mark.asyncio
    async def test_timeout_stops_awaiting(self, api, pollers, intent_id):
        """An intent that never settles is no longer reported as awaited after the cap."""
        api.status_script[intent_id] = [PROCESSING] * 5

        handle = pollers.start("client-1", intent_id, max_attempts=2)
        with pytest.raises(ConfirmationTimeoutError):
            await handle

        assert pollers.is_awaiting(intent_id) is False
        assert pollers.awaiting_for("client-1") == set()
        assert pollers.get_handle(intent_id) is None

    @pytest.mark.asyncio
    async def test_paid_refreshes_ledger(self, api, pollers, intent_id):
        api.status_script[intent_id] = [PAID]

        await pollers.start("client-1", intent_id)

        refreshes = [c for c in api.calls_named("get_current_period") if c[1] == "client-1"]
        assert len(refreshes) == 1

    @pytest.mark.asyncio
    async def test_cancel_client_stops_and_untracks(self, api, pollers, intent_id):
        api.status_script[intent_id] = [PROCESSING] * 50

        handle = pollers.start("client-1", intent_id)
        await asyncio.sleep(0)
        cancelled = pollers.cancel_client("client-1")

        assert cancelled == [intent_id]
        with pytest.raises(asyncio.CancelledError):
            await handle
        assert pollers.is_awaiting(intent_id) is False
        assert pollers.get_handle(intent_id) is None

    @pytest.mark.asyncio
    async def test_untrack_discards_in_flight_result(self, api, pollers, intent_id):
        api.status_script[intent_id] = [PAID]

        handle = pollers.start("client-1", intent_id)
        pollers.untrack("client-1", intent_id)
        outcome = await handle

        assert outcome.discarded is True
        assert api.calls_named("get_current_period") == []

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, api, pollers, intent_id):
        api.status_script[intent_id] = [PROCESSING] * 50
        handle = pollers.start("client-1", intent_id)
        await asyncio.sleep(0)

        await pollers.close()

        assert handle.done is True
        assert pollers.awaiting_for("client-1") == set()
