from __future__ import annotations

import asyncio

from pushrelay.services.push.transport import PushOutcome, PushTarget
from pushrelay.services.push.vapid import VapidKeySet


class FakeTransport:
    """In-memory PushTransport scripted per endpoint; defaults to success."""

    def __init__(self, *, delay_s: float = 0.0) -> None:
        self.outcomes: dict[str, PushOutcome | Exception] = {}
        self.calls: list[tuple[str, bytes, VapidKeySet]] = []
        self.delay_s = delay_s
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, endpoint: str, outcome: PushOutcome | Exception) -> None:
        self.outcomes[endpoint] = outcome

    def endpoints_called(self) -> list[str]:
        return [endpoint for endpoint, _, _ in self.calls]

    async def send(self, *, subscription: PushTarget, payload: bytes, vapid: VapidKeySet) -> PushOutcome:
        self.calls.append((subscription.endpoint, payload, vapid))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            outcome = self.outcomes.get(subscription.endpoint, PushOutcome.success())
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1
