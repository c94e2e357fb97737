from unittest.mock import AsyncMock

import pytest

from morpho_monitor.config import HealthThresholds
from morpho_monitor.services.multicall import BatchStrategy, CallResult, ChainReader
from morpho_monitor.services.price import PriceOracleResolver

WALLET = "0x1234567890123456789012345678901234567890"


def ok(*values) -> CallResult:
    return CallResult(success=True, value=tuple(values))


def reverted(function_name: str = "call") -> CallResult:
    return CallResult(success=False, error=f"{function_name} reverted")


def transport_error() -> CallResult:
    return CallResult(success=False, error="connection refused", transport_error=True)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeStrategy(BatchStrategy):
    """Answers calls from per-function handlers and records every call made.

    A handler is either a CallResult or a function taking the Call and
    returning one. Calls without a handler get ``default``.
    """

    def __init__(self):
        self.handlers = {}
        self.default = None
        self.batch_error = None
        self.batch_requests = 0
        self.individual_requests = 0
        self.calls = []

    def on(self, function_name, handler):
        self.handlers[function_name] = handler

    def _answer(self, call) -> CallResult:
        self.calls.append(call)
        handler = self.handlers.get(call.function_name)
        if handler is None:
            return self.default or reverted(call.function_name)
        if isinstance(handler, CallResult):
            return handler
        return handler(call)

    async def try_batch(self, calls):
        self.batch_requests += 1
        if self.batch_error is not None:
            raise self.batch_error
        return [self._answer(call) for call in calls]

    async def try_individual(self, calls):
        self.individual_requests += 1
        return [self._answer(call) for call in calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strategy():
    return FakeStrategy()


@pytest.fixture
def chain_reader(strategy):
    return ChainReader(strategy=strategy)


@pytest.fixture
def thresholds():
    return HealthThresholds(warning_threshold=1.5, danger_threshold=1.2)


@pytest.fixture
def prices():
    return {"WLD": 2.0, "USDC": 1.0, "WETH": 3000.0, "WBTC": 60000.0}


@pytest.fixture
def price_resolver(chain_reader, clock, prices):
    resolver = PriceOracleResolver(chain_reader, "https://prices.test/v1", clock=clock)
    resolver._fetch_bulk_prices = AsyncMock(return_value=prices)
    return resolver
