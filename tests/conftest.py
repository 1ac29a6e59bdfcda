"""Shared fixtures: a controllable clock, scripted adapters, timers."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from providers import (  # noqa: E402
    CoinGeckoAdapter,
    CoinMarketCapAdapter,
    FearGreedAdapter,
    ProviderAdapter,
    ProviderError,
    ProviderId,
)


class FakeClock:
    """time.time / time.sleep stand-in that only moves when told to."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedAdapter(ProviderAdapter):
    """
    Adapter whose upstream is a script. Each fetch consumes the next item;
    the last item repeats. Items are payloads, ProviderError instances
    (raised inside the adapter, so they come back as failures), or
    callables taking the query.
    """

    def __init__(self, provider_id, shapes, script=(), configured=True, clock=None):
        self.provider_id = provider_id
        self.supported_shapes = frozenset(shapes)
        super().__init__(clock=clock or FakeClock())
        self.script = list(script)
        self.calls = []
        self.configured = configured

    @property
    def is_configured(self):
        return self.configured

    def _fetch(self, query):
        self.calls.append(query)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if callable(item) and not isinstance(item, ProviderError):
            item = item(query)
        if isinstance(item, ProviderError):
            raise item
        return item


class FakeTimer:
    """threading.Timer stand-in; fire() runs the callback synchronously."""

    created = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_timers():
    FakeTimer.created = []
    return FakeTimer


@pytest.fixture
def scripted():
    """Factory: scripted(provider_id, *script, configured=True)."""

    shapes = {
        ProviderId.COINGECKO: CoinGeckoAdapter.supported_shapes,
        ProviderId.COINMARKETCAP: CoinMarketCapAdapter.supported_shapes,
        ProviderId.ALTERNATIVE_ME: FearGreedAdapter.supported_shapes,
    }

    def make(provider_id, *script, configured=True, clock=None):
        return ScriptedAdapter(provider_id, shapes[provider_id], script, configured=configured, clock=clock)

    return make
