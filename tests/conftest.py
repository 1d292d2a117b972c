from decimal import Decimal
from typing import Iterable, List, Optional, Set, Tuple

import pytest

from lastbuyer_bot import AppConfig, SwapEvent, UpstreamError

POOL = "0x" + "ab" * 20
ACTOR_A = "0x" + "a1" * 20
ACTOR_B = "0x" + "b2" * 20
ACTOR_C = "0x" + "c3" * 20


def swap(block: int, index: int, actor: str, tx: Optional[str] = None) -> SwapEvent:
    return SwapEvent(
        tx_hash=tx or f"0x{block:08x}{index:04x}",
        block_number=block,
        log_index=index,
        actor=actor,
    )


class FakeSource:
    def __init__(self, events: Iterable[SwapEvent] = (), height: int = 0):
        self.events: List[SwapEvent] = list(events)
        self.height = height
        self.calls: List[Tuple[int, int]] = []
        self.failing_blocks: Set[int] = set()
        self.height_fails = False

    async def get_current_height(self) -> int:
        if self.height_fails:
            raise UpstreamError("eth_blockNumber failed: timeout")
        return self.height

    async def get_events(self, address: str, variant: str, from_block: int, to_block: int) -> List[SwapEvent]:
        self.calls.append((from_block, to_block))
        if any(from_block <= b <= to_block for b in self.failing_blocks):
            raise UpstreamError(f"eth_getLogs failed for {from_block}-{to_block}")
        # newest first, so callers cannot lean on upstream ordering
        found = [e for e in self.events if from_block <= e.block_number <= to_block]
        return sorted(found, key=lambda e: e.sort_key, reverse=True)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEstimator:
    def __init__(self, value: Decimal = Decimal("12.5"), fails: bool = False):
        self.value = value
        self.fails = fails
        self.calls = 0

    async def estimate_usd(self, pool_address: str) -> Decimal:
        self.calls += 1
        if self.fails:
            raise UpstreamError("reward estimate failed: ClientConnectorError")
        return self.value


@pytest.fixture
def cfg() -> AppConfig:
    return AppConfig(
        chain_id=8453,
        pool_address=POOL,
        http_rpc_url="http://rpc.invalid",
        clanker_api_key=None,
        clanker_api_url="http://clanker.invalid/estimate",
        rounds={"main": 60, "hourly": 3600},
        scan_chunk_blocks=2,
        log_capacity=80,
        winner_capacity=30,
        event_capacity=20,
        batch_event_limit=20,
        advance_interval_sec=5,
        reconcile_interval_sec=15,
        rpc_timeout_sec=12,
        metric_timeout_sec=10,
        max_rpc_retries=1,
        log_level="info",
        api_host="127.0.0.1",
        api_port=8080,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
