import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, getcontext
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

import aiohttp
from aiohttp import web

getcontext().prec = 60

logger = logging.getLogger(__name__)

SWAP_V3_TOPIC0 = (
    "0xc42079f94a6350d7e6235f29174924f9"
    "28cc2ac818eb64fed8004e115fbcca67"
)
SWAP_V2_TOPIC0 = (
    "0xd78ad95fa46c994b6551d0da85fc275f"
    "e613ce37657fb8d5e3d130840159d822"
)
FEE_SELECTOR = "0xddca3f43"

SWAP_TOPIC0 = {"v2": SWAP_V2_TOPIC0, "v3": SWAP_V3_TOPIC0}
# v2 credits the indexed `to`, v3 the indexed `recipient`; both sit at topic 2
ACTOR_TOPIC_INDEX = {"v2": 2, "v3": 2}
POOL_VARIANTS = tuple(SWAP_TOPIC0)

LOG_KINDS = {"TRADE", "WIN", "PAYOUT", "CLAIM", "INFO"}

DEFAULT_ROUNDS = {"main": 60, "hourly": 60 * 60}
DEFAULT_CLANKER_API_URL = "https://www.clanker.world/api/tokens/estimate-rewards-by-pool-address"


class LastBuyerError(Exception):
    pass


class ConfigurationError(LastBuyerError, ValueError):
    pass


class UpstreamError(LastBuyerError):
    pass


class RPCResponseError(UpstreamError):
    pass


class ValidationError(LastBuyerError):
    pass


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def decimal_to_str(v: Optional[Decimal], places: int = 18) -> Optional[str]:
    if v is None:
        return None
    q = Decimal(10) ** -places
    return str(v.quantize(q))


def mask_wallet(addr: Optional[str]) -> str:
    if not addr or not addr.startswith("0x") or len(addr) < 10:
        return addr or ""
    return f"{addr[:6]}...{addr[-4:]}"


@dataclass(frozen=True)
class SwapEvent:
    tx_hash: str
    block_number: int
    log_index: int
    actor: str

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.block_number, self.log_index


@dataclass(frozen=True)
class EventRecord:
    at_ms: int
    round_id: str
    actor: str
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def key(self) -> Tuple[str, str]:
        return self.round_id, self.tx_hash

    def to_api(self) -> Dict[str, Any]:
        return {
            "atMs": self.at_ms,
            "roundId": self.round_id,
            "buyer": self.actor,
            "txHash": self.tx_hash,
            "blockNumber": str(self.block_number),
            "logIndex": self.log_index,
        }


@dataclass(frozen=True)
class WinnerRecord:
    round_id: str
    actor: str
    won_at_ms: int
    payout_metric_usd: Decimal
    tx_hash: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "roundId": self.round_id,
            "wallet": self.actor,
            "wonAtMs": self.won_at_ms,
            "payoutMetricUsd": decimal_to_str(self.payout_metric_usd, 4),
            "txHash": self.tx_hash,
        }


@dataclass(frozen=True)
class LogEntry:
    kind: str
    message: str
    at_ms: int
    tx_hash: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in LOG_KINDS:
            raise ValueError(f"unknown log kind: {self.kind}")

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "message": self.message, "atMs": self.at_ms}
        if self.tx_hash:
            out["txHash"] = self.tx_hash
        return out


@dataclass
class AppConfig:
    chain_id: int
    pool_address: str
    http_rpc_url: str
    clanker_api_key: Optional[str]
    clanker_api_url: str
    rounds: Dict[str, int]
    scan_chunk_blocks: int
    log_capacity: int
    winner_capacity: int
    event_capacity: int
    batch_event_limit: int
    advance_interval_sec: int
    reconcile_interval_sec: int
    rpc_timeout_sec: int
    metric_timeout_sec: int
    max_rpc_retries: int
    log_level: str
    api_host: str
    api_port: int
    cors_allow_origins: List[str] = field(default_factory=list)


def _int_setting(raw: Dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = raw.get(key, default)
    try:
        parsed = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be an integer, got: {value!r}") from e
    if parsed < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got: {parsed}")
    return parsed


def load_config(path: str) -> AppConfig:
    raw: Dict[str, Any] = {}
    if Path(path).exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot read config {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"config {path} must be a JSON object")

    pool_raw = str(raw.get("POOL_ADDRESS") or os.environ.get("POOL_ADDRESS") or "").strip()
    if not pool_raw:
        raise ConfigurationError("Invalid or missing POOL_ADDRESS")
    try:
        pool_address = normalize_address(pool_raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid or missing POOL_ADDRESS: {e}") from e

    http_rpc_url = str(
        raw.get("HTTP_RPC_URL")
        or os.environ.get("HTTP_RPC_URL")
        or os.environ.get("BASE_RPC_URL")
        or ""
    ).strip()
    if not http_rpc_url:
        raise ConfigurationError("Missing HTTP_RPC_URL")

    api_key_raw = str(raw.get("CLANKER_API_KEY") or os.environ.get("CLANKER_API_KEY") or "").strip()

    rounds_raw = raw.get("ROUNDS", DEFAULT_ROUNDS)
    if not isinstance(rounds_raw, dict) or not rounds_raw:
        raise ConfigurationError("ROUNDS must be a non-empty object of round id -> seconds")
    rounds: Dict[str, int] = {}
    for key, seconds in rounds_raw.items():
        round_id = str(key).strip()
        if not round_id:
            raise ConfigurationError("round ids cannot be empty")
        rounds[round_id] = _int_setting({round_id: seconds}, round_id, 0)

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    return AppConfig(
        chain_id=_int_setting(raw, "CHAIN_ID", 8453),
        pool_address=pool_address,
        http_rpc_url=http_rpc_url,
        clanker_api_key=api_key_raw or None,
        clanker_api_url=str(raw.get("CLANKER_API_URL", DEFAULT_CLANKER_API_URL)).strip(),
        rounds=rounds,
        scan_chunk_blocks=_int_setting(raw, "SCAN_CHUNK_BLOCKS", 1200),
        log_capacity=_int_setting(raw, "LOG_CAPACITY", 80),
        winner_capacity=_int_setting(raw, "WINNER_CAPACITY", 30),
        event_capacity=_int_setting(raw, "EVENT_CAPACITY", 20),
        batch_event_limit=_int_setting(raw, "BATCH_EVENT_LIMIT", 20),
        advance_interval_sec=_int_setting(raw, "ADVANCE_INTERVAL_SEC", 5),
        reconcile_interval_sec=_int_setting(raw, "RECONCILE_INTERVAL_SEC", 15),
        rpc_timeout_sec=_int_setting(raw, "RPC_TIMEOUT_SEC", 12),
        metric_timeout_sec=_int_setting(raw, "METRIC_TIMEOUT_SEC", 10),
        max_rpc_retries=_int_setting(raw, "MAX_RPC_RETRIES", 1),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=_int_setting(raw, "API_PORT", 8080),
        cors_allow_origins=cors_allow_origins,
    )


class RPCClient:
    def __init__(self, url: str, max_retries: int = 1, timeout_sec: int = 12):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    data = await resp.json(content_type=None)
                if not isinstance(data, dict):
                    raise UpstreamError(f"{method}: malformed RPC response")
                if "error" in data:
                    raise RPCResponseError(f"{method}: RPC error: {data['error']}")
                if "result" not in data:
                    raise UpstreamError(f"{method}: RPC response has no result")
                return data["result"]
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, UpstreamError) as e:
                if attempt >= self.max_retries:
                    if isinstance(e, UpstreamError):
                        raise
                    raise UpstreamError(f"{method} failed: {type(e).__name__}: {e}") from e
                await asyncio.sleep(backoff)
                backoff *= 2

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise UpstreamError(f"eth_blockNumber: malformed result {result!r}") from e

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        if not isinstance(result, list):
            raise UpstreamError(f"eth_getLogs: expected a list, got {type(result).__name__}")
        return result

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result


def parse_swap_log(log: Dict[str, Any], variant: str) -> SwapEvent:
    try:
        tx_hash = log["transactionHash"]
        block_hex = log["blockNumber"]
        index_hex = log["logIndex"]
        topics = log["topics"]
        if tx_hash is None or block_hex is None or index_hex is None:
            raise ValueError("pending log without position")
        tx_hash = str(tx_hash).lower()
        if not tx_hash.startswith("0x"):
            raise ValueError(f"bad transaction hash {tx_hash!r}")
        return SwapEvent(
            tx_hash=tx_hash,
            block_number=parse_hex_int(block_hex),
            log_index=parse_hex_int(index_hex),
            actor=normalize_address(decode_topic_address(topics[ACTOR_TOPIC_INDEX[variant]])),
        )
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        raise UpstreamError(f"malformed swap log: {type(e).__name__}: {e}") from e


class SwapEventSource:
    def __init__(self, rpc: RPCClient):
        self.rpc = rpc

    async def get_current_height(self) -> int:
        return await self.rpc.get_latest_block_number()

    async def get_events(
        self, address: str, variant: str, from_block: int, to_block: int
    ) -> List[SwapEvent]:
        logs = await self.rpc.get_logs(
            from_block=from_block,
            to_block=to_block,
            address=address,
            topics=[SWAP_TOPIC0[variant]],
        )
        return [parse_swap_log(x, variant) for x in logs]


async def detect_pool_variant(rpc: RPCClient, pool_address: str) -> str:
    # Uniswap V3 pools expose fee() -> uint24, V2 pairs do not
    try:
        out = await rpc.eth_call(pool_address, FEE_SELECTOR)
    except RPCResponseError as e:
        # a revert; transport failures propagate so the caller retries
        logger.debug("fee() reverted on %s, assuming v2: %s", pool_address, e)
        return "v2"
    if not out or out == "0x":
        return "v2"
    return "v3"


class RewardEstimator:
    def __init__(self, url: str, api_key: Optional[str], timeout_sec: int = 10):
        self.url = url
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "RewardEstimator":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def estimate_usd(self, pool_address: str) -> Decimal:
        if not self.api_key:
            return Decimal(0)
        if not self._session:
            raise RuntimeError("reward estimator session is not initialized")
        try:
            async with self._session.get(
                self.url,
                params={"poolAddress": pool_address},
                headers={"x-api-key": self.api_key},
            ) as resp:
                if resp.status >= 400:
                    logger.debug("reward estimate returned HTTP %s", resp.status)
                    return Decimal(0)
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamError(f"reward estimate failed: {type(e).__name__}: {e}") from e

        value = data.get("userRewards") if isinstance(data, dict) else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return Decimal(0)
        try:
            usd = Decimal(str(value))
        except InvalidOperation:
            return Decimal(0)
        if not usd.is_finite() or usd < 0:
            return Decimal(0)
        return usd


class RangeScanner:
    def __init__(self, source: Any, pool_address: str, variant: str, chunk_blocks: int = 1200):
        if variant not in SWAP_TOPIC0:
            raise ConfigurationError(f"unknown pool variant: {variant}")
        if chunk_blocks < 1:
            raise ConfigurationError("scan chunk size must be >= 1")
        self.source = source
        self.pool_address = pool_address
        self.variant = variant
        self.chunk_blocks = chunk_blocks

    def chunks(self, from_block: int, to_block: int) -> List[Tuple[int, int]]:
        out: List[Tuple[int, int]] = []
        start = from_block
        while start <= to_block:
            end = min(to_block, start + self.chunk_blocks - 1)
            out.append((start, end))
            start = end + 1
        return out

    async def scan(self, from_block: int, to_block: int) -> List[SwapEvent]:
        if from_block > to_block:
            return []
        events: List[SwapEvent] = []
        for start, end in self.chunks(from_block, to_block):
            batch = await self.source.get_events(self.pool_address, self.variant, start, end)
            logger.debug("scanned blocks %s-%s: %s swap(s)", start, end, len(batch))
            events.extend(batch)
        events.sort(key=lambda e: e.sort_key)
        return events


class HistoryStore:
    def __init__(self, log_capacity: int = 80, winner_capacity: int = 30, event_capacity: int = 20):
        self._logs: Deque[LogEntry] = deque(maxlen=log_capacity)
        self._winners: Deque[WinnerRecord] = deque(maxlen=winner_capacity)
        self._events: Deque[EventRecord] = deque(maxlen=event_capacity)

    def push_log(self, entry: LogEntry) -> None:
        self._logs.appendleft(entry)

    def push_winner(self, winner: WinnerRecord) -> None:
        self._winners.appendleft(winner)

    def push_events(self, items: Iterable[EventRecord]) -> int:
        # dedup only covers what is still inside the window
        seen = {x.key for x in self._events}
        added = 0
        for item in items:
            if item.key in seen:
                continue
            self._events.appendleft(item)
            seen.add(item.key)
            added += 1
        return added

    def logs(self) -> List[LogEntry]:
        return list(self._logs)

    def winners(self) -> List[WinnerRecord]:
        return list(self._winners)

    def events(self) -> List[EventRecord]:
        return list(self._events)


@dataclass(frozen=True)
class RoundState:
    round_id: str
    duration_sec: int
    started_at_ms: int
    ends_at_ms: int
    start_block: int
    last_scanned_block: int
    buys: int = 0
    last_buyer: Optional[str] = None
    payout_metric_usd: Decimal = Decimal(0)
    primed: bool = False

    @classmethod
    def fresh(
        cls,
        round_id: str,
        duration_sec: int,
        started_at_ms: int,
        start_block: int,
        payout_metric_usd: Decimal = Decimal(0),
    ) -> "RoundState":
        return cls(
            round_id=round_id,
            duration_sec=duration_sec,
            started_at_ms=started_at_ms,
            ends_at_ms=started_at_ms + duration_sec * 1000,
            start_block=start_block,
            last_scanned_block=start_block,
            payout_metric_usd=payout_metric_usd,
        )

    def is_due(self, now_ms: int) -> bool:
        return now_ms >= self.ends_at_ms

    def next_scan_block(self) -> int:
        # the start block itself is folded in by the first advance
        if not self.primed:
            return self.start_block
        return self.last_scanned_block + 1

    def to_api(self, now_ms: int) -> Dict[str, Any]:
        return {
            "id": self.round_id,
            "durationSec": self.duration_sec,
            "startedAtMs": self.started_at_ms,
            "endsAtMs": self.ends_at_ms,
            "msLeft": max(0, self.ends_at_ms - now_ms),
            "status": "due" if self.is_due(now_ms) else "active",
            "startBlock": str(self.start_block),
            "lastScannedBlock": str(self.last_scanned_block),
            "buys": self.buys,
            "lastBuyer": self.last_buyer,
            "payoutMetricUsd": decimal_to_str(self.payout_metric_usd, 4),
        }


class RoundTracker:
    def __init__(
        self,
        state: RoundState,
        scanner: RangeScanner,
        history: HistoryStore,
        clock: Callable[[], float] = time.time,
        batch_event_limit: int = 20,
    ):
        self.state = state
        self.scanner = scanner
        self.history = history
        self.clock = clock
        self.batch_event_limit = max(1, batch_event_limit)

    @property
    def round_id(self) -> str:
        return self.state.round_id

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def is_due(self) -> bool:
        return self.state.is_due(self.now_ms())

    def set_payout_metric(self, usd: Decimal) -> None:
        self.state = replace(self.state, payout_metric_usd=usd)

    async def advance(self, to_block: int) -> int:
        state = self.state
        from_block = state.next_scan_block()
        if from_block > to_block:
            return 0

        events = await self.scanner.scan(from_block, to_block)

        last_buyer = state.last_buyer
        if events:
            last = events[-1]
            last_buyer = last.actor
            at_ms = self.now_ms()
            self.history.push_events(
                EventRecord(
                    at_ms=at_ms,
                    round_id=state.round_id,
                    actor=e.actor,
                    tx_hash=e.tx_hash,
                    block_number=e.block_number,
                    log_index=e.log_index,
                )
                for e in events[-self.batch_event_limit:]
            )
            self.history.push_log(
                LogEntry(
                    kind="TRADE",
                    message=(
                        f"{state.round_id.upper()} swap(s): +{len(events)}"
                        f" | last buyer {mask_wallet(last_buyer)}"
                    ),
                    at_ms=at_ms,
                    tx_hash=last.tx_hash,
                )
            )
        self.state = replace(
            state,
            buys=state.buys + len(events),
            last_buyer=last_buyer,
            last_scanned_block=to_block,
            primed=True,
        )
        return len(events)

    async def close(self, current_block: int) -> Optional[WinnerRecord]:
        state = self.state
        label = state.round_id.upper()
        events = await self.scanner.scan(state.start_block, current_block)
        now = self.now_ms()

        if not events:
            self.history.push_log(LogEntry(kind="INFO", message=f"{label} ended: no swaps", at_ms=now))
            logger.info("%s round closed without swaps", state.round_id)
            return None

        last = events[-1]
        winner = WinnerRecord(
            round_id=state.round_id,
            actor=last.actor,
            won_at_ms=now,
            payout_metric_usd=state.payout_metric_usd,
            tx_hash=last.tx_hash,
        )
        self.history.push_winner(winner)
        self.history.push_log(
            LogEntry(
                kind="WIN",
                message=(
                    f"{label} winner: {mask_wallet(winner.actor)}"
                    f" | metric {decimal_to_str(winner.payout_metric_usd, 4)} USD"
                ),
                at_ms=now,
                tx_hash=last.tx_hash,
            )
        )
        logger.info("%s round winner %s (tx %s)", state.round_id, winner.actor, last.tx_hash)
        return winner

    def reset(self, new_start_block: int) -> RoundState:
        old = self.state
        started = self.now_ms()
        self.state = RoundState.fresh(
            old.round_id,
            old.duration_sec,
            started,
            new_start_block,
            payout_metric_usd=old.payout_metric_usd,
        )
        self.history.push_log(
            LogEntry(kind="INFO", message=f"{old.round_id.upper()} round reset", at_ms=started)
        )
        logger.info("%s round reset at block %s", old.round_id, new_start_block)
        return self.state


class LastBuyerBot:
    def __init__(
        self,
        cfg: AppConfig,
        rpc: Optional[RPCClient] = None,
        source: Optional[Any] = None,
        estimator: Optional[Any] = None,
        classifier: Optional[Callable[[str], Awaitable[str]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.clock = clock
        self.rpc = rpc or RPCClient(
            cfg.http_rpc_url, max_retries=cfg.max_rpc_retries, timeout_sec=cfg.rpc_timeout_sec
        )
        self.source = source or SwapEventSource(self.rpc)
        self.estimator = estimator or RewardEstimator(
            cfg.clanker_api_url, cfg.clanker_api_key, timeout_sec=cfg.metric_timeout_sec
        )
        self.classifier = classifier or (lambda addr: detect_pool_variant(self.rpc, addr))
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.history = HistoryStore(cfg.log_capacity, cfg.winner_capacity, cfg.event_capacity)
        self.pool_variant: Optional[str] = None
        self.trackers: Dict[str, RoundTracker] = {}
        self.initialized = False
        self.gate = asyncio.Lock()
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.last_snapshot: Optional[Dict[str, Any]] = None
        self.stats: Dict[str, Any] = {
            "passes": 0,
            "advances": 0,
            "closes": 0,
            "round_errors": 0,
            "upstream_errors": 0,
            "coalesced_ticks": 0,
            "last_block": 0,
            "started_at": int(time.time()),
        }

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def __aenter__(self) -> "LastBuyerBot":
        await self.rpc.__aenter__()
        await self.estimator.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        await self.estimator.__aexit__(exc_type, exc, tb)
        await self.rpc.__aexit__(exc_type, exc, tb)

    async def initialize(self) -> None:
        if self.initialized:
            return
        variant = await self.classifier(self.cfg.pool_address)
        if variant not in POOL_VARIANTS:
            raise UpstreamError(f"pool variant check returned {variant!r}")
        block = await self.source.get_current_height()
        started = self.now_ms()

        scanner = RangeScanner(self.source, self.cfg.pool_address, variant, self.cfg.scan_chunk_blocks)
        self.pool_variant = variant
        self.trackers = {
            round_id: RoundTracker(
                RoundState.fresh(round_id, duration, started, block),
                scanner,
                self.history,
                clock=self.clock,
                batch_event_limit=self.cfg.batch_event_limit,
            )
            for round_id, duration in self.cfg.rounds.items()
        }
        self.stats["last_block"] = block
        self.history.push_log(
            LogEntry(
                kind="INFO",
                message=f"Initialized. Pool {mask_wallet(self.cfg.pool_address)} ({variant.upper()})",
                at_ms=started,
            )
        )
        self.initialized = True
        self.last_snapshot = self.build_snapshot()
        logger.info(
            "initialized pool %s (%s) at block %s, rounds: %s",
            self.cfg.pool_address,
            variant,
            block,
            ", ".join(self.trackers),
        )

    async def refresh_payout_metric(self) -> Decimal:
        try:
            usd = await self.estimator.estimate_usd(self.cfg.pool_address)
        except UpstreamError as e:
            logger.warning("reward estimate unavailable, using 0: %s", e)
            usd = Decimal(0)
        if usd is None or usd < 0:
            usd = Decimal(0)
        for tracker in self.trackers.values():
            tracker.set_payout_metric(usd)
        return usd

    async def _settle_round(self, tracker: RoundTracker, current_block: int) -> Optional[WinnerRecord]:
        if tracker.is_due():
            winner = await tracker.close(current_block)
            tracker.reset(current_block)
            self.stats["closes"] += 1
            return winner
        await tracker.advance(current_block)
        self.stats["advances"] += 1
        return None

    async def reconcile_once(self) -> Dict[str, str]:
        async with self.gate:
            await self.initialize()
            current_block = await self.source.get_current_height()
            self.stats["last_block"] = current_block
            await self.refresh_payout_metric()

            errors: Dict[str, str] = {}
            for round_id, tracker in self.trackers.items():
                try:
                    await self._settle_round(tracker, current_block)
                except UpstreamError as e:
                    self.stats["round_errors"] += 1
                    errors[round_id] = str(e)
                    logger.warning("round %s skipped this pass: %s", round_id, e)

            self.stats["passes"] += 1
            self.last_snapshot = self.build_snapshot()
            return errors

    async def advance_once(self) -> Dict[str, str]:
        async with self.gate:
            await self.initialize()
            current_block = await self.source.get_current_height()
            self.stats["last_block"] = current_block

            errors: Dict[str, str] = {}
            for round_id, tracker in self.trackers.items():
                if tracker.is_due():
                    continue
                try:
                    await tracker.advance(current_block)
                    self.stats["advances"] += 1
                except UpstreamError as e:
                    self.stats["round_errors"] += 1
                    errors[round_id] = str(e)
                    logger.warning("round %s advance failed: %s", round_id, e)

            self.last_snapshot = self.build_snapshot()
            return errors

    async def close_round(self, round_id: str) -> Optional[WinnerRecord]:
        if round_id not in self.cfg.rounds:
            raise ValidationError(f"Invalid round id: {round_id!r}")
        async with self.gate:
            await self.initialize()
            current_block = await self.source.get_current_height()
            self.stats["last_block"] = current_block
            winner = await self._settle_round(self.trackers[round_id], current_block)
            self.last_snapshot = self.build_snapshot()
            return winner

    def build_snapshot(self) -> Dict[str, Any]:
        now = self.now_ms()
        return {
            "poolAddress": self.cfg.pool_address,
            "poolType": self.pool_variant,
            "chainId": self.cfg.chain_id,
            "nowMs": now,
            "rounds": {round_id: t.state.to_api(now) for round_id, t in self.trackers.items()},
            "winners": [x.to_api() for x in self.history.winners()],
            "logs": [x.to_api() for x in self.history.logs()],
            "swaps": [x.to_api() for x in self.history.events()],
        }

    def failed_snapshot(self, error: Exception) -> Dict[str, Any]:
        out = dict(self.last_snapshot or {})
        out["error"] = str(error)
        return out

    async def advance_loop(self) -> None:
        while not self.stop_event.is_set():
            await asyncio.sleep(max(1, self.cfg.advance_interval_sec))
            if self.gate.locked():
                self.stats["coalesced_ticks"] += 1
                continue
            try:
                await self.advance_once()
            except UpstreamError as e:
                self.stats["upstream_errors"] += 1
                logger.warning("advance tick failed: %s", e)
            except Exception:
                logger.exception("advance tick crashed")

    async def reconcile_loop(self) -> None:
        while not self.stop_event.is_set():
            await asyncio.sleep(max(1, self.cfg.reconcile_interval_sec))
            if self.gate.locked():
                self.stats["coalesced_ticks"] += 1
                continue
            try:
                await self.reconcile_once()
            except UpstreamError as e:
                self.stats["upstream_errors"] += 1
                logger.warning("reconcile tick failed: %s", e)
            except Exception:
                logger.exception("reconcile tick crashed")

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "initialized": self.initialized,
                "poolType": self.pool_variant,
                "gateBusy": self.gate.locked(),
                "lastBlock": str(self.stats["last_block"]),
                "stats": {k: v for k, v in self.stats.items() if k != "last_block"},
            }
        )

    async def status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.build_snapshot())

    async def sync_handler(self, request: web.Request) -> web.Response:
        try:
            errors = await self.reconcile_once()
        except UpstreamError as e:
            self.stats["upstream_errors"] += 1
            return web.json_response(self.failed_snapshot(e), status=502)
        body = self.build_snapshot()
        if errors:
            body["errors"] = errors
        return web.json_response(body)

    async def close_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        round_id = str(payload.get("id") or "").strip() if isinstance(payload, dict) else ""

        try:
            await self.close_round(round_id)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)
        except UpstreamError as e:
            self.stats["upstream_errors"] += 1
            return web.json_response(self.failed_snapshot(e), status=502)
        return web.json_response(self.build_snapshot())

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/round/status", self.status_handler)
        app.router.add_post("/round/sync", self.sync_handler)
        app.router.add_post("/round/close", self.close_handler)
        return app

    async def run(self) -> None:
        try:
            await self.initialize()
        except UpstreamError as e:
            # the next tick retries initialization
            self.stats["upstream_errors"] += 1
            logger.warning("initialization failed, retrying on the next pass: %s", e)
        self.tasks.append(asyncio.create_task(self.advance_loop()))
        self.tasks.append(asyncio.create_task(self.reconcile_loop()))

        app = await self.create_api_app()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info("control surface listening on %s:%s", self.cfg.api_host, self.cfg.api_port)

        while not self.stop_event.is_set():
            await asyncio.sleep(1)

        await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self.tasks = []


async def main_async(cfg: AppConfig) -> None:
    async with LastBuyerBot(cfg) as bot:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(bot.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await bot.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="last-buyer round keeper: swap-driven timed rounds over one pool"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ConfigurationError as e:
        raise SystemExit(f"configuration error: {e}") from e

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(main_async(cfg))
    except KeyboardInterrupt:
        pass
    except UpstreamError as e:
        raise SystemExit(f"upstream error during startup: {e}") from e


if __name__ == "__main__":
    main()
