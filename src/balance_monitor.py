#!/usr/bin/env python3
"""
ERC20 Balance Monitor

Polls the balance of one account on one ERC20 token at a fixed interval and
sends a DingTalk alert on every poll where the balance is at or above the
configured threshold.

Alerts are deliberately not de-duplicated: while the balance stays above the
threshold, each poll sends another alert.

Usage:
    balancewatch --token 0x... --addr 0x... --threshold 2000 --interval 3s --ding-token <token>
    balancewatch --mute --once
    balancewatch --config merlin-meson --verbose
"""

import argparse
import enum
import logging
import math
import signal
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional, Sequence

from alert_dispatcher import AlertDispatcher, DingTalkSender, WebhookSender, build_alert, dingtalk_webhook_url
from amount_formatter import DisplayAmount, format_token_amount
from config_manager import ConfigManager, ConfigurationError, MonitorConfig, load_env_file
from ledger_reader import ContractCaller, LedgerReader, MetadataError, ReadError
from logger_utils import setup_logging, with_fields
from rpc_failover import EVMProviderPool, NetworkError


logger = logging.getLogger(__name__)


class PollTick(NamedTuple):
    seq: int
    scheduled_at: float


class IntervalTicker:
    """Yields PollTicks on a fixed-rate schedule until stopped.

    Ticks missed while the consumer was busy are dropped rather than queued.
    ``stop()`` wakes a pending wait immediately.
    """

    def __init__(self, interval_s: float, clock: Callable[[], float] = time.monotonic):
        if not math.isfinite(interval_s) or interval_s <= 0:
            raise ValueError(f"interval must be a positive finite number, got {interval_s}")
        self.interval_s = interval_s
        self._clock = clock
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def __iter__(self) -> Iterator[PollTick]:
        seq = 0
        next_at = self._clock() + self.interval_s
        while not self._stop_event.is_set():
            delay = next_at - self._clock()
            if delay > 0 and self._stop_event.wait(delay):
                return
            if self._stop_event.is_set():
                return

            seq += 1
            yield PollTick(seq=seq, scheduled_at=next_at)

            next_at += self.interval_s
            now = self._clock()
            if next_at <= now:
                missed = int((now - next_at) // self.interval_s) + 1
                next_at += missed * self.interval_s
                logger.warning("Poll overran the interval; dropped %s tick(s)", missed)


class MonitorState(enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class TickOutcome(enum.Enum):
    SKIPPED = "skipped"
    BELOW_THRESHOLD = "below_threshold"
    ALERTED = "alerted"
    MUTED = "muted"


@dataclass
class TickResult:
    outcome: TickOutcome
    amount: Optional[DisplayAmount] = None
    delivered: Optional[bool] = None


class BalanceMonitor:
    def __init__(
        self,
        reader: LedgerReader,
        dispatcher: AlertDispatcher,
        token_address: str,
        account_address: str,
        account_alias: str,
        threshold: float,
        precision: int = 2,
        mute: bool = False,
        at_all: bool = True,
        at_mobiles: Sequence[str] = (),
    ):
        if reader.metadata is None:
            raise ValueError("LedgerReader must hold token metadata before monitoring starts")
        self.reader = reader
        self.dispatcher = dispatcher
        self.metadata = reader.metadata
        self.token_address = token_address
        self.account_address = account_address
        self.account_alias = account_alias
        self.threshold = threshold
        self.precision = precision
        self.mute = mute
        self.at_all = at_all
        self.at_mobiles = tuple(at_mobiles)

        self.state = MonitorState.RUNNING
        self._stop_requested = threading.Event()
        self._ticker: Optional[IntervalTicker] = None

    def stop(self) -> None:
        """Request the loop to exit before the next tick; safe from signal handlers"""
        self._stop_requested.set()
        if self._ticker is not None:
            self._ticker.stop()

    def run(self, ticker: Iterable[PollTick]) -> None:
        """Run one poll per tick until stopped or the ticker is exhausted"""
        if isinstance(ticker, IntervalTicker):
            self._ticker = ticker
            if self._stop_requested.is_set():
                ticker.stop()

        self.state = MonitorState.RUNNING
        try:
            for tick in ticker:
                if self._stop_requested.is_set():
                    break
                try:
                    self.run_tick(tick)
                except Exception as exc:
                    logger.exception(f"Poll {tick.seq} failed: {exc}")
                if self._stop_requested.is_set():
                    break
        finally:
            self.state = MonitorState.STOPPED
            self._ticker = None

    def run_tick(self, tick: PollTick) -> TickResult:
        """Read the balance once, compare it to the threshold and alert if needed"""
        try:
            raw = self.reader.fetch_balance(self.token_address, self.account_address)
        except ReadError as exc:
            logger.warning("Skipping poll %s: %s", tick.seq, exc)
            return TickResult(TickOutcome.SKIPPED)

        amount = format_token_amount(raw, self.metadata.decimals, self.precision)
        logger.info("bal info", extra=with_fields(b=amount.text + self.metadata.symbol))

        if amount.value < self.threshold:
            return TickResult(TickOutcome.BELOW_THRESHOLD, amount)
        if self.mute:
            logger.debug("Threshold reached but notifications are muted")
            return TickResult(TickOutcome.MUTED, amount)

        event = build_alert(
            self.account_alias,
            self.metadata.symbol,
            amount.text,
            self.threshold,
            is_at_all=self.at_all,
            at_mobiles=self.at_mobiles,
        )
        delivered = self.dispatcher.send(event)
        return TickResult(TickOutcome.ALERTED, amount, delivered)


def connect_provider(config: MonitorConfig) -> EVMProviderPool:
    """Build the RPC provider pool and make sure at least one endpoint answers"""
    pool = EVMProviderPool(list(config.node_urls), request_timeout_s=config.rpc_timeout_s)
    try:
        block_number = pool.ensure_connected()
    except NetworkError as exc:
        raise ConfigurationError(f"Cannot reach node {', '.join(config.node_urls)}: {exc}") from exc
    logger.debug("Node reachable at block %s", block_number)
    return pool


def start_monitor(config: MonitorConfig, caller: ContractCaller,
                  sender: Optional[WebhookSender] = None) -> BalanceMonitor:
    """Fetch token metadata and wire up the monitor; raises MetadataError on failure"""
    reader = LedgerReader(caller)
    metadata = reader.fetch_metadata(config.token_address)

    logger.info(
        "start monitor erc20 balance info",
        extra=with_fields(
            decimals=metadata.decimals,
            symbol=metadata.symbol,
            tokenAddr=config.token_address,
            accAddr=config.account_address,
            accAlias=config.account_alias,
        ),
    )
    if config.mute:
        logger.warning("DingTalk alerts: MUTED")

    dispatcher = AlertDispatcher(
        sender or DingTalkSender(timeout_s=config.webhook_timeout_s),
        dingtalk_webhook_url(config.ding_token, config.webhook_url),
    )
    return BalanceMonitor(
        reader=reader,
        dispatcher=dispatcher,
        token_address=config.token_address,
        account_address=config.account_address,
        account_alias=config.account_alias,
        threshold=config.threshold,
        precision=config.precision,
        mute=config.mute,
        at_all=config.at_all,
        at_mobiles=config.at_mobiles,
    )


def install_signal_handlers(monitor: BalanceMonitor) -> None:
    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        monitor.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)
    if hasattr(signal, "SIGABRT"):
        signal.signal(signal.SIGABRT, _signal_handler)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Monitor an ERC20 balance and alert DingTalk when it reaches a threshold",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  balancewatch --ding-token abc123                    # watch the default token/account
  balancewatch --threshold 5000 --interval 1m        # poll every minute
  balancewatch --node https://a --node https://b     # failover between RPC endpoints
  balancewatch --mute --once                         # single read, no alerts
  balancewatch --config merlin-meson                 # use a profile from config.json
        """
    )
    parser.add_argument('--node', action='append', help='Node RPC URL (repeat or comma-separate for failover)')
    parser.add_argument('--token', type=str, help='ERC20 token contract address')
    parser.add_argument('--addr', type=str, help='Account address to watch')
    parser.add_argument('--addr-name', '--addrName', dest='addr_name', type=str, help='Display alias of the account')
    parser.add_argument('--threshold', type=str, help='Alert when balance >= threshold')
    parser.add_argument('--interval', type=str, help='Poll interval, e.g. 3s, 1m30s, 500ms')
    parser.add_argument('--ding-token', '--dingToken', dest='ding_token', type=str, help='DingTalk robot access token')
    parser.add_argument('--mute', action='store_true', default=None, help='Do not send DingTalk alerts')
    parser.add_argument('--precision', type=str, help='Fractional digits shown for amounts (default: 2)')
    parser.add_argument('--rpc-timeout', type=str, help='Timeout for each RPC call (default: 10s)')
    parser.add_argument('--webhook-timeout', type=str, help='Timeout for each webhook post (default: 10s)')
    parser.add_argument('--webhook-url', type=str, help='DingTalk robot send URL')
    parser.add_argument('--no-at-all', dest='at_all', action='store_false', default=None,
                        help='Do not mention everyone in alerts')
    parser.add_argument('--at-mobiles', action='append', help='Mobile numbers to mention (used with --no-at-all)')
    parser.add_argument('--config', type=str, help='Configuration profile to use (overrides ACTIVE_CONFIG)')
    parser.add_argument('--config-file', type=str, help='Path to JSON config file (default: ./config.json if present)')
    parser.add_argument('--once', action='store_true', help='Run a single poll and exit')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--no-color', action='store_true', help='Disable colored output')
    return parser.parse_args(argv)


CONFIG_FLAGS = (
    'node', 'token', 'addr', 'addr_name', 'threshold', 'interval', 'ding_token', 'mute',
    'precision', 'rpc_timeout', 'webhook_timeout', 'webhook_url', 'at_all', 'at_mobiles',
)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, no_color=args.no_color)
    load_env_file()

    overrides = {name: getattr(args, name) for name in CONFIG_FLAGS}

    try:
        config = ConfigManager(args.config_file, args.config).resolve(overrides)
        if config.profile:
            logger.info(f"🔧 Using configuration: {config.profile}")
        pool = connect_provider(config)
        monitor = start_monitor(config, pool)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except MetadataError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)

    if args.once:
        monitor.run_tick(PollTick(seq=1, scheduled_at=time.monotonic()))
        return

    install_signal_handlers(monitor)
    logger.info("Polling every %ss", config.interval_s)
    monitor.run(IntervalTicker(config.interval_s))
    logger.info("process exit")


if __name__ == "__main__":
    main()
