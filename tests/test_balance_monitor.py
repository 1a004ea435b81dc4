"""Tests for the polling loop, ticker and startup path."""

import logging
import threading
import time
from typing import Iterator, List

import pytest

import balance_monitor
from balance_monitor import (
    BalanceMonitor,
    IntervalTicker,
    MonitorState,
    PollTick,
    TickOutcome,
    start_monitor,
)
from config_manager import MonitorConfig
from ledger_reader import MetadataError
from rpc_failover import NetworkError

from conftest import ACCOUNT, TOKEN, FakeCaller, FakeSender, string_result, uint_result


def make_config(**overrides) -> MonitorConfig:
    values = dict(
        node_urls=("http://localhost:8545",),
        token_address=TOKEN,
        account_address=ACCOUNT,
        account_alias="Meson",
        threshold=2000.0,
        interval_s=3.0,
        ding_token="abc",
        mute=False,
    )
    values.update(overrides)
    return MonitorConfig(**values)


def ticks(count: int) -> List[PollTick]:
    return [PollTick(seq=i, scheduled_at=float(i)) for i in range(1, count + 1)]


def units(amount: float) -> int:
    """Raw balance of a 6-decimal token."""
    return int(round(amount * 10 ** 6))


def build(balances, token_responses, sender=None, **config_overrides):
    caller = FakeCaller({**token_responses, "balanceOf": balances})
    sender = sender or FakeSender()
    monitor = start_monitor(make_config(**config_overrides), caller, sender)
    return monitor, caller, sender


class TestThreshold:

    def test_balance_equal_to_threshold_alerts(self, token_responses) -> None:
        monitor, _, sender = build([uint_result(units(2000))], token_responses)

        result = monitor.run_tick(PollTick(1, 0.0))

        assert result.outcome is TickOutcome.ALERTED
        assert result.amount.text == "2000.00"
        assert result.delivered is True
        url, body = sender.posts[0]
        assert url == "https://oapi.dingtalk.com/robot/send?access_token=abc"
        assert body["text"]["content"] == "Meson USDT balance 2000.00 >= 2000"
        assert body["at"]["isAtAll"] is True

    def test_balance_one_unit_below_threshold_does_not_alert(self, token_responses) -> None:
        monitor, _, sender = build([uint_result(units(1999.99))], token_responses)

        result = monitor.run_tick(PollTick(1, 0.0))

        assert result.outcome is TickOutcome.BELOW_THRESHOLD
        assert result.amount.text == "1999.99"
        assert sender.posts == []

    def test_comparison_uses_rounded_amount(self, token_responses) -> None:
        """1999.995 displays as 2000.00 and therefore alerts."""
        monitor, _, sender = build([uint_result(1999995000)], token_responses)

        assert monitor.run_tick(PollTick(1, 0.0)).outcome is TickOutcome.ALERTED
        assert len(sender.posts) == 1

    def test_muted_never_sends(self, token_responses) -> None:
        monitor, _, sender = build([uint_result(units(5000))] * 2, token_responses, mute=True, ding_token="")

        results = [monitor.run_tick(tick) for tick in ticks(2)]

        assert [r.outcome for r in results] == [TickOutcome.MUTED, TickOutcome.MUTED]
        assert sender.posts == []

    def test_mentions_passed_through(self, token_responses) -> None:
        monitor, _, sender = build(
            [uint_result(units(3000))], token_responses, at_all=False, at_mobiles=("13800000000",)
        )

        monitor.run_tick(PollTick(1, 0.0))

        body = sender.posts[0][1]
        assert body["at"] == {"isAtAll": False, "atMobiles": ["13800000000"]}
        assert body["text"]["content"].endswith("@13800000000")


class TestRun:

    def test_persistent_condition_alerts_every_tick(self, token_responses) -> None:
        monitor, _, sender = build([uint_result(units(2500))] * 3, token_responses)

        monitor.run(ticks(3))

        assert len(sender.posts) == 3
        assert monitor.state is MonitorState.STOPPED

    def test_transient_failure_skips_only_that_tick(self, token_responses) -> None:
        balances = [
            uint_result(units(2500)),
            NetworkError("read timed out"),
            uint_result(units(2600)),
        ]
        monitor, caller, sender = build(balances, token_responses)

        results = [monitor.run_tick(tick) for tick in ticks(3)]

        assert [r.outcome for r in results] == [
            TickOutcome.ALERTED,
            TickOutcome.SKIPPED,
            TickOutcome.ALERTED,
        ]
        assert caller.calls_to("balanceOf") == 3
        assert len(sender.posts) == 2
        assert sender.posts[1][1]["text"]["content"] == "Meson USDT balance 2600.00 >= 2000"
        assert monitor.state is MonitorState.RUNNING

    def test_skipped_tick_logs_one_warning(self, token_responses, caplog) -> None:
        monitor, _, _ = build([NetworkError("read timed out")], token_responses)

        with caplog.at_level(logging.DEBUG):
            result = monitor.run_tick(PollTick(7, 0.0))

        assert result.outcome is TickOutcome.SKIPPED
        failures = [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert len(failures) == 1
        assert failures[0].name == "balance_monitor"
        assert "Skipping poll 7" in failures[0].getMessage()

    def test_transient_failure_does_not_stop_run(self, token_responses) -> None:
        balances = [NetworkError("down"), b"", uint_result(units(2500))]
        monitor, _, sender = build(balances, token_responses)

        monitor.run(ticks(3))

        assert len(sender.posts) == 1

    def test_dispatch_failure_does_not_affect_loop(self, token_responses) -> None:
        sender = FakeSender(fail=True)
        monitor, _, _ = build([uint_result(units(2500))] * 2, token_responses, sender=sender)

        results = [monitor.run_tick(tick) for tick in ticks(2)]

        assert [r.delivered for r in results] == [False, False]
        assert len(sender.posts) == 2

    def test_stop_exits_before_next_tick(self, token_responses) -> None:
        monitor, caller, _ = build([uint_result(units(10))] * 5, token_responses)

        def stopping_ticker() -> Iterator[PollTick]:
            for tick in ticks(5):
                yield tick
                monitor.stop()

        monitor.run(stopping_ticker())

        assert caller.calls_to("balanceOf") == 1
        assert monitor.state is MonitorState.STOPPED

    def test_monitor_requires_metadata(self, token_responses) -> None:
        from alert_dispatcher import AlertDispatcher
        from ledger_reader import LedgerReader

        with pytest.raises(ValueError):
            BalanceMonitor(
                reader=LedgerReader(FakeCaller(token_responses)),
                dispatcher=AlertDispatcher(FakeSender(), "https://example.invalid"),
                token_address=TOKEN,
                account_address=ACCOUNT,
                account_alias="Meson",
                threshold=1.0,
            )


class TestStartup:

    def test_malformed_decimals_aborts_before_polling(self) -> None:
        caller = FakeCaller({
            "symbol": string_result("USDT"),
            "decimals": b"\x06",
            "balanceOf": uint_result(1),
        })

        with pytest.raises(MetadataError):
            start_monitor(make_config(), caller, FakeSender())
        assert caller.calls_to("balanceOf") == 0

    def test_metadata_is_fetched_once(self, token_responses) -> None:
        monitor, caller, _ = build([uint_result(1)] * 3, token_responses)

        monitor.run(ticks(3))

        assert caller.calls_to("symbol") == 1
        assert caller.calls_to("decimals") == 1
        assert monitor.metadata.decimals == 6


class TestIntervalTicker:

    def test_yields_sequential_ticks(self) -> None:
        ticker = IntervalTicker(0.01)
        seen = []
        for tick in ticker:
            seen.append(tick.seq)
            if len(seen) == 3:
                ticker.stop()

        assert seen == [1, 2, 3]

    def test_stopped_ticker_yields_nothing(self) -> None:
        ticker = IntervalTicker(0.01)
        ticker.stop()

        assert list(ticker) == []

    def test_stop_wakes_pending_wait(self) -> None:
        ticker = IntervalTicker(30)
        timer = threading.Timer(0.05, ticker.stop)
        timer.start()

        started = time.monotonic()
        assert list(ticker) == []
        assert time.monotonic() - started < 5
        timer.join()

    @pytest.mark.parametrize("interval", [0, -1.0, float("nan"), float("inf")])
    def test_rejects_non_positive_or_non_finite_interval(self, interval) -> None:
        with pytest.raises(ValueError):
            IntervalTicker(interval)

    def test_overrun_drops_missed_ticks(self) -> None:
        now = [0.0]
        ticker = IntervalTicker(0.01, clock=lambda: now[0])
        scheduled = []
        for tick in ticker:
            scheduled.append(tick.scheduled_at)
            if len(scheduled) == 1:
                # first poll took 3.5 intervals
                now[0] = 0.045
            else:
                ticker.stop()

        assert scheduled == pytest.approx([0.01, 0.05])


class TestMain:

    @pytest.fixture(autouse=True)
    def isolated_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        for var in ("DING_TOKEN", "MUTE_DING", "ACTIVE_CONFIG", "EVM_RPC_URL", "BALANCE_THRESHOLD"):
            monkeypatch.delenv(var, raising=False)

    def test_missing_ding_token_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            balance_monitor.main(["--no-color"])
        assert exc_info.value.code == 1

    def test_bad_interval_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            balance_monitor.main(["--mute", "--interval", "3 parsecs", "--no-color"])
        assert exc_info.value.code == 1

    def test_metadata_failure_exits(self, monkeypatch) -> None:
        caller = FakeCaller({"symbol": NetworkError("down"), "decimals": uint_result(6)})
        monkeypatch.setattr(balance_monitor, "connect_provider", lambda config: caller)

        with pytest.raises(SystemExit) as exc_info:
            balance_monitor.main(["--mute", "--no-color"])
        assert exc_info.value.code == 1
        assert caller.calls_to("balanceOf") == 0

    def test_once_runs_single_poll(self, monkeypatch, token_responses) -> None:
        caller = FakeCaller({**token_responses, "balanceOf": [uint_result(units(1))]})
        monkeypatch.setattr(balance_monitor, "connect_provider", lambda config: caller)

        balance_monitor.main(["--mute", "--once", "--no-color"])

        assert caller.calls_to("balanceOf") == 1
