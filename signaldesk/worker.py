"""SignalWorker — one orchestration cycle over every symbol × timeframe.

Each cycle:
1. Load the current meta-model (if any).
2. Prefetch higher-timeframe candles for all symbols, at most three
   requests in flight.
3. For every symbol × timeframe, in order: fetch candles, resolve
   pending outcomes, derive the dynamic gate and diagnostics, generate
   signals, meta-score them, apply auto-mute, notify and record.
4. Persist the capped history.

A failure in one symbol × timeframe unit is recorded in the snapshot and
the cycle moves on.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from signaldesk.alerts import WebhookNotifier, format_signal_message
from signaldesk.backtest.auto_mute import compute_auto_mute
from signaldesk.backtest.calibration import ScoreCalibration, score_calibration
from signaldesk.backtest.outcomes import (
    EvaluatedTrade,
    ExecutionCosts,
    cost_in_r,
    evaluate_signal,
    resolve_outcome_time,
)
from signaldesk.backtest.stats import PerformanceSummary, aggregate_trades
from signaldesk.config import Config
from signaldesk.market.base import CandleSource
from signaldesk.market.models import Candle, timeframe_seconds
from signaldesk.meta.features import Diagnostics, FeatureSeries
from signaldesk.meta.filter import MetaModel, MetaModelManager, passes_filter, predict
from signaldesk.repos.state_store import JsonStateStore, StoredState
from signaldesk.strategy.gate import build_dynamic_gate
from signaldesk.strategy.history import SignalHistory
from signaldesk.strategy.models import (
    DEFAULT_STRATEGY,
    QualityGateConfig,
    Signal,
    StrategySettings,
    gate_for_mode,
)
from signaldesk.strategy.signals import SignalRequest, generate_signals
from signaldesk.strategy.trend import range_position

logger = logging.getLogger("signaldesk.worker")

HTF_LIMIT = 800
HTF_CONCURRENCY = 3
LOW_ADX = 15.0


@dataclass(frozen=True)
class WorkerSnapshot:
    """Result of one completed cycle."""

    signals: tuple[Signal, ...]
    last_run: int  # unix ms at cycle start
    run_ms: int
    status: str  # "ok" or "error"
    error: Optional[str] = None
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "signals": [s.to_dict() for s in self.signals],
            "lastRun": self.last_run,
            "runMs": self.run_ms,
            "status": self.status,
            "error": self.error,
            "errors": list(self.errors),
        }


# ── Diagnostics ──────────────────────────────────────────────────────────


def build_diagnostics(
    candles: Sequence[Candle],
    timeframe: str,
    gate: QualityGateConfig,
    last_signal: Optional[Signal] = None,
    settings: StrategySettings = DEFAULT_STRATEGY,
) -> Diagnostics:
    """Market context at the last bar, with human-readable caveats.

    Args:
        candles: Candle window, oldest first (must not be empty).
        timeframe: Timeframe of *candles*; sizes the cooldown.
        gate: Effective gate used for the ATR band and cooldown.
        last_signal: Most recent signal of the stream, if any.
        settings: Indicator periods and range thresholds.
    """
    diag = FeatureSeries(candles, settings).at(-1)
    diag.range_pos = range_position(candles, settings.range_lookback)

    if last_signal is not None:
        elapsed = candles[-1].time - last_signal.timestamp
        window = gate.cooldown_bars * timeframe_seconds(timeframe)
        diag.cooldown_secs = float(max(0, window - elapsed))

    reasons: list[str] = []
    if math.isfinite(diag.atr_pct) and not (
        gate.atr_pct_min <= diag.atr_pct <= gate.atr_pct_max
    ):
        reasons.append(f"ATR% {diag.atr_pct:.2f} outside gate")
    if math.isfinite(diag.adx) and diag.adx < LOW_ADX:
        reasons.append(f"ADX low {diag.adx:.1f}")
    if diag.cooldown_secs > 0:
        reasons.append(f"Cooldown {math.ceil(diag.cooldown_secs / 60)}m remaining")
    if diag.trend == "neutral":
        reasons.append("HTF not aligned")
    if diag.range_pos is not None:
        if diag.range_pos <= settings.range_low:
            reasons.append(f"Range pos low {diag.range_pos * 100:.0f}%")
        elif diag.range_pos >= settings.range_high:
            reasons.append(f"Range pos high {diag.range_pos * 100:.0f}%")
    diag.reasons = reasons
    return diag


# ── Worker ───────────────────────────────────────────────────────────────


class SignalWorker:
    """Runs signal cycles and holds the in-memory history.

    Args:
        config: Loaded ``Config``.
        feed: Candle source (usually a ``CandleFeed``).
        store: Persistence for history between restarts.
        meta_models: Supplies the current meta-model, or ``None`` to skip
            meta-scoring.
        notifier: Alert sink, or ``None`` for no alerts.
    """

    def __init__(
        self,
        config: Config,
        feed: CandleSource,
        store: JsonStateStore,
        meta_models: Optional[MetaModelManager] = None,
        notifier: Optional[WebhookNotifier] = None,
        settings: StrategySettings = DEFAULT_STRATEGY,
    ) -> None:
        self._config = config
        self._feed = feed
        self._store = store
        self._meta_models = meta_models
        self._notifier = notifier
        self._settings = settings
        self._gate = gate_for_mode(config.gate_mode)
        self._costs = ExecutionCosts(config.fee_bps, config.slippage_bps)
        self._history = SignalHistory(cap=config.history_cap)
        self._snapshot: Optional[WorkerSnapshot] = None
        self._running = False
        self._stop_event = asyncio.Event()

    # ── Public API ───────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Load persisted history into memory."""
        state = self._store.load()
        self._history = SignalHistory(state.history, cap=self._config.history_cap)
        logger.info(
            "Loaded %d signal(s) from %s", len(self._history), self._store.path
        )

    def get_snapshot(self) -> Optional[WorkerSnapshot]:
        return self._snapshot

    def get_history(
        self,
        limit: Optional[int] = None,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
    ) -> list[Signal]:
        """Most recent *limit* signals (oldest first), then filtered."""
        signals = self._history.tail(limit if limit and limit > 0 else None)
        return [
            s
            for s in signals
            if (symbol is None or s.symbol == symbol)
            and (timeframe is None or s.timeframe == timeframe)
        ]

    def performance(
        self, symbol: Optional[str] = None, timeframe: Optional[str] = None
    ) -> PerformanceSummary:
        """Aggregate the stored outcomes of matching signals.

        Uses the outcomes already written back by previous cycles, so no
        candles are fetched.
        """
        signals = sorted(
            self.get_history(symbol=symbol, timeframe=timeframe),
            key=lambda s: s.timestamp,
        )
        return aggregate_trades(_stored_trade(s, self._costs) for s in signals)

    def calibration(
        self, symbol: Optional[str] = None, timeframe: Optional[str] = None
    ) -> ScoreCalibration:
        """Score-bucket calibration of the stored outcomes of matching signals."""
        signals = sorted(
            self.get_history(symbol=symbol, timeframe=timeframe),
            key=lambda s: s.timestamp,
        )
        return score_calibration(_stored_trade(s, self._costs) for s in signals)

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> Optional[WorkerSnapshot]:
        """Execute one cycle.

        A call made while a cycle is in progress does not start another;
        it returns the latest completed snapshot.
        """
        if self._running:
            logger.info("Cycle already in progress; returning latest snapshot")
            return self._snapshot
        self._running = True
        try:
            self._snapshot = await self._run_cycle()
        finally:
            self._running = False
        return self._snapshot

    async def run_forever(self, poll_seconds: Optional[int] = None) -> None:
        """Run cycles every *poll_seconds* until :meth:`stop` is called."""
        interval = poll_seconds or self._config.poll_seconds
        self._stop_event.clear()
        while not self._stop_event.is_set():
            try:
                snapshot = await self.run()
                if snapshot is not None:
                    logger.info(
                        "Cycle done in %dms: %d new signal(s), status=%s",
                        snapshot.run_ms, len(snapshot.signals), snapshot.status,
                    )
            except Exception as exc:
                logger.error("Cycle error: %s", exc)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker stopped.")

    def stop(self) -> None:
        """Signal :meth:`run_forever` to exit after the current cycle."""
        self._stop_event.set()

    # ── Cycle ────────────────────────────────────────────────────────────

    async def _run_cycle(self) -> WorkerSnapshot:
        started = time.time()
        last_run = int(started * 1000)
        collected: list[Signal] = []
        errors: list[str] = []

        model = self._meta_models.get_model() if self._meta_models else None
        htf = await self._prefetch_htf(errors)

        for symbol in self._config.symbols:
            for timeframe in self._config.timeframes:
                try:
                    collected.extend(
                        await self.evaluate_symbol_timeframe(
                            symbol, timeframe, htf.get(symbol, {}), model
                        )
                    )
                except Exception as exc:
                    logger.warning("%s %s evaluation failed: %s", symbol, timeframe, exc)
                    errors.append(f"{symbol} {timeframe}: {exc}")

        try:
            self._store.save(StoredState(self._history.tail(), last_run))
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to persist history: %s", exc)
            errors.append(f"persist: {exc}")

        return WorkerSnapshot(
            signals=tuple(collected),
            last_run=last_run,
            run_ms=int((time.time() - started) * 1000),
            status="error" if errors else "ok",
            error=errors[0] if errors else None,
            errors=tuple(errors),
        )

    async def _prefetch_htf(self, errors: list[str]) -> dict[str, dict[str, list[Candle]]]:
        """Reference-timeframe candles per symbol, fetched concurrently."""
        semaphore = asyncio.Semaphore(HTF_CONCURRENCY)
        htf: dict[str, dict[str, list[Candle]]] = {s: {} for s in self._config.symbols}

        async def _fetch(symbol: str, timeframe: str) -> None:
            async with semaphore:
                try:
                    htf[symbol][timeframe] = await self._feed.fetch_candles(
                        symbol, timeframe, HTF_LIMIT
                    )
                except Exception as exc:
                    logger.warning("%s %s HTF fetch failed: %s", symbol, timeframe, exc)
                    errors.append(f"{symbol} {timeframe}: {exc}")

        await asyncio.gather(
            *(
                _fetch(symbol, tf)
                for symbol in self._config.symbols
                for tf in self._settings.htf_timeframes
            )
        )
        return htf

    async def evaluate_symbol_timeframe(
        self,
        symbol: str,
        timeframe: str,
        htf_candles: dict[str, list[Candle]],
        model: Optional[MetaModel] = None,
    ) -> list[Signal]:
        """Process one symbol × timeframe unit; returns the new signals."""
        config = self._config
        candles = await self._feed.fetch_candles(symbol, timeframe, config.ohlcv_limit)
        if not candles:
            return []

        self.update_signal_outcomes(symbol, timeframe, candles)

        dynamic = build_dynamic_gate(
            candles,
            self._gate,
            atr_period=self._settings.atr_period,
            enabled=config.dynamic_gate,
        )
        diagnostics = build_diagnostics(
            candles,
            timeframe,
            dynamic.gate,
            self._history.latest(symbol, timeframe),
            self._settings,
        )
        generated = generate_signals(
            SignalRequest(
                symbol=symbol,
                timeframe=timeframe,
                candles=candles,
                htf_candles=htf_candles,
                history=self._history,
                gate=dynamic.gate,
                settings=self._settings,
                trend_mode=config.trend_mode,
            )
        )
        if not generated:
            return []

        data_source = getattr(self._feed, "last_source", None) or config.data_source
        diag_payload = diagnostics.to_dict()
        if dynamic.info is not None:
            diag_payload["dynamicGate"] = dynamic.info.to_dict()

        muted = False
        if config.auto_mute:
            decision = compute_auto_mute(
                symbol,
                timeframe,
                self._history.for_stream(symbol, timeframe),
                candles,
                data_source=data_source,
                gate_mode=config.gate_mode,
                max_hold_bars=config.max_hold_bars,
                costs=self._costs,
            )
            muted = decision.muted
            if muted:
                logger.info("%s %s muted: %s", symbol, timeframe, decision.reason)

        out: list[Signal] = []
        for signal in generated:
            enriched = replace(
                signal,
                gate_mode=config.gate_mode,
                data_source=data_source,
                diagnostics=diag_payload,
            )
            if model is not None:
                prediction = predict(model, enriched, diagnostics)
                if prediction is not None:
                    enriched = replace(
                        enriched,
                        probability=prediction.p_tp1,
                        ev_r=prediction.ev_r,
                        meta_pass=passes_filter(model, prediction),
                    )
            self._history.add(enriched)
            out.append(enriched)

            if muted or enriched.meta_pass is False:
                continue
            if self._notifier is not None:
                await self._notifier.notify(format_signal_message(enriched))

        logger.info("%s %s: %d new signal(s)", symbol, timeframe, len(out))
        return out

    def update_signal_outcomes(
        self, symbol: str, timeframe: str, candles: Sequence[Candle]
    ) -> int:
        """Write back outcomes for unresolved signals of the stream.

        Signals older than the candle window are timed out once the hold
        window has certainly elapsed.  Returns the number updated.
        """
        max_hold = self._config.max_hold_bars
        first, last = candles[0].time, candles[-1].time
        step = timeframe_seconds(timeframe)
        updated = 0

        for signal in self._history.for_stream(symbol, timeframe):
            if signal.resolved:
                continue
            trade = evaluate_signal(signal, candles, max_hold, self._costs)
            if trade.outcome != "open":
                resolved = signal.with_outcome(
                    trade.outcome,
                    resolve_outcome_time(signal, candles, trade.bars_held),
                    trade.bars_held,
                    trade.r,
                )
            elif signal.timestamp < first:
                bars_since = int((last - signal.timestamp) // step)
                if bars_since < max_hold:
                    continue
                resolved = signal.with_outcome("timeout", last, bars_since)
            else:
                continue
            self._history.replace(resolved)
            updated += 1
        return updated


def _stored_trade(signal: Signal, costs: ExecutionCosts) -> EvaluatedTrade:
    """Rebuild an ``EvaluatedTrade`` from a signal's stored outcome.

    The realized R written back with the outcome is used when present.
    Otherwise it is rebuilt from the stop or target price; timeouts with
    no recorded R count as 0R.
    """
    outcome = signal.outcome or "open"
    bars = signal.bars_held or 0
    if outcome != "open" and signal.outcome_r is not None:
        r = signal.outcome_r
    elif outcome == "stop":
        r = -1 - cost_in_r(signal.entry, signal.stop, signal.risk, costs)
    elif outcome == "tp1":
        r = signal.rr - cost_in_r(signal.entry, signal.tp1, signal.risk, costs)
    else:
        r = 0.0
    return EvaluatedTrade(signal, outcome, r, bars)
