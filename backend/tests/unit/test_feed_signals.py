from __future__ import annotations

from contextlib import asynccontextmanager

import pytest

from vroom_feed.feed.domain import models
from vroom_feed.feed.domain.config import FeedConfig
from vroom_feed.feed.infra import signals as signal_infra
from vroom_feed.feed.ranking.signals import ViewObservation, apply_observation, ema


def test_watch_ratio_is_clamped():
    full = ViewObservation.from_view(play_ms=30_000, duration_ms=10_000, liked=False, commented=False, shared=False)
    none = ViewObservation.from_view(play_ms=0, duration_ms=0, liked=False, commented=False, shared=False)
    assert full.watch_ratio == 1.0
    assert none.watch_ratio == 0.0


def test_ema_moves_a_fraction_toward_observation():
    assert ema(0.5, 1.0, 0.2) == pytest.approx(0.6)
    assert ema(0.5, 0.0, 0.2) == pytest.approx(0.4)


def test_apply_observation_updates_every_component():
    signal = models.InterestSignal.neutral("viewer")
    observation = ViewObservation.from_view(play_ms=5_000, duration_ms=10_000, liked=True, commented=True, shared=False)

    updated = apply_observation(signal, observation, 0.2)

    assert updated.watch_ratio == pytest.approx(0.5)
    assert updated.like_rate == pytest.approx(0.8 * 0.05 + 0.2)
    assert updated.comment_rate == pytest.approx(0.8 * 0.01 + 0.2)
    assert updated.share_rate == pytest.approx(0.8 * 0.005)
    assert signal.like_rate == pytest.approx(0.05)


class _CapturingPool:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    @asynccontextmanager
    async def acquire(self):
        yield self

    async def execute(self, sql: str, *args):
        self.calls.append(args)
        return "INSERT 0 1"


@pytest.mark.asyncio
async def test_first_view_seeds_row_from_neutral_mean(monkeypatch, now):
    pool = _CapturingPool()

    async def _pool():
        return pool

    monkeypatch.setattr(signal_infra, "get_pool", _pool)
    observation = ViewObservation.from_view(play_ms=9_000, duration_ms=12_000, liked=True, commented=False, shared=True)
    store = signal_infra.SignalStore(FeedConfig(ema_alpha=0.2))

    await store.apply_view("viewer", observation, now=now)

    (args,) = pool.calls
    expected = apply_observation(models.InterestSignal.neutral("viewer"), observation, 0.2)
    assert args[0] == "viewer"
    assert args[1] == pytest.approx(0.2)
    assert args[2:6] == pytest.approx(
        (expected.like_rate, expected.comment_rate, expected.share_rate, expected.watch_ratio)
    )
    assert args[6:10] == pytest.approx((1.0, 0.0, 1.0, 0.75))
    assert args[10] == now
