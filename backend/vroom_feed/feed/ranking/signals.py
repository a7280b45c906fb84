"""EMA smoothing of viewer engagement signals."""

from __future__ import annotations

from dataclasses import dataclass

from vroom_feed.feed.domain import models


@dataclass(frozen=True, slots=True)
class ViewObservation:
	"""Per-view observed engagement, each component in [0, 1]."""

	watch_ratio: float
	like: float
	comment: float
	share: float

	@classmethod
	def from_view(
		cls,
		*,
		play_ms: int,
		duration_ms: int,
		liked: bool,
		commented: bool,
		shared: bool,
	) -> "ViewObservation":
		watch_ratio = 0.0
		if duration_ms > 0:
			watch_ratio = min(1.0, max(0.0, play_ms / duration_ms))
		return cls(
			watch_ratio=watch_ratio,
			like=1.0 if liked else 0.0,
			comment=1.0 if commented else 0.0,
			share=1.0 if shared else 0.0,
		)


def ema(previous: float, observed: float, alpha: float) -> float:
	return (1.0 - alpha) * previous + alpha * observed


def apply_observation(
	signal: models.InterestSignal,
	observation: ViewObservation,
	alpha: float,
) -> models.InterestSignal:
	"""Return a new signal with every component moved toward the observation."""

	return signal.model_copy(
		update={
			"watch_ratio": ema(signal.watch_ratio, observation.watch_ratio, alpha),
			"like_rate": ema(signal.like_rate, observation.like, alpha),
			"comment_rate": ema(signal.comment_rate, observation.comment, alpha),
			"share_rate": ema(signal.share_rate, observation.share, alpha),
		}
	)


__all__ = ["ViewObservation", "apply_observation", "ema"]
