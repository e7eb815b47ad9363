"""Adaptive similarity threshold and sampling parameter control.

The controller is a pure function of (progress, consecutive rejections). Each
generation loop threads its own immutable AdaptiveState through its iterations
so concurrent batches never share counters.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace

from contentgen.ai.providers.base import GenerationParams


@dataclass(frozen=True)
class AdaptiveConfig:
  """Tunable constants for threshold relaxation and parameter escalation."""

  # (progress upper bound, threshold) pairs checked in order.
  threshold_bands: tuple[tuple[float, float], ...] = ((0.3, 0.85), (0.6, 0.80), (0.85, 0.77))
  final_threshold: float = 0.73
  soft_stall: int = 5
  soft_relaxation: float = 0.05
  soft_floor: float = 0.70
  hard_stall: int = 8
  hard_relaxation: float = 0.07
  hard_floor: float = 0.68
  threshold_ceiling: float = 0.85
  base_temperature: float = 0.9
  temperature_step: float = 0.05
  max_temperature: float = 1.3
  base_top_p: float = 0.95
  top_p_step: float = 0.005
  max_top_p: float = 0.98
  base_top_k: int = 60
  top_k_step: int = 5
  max_top_k: int = 100
  saturation_limit: int = 10
  # When positive, the saturation limit grows with the batch size.
  saturation_per_item: float = 0.0

  def __post_init__(self) -> None:
    if self.hard_floor > self.threshold_ceiling:
      raise ValueError("hard_floor must not exceed threshold_ceiling.")
    if self.saturation_limit < 1:
      raise ValueError("saturation_limit must be at least 1.")
    if self.soft_stall > self.hard_stall:
      raise ValueError("soft_stall must not exceed hard_stall.")

  def saturation_for(self, target_count: int) -> int:
    """Return the consecutive-rejection limit for a batch of `target_count` items."""
    if self.saturation_per_item <= 0:
      return self.saturation_limit
    return max(self.saturation_limit, math.ceil(self.saturation_per_item * target_count))

  def clamp_threshold(self, value: float) -> float:
    return round(min(self.threshold_ceiling, max(self.hard_floor, value)), 4)


DEFAULT_ADAPTIVE_CONFIG = AdaptiveConfig()


@dataclass(frozen=True)
class AdaptiveParams:
  """Similarity cutoff plus the sampling parameters for one attempt."""

  threshold: float
  temperature: float
  top_p: float
  top_k: int

  def generation_params(self, *, max_tokens: int) -> GenerationParams:
    return GenerationParams(temperature=self.temperature, top_p=self.top_p, top_k=self.top_k, max_tokens=max_tokens)


def base_threshold(progress: float, config: AdaptiveConfig = DEFAULT_ADAPTIVE_CONFIG) -> float:
  """Threshold for a batch that is `progress` (0..1) of the way to its target."""
  for upper_bound, threshold in config.threshold_bands:
    if progress < upper_bound:
      return threshold
  return config.final_threshold


def next_params(progress: float, consecutive_failures: int, config: AdaptiveConfig = DEFAULT_ADAPTIVE_CONFIG) -> AdaptiveParams:
  """Compute the threshold and sampling parameters for the next attempt."""
  failures = max(0, consecutive_failures)
  threshold = base_threshold(progress, config)

  # The hard relaxation supersedes the soft one; they never stack.
  if failures >= config.hard_stall:
    threshold = max(config.hard_floor, threshold - config.hard_relaxation)
  elif failures >= config.soft_stall:
    threshold = max(config.soft_floor, threshold - config.soft_relaxation)

  temperature = min(config.max_temperature, config.base_temperature + config.temperature_step * failures)
  top_p = min(config.max_top_p, config.base_top_p + config.top_p_step * failures)
  top_k = min(config.max_top_k, config.base_top_k + config.top_k_step * failures)
  return AdaptiveParams(threshold=config.clamp_threshold(threshold), temperature=round(temperature, 4), top_p=round(top_p, 4), top_k=int(top_k))


@dataclass(frozen=True)
class AdaptiveState:
  """Per-job adaptive counters; every update returns a new value."""

  target: int
  accepted: int = 0
  consecutive_failures: int = 0
  config: AdaptiveConfig = field(default=DEFAULT_ADAPTIVE_CONFIG, repr=False)

  @property
  def progress(self) -> float:
    if self.target <= 0:
      return 1.0
    return min(self.accepted / self.target, 1.0)

  @property
  def params(self) -> AdaptiveParams:
    return next_params(self.progress, self.consecutive_failures, self.config)

  @property
  def threshold(self) -> float:
    return self.params.threshold

  @property
  def saturated(self) -> bool:
    return self.consecutive_failures >= self.config.saturation_for(self.target)

  def record_rejection(self) -> AdaptiveState:
    return replace(self, consecutive_failures=self.consecutive_failures + 1)

  def record_acceptance(self) -> AdaptiveState:
    # Acceptance resets escalation back to the base parameters.
    return replace(self, accepted=self.accepted + 1, consecutive_failures=0)
