from __future__ import annotations

import pytest

from contentgen.ai.adaptive import AdaptiveConfig, AdaptiveState, base_threshold, next_params


@pytest.mark.parametrize(
  ("progress", "expected"),
  [(0.0, 0.85), (0.29, 0.85), (0.3, 0.80), (0.59, 0.80), (0.6, 0.77), (0.84, 0.77), (0.85, 0.73), (1.0, 0.73)],
)
def test_base_threshold_by_progress(progress: float, expected: float) -> None:
  assert base_threshold(progress) == expected


def test_soft_relaxation_after_five_failures() -> None:
  assert next_params(0.0, 4).threshold == 0.85
  assert next_params(0.0, 5).threshold == 0.80
  # Floor of the soft relaxation.
  assert next_params(0.9, 5).threshold == 0.70


def test_hard_relaxation_supersedes_soft() -> None:
  assert next_params(0.0, 8).threshold == 0.78
  assert next_params(0.9, 8).threshold == 0.68


def test_parameters_escalate_and_cap() -> None:
  params = next_params(0.0, 2)
  assert (params.temperature, params.top_p, params.top_k) == (1.0, 0.96, 70)

  capped = next_params(0.0, 50)
  assert (capped.temperature, capped.top_p, capped.top_k) == (1.3, 0.98, 100)


def test_parameters_stay_within_bounds_for_all_inputs() -> None:
  for step in range(0, 101, 5):
    for failures in range(0, 30):
      params = next_params(step / 100, failures)
      assert 0.68 <= params.threshold <= 0.85
      assert 0.9 <= params.temperature <= 1.3
      assert 0.95 <= params.top_p <= 0.98
      assert 60 <= params.top_k <= 100


def test_acceptance_resets_to_base_parameters() -> None:
  state = AdaptiveState(target=4)
  for _ in range(7):
    state = state.record_rejection()
  assert state.params.temperature > 0.9

  state = state.record_acceptance()
  assert state.consecutive_failures == 0
  assert state.accepted == 1
  params = state.params
  assert (params.temperature, params.top_p, params.top_k) == (0.9, 0.95, 60)
  assert params.threshold == base_threshold(0.25)


def test_state_updates_return_new_values() -> None:
  state = AdaptiveState(target=3)
  rejected = state.record_rejection()
  assert state.consecutive_failures == 0
  assert rejected.consecutive_failures == 1


def test_saturation_limit_is_fixed_by_default_and_optionally_proportional() -> None:
  state = AdaptiveState(target=50)
  for _ in range(10):
    state = state.record_rejection()
  assert state.saturated

  proportional = AdaptiveConfig(saturation_per_item=0.5)
  assert proportional.saturation_for(4) == 10
  assert proportional.saturation_for(50) == 25


def test_custom_constants_are_honoured() -> None:
  config = AdaptiveConfig(soft_stall=2, soft_relaxation=0.1, hard_stall=3)
  assert next_params(0.0, 2, config).threshold == 0.75
  assert next_params(0.0, 3, config).threshold == 0.78


def test_invalid_config_is_rejected() -> None:
  with pytest.raises(ValueError):
    AdaptiveConfig(soft_stall=9, hard_stall=8)
  with pytest.raises(ValueError):
    AdaptiveConfig(saturation_limit=0)
