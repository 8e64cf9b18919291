"""Pegkeeper: Tests for StablecoinContract.

These tests cover the decision function (dead zone, expansion,
contraction, caps), rate-limited rebalancing, stability metrics, and the
validate-before-mutate behaviour of the reserve and supply operations.
"""

from __future__ import annotations

import random

import pytest

from pegkeeper.core.time import ManualClock
from pegkeeper.stablecoin import (
    AdjustmentAction,
    InvalidInputError,
    PriceObservation,
    StablecoinConfig,
    StablecoinContract,
    SupplyAdjustment,
)


T0 = 1_700_000_000_000


def _contract(
    supply: float = 10_000.0,
    reserve: float = 2_000.0,
    clock: ManualClock | None = None,
    **overrides,
) -> StablecoinContract:
    config = StablecoinConfig(**overrides)
    return StablecoinContract(config, supply, reserve, clock or ManualClock(T0))


def _feed(contract: StablecoinContract, clock: ManualClock, price: float, confidence: float = 1.0) -> None:
    contract.add_price_data(
        PriceObservation(price=price, timestamp=clock(), volume=1_000.0, confidence=confidence)
    )


class TestInitialState:
    def test_supply_info_reports_derived_ratio(self) -> None:
        contract = _contract()
        info = contract.get_supply_info()

        assert info.total_supply == 10_000.0
        assert info.reserve_pool == 2_000.0
        assert info.reserve_ratio == pytest.approx(0.2)
        assert info.last_rebalance is None

    def test_zero_supply_has_zero_ratio_and_no_action(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(0.0, 0.0, clock=clock)
        _feed(contract, clock, 1.5)

        assert contract.get_supply_info().reserve_ratio == 0.0
        adjustment = contract.calculate_supply_adjustment()
        assert adjustment.action is AdjustmentAction.NONE
        assert adjustment.new_supply == 0.0

    def test_negative_initial_state_rejected(self) -> None:
        with pytest.raises(InvalidInputError):
            StablecoinContract(StablecoinConfig(), -1.0, 0.0)


class TestPriceHistory:
    def test_current_price_defaults_to_peg(self) -> None:
        contract = _contract(target_price=2.0)
        assert contract.get_current_price() == 2.0

    def test_current_price_is_last_added(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        _feed(contract, clock, 1.05)

        assert contract.get_current_price() == 1.05

    def test_average_price_over_window(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        for price in (1.0, 1.1, 0.9):
            _feed(contract, clock, price)
            clock.advance(100_000)
        _feed(contract, clock, 1.05)

        avg = contract.get_average_price(400_000)
        assert avg == pytest.approx((1.0 + 1.1 + 0.9 + 1.05) / 4)

    def test_average_price_excludes_old_samples(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        _feed(contract, clock, 2.0)
        clock.advance(600_000)
        _feed(contract, clock, 1.0)

        assert contract.get_average_price(300_000) == pytest.approx(1.0)

    def test_average_price_falls_back_to_current_when_window_empty(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        _feed(contract, clock, 1.07)
        clock.advance(1_000_000)

        assert contract.get_average_price(1_000) == pytest.approx(1.07)

    def test_out_of_order_observation_rejected(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        _feed(contract, clock, 1.0)

        with pytest.raises(InvalidInputError):
            contract.add_price_data(PriceObservation(price=1.0, timestamp=T0 - 1))
        assert len(contract.get_price_history()) == 1

    def test_history_pruned_by_count_and_age(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, max_price_history=3, max_history_age=10_000)
        for _ in range(5):
            _feed(contract, clock, 1.0)
            clock.advance(1_000)
        assert len(contract.get_price_history()) == 3

        clock.advance(20_000)
        _feed(contract, clock, 1.0)
        history = contract.get_price_history()
        assert len(history) == 1
        assert history[0].timestamp == clock()


class TestSupplyAdjustment:
    def test_expansion_when_price_above_peg(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, tolerance_band=0.01)
        _feed(contract, clock, 1.05)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.action is AdjustmentAction.EXPAND
        assert adjustment.amount > 0
        assert adjustment.new_supply > 10_000
        assert adjustment.deviation == pytest.approx(0.05)

    def test_contraction_when_price_below_peg(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, tolerance_band=0.01)
        _feed(contract, clock, 0.95)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.action is AdjustmentAction.CONTRACT
        assert adjustment.amount > 0
        assert adjustment.new_supply == pytest.approx(10_000 - adjustment.amount)

    def test_no_action_inside_tolerance(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, tolerance_band=0.05)
        _feed(contract, clock, 1.02)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.action is AdjustmentAction.NONE
        assert adjustment.amount == 0.0
        assert adjustment.new_supply == 10_000

    def test_amount_follows_linear_curve_below_cap(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, tolerance_band=0.01, response_factor=0.5)
        _feed(contract, clock, 1.04)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.amount == pytest.approx(10_000 * 0.04 * 0.5)

    def test_max_supply_change_caps_extreme_deviation(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, max_supply_change=0.05, tolerance_band=0.01)
        _feed(contract, clock, 2.0)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.action is AdjustmentAction.EXPAND
        assert adjustment.amount == pytest.approx(500.0)

    def test_expansion_capped_by_reserve_headroom(self) -> None:
        clock = ManualClock(T0)
        # Floor 0.19 with ratio 0.2 leaves headroom of ~526 units.
        contract = _contract(clock=clock, reserve_ratio=0.19, tolerance_band=0.01)
        _feed(contract, clock, 1.5)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.action is AdjustmentAction.EXPAND
        assert adjustment.amount < 10_000 * 0.1
        assert 2_000 / adjustment.new_supply >= 0.19

    def test_expansion_without_headroom_is_no_action(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, reserve_ratio=0.25, tolerance_band=0.01)
        _feed(contract, clock, 1.5)

        assert contract.calculate_supply_adjustment().action is AdjustmentAction.NONE

    def test_contraction_respects_reserve_ratio(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(2_500 * 4, 2_500, clock=clock, reserve_ratio=0.25, tolerance_band=0.01)
        _feed(contract, clock, 0.9)

        adjustment = contract.calculate_supply_adjustment()

        assert adjustment.action is AdjustmentAction.CONTRACT
        assert 2_500 / adjustment.new_supply >= 0.25

    def test_calculation_is_pure(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, tolerance_band=0.01)
        _feed(contract, clock, 1.2)

        first = contract.calculate_supply_adjustment()
        second = contract.calculate_supply_adjustment()

        assert first == second
        assert contract.get_supply_info().total_supply == 10_000
        assert contract.get_supply_history() == []


class TestSupplyAdjustmentProperties:
    """Seeded random sweeps over supply/reserve/price inputs."""

    def test_prices_inside_band_never_act(self) -> None:
        rng = random.Random(7)
        for _ in range(300):
            band = rng.uniform(0.0, 0.2)
            clock = ManualClock(T0)
            contract = _contract(rng.uniform(0, 1e6), rng.uniform(0, 1e6), clock=clock, tolerance_band=band)
            for _ in range(rng.randint(1, 5)):
                _feed(contract, clock, 1.0 + rng.uniform(-band, band) * 0.999)
                clock.advance(rng.randint(0, 10_000))

            assert contract.calculate_supply_adjustment().action is AdjustmentAction.NONE

    def test_amount_never_exceeds_cap_and_floor_holds(self) -> None:
        rng = random.Random(11)
        for _ in range(500):
            supply = rng.uniform(1.0, 1e7)
            ratio_floor = rng.uniform(0.0, 0.5)
            reserve = supply * rng.uniform(ratio_floor, 1.0)
            max_change = rng.uniform(0.01, 1.0)
            clock = ManualClock(T0)
            contract = _contract(
                supply,
                reserve,
                clock=clock,
                reserve_ratio=ratio_floor,
                max_supply_change=max_change,
                tolerance_band=rng.uniform(0.0, 0.05),
                response_factor=rng.uniform(0.05, 1.0),
            )
            _feed(contract, clock, rng.uniform(0.01, 5.0))

            adjustment = contract.calculate_supply_adjustment()

            assert adjustment.amount >= 0.0
            assert adjustment.amount <= supply * max_change * (1 + 1e-12)
            assert adjustment.new_supply >= 0.0
            if adjustment.new_supply > 0:
                assert reserve / adjustment.new_supply >= ratio_floor * (1 - 1e-12)


class TestRebalance:
    def test_rebalance_applies_and_records(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, rebalance_interval=0)
        _feed(contract, clock, 1.1)

        adjustment = contract.rebalance()

        assert adjustment is not None
        assert adjustment.action is AdjustmentAction.EXPAND
        info = contract.get_supply_info()
        assert info.total_supply == pytest.approx(adjustment.new_supply)
        assert info.total_supply > 10_000
        assert info.last_rebalance == T0
        assert contract.get_supply_history() == [adjustment]

    def test_rebalance_rate_limited_within_interval(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, rebalance_interval=60_000, tolerance_band=0.01)
        _feed(contract, clock, 1.1)

        first = contract.rebalance()
        clock.advance(30_000)
        second = contract.rebalance()

        assert first is not None and first.action is AdjustmentAction.EXPAND
        assert second is None
        assert len(contract.get_supply_history()) == 1

        clock.advance(30_000)
        _feed(contract, clock, 1.1)
        third = contract.rebalance()
        assert third is not None and third.action is AdjustmentAction.EXPAND
        assert len(contract.get_supply_history()) == 2

    def test_rebalance_inside_band_returns_none_action_unrecorded(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, rebalance_interval=60_000)
        _feed(contract, clock, 1.0)

        adjustment = contract.rebalance()

        assert adjustment is not None
        assert adjustment.action is AdjustmentAction.NONE
        assert contract.get_supply_history() == []
        assert contract.get_supply_info().last_rebalance is None

    def test_rebalance_rejected_by_reserve_floor_returns_none_action(self, monkeypatch) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, reserve_ratio=0.2, tolerance_band=0.01)
        _feed(contract, clock, 1.2)
        breaching = SupplyAdjustment(
            action=AdjustmentAction.EXPAND,
            amount=5_000.0,
            new_supply=15_000.0,
            timestamp=T0,
            price=1.2,
            deviation=0.2,
        )
        monkeypatch.setattr(contract, "calculate_supply_adjustment", lambda now=None: breaching)

        adjustment = contract.rebalance()

        assert adjustment is not None
        assert adjustment.action is AdjustmentAction.NONE
        assert adjustment.deviation == pytest.approx(0.2)
        info = contract.get_supply_info()
        assert info.total_supply == 10_000
        assert info.last_rebalance is None
        assert contract.get_supply_history() == []

    def test_supply_history_most_recent_first_and_limited(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock, rebalance_interval=0, tolerance_band=0.01)
        for price in (1.1, 0.9, 1.2):
            clock.advance(400_000)
            _feed(contract, clock, price)
            contract.rebalance()

        history = contract.get_supply_history()
        assert [a.action for a in history] == [
            AdjustmentAction.EXPAND,
            AdjustmentAction.CONTRACT,
            AdjustmentAction.EXPAND,
        ]
        assert history[0].timestamp > history[1].timestamp > history[2].timestamp
        assert len(contract.get_supply_history(2)) == 2


class TestStabilityMetrics:
    def test_stable_prices_score_high(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        rng = random.Random(3)
        for _ in range(10):
            _feed(contract, clock, 1.0 + (rng.random() - 0.5) * 0.01)
            clock.advance(60_000)

        metrics = contract.get_stability_metrics()

        assert metrics.target_price == 1.0
        assert metrics.deviation < 0.1
        assert metrics.stability_score >= 50
        assert metrics.sample_count == 10

    def test_volatile_prices_score_low(self) -> None:
        clock = ManualClock(T0)
        contract = _contract(clock=clock)
        for price in (1.0, 1.2, 0.8, 1.15, 0.85, 1.1, 0.9, 1.05, 0.95, 1.0):
            _feed(contract, clock, price)
            clock.advance(60_000)

        metrics = contract.get_stability_metrics()

        assert metrics.volatility >= 0.1
        assert metrics.stability_score <= 80

    def test_no_history_is_perfectly_stable(self) -> None:
        metrics = _contract().get_stability_metrics()

        assert metrics.current_price == 1.0
        assert metrics.deviation == 0.0
        assert metrics.volatility == 0.0
        assert metrics.stability_score == 100.0

    def test_score_decreases_with_deviation(self) -> None:
        scores = []
        for price in (1.0, 1.02, 1.05, 1.2):
            clock = ManualClock(T0)
            contract = _contract(clock=clock)
            _feed(contract, clock, price)
            scores.append(contract.get_stability_metrics().stability_score)

        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 100.0 for s in scores)

    def test_score_keeps_falling_past_large_depegs(self) -> None:
        scores = []
        for price in (1.10, 2.0, 10.0):
            clock = ManualClock(T0)
            contract = _contract(clock=clock)
            _feed(contract, clock, price)
            scores.append(contract.get_stability_metrics().stability_score)

        assert scores[0] == pytest.approx(50.0)
        assert scores[0] > scores[1] > scores[2] >= 0.0


class TestReservesAndSupplyOperations:
    def test_add_reserves(self) -> None:
        contract = _contract()
        assert contract.add_reserves(500) is True
        assert contract.get_supply_info().reserve_pool == 2_500

    def test_remove_reserves_with_sufficient_backing(self) -> None:
        contract = _contract(10_000, 5_000)
        assert contract.remove_reserves(1_000) is True
        assert contract.get_supply_info().reserve_pool == 4_000

    def test_remove_reserves_at_floor_fails_without_mutation(self) -> None:
        contract = _contract(10_000, 3_000, reserve_ratio=0.3)

        assert contract.remove_reserves(100) is False
        assert contract.get_supply_info().reserve_pool == 3_000

    def test_remove_more_than_pool_fails(self) -> None:
        contract = _contract(0.0, 100.0)
        assert contract.remove_reserves(150) is False
        assert contract.get_supply_info().reserve_pool == 100.0

    def test_mint_then_burn(self) -> None:
        contract = _contract()

        assert contract.mint(1_000) is True
        assert contract.get_supply_info().total_supply == 11_000
        assert contract.burn(2_000) is True
        assert contract.get_supply_info().total_supply == 9_000
        assert contract.burn(15_000) is False
        assert contract.get_supply_info().total_supply == 9_000

    def test_mint_breaching_reserve_floor_fails(self) -> None:
        contract = _contract(10_000, 2_000, reserve_ratio=0.2)

        assert contract.mint(1) is False
        assert contract.get_supply_info().total_supply == 10_000

    @pytest.mark.parametrize("reserve", [10.0, 0.0])
    def test_mint_from_zero_supply_requires_reserve_floor(self, reserve: float) -> None:
        contract = _contract(0.0, reserve, reserve_ratio=0.1)

        assert contract.mint(1_000) is False
        info = contract.get_supply_info()
        assert info.total_supply == 0.0
        assert info.reserve_pool == reserve

    def test_mint_from_zero_supply_within_floor_succeeds(self) -> None:
        contract = _contract(0.0, 10.0, reserve_ratio=0.1)

        assert contract.mint(100) is True
        assert contract.get_supply_info().reserve_ratio == pytest.approx(0.1)

    @pytest.mark.parametrize("amount", [0, -5, float("nan")])
    def test_invalid_amounts_rejected(self, amount: float) -> None:
        contract = _contract()
        for op in (contract.add_reserves, contract.remove_reserves, contract.mint, contract.burn):
            with pytest.raises(InvalidInputError):
                op(amount)
        info = contract.get_supply_info()
        assert (info.total_supply, info.reserve_pool) == (10_000, 2_000)


class TestConfiguration:
    def test_update_config_merges_fields(self) -> None:
        contract = _contract()
        before = contract.get_config()

        contract.update_config({"target_price": 2.0, "tolerance_band": 0.1})
        after = contract.get_config()

        assert after.target_price == 2.0
        assert after.tolerance_band == 0.1
        assert after.max_supply_change == before.max_supply_change
        assert after.reserve_ratio == before.reserve_ratio
        assert after.rebalance_interval == before.rebalance_interval
        assert before.target_price == 1.0

    def test_invalid_update_leaves_config_unchanged(self) -> None:
        contract = _contract()
        before = contract.get_config()

        with pytest.raises(InvalidInputError):
            contract.update_config({"tolerance_band": -0.1})
        with pytest.raises(InvalidInputError):
            contract.update_config({"not_a_field": 1})

        assert contract.get_config() is before
