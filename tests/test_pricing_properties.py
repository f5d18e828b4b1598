"""
属性测试：阶梯定价引擎

使用 hypothesis 进行属性测试，验证档位覆盖、非累进计价、节省比例和输入校验。
"""

from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from mediaorder.infra.gateway_errors import ErrorKind, ValidationError
from mediaorder.services.pricing_service import (
    DEFAULT_TIERS,
    InvalidTierTableError,
    PricingEngine,
    PricingTier,
    price,
    tier_for,
)


engine = PricingEngine(max_supported_units=500)

# ============== 测试策略 ==============

units_strategy = st.integers(min_value=1, max_value=500)

invalid_units_strategy = (
    st.integers(max_value=0)
    | st.integers(min_value=501)
    | st.floats(allow_nan=False)
    | st.booleans()
    | st.text(max_size=5)
)


# ============== Property 1: 档位全覆盖 ==============
# **Feature: media-order, Property 1: 档位全覆盖**


@given(units=units_strategy)
def test_every_valid_quantity_has_exactly_one_tier(units: int):
    """
    **Feature: media-order, Property 1: 档位全覆盖**

    *For any* 1 到 500 之间的单位数，tier_for SHALL 返回唯一一个包含该数量的档位。
    """
    tier = engine.tier_for(units)
    assert tier.min_units <= units <= tier.max_units
    assert sum(1 for t in engine.tiers if t.contains(units)) == 1


@given(units=units_strategy)
def test_price_and_tier_for_agree(units: int):
    """
    **Feature: media-order, Property 1: 档位全覆盖**

    *For any* 单位数，price 使用的档位 SHALL 与 tier_for 返回的档位一致。
    """
    result = engine.price(units)
    assert result.tier == engine.tier_for(units)
    assert result.total_cost == units * result.tier.rate_per_unit
    assert result.average_cost_per_unit == result.tier.rate_per_unit


# ============== Property 2: 幂等 ==============
# **Feature: media-order, Property 2: 定价幂等**


@given(units=units_strategy)
def test_pricing_is_idempotent(units: int):
    """
    **Feature: media-order, Property 2: 定价幂等**

    *For any* 单位数，重复调用 price SHALL 得到完全相同的结果。
    """
    assert engine.price(units) == engine.price(units)
    assert price(units) == engine.price(units)


# ============== Property 3: 单价单调 ==============
# **Feature: media-order, Property 3: 单价单调不增**


@given(a=units_strategy, b=units_strategy)
def test_average_cost_never_increases_with_quantity(a: int, b: int):
    """
    **Feature: media-order, Property 3: 单价单调不增**

    *For any* u1 < u2，price(u2) 的平均单价 SHALL 不高于 price(u1)。
    """
    low, high = sorted((a, b))
    assert engine.price(high).average_cost_per_unit <= engine.price(low).average_cost_per_unit
    assert engine.price(high).savings_percentage >= engine.price(low).savings_percentage


# ============== Property 4: 档位明细仅供展示 ==============
# **Feature: media-order, Property 4: 档位明细**


@given(units=units_strategy)
def test_breakdown_covers_every_tier_and_is_bracketed(units: int):
    """
    **Feature: media-order, Property 4: 档位明细**

    *For any* 单位数，明细 SHALL 包含每个档位一行，累进分配的单位数之和等于总数。
    """
    result = engine.price(units)
    assert len(result.tier_breakdown) == len(engine.tiers)
    assert sum(row.units_in_tier for row in result.tier_breakdown) == units
    for row in result.tier_breakdown:
        assert row.is_used == (units >= row.tier.min_units)
        assert row.tier_cost == row.units_in_tier * row.tier.rate_per_unit


# ============== Property 5: 非法输入 ==============
# **Feature: media-order, Property 5: 非法单位数被拒绝**


@given(units=invalid_units_strategy)
def test_invalid_units_are_rejected(units):
    """
    **Feature: media-order, Property 5: 非法单位数被拒绝**

    *For any* 非整数、小于 1 或超过上限的输入，price 与 tier_for SHALL 抛出 ValidationError。
    """
    with pytest.raises(ValidationError) as exc_info:
        engine.price(units)
    assert exc_info.value.kind == ErrorKind.VALIDATION
    assert exc_info.value.retryable is False
    with pytest.raises(ValidationError):
        engine.tier_for(units)


@pytest.mark.parametrize("units", [0, -5, 501, 1.5, True])
def test_documented_invalid_quantities(units):
    """price(0), price(-5), price(501), price(1.5) 均失败"""
    with pytest.raises(ValidationError) as exc_info:
        price(units)
    assert exc_info.value.field == "units"


# ============== 示例场景 ==============


def test_price_150_units():
    """150 单位落在 Enterprise 档位"""
    result = engine.price(150)
    assert result.total_cost == Decimal("44.250")
    assert result.average_cost_per_unit == Decimal("0.295")
    assert result.total_savings == Decimal("30.750")
    assert result.savings_percentage == Decimal("41.00")
    assert result.tier.label == "Enterprise"


@pytest.mark.parametrize(
    "units,label",
    [(1, "Starter"), (10, "Starter"), (11, "Basic"), (49, "Standard"), (50, "Professional"),
     (100, "Premium"), (101, "Enterprise"), (400, "Business"), (500, "Corporate")],
)
def test_boundaries_resolve_to_declaring_tier(units: int, label: str):
    assert tier_for(units).label == label


def test_smallest_quantity_has_no_savings():
    result = engine.price(5)
    assert result.total_savings == 0
    assert result.savings_percentage == Decimal("0.00")


def test_cost_at_tier_and_compare():
    assert engine.cost_at_tier(100, 0) == Decimal("50.00")
    assert engine.cost_at_tier(100, 7) == Decimal("24.00")
    with pytest.raises(ValidationError):
        engine.cost_at_tier(100, 8)
    results = engine.compare([10, 150, 500])
    assert [r.total_units for r in results] == [10, 150, 500]


def test_formatting():
    result = engine.price(150)
    assert PricingEngine.format_result(result) == (
        "150 units = $44.25 (avg $0.295/unit) - Save $30.75 (41.0%)"
    )
    breakdown = PricingEngine.format_breakdown(result, currency="€")
    assert breakdown.splitlines()[0] == "Tier Breakdown for 150 units:"
    assert "* Enterprise" in breakdown
    assert "Corporate" not in breakdown
    assert "Total: 150 units = €44.25" in breakdown


# ============== 档位表校验 ==============


@pytest.mark.parametrize(
    "tiers",
    [
        (),
        (PricingTier(1, 10, Decimal("0.5"), "a"), PricingTier(12, 500, Decimal("0.4"), "b")),
        (PricingTier(1, 10, Decimal("0.5"), "a"), PricingTier(10, 500, Decimal("0.4"), "b")),
        (PricingTier(1, 400, Decimal("0.5"), "a"),),
        (PricingTier(1, 500, Decimal("0"), "free"),),
    ],
)
def test_invalid_tier_tables_fail_at_construction(tiers):
    with pytest.raises(InvalidTierTableError):
        PricingEngine(tiers, max_supported_units=500)


def test_custom_table_with_smaller_limit():
    custom = PricingEngine(DEFAULT_TIERS[:2], max_supported_units=20)
    assert custom.price(20).tier.label == "Basic"
    with pytest.raises(ValidationError):
        custom.price(21)
