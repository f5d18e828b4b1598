"""
Pricing Service

阶梯定价引擎：根据购买单位数定位唯一档位，整单按该档位单价计价（非累进）。
所有金额使用 Decimal 计算，相同输入多次调用结果完全一致。

档位明细 (tier_breakdown) 按累进方式计算每个档位可分得的单位数和名义金额，
仅用于展示，不参与 total_cost 的计算。
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from mediaorder.config import get_settings
from mediaorder.infra.gateway_errors import ValidationError

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class InvalidTierTableError(ValueError):
    """档位表不合法（有缺口、重叠或无效单价）"""


@dataclass(frozen=True)
class PricingTier:
    """定价档位，上下界均包含在内"""
    min_units: int
    max_units: int
    rate_per_unit: Decimal
    label: str

    def contains(self, units: int) -> bool:
        return self.min_units <= units <= self.max_units


@dataclass(frozen=True)
class TierCalculation:
    """单个档位的明细（仅供展示）"""
    tier: PricingTier
    units_in_tier: int
    tier_cost: Decimal
    is_used: bool


@dataclass(frozen=True)
class PricingResult:
    """定价结果"""
    total_units: int
    total_cost: Decimal
    average_cost_per_unit: Decimal
    tier: PricingTier
    tier_breakdown: tuple[TierCalculation, ...]
    total_savings: Decimal
    savings_percentage: Decimal


DEFAULT_TIERS: tuple[PricingTier, ...] = (
    PricingTier(1, 10, Decimal("0.50"), "Starter"),
    PricingTier(11, 20, Decimal("0.45"), "Basic"),
    PricingTier(21, 49, Decimal("0.40"), "Standard"),
    PricingTier(50, 89, Decimal("0.40"), "Professional"),
    PricingTier(90, 100, Decimal("0.30"), "Premium"),
    PricingTier(101, 200, Decimal("0.295"), "Enterprise"),
    PricingTier(201, 400, Decimal("0.26"), "Business"),
    PricingTier(401, 500, Decimal("0.24"), "Corporate"),
)


def _validate_table(tiers: Sequence[PricingTier], max_supported_units: int) -> None:
    """
    校验档位表覆盖 [1, max_supported_units] 且无缺口、无重叠

    Raises:
        InvalidTierTableError: 档位表不合法
    """
    if not tiers:
        raise InvalidTierTableError("Tier table is empty")

    expected_min = 1
    for tier in tiers:
        if tier.min_units < 1 or tier.max_units < tier.min_units:
            raise InvalidTierTableError(f"Invalid bounds for tier {tier.label!r}")
        if tier.rate_per_unit <= 0:
            raise InvalidTierTableError(f"Rate for tier {tier.label!r} must be positive")
        if tier.min_units != expected_min:
            problem = "gap" if tier.min_units > expected_min else "overlap"
            raise InvalidTierTableError(
                f"Tier {tier.label!r} starts at {tier.min_units}, expected {expected_min} ({problem})"
            )
        expected_min = tier.max_units + 1

    if expected_min - 1 != max_supported_units:
        raise InvalidTierTableError(
            f"Tier table ends at {expected_min - 1}, expected {max_supported_units}"
        )


class PricingEngine:
    """阶梯定价引擎"""

    def __init__(
        self,
        tiers: Iterable[PricingTier] = DEFAULT_TIERS,
        max_supported_units: int | None = None,
    ):
        """
        初始化定价引擎

        Args:
            tiers: 档位表，按单位数从小到大排列
            max_supported_units: 支持的最大单位数，默认从配置读取

        Raises:
            InvalidTierTableError: 档位表不合法
        """
        self._tiers = tuple(tiers)
        if max_supported_units is None:
            max_supported_units = get_settings().max_supported_units
        self.max_supported_units = max_supported_units
        _validate_table(self._tiers, max_supported_units)
        self._baseline_rate = max(t.rate_per_unit for t in self._tiers)

    @property
    def tiers(self) -> tuple[PricingTier, ...]:
        return self._tiers

    def _validate_units(self, units: object) -> int:
        if isinstance(units, bool) or not isinstance(units, int):
            raise ValidationError(
                f"units must be an integer, got {units!r}", field="units"
            )
        if units < 1:
            raise ValidationError(f"units must be at least 1, got {units}", field="units")
        if units > self.max_supported_units:
            raise ValidationError(
                f"units must not exceed {self.max_supported_units}, got {units}",
                field="units",
            )
        return units

    def _lookup(self, units: int) -> PricingTier:
        for tier in self._tiers:
            if tier.contains(units):
                return tier
        # 档位表已在构造时校验，不会走到这里
        raise InvalidTierTableError(f"No tier covers {units} units")

    def tier_for(self, units: int) -> PricingTier:
        """
        获取单位数所在的档位

        Raises:
            ValidationError: 单位数不合法
        """
        return self._lookup(self._validate_units(units))

    def price(self, units: int) -> PricingResult:
        """
        计算订单价格

        Args:
            units: 购买单位数，1 到 max_supported_units 之间的整数

        Returns:
            PricingResult: 定价结果

        Raises:
            ValidationError: 单位数不是整数、小于 1 或超过上限
        """
        units = self._validate_units(units)
        tier = self._lookup(units)

        total_cost = units * tier.rate_per_unit
        baseline_cost = units * self._baseline_rate
        total_savings = baseline_cost - total_cost
        savings_percentage = (total_savings / baseline_cost * 100).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )

        return PricingResult(
            total_units=units,
            total_cost=total_cost,
            average_cost_per_unit=total_cost / units,
            tier=tier,
            tier_breakdown=self._breakdown(units),
            total_savings=total_savings,
            savings_percentage=savings_percentage,
        )

    def _breakdown(self, units: int) -> tuple[TierCalculation, ...]:
        rows = []
        for tier in self._tiers:
            in_tier = min(units, tier.max_units) - tier.min_units + 1 if units >= tier.min_units else 0
            rows.append(TierCalculation(
                tier=tier,
                units_in_tier=in_tier,
                tier_cost=in_tier * tier.rate_per_unit,
                is_used=in_tier > 0,
            ))
        return tuple(rows)

    def cost_at_tier(self, units: int, tier_index: int) -> Decimal:
        """
        按指定档位单价计算金额（用于比较不同档位）

        Raises:
            ValidationError: 单位数或档位序号不合法
        """
        units = self._validate_units(units)
        if isinstance(tier_index, bool) or not isinstance(tier_index, int) \
                or not 0 <= tier_index < len(self._tiers):
            raise ValidationError(
                f"tier_index must be between 0 and {len(self._tiers) - 1}, got {tier_index!r}",
                field="tier_index",
            )
        return units * self._tiers[tier_index].rate_per_unit

    def compare(self, quantities: Iterable[int]) -> list[PricingResult]:
        """对多个单位数分别定价"""
        return [self.price(units) for units in quantities]

    @staticmethod
    def format_result(result: PricingResult, currency: str = "$") -> str:
        """格式化为单行摘要"""
        return (
            f"{result.total_units} units = {currency}{result.total_cost:.2f} "
            f"(avg {currency}{result.average_cost_per_unit:.3f}/unit) "
            f"- Save {currency}{result.total_savings:.2f} ({result.savings_percentage:.1f}%)"
        )

    @staticmethod
    def format_breakdown(result: PricingResult, currency: str = "$") -> str:
        """格式化为多行档位明细"""
        rule = "-" * 50
        lines = [f"Tier Breakdown for {result.total_units} units:", rule]
        for row in result.tier_breakdown:
            if row.is_used:
                marker = "*" if row.tier == result.tier else " "
                lines.append(
                    f"{marker} {row.tier.label:<14} "
                    f"{row.tier.min_units:>3}-{row.tier.max_units:<3} "
                    f"{row.units_in_tier:>3} units @ {currency}{row.tier.rate_per_unit:.3f} "
                    f"= {currency}{row.tier_cost:.2f}"
                )
        lines.append(rule)
        lines.append(f"Total: {result.total_units} units = {currency}{result.total_cost:.2f}")
        lines.append(f"Average: {currency}{result.average_cost_per_unit:.3f} per unit")
        lines.append(
            f"Savings: {currency}{result.total_savings:.2f} ({result.savings_percentage:.1f}%)"
        )
        return "\n".join(lines)


@lru_cache
def get_pricing_engine() -> PricingEngine:
    """获取默认定价引擎（单例）"""
    engine = PricingEngine()
    logger.info(f"Pricing engine ready with {len(engine.tiers)} tiers")
    return engine


def price(units: int) -> PricingResult:
    """使用默认档位表定价"""
    return get_pricing_engine().price(units)


def tier_for(units: int) -> PricingTier:
    """使用默认档位表查找档位"""
    return get_pricing_engine().tier_for(units)
