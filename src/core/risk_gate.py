"""Account-level trading constraints, position sizing and trade validation.

Rejections are ordinary results carrying a reason code and the compared
values; nothing here raises for a business outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from common.precision import floor_to_step, to_decimal
from core.domain.models.Account import Account, Position
from core.ports.settings import SettingsProvider

logger = logging.getLogger("flagbot.risk")


class RiskReason(str, Enum):
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
    DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
    MAX_OPEN_POSITIONS = "MAX_OPEN_POSITIONS"
    INSUFFICIENT_BUYING_POWER = "INSUFFICIENT_BUYING_POWER"
    CONSECUTIVE_LOSSES = "CONSECUTIVE_LOSSES"
    INVALID_TRADE = "INVALID_TRADE"
    ZERO_QUANTITY = "ZERO_QUANTITY"


@dataclass(frozen=True)
class RiskConfig:
    max_daily_loss: float = 0.02
    max_open_positions: int = 5
    min_buying_power_pct: float = 0.10
    max_consecutive_losses: int = 3
    risk_per_trade: float = 0.01
    max_position_size: float = 0.05
    max_units: float = 10
    quantity_step: float = 0.001
    round_up_single_unit: bool = True
    min_reward_ratio: float = 1.5
    base_reward_ratio: float = 2.0
    stop_buffer_pct: float = 0.001

    @classmethod
    def from_settings(cls, settings: SettingsProvider) -> "RiskConfig":
        return cls(
            max_daily_loss=float(settings.get("RISK_MAX_DAILY_LOSS", cls.max_daily_loss)),
            max_open_positions=int(settings.get("RISK_MAX_OPEN_POSITIONS", cls.max_open_positions)),
            min_buying_power_pct=float(
                settings.get("RISK_MIN_BUYING_POWER_PCT", cls.min_buying_power_pct)
            ),
            max_consecutive_losses=int(
                settings.get("RISK_MAX_CONSECUTIVE_LOSSES", cls.max_consecutive_losses)
            ),
            risk_per_trade=float(settings.get("RISK_PER_TRADE", cls.risk_per_trade)),
            max_position_size=float(settings.get("RISK_MAX_POSITION_SIZE", cls.max_position_size)),
            max_units=float(settings.get("RISK_MAX_UNITS", cls.max_units)),
            quantity_step=float(settings.get("RISK_QUANTITY_STEP", cls.quantity_step)),
            round_up_single_unit=bool(
                settings.get("RISK_ROUND_UP_SINGLE_UNIT", cls.round_up_single_unit)
            ),
            min_reward_ratio=float(settings.get("RISK_MIN_REWARD_RATIO", cls.min_reward_ratio)),
            base_reward_ratio=float(settings.get("RISK_BASE_REWARD_RATIO", cls.base_reward_ratio)),
            stop_buffer_pct=float(settings.get("RISK_STOP_BUFFER_PCT", cls.stop_buffer_pct)),
        )


@dataclass(frozen=True)
class RiskCheck:
    can_trade: bool
    reason: RiskReason | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_trade": self.can_trade,
            "reason": self.reason.value if self.reason else None,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class PositionSize:
    quantity: float
    risk_amount: float
    risk_per_unit: float
    confidence_multiplier: float
    capped_by: str | None = None
    rounded_up: bool = False


@dataclass(frozen=True)
class TradeValidation:
    valid: bool
    risk_reward: float
    errors: list[str] = field(default_factory=list)


def daily_loss_pct(account: Account) -> float:
    """Fraction of equity lost since the previous close; gains count as zero."""

    if account.last_equity <= 0:
        return 0.0
    return max(0.0, (account.last_equity - account.equity) / account.last_equity)


def confidence_multiplier(confidence: float) -> float:
    if confidence > 0.9:
        return 1.2
    if confidence > 0.8:
        return 1.0
    return 0.8


class RiskGate:
    def __init__(self, config: RiskConfig | None = None) -> None:
        self.config = config or RiskConfig()

    def check_pre_trade(
        self,
        account: Account,
        positions: Sequence[Position],
        recent_trade_pnls: Sequence[float] | None = None,
    ) -> RiskCheck:
        cfg = self.config
        if account.blocked or account.suspended:
            return self._reject(
                RiskReason.ACCOUNT_BLOCKED,
                blocked=account.blocked,
                suspended=account.suspended,
            )

        loss = daily_loss_pct(account)
        if loss > cfg.max_daily_loss:
            return self._reject(
                RiskReason.DAILY_LOSS_LIMIT,
                daily_loss_pct=loss,
                max_daily_loss=cfg.max_daily_loss,
                equity=account.equity,
                last_equity=account.last_equity,
            )

        open_positions = sum(1 for p in positions if p.quantity)
        if open_positions >= cfg.max_open_positions:
            return self._reject(
                RiskReason.MAX_OPEN_POSITIONS,
                open_positions=open_positions,
                max_open_positions=cfg.max_open_positions,
            )

        min_buying_power = account.equity * cfg.min_buying_power_pct
        if account.buying_power < min_buying_power:
            return self._reject(
                RiskReason.INSUFFICIENT_BUYING_POWER,
                buying_power=account.buying_power,
                min_buying_power=min_buying_power,
            )

        if recent_trade_pnls:
            streak = 0
            for pnl in reversed(recent_trade_pnls):
                if pnl >= 0:
                    break
                streak += 1
            if streak >= cfg.max_consecutive_losses:
                return self._reject(
                    RiskReason.CONSECUTIVE_LOSSES,
                    consecutive_losses=streak,
                    max_consecutive_losses=cfg.max_consecutive_losses,
                )

        return RiskCheck(
            can_trade=True,
            details={"daily_loss_pct": loss, "open_positions": open_positions},
        )

    def _reject(self, reason: RiskReason, **details: Any) -> RiskCheck:
        logger.info("risk.reject", extra={"reason": reason.value, **details})
        return RiskCheck(can_trade=False, reason=reason, details=details)

    def calculate_position_size(
        self, equity: float, entry: float, stop: float, confidence: float
    ) -> PositionSize:
        """Risk-bounded quantity floored to ``quantity_step``.

        No cap is ever exceeded. When the confidence-adjusted budget leaves
        nothing but the unadjusted budget still covers one step's stop
        distance, and that step fits under both caps, the size is rounded up
        to one step and ``rounded_up`` is set (``round_up_single_unit`` turns
        this off).
        """

        cfg = self.config
        multiplier = confidence_multiplier(confidence)
        risk_amount = equity * cfg.risk_per_trade * multiplier
        risk_per_unit = abs(entry - stop)
        if risk_per_unit <= 0 or entry <= 0 or equity <= 0:
            return PositionSize(0.0, risk_amount, risk_per_unit, multiplier, capped_by="invalid_inputs")

        step = cfg.quantity_step
        quantity = floor_to_step(risk_amount / risk_per_unit, step)
        capped_by: str | None = None
        max_by_value = floor_to_step(equity * cfg.max_position_size / entry, step)
        if quantity > max_by_value:
            quantity = max_by_value
            capped_by = "max_position_value"
        max_units = floor_to_step(cfg.max_units, step)
        if quantity > max_units:
            quantity = max_units
            capped_by = "max_units"

        rounded_up = False
        one_step = to_decimal(step)
        if (
            quantity <= 0
            and cfg.round_up_single_unit
            and one_step > 0
            and equity * cfg.risk_per_trade >= risk_per_unit * step
            and one_step <= max_by_value
            and one_step <= max_units
        ):
            quantity = one_step
            rounded_up = True
            logger.warning(
                "risk.size.rounded_up",
                extra={"risk_amount": risk_amount, "risk_per_unit": risk_per_unit, "step": step},
            )

        return PositionSize(
            quantity=float(max(quantity, 0)),
            risk_amount=risk_amount,
            risk_per_unit=risk_per_unit,
            confidence_multiplier=multiplier,
            capped_by=capped_by,
            rounded_up=rounded_up,
        )

    def take_profit(
        self, side: str, entry: float, stop: float, confidence: float, confluence_quality: str
    ) -> float:
        ratio = self.config.base_reward_ratio
        if confidence > 0.9:
            ratio += 0.5
        if confluence_quality == "strong":
            ratio += 0.5
        risk = abs(entry - stop)
        return entry + risk * ratio if side == "BUY" else entry - risk * ratio

    def validate_trade(
        self, side: str, entry: float, stop: float, target: float, quantity: float
    ) -> TradeValidation:
        errors: list[str] = []
        for name, value in (("entry", entry), ("stop", stop), ("target", target), ("quantity", quantity)):
            if value is None or value <= 0:
                errors.append(f"{name} must be positive")
        if errors:
            return TradeValidation(False, 0.0, errors)

        if side == "BUY":
            if not stop < entry < target:
                errors.append("BUY requires stop < entry < target")
        elif side == "SELL":
            if not target < entry < stop:
                errors.append("SELL requires target < entry < stop")
        else:
            errors.append(f"unknown side {side!r}")

        risk = abs(entry - stop)
        reward = abs(target - entry)
        risk_reward = reward / risk if risk else 0.0
        if not errors and risk_reward < self.config.min_reward_ratio:
            errors.append(
                f"risk:reward {risk_reward:.2f} below minimum {self.config.min_reward_ratio:.2f}"
            )
        return TradeValidation(not errors, risk_reward, errors)
