"""Risk assessment and hard risk limits for candidate trades.

``assess_trade`` is a pure calculation: it turns a candidate (side, size,
entry, stop, target, account balance) into a ``RiskAssessment`` with a
0-100 composite score, a level and advisory warnings.  Warnings never block
a trade by themselves.

``RiskEngine.evaluate`` is the gate: it checks the assessment against the
configured ``riskManagement`` limits and the live account state, and any
breach rejects the candidate with a recorded reason.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import numpy as np
from loguru import logger

from .config import RiskManagementConfig


RECOMMENDED_MAX_POSITION_PCT = 20.0
RECOMMENDED_MAX_ACCOUNT_RISK_PCT = 2.0
RECOMMENDED_MIN_RISK_REWARD = 1.5
HIGH_SCORE_THRESHOLD = 70.0


@dataclass(frozen=True)
class RiskAssessment:
    symbol: str
    action: str
    quantity: float
    entry_price: float
    stop_loss: float
    target_price: float
    risk_amount: float
    potential_reward: float
    risk_reward_ratio: float | None      # None when the stop sits on the entry price
    position_size_percent: float
    account_risk_percent: float
    overall_risk_score: float
    risk_level: str
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def stop_on_wrong_side(self) -> bool:
        if self.action == "BUY":
            return self.stop_loss > self.entry_price
        return self.stop_loss < self.entry_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "entryPrice": self.entry_price,
            "stopLoss": round(self.stop_loss, 4),
            "targetPrice": round(self.target_price, 4),
            "riskAmount": round(self.risk_amount, 2),
            "potentialReward": round(self.potential_reward, 2),
            "riskRewardRatio": None if self.risk_reward_ratio is None else round(self.risk_reward_ratio, 4),
            "positionSizePercent": round(self.position_size_percent, 4),
            "accountRiskPercent": round(self.account_risk_percent, 4),
            "overallRiskScore": round(self.overall_risk_score, 2),
            "riskLevel": self.risk_level,
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp,
        }


def risk_level_for(score: float, position_size_percent: float = 0.0) -> str:
    # A position worth more than the whole account is leveraged regardless of score
    if position_size_percent > 100:
        return "EXTREME"
    if score < 30:
        return "LOW"
    if score < 60:
        return "MEDIUM"
    if score < 85:
        return "HIGH"
    return "EXTREME"


def risk_score(position_size_percent: float, account_risk_percent: float, risk_reward_ratio: float | None) -> float:
    rr = 0.0 if risk_reward_ratio is None else risk_reward_ratio
    score = (
        min(position_size_percent * 2, 30)
        + min(account_risk_percent * 3, 30)
        + (20 if rr < RECOMMENDED_MIN_RISK_REWARD else 0)
        + max(0.0, 20 - rr * 5)
    )
    return min(100.0, score)


def assess_trade(
    symbol: str,
    action: str,
    quantity: float,
    entry_price: float,
    stop_loss: float,
    target_price: float,
    account_balance: float,
) -> RiskAssessment:
    action = action.upper()
    if action not in {"BUY", "SELL"}:
        raise ValueError(f"action must be BUY or SELL, got {action!r}")
    if account_balance <= 0:
        raise ValueError("account_balance must be > 0")
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    if entry_price <= 0:
        raise ValueError("entry_price must be > 0")
    if stop_loss < 0 or target_price < 0:
        raise ValueError("stop_loss and target_price must be >= 0")

    if action == "BUY":
        risk_per_share = entry_price - stop_loss
        reward_per_share = target_price - entry_price
    else:
        risk_per_share = stop_loss - entry_price
        reward_per_share = entry_price - target_price

    risk_amount = abs(risk_per_share * quantity)
    potential_reward = abs(reward_per_share * quantity)
    rr: float | None = potential_reward / risk_amount if risk_amount > 0 else None

    position_size_percent = entry_price * quantity / account_balance * 100
    account_risk_percent = risk_amount / account_balance * 100
    score = risk_score(position_size_percent, account_risk_percent, rr)

    warnings: list[str] = []
    recommendations: list[str] = []

    if position_size_percent > RECOMMENDED_MAX_POSITION_PCT:
        warnings.append(
            f"Position size {position_size_percent:.1f}% exceeds recommended {RECOMMENDED_MAX_POSITION_PCT:.0f}%"
        )
    if position_size_percent > 100:
        warnings.append("Position value exceeds account balance (leveraged)")
    if account_risk_percent > RECOMMENDED_MAX_ACCOUNT_RISK_PCT:
        warnings.append(
            f"Account risk {account_risk_percent:.2f}% exceeds recommended {RECOMMENDED_MAX_ACCOUNT_RISK_PCT:.0f}%"
        )
    if rr is None:
        warnings.append("Stop loss equals entry price; risk/reward ratio is undefined")
        recommendations.append("Set a stop loss away from the entry price")
    elif rr < RECOMMENDED_MIN_RISK_REWARD:
        warnings.append(f"Risk/reward ratio {rr:.2f} is below recommended {RECOMMENDED_MIN_RISK_REWARD}")
        recommendations.append("Consider adjusting target price or stop loss")
    if risk_per_share < 0:
        side = "below" if action == "BUY" else "above"
        warnings.append(f"Stop loss should be {side} the entry price for a {action}")
    if score > HIGH_SCORE_THRESHOLD:
        warnings.append("Overall risk score is HIGH")
        recommendations.append("Consider reducing position size")

    return RiskAssessment(
        symbol=symbol.upper(),
        action=action,
        quantity=quantity,
        entry_price=entry_price,
        stop_loss=stop_loss,
        target_price=target_price,
        risk_amount=risk_amount,
        potential_reward=potential_reward,
        risk_reward_ratio=rr,
        position_size_percent=position_size_percent,
        account_risk_percent=account_risk_percent,
        overall_risk_score=score,
        risk_level=risk_level_for(score, position_size_percent),
        warnings=tuple(warnings),
        recommendations=tuple(recommendations),
    )


def default_exit_levels(
    action: str,
    entry_price: float,
    stop_loss_percent: float = 2.0,
    take_profit_percent: float = 5.0,
) -> tuple[float, float]:
    """Return ``(stop_loss, target_price)`` placed symmetrically around entry."""
    stop_frac = stop_loss_percent / 100
    target_frac = take_profit_percent / 100
    if action.upper() == "BUY":
        return entry_price * (1 - stop_frac), entry_price * (1 + target_frac)
    return entry_price * (1 + stop_frac), entry_price * (1 - target_frac)


def size_position(equity: float, price: float, order_size_percent: float) -> int:
    """Whole shares worth ``order_size_percent`` of equity."""
    if equity <= 0 or price <= 0 or order_size_percent <= 0:
        return 0
    return int(math.floor(equity * order_size_percent / 100 / price))


# ── Limits ────────────────────────────────────────────────────────

@dataclass
class AccountState:
    equity: float
    day_start_equity: float
    peak_equity: float

    @property
    def daily_loss_percent(self) -> float:
        if self.day_start_equity <= 0:
            return 0.0
        return max(0.0, (self.day_start_equity - self.equity) / self.day_start_equity * 100)

    @property
    def drawdown_percent(self) -> float:
        if self.peak_equity <= 0:
            return 0.0
        return max(0.0, (self.peak_equity - self.equity) / self.peak_equity * 100)


@dataclass(frozen=True)
class RiskDecision:
    approved: bool
    assessment: RiskAssessment
    rejections: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "rejections": list(self.rejections),
            "assessment": self.assessment.to_dict(),
        }


def max_correlation(
    candidate_returns: Sequence[float],
    held_returns: Mapping[str, Sequence[float]],
    min_overlap: int = 10,
) -> tuple[str | None, float]:
    """Largest absolute Pearson correlation against any held symbol."""
    best_symbol: str | None = None
    best = 0.0
    for symbol, returns in held_returns.items():
        n = min(len(candidate_returns), len(returns))
        if n < min_overlap:
            continue
        a = np.asarray(candidate_returns[-n:], dtype=float)
        b = np.asarray(returns[-n:], dtype=float)
        if np.std(a) == 0 or np.std(b) == 0:
            continue
        corr = abs(float(np.corrcoef(a, b)[0, 1]))
        if math.isfinite(corr) and corr > best:
            best_symbol, best = symbol, corr
    return best_symbol, best


class RiskEngine:
    """Applies the configured hard limits to a computed assessment."""

    def __init__(self, limits: RiskManagementConfig) -> None:
        self.limits = limits

    def evaluate(
        self,
        assessment: RiskAssessment,
        confidence: float,
        account: AccountState,
        correlation: tuple[str | None, float] | None = None,
        reduces_exposure: bool = False,
    ) -> RiskDecision:
        """Check *assessment* against the hard limits.

        Exits (``reduces_exposure``) skip the entry-only limits: position
        size, daily loss, drawdown and correlation.
        """
        limits = self.limits
        rejections: list[str] = []

        if assessment.risk_reward_ratio is None:
            rejections.append("Risk/reward ratio is undefined (zero risk amount)")
        elif assessment.risk_reward_ratio < limits.min_risk_reward_ratio:
            rejections.append(
                f"Risk/reward ratio {assessment.risk_reward_ratio:.2f} below minimum {limits.min_risk_reward_ratio}"
            )
        if assessment.stop_on_wrong_side:
            rejections.append(f"Stop loss {assessment.stop_loss:.2f} is on the wrong side of entry")
        if confidence < limits.min_confidence:
            rejections.append(f"Confidence {confidence:.0%} below minimum {limits.min_confidence:.0%}")
        if reduces_exposure:
            return self._decide(assessment, rejections)

        if assessment.position_size_percent > limits.max_position_size:
            rejections.append(
                f"Position size {assessment.position_size_percent:.1f}% exceeds limit {limits.max_position_size:.1f}%"
            )
        if account.daily_loss_percent >= limits.max_daily_loss:
            rejections.append(
                f"Daily loss {account.daily_loss_percent:.2f}% reached limit {limits.max_daily_loss:.2f}%"
            )
        if account.drawdown_percent >= limits.max_drawdown:
            rejections.append(
                f"Drawdown {account.drawdown_percent:.2f}% reached limit {limits.max_drawdown:.2f}%"
            )
        if correlation is not None:
            symbol, value = correlation
            if symbol is not None and value > limits.correlation_limit:
                rejections.append(
                    f"Correlation {value:.2f} with {symbol} exceeds limit {limits.correlation_limit:.2f}"
                )
        return self._decide(assessment, rejections)

    @staticmethod
    def _decide(assessment: RiskAssessment, rejections: list[str]) -> RiskDecision:
        decision = RiskDecision(approved=not rejections, assessment=assessment, rejections=tuple(rejections))
        if rejections:
            logger.info(
                "Risk rejected {} {} x{}: {}",
                assessment.action, assessment.symbol, assessment.quantity, "; ".join(rejections),
            )
        else:
            logger.debug(
                "Risk approved {} {} x{} score={:.1f} level={}",
                assessment.action, assessment.symbol, assessment.quantity,
                assessment.overall_risk_score, assessment.risk_level,
            )
        return decision
