"""Guardrail checks for proposed console prices.

Anomalies are returned as ValidationIssue entries; nothing here raises for
bad input so the console can show problems inline next to the row.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pricing_engine import DerivedPricing, is_valid_gst_rate

ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class ValidationPolicy:
    jump_warn: float = 0.30
    jump_block: float = 0.60
    low_margin_warn: float = 0.10
    high_margin_warn: float = 0.80
    max_margin: float = 2.0


DEFAULT_POLICY = ValidationPolicy()


@dataclass(frozen=True)
class ValidationIssue:
    severity: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"severity": self.severity, "code": self.code, "message": self.message}


@dataclass(frozen=True)
class ValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(issue.severity == ERROR for issue in self.issues)

    @property
    def status(self) -> str:
        if not self.ok:
            return "BLOCK"
        if self.issues:
            return "WARN"
        return "PASS"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "issues": [issue.to_dict() for issue in self.issues],
        }


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _is_whole(value: Any) -> bool:
    if not _is_number(value):
        return False
    return float(value).is_integer()


def _blocked(code: str, message: str) -> ValidationResult:
    return ValidationResult([ValidationIssue(ERROR, code, message)])


def validate(
    previous_price: Any,
    proposed: Optional[DerivedPricing],
    cost_price: Any,
    gst_rate: Any,
    stock_quantity: Any,
    policy: Optional[ValidationPolicy] = None,
) -> ValidationResult:
    """Check a proposed price against the previous one and the margin rules.

    Input problems stop at the first failure, since later checks depend on
    them. Margin and price-jump findings accumulate. A missing or unusable
    previous price means there is no baseline, so the jump check is skipped.
    """
    policy = policy or DEFAULT_POLICY

    if not _is_number(cost_price) or cost_price <= 0:
        return _blocked("cost_invalid", "Cost Price must be positive and non-zero")
    if not is_valid_gst_rate(gst_rate):
        return _blocked("gst_invalid", f"Invalid GST Rate: {gst_rate}. Must be 0.05 or 0.18")
    if not _is_whole(stock_quantity) or stock_quantity < 0:
        return _blocked("stock_invalid", "Stock must be a non-negative integer")
    if proposed is None:
        return _blocked("pricing_missing", "Pricing calculation missing")

    issues: List[ValidationIssue] = []
    base = proposed.base_selling_price
    margin = proposed.margin if proposed.margin is not None else (base - cost_price) / cost_price
    margin_pct = margin * 100

    if base <= cost_price:
        issues.append(ValidationIssue(ERROR, "negative_margin", f"Negative Margin: {margin_pct:.2f}%"))
    elif margin > policy.max_margin:
        issues.append(ValidationIssue(
            ERROR, "margin_too_high",
            f"Margin too high: {margin_pct:.2f}% (>{policy.max_margin * 100:.0f}%)",
        ))
    elif margin < policy.low_margin_warn:
        issues.append(ValidationIssue(
            WARNING, "low_margin",
            f"Low Margin Warning: {margin_pct:.2f}% (<{policy.low_margin_warn * 100:.0f}%)",
        ))
    elif margin > policy.high_margin_warn:
        issues.append(ValidationIssue(
            WARNING, "high_margin",
            f"High Margin Warning: {margin_pct:.2f}% (>{policy.high_margin_warn * 100:.0f}%)",
        ))

    if _is_number(previous_price) and previous_price > 0:
        delta = (base - previous_price) / previous_price
        if abs(delta) > policy.jump_block:
            issues.append(ValidationIssue(
                ERROR, "price_jump",
                f"Price change > {policy.jump_block * 100:.0f}%: {delta * 100:.2f}%",
            ))
        elif abs(delta) > policy.jump_warn:
            issues.append(ValidationIssue(
                WARNING, "price_jump",
                f"Price change > {policy.jump_warn * 100:.0f}%: {delta * 100:.2f}%",
            ))

    return ValidationResult(issues)
