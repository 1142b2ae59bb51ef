"""
Console row building: snapshot + working edits -> priced, validated rows.

Rows follow snapshot order. Working edits for item codes that are not in the
snapshot come back as orphaned rows after the snapshot rows so the operator
can see and discard them.
"""
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pricing_engine import DerivedPricing, PricingInputError, derive_pricing, is_valid_gst_rate
from pricing_validation import ERROR, WARNING, ValidationIssue, ValidationPolicy, ValidationResult, validate

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("cost_price", "stock_quantity")
PRICE_EPSILON = 0.01


class InvalidSnapshotItem(ValueError):
    """Raised when raw item data cannot become an ItemSnapshot."""

    def __init__(self, item_code: Optional[str], reason: str):
        super().__init__(f"{item_code or '<missing item_code>'}: {reason}")
        self.item_code = item_code
        self.reason = reason


@dataclass(frozen=True)
class ItemSnapshot:
    item_code: str
    item_name: str
    cost_price: float
    stock_quantity: float
    gst_rate: float
    previous_base_selling_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_code": self.item_code,
            "item_name": self.item_name,
            "cost_price": self.cost_price,
            "stock_quantity": self.stock_quantity,
            "gst_rate": self.gst_rate,
            "previous_base_selling_price": self.previous_base_selling_price,
        }


def _number(raw: Any, label: str, item_code: Optional[str], allow_none: bool = False) -> Optional[float]:
    if raw is None or raw == "":
        if allow_none:
            return None
        raise InvalidSnapshotItem(item_code, f"{label} is missing")
    if isinstance(raw, bool):
        raise InvalidSnapshotItem(item_code, f"{label} is not a number: {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidSnapshotItem(item_code, f"{label} is not a number: {raw!r}")
    if not math.isfinite(value):
        raise InvalidSnapshotItem(item_code, f"{label} is not finite: {raw!r}")
    if value.is_integer() and not isinstance(raw, float):
        return int(value)
    return value


def parse_snapshot_item(raw: Mapping[str, Any]) -> ItemSnapshot:
    """Build an ItemSnapshot from a plain dict, rejecting bad data."""
    item_code = (str(raw.get("item_code") or "")).strip()
    if not item_code:
        raise InvalidSnapshotItem(None, "item_code is missing")
    gst_rate = _number(raw.get("gst_rate"), "gst_rate", item_code)
    if not is_valid_gst_rate(gst_rate):
        raise InvalidSnapshotItem(item_code, f"Invalid GST rate {raw.get('gst_rate')!r}; expected 0.05 or 0.18")
    return ItemSnapshot(
        item_code=item_code,
        item_name=(str(raw.get("item_name") or item_code)).strip(),
        cost_price=_number(raw.get("cost_price"), "cost_price", item_code),
        stock_quantity=_number(raw.get("stock_quantity"), "stock_quantity", item_code),
        gst_rate=float(gst_rate),
        previous_base_selling_price=_number(
            raw.get("previous_base_selling_price"), "previous_base_selling_price", item_code, allow_none=True
        ),
    )


@dataclass(frozen=True)
class WorkingItemState:
    cost_price: Optional[float] = None
    stock_quantity: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "WorkingItemState":
        unknown = set(raw) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported working fields: {', '.join(sorted(unknown))}")
        return cls(cost_price=raw.get("cost_price"), stock_quantity=raw.get("stock_quantity"))

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (("cost_price", self.cost_price), ("stock_quantity", self.stock_quantity)) if v is not None}


WorkingLike = Union[WorkingItemState, Mapping[str, Any]]


def _as_working(value: Optional[WorkingLike]) -> WorkingItemState:
    if value is None:
        return WorkingItemState()
    if isinstance(value, WorkingItemState):
        return value
    return WorkingItemState.from_dict(value)


@dataclass(frozen=True)
class ConsoleRow:
    item_code: str
    item_name: str
    cost_price: Any
    stock_quantity: Any
    gst_rate: Optional[float]
    previous_base_selling_price: Optional[float]
    snapshot_cost_price: Optional[float]
    snapshot_stock_quantity: Optional[float]
    derived_pricing: Optional[DerivedPricing]
    validation: ValidationResult
    is_modified: bool
    orphaned: bool = False

    @property
    def cost_changed(self) -> bool:
        return not self.orphaned and self.cost_price != self.snapshot_cost_price

    @property
    def stock_changed(self) -> bool:
        return not self.orphaned and self.stock_quantity != self.snapshot_stock_quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_code": self.item_code,
            "item_name": self.item_name,
            "cost_price": self.cost_price,
            "stock_quantity": self.stock_quantity,
            "gst_rate": self.gst_rate,
            "previous_base_selling_price": self.previous_base_selling_price,
            "derived_pricing": self.derived_pricing.to_dict() if self.derived_pricing else None,
            "validation": self.validation.to_dict(),
            "is_modified": self.is_modified,
            "orphaned": self.orphaned,
        }


def compute_row(
    snapshot: ItemSnapshot,
    working: Optional[WorkingLike] = None,
    policy: Optional[ValidationPolicy] = None,
) -> ConsoleRow:
    state = _as_working(working)
    cost_price = state.cost_price if state.cost_price is not None else snapshot.cost_price
    stock_quantity = state.stock_quantity if state.stock_quantity is not None else snapshot.stock_quantity

    try:
        derived = derive_pricing(cost_price, snapshot.gst_rate, stock_quantity)
    except PricingInputError as exc:
        logger.debug("Pricing skipped for %s: %s", snapshot.item_code, exc)
        derived = None

    result = validate(
        snapshot.previous_base_selling_price,
        derived,
        cost_price,
        snapshot.gst_rate,
        stock_quantity,
        policy,
    )
    return ConsoleRow(
        item_code=snapshot.item_code,
        item_name=snapshot.item_name,
        cost_price=cost_price,
        stock_quantity=stock_quantity,
        gst_rate=snapshot.gst_rate,
        previous_base_selling_price=snapshot.previous_base_selling_price,
        snapshot_cost_price=snapshot.cost_price,
        snapshot_stock_quantity=snapshot.stock_quantity,
        derived_pricing=derived,
        validation=result,
        is_modified=(cost_price != snapshot.cost_price or stock_quantity != snapshot.stock_quantity),
    )


def _orphan_row(item_code: str, state: WorkingItemState) -> ConsoleRow:
    return ConsoleRow(
        item_code=item_code,
        item_name="",
        cost_price=state.cost_price,
        stock_quantity=state.stock_quantity,
        gst_rate=None,
        previous_base_selling_price=None,
        snapshot_cost_price=None,
        snapshot_stock_quantity=None,
        derived_pricing=None,
        validation=ValidationResult([
            ValidationIssue(ERROR, "orphaned", "Item is not in the current ERP snapshot; discard this edit or pull again")
        ]),
        is_modified=True,
        orphaned=True,
    )


def build_rows(
    snapshot: Sequence[ItemSnapshot],
    working: Optional[Mapping[str, WorkingLike]] = None,
    policy: Optional[ValidationPolicy] = None,
    include_orphans: bool = True,
) -> List[ConsoleRow]:
    working = working or {}
    rows = [compute_row(item, working.get(item.item_code), policy) for item in snapshot]

    known = {item.item_code for item in snapshot}
    orphans = [code for code in working if code not in known]
    if orphans:
        if include_orphans:
            rows.extend(_orphan_row(code, _as_working(working[code])) for code in orphans)
        else:
            logger.warning("Dropping %d working edit(s) with no snapshot item: %s", len(orphans), ", ".join(orphans))
    return rows


@dataclass(frozen=True)
class ChangeSummaryRow:
    item_code: str
    item_name: str = ""
    new_cost_price: Optional[float] = None
    new_stock_quantity: Optional[float] = None
    new_price: Optional[float] = None
    previous_price: Optional[float] = None
    previous_stock_quantity: Optional[float] = None

    @property
    def has_changes(self) -> bool:
        return any(v is not None for v in (self.new_cost_price, self.new_stock_quantity, self.new_price))

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"item_code": self.item_code}
        for key in ("item_name", "new_cost_price", "new_stock_quantity", "new_price",
                    "previous_price", "previous_stock_quantity"):
            value = getattr(self, key)
            if value is not None and value != "":
                payload[key] = value
        return payload

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "ChangeSummaryRow":
        return cls(
            item_code=(str(raw.get("item_code") or "")).strip(),
            item_name=raw.get("item_name") or "",
            new_cost_price=raw.get("new_cost_price"),
            new_stock_quantity=raw.get("new_stock_quantity"),
            new_price=raw.get("new_price"),
            previous_price=raw.get("previous_price"),
            previous_stock_quantity=raw.get("previous_stock_quantity"),
        )


def build_change_summary(rows: Iterable[ConsoleRow]) -> List[ChangeSummaryRow]:
    """Describe the modified rows as sync payload entries, in row order."""
    changes = []
    for row in rows:
        if not row.is_modified or row.orphaned:
            continue
        new_price = None
        if row.derived_pricing is not None:
            prev = row.previous_base_selling_price or 0
            if abs(row.derived_pricing.base_selling_price - prev) > PRICE_EPSILON:
                new_price = row.derived_pricing.base_selling_price
        change = ChangeSummaryRow(
            item_code=row.item_code,
            item_name=row.item_name,
            new_cost_price=row.cost_price if row.cost_changed else None,
            new_stock_quantity=row.stock_quantity if row.stock_changed else None,
            new_price=new_price,
            previous_price=row.previous_base_selling_price if new_price is not None else None,
            previous_stock_quantity=row.snapshot_stock_quantity if row.stock_changed else None,
        )
        if change.has_changes:
            changes.append(change)
    return changes


@dataclass(frozen=True)
class SyncEligibility:
    can_sync: bool
    blocked_count: int
    warned_count: int
    modified_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_sync": self.can_sync,
            "blocked_count": self.blocked_count,
            "warned_count": self.warned_count,
            "modified_count": self.modified_count,
        }


def sync_eligibility(rows: Iterable[ConsoleRow]) -> SyncEligibility:
    """Modified rows with an error-level issue block the sync; warnings do not."""
    blocked = warned = modified = 0
    for row in rows:
        if not row.is_modified:
            continue
        modified += 1
        if not row.validation.ok:
            blocked += 1
        elif any(issue.severity == WARNING for issue in row.validation.issues):
            warned += 1
    return SyncEligibility(
        can_sync=modified > 0 and blocked == 0,
        blocked_count=blocked,
        warned_count=warned,
        modified_count=modified,
    )


class WorkingSet:
    """In-memory edits layered over one snapshot for a console session."""

    def __init__(self, snapshot: Optional[Sequence[ItemSnapshot]] = None, policy: Optional[ValidationPolicy] = None):
        self.policy = policy
        self._snapshot: List[ItemSnapshot] = []
        self._by_code: Dict[str, ItemSnapshot] = {}
        self._working: "OrderedDict[str, WorkingItemState]" = OrderedDict()
        if snapshot is not None:
            self.load_snapshot(snapshot)

    @property
    def snapshot(self) -> List[ItemSnapshot]:
        return list(self._snapshot)

    def load_snapshot(self, snapshot: Sequence[ItemSnapshot]):
        """Replace the snapshot. Edits for items still present are kept."""
        self._snapshot = list(snapshot)
        self._by_code = {item.item_code: item for item in self._snapshot}
        for code in list(self._working):
            self._prune(code)

    def update_cell(self, item_code: str, field_name: str, value: Any):
        if field_name not in EDITABLE_FIELDS:
            raise ValueError(f"Field '{field_name}' is not editable")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{field_name} must be a number, got {value!r}")
        state = self._working.get(item_code, WorkingItemState())
        self._working[item_code] = replace(state, **{field_name: value})
        self._prune(item_code)

    def reset_row(self, item_code: str):
        self._working.pop(item_code, None)

    def reset_all(self):
        self._working.clear()

    def overrides(self) -> Dict[str, WorkingItemState]:
        return dict(self._working)

    def rows(self, include_orphans: bool = True) -> List[ConsoleRow]:
        return build_rows(self._snapshot, self._working, self.policy, include_orphans=include_orphans)

    def _prune(self, item_code: str):
        # drop overrides equal to the snapshot so is_modified stays honest
        state = self._working.get(item_code)
        snap = self._by_code.get(item_code)
        if state is None or snap is None:
            return
        if state.cost_price == snap.cost_price:
            state = replace(state, cost_price=None)
        if state.stock_quantity == snap.stock_quantity:
            state = replace(state, stock_quantity=None)
        if state.cost_price is None and state.stock_quantity is None:
            del self._working[item_code]
        else:
            self._working[item_code] = state
