"""
Where console snapshots come from, and the local cache of the last pull.

Sources implement fetch_snapshot() -> List[ItemSnapshot]. The ERP source reads
Item, Item Price and Bin over the ERPNext REST API; the fixture source reads a
JSON file and is meant for development and tests. make_snapshot_source picks
one from configuration.
"""
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from console_rows import InvalidSnapshotItem, ItemSnapshot, parse_snapshot_item
from erp_batch import ERPBatchClient

logger = logging.getLogger(__name__)

STALENESS_THRESHOLD = timedelta(hours=12)
PAGE_LIMIT = 500

SNAPSHOT_FILE = "buying-snapshot.json"
META_FILE = "console-meta.json"


class SnapshotMissing(LookupError):
    pass


class PullRateLimited(RuntimeError):
    def __init__(self, retry_after_minutes: float):
        super().__init__(f"Pull rate-limited. Try again in {retry_after_minutes:.1f} minutes.")
        self.retry_after_minutes = retry_after_minutes


def parse_snapshot(raws: Iterable[Dict[str, Any]]) -> Tuple[List[ItemSnapshot], List[Dict[str, str]]]:
    """Parse raw rows, keeping good items and reporting rejected ones."""
    items: List[ItemSnapshot] = []
    rejected: List[Dict[str, str]] = []
    seen = set()
    for raw in raws:
        try:
            item = parse_snapshot_item(raw)
        except InvalidSnapshotItem as exc:
            logger.warning("Rejected snapshot item %s", exc)
            rejected.append({"item_code": exc.item_code or "", "reason": exc.reason})
            continue
        if item.item_code in seen:
            rejected.append({"item_code": item.item_code, "reason": "duplicate item_code"})
            continue
        seen.add(item.item_code)
        items.append(item)
    return items, rejected


def normalize_gst_rate(value: Any) -> Any:
    """ERPNext tax fields may hold 18 or 0.18; convert percents to fractions."""
    if value is None or value == "":
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return value
    if rate > 1:
        rate = rate / 100
    return round(rate, 4)


class FixtureSnapshotSource:
    def __init__(self, path: str):
        self.path = Path(path)
        self.rejected: List[Dict[str, str]] = []

    def fetch_snapshot(self) -> List[ItemSnapshot]:
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("data") or []
        items, self.rejected = parse_snapshot(data)
        return items


class ERPSnapshotSource:
    def __init__(self, client: ERPBatchClient, warehouse: str = "Stores",
                 selling_price_list: str = "Standard Selling", gst_field: str = "gst_rate",
                 page_limit: int = PAGE_LIMIT):
        self.client = client
        self.warehouse = warehouse
        self.selling_price_list = selling_price_list
        self.gst_field = gst_field
        self.page_limit = page_limit
        self.rejected: List[Dict[str, str]] = []

    def _get_all(self, path: str, fields: List[str], filters: List[List[Any]]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            params = {
                "fields": json.dumps(fields),
                "filters": json.dumps(filters),
                "limit_start": start,
                "limit_page_length": self.page_limit,
                "order_by": "name asc",
            }
            page = self.client.request("GET", path, params=params).get("data") or []
            rows.extend(page)
            if len(page) < self.page_limit:
                return rows
            start += len(page)

    def fetch_snapshot(self) -> List[ItemSnapshot]:
        items = self._get_all(
            "/api/resource/Item",
            ["name", "item_code", "item_name", "valuation_rate", self.gst_field],
            [["disabled", "=", 0]],
        )
        prices = self._get_all(
            "/api/resource/Item%20Price",
            ["name", "item_code", "price_list_rate"],
            [["price_list", "=", self.selling_price_list]],
        )
        bins = self._get_all(
            "/api/resource/Bin",
            ["name", "item_code", "actual_qty"],
            [["warehouse", "=", self.warehouse]],
        )
        price_map = {p.get("item_code"): p.get("price_list_rate") for p in prices if p.get("item_code")}
        stock_map = {b.get("item_code"): b.get("actual_qty") for b in bins if b.get("item_code")}

        raws = []
        for it in items:
            code = it.get("item_code") or it.get("name")
            raws.append({
                "item_code": code,
                "item_name": it.get("item_name") or code,
                "cost_price": it.get("valuation_rate") or 0,
                "stock_quantity": stock_map.get(code) or 0,
                "gst_rate": normalize_gst_rate(it.get(self.gst_field)),
                "previous_base_selling_price": price_map.get(code),
            })
        snapshot, self.rejected = parse_snapshot(raws)
        logger.info("Fetched %d ERPNext items (%d rejected)", len(snapshot), len(self.rejected))
        return snapshot


def make_snapshot_source(config):
    kind = (config.snapshot_source or "").lower()
    if kind == "fixture":
        return FixtureSnapshotSource(config.fixture_path)
    if kind == "erp":
        if not config.erp_configured:
            raise RuntimeError("CONSOLE_SNAPSHOT_SOURCE=erp needs ERPNEXT_URL/ERPNEXT_API_KEY/ERPNEXT_API_SECRET")
        return ERPSnapshotSource(
            ERPBatchClient.from_config(config),
            warehouse=config.warehouse,
            selling_price_list=config.selling_price_list,
            gst_field=config.gst_field,
        )
    raise ValueError(f"Unknown snapshot source '{config.snapshot_source}' (expected 'erp' or 'fixture')")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def is_stale(generated_at: Optional[str], now: Optional[datetime] = None,
             threshold: timedelta = STALENESS_THRESHOLD) -> bool:
    ts = parse_iso(generated_at)
    if ts is None:
        return False
    return ((now or utc_now()) - ts) > threshold


class SnapshotStore:
    """JSON file cache of the last pulled snapshot plus pull/push metadata."""

    def __init__(self, data_dir: str, pull_cooldown_minutes: float = 5,
                 clock: Callable[[], datetime] = utc_now):
        self.data_dir = Path(data_dir)
        self.pull_cooldown = timedelta(minutes=pull_cooldown_minutes)
        self.clock = clock

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / SNAPSHOT_FILE

    @property
    def meta_path(self) -> Path:
        return self.data_dir / META_FILE

    def _write_json(self, path: Path, data: Any):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def read_meta(self) -> Dict[str, Any]:
        if not self.meta_path.exists():
            return {}
        try:
            return json.loads(self.meta_path.read_text(encoding="utf-8")) or {}
        except ValueError:
            logger.warning("Ignoring unreadable %s", self.meta_path)
            return {}

    def pull(self, source) -> Tuple[List[ItemSnapshot], Dict[str, Any]]:
        meta = self.read_meta()
        now = self.clock()
        last = parse_iso(meta.get("last_pulled_at"))
        if last is not None and now - last < self.pull_cooldown:
            remaining = (self.pull_cooldown - (now - last)).total_seconds() / 60
            raise PullRateLimited(remaining)

        items = source.fetch_snapshot()
        self._write_json(self.snapshot_path, [item.to_dict() for item in items])
        meta["last_pulled_at"] = iso(now)
        meta["generated_at"] = iso(now)
        meta["count"] = len(items)
        meta["rejected"] = list(getattr(source, "rejected", []) or [])
        meta.setdefault("last_pushed_at", None)
        self._write_json(self.meta_path, meta)
        return items, meta

    def load(self) -> Tuple[List[ItemSnapshot], Dict[str, Any]]:
        if not self.snapshot_path.exists():
            raise SnapshotMissing("No local snapshot found. Please perform an initial Pull.")
        raws = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        items, rejected = parse_snapshot(raws)
        if rejected:
            logger.warning("Cached snapshot has %d unusable row(s)", len(rejected))
        return items, self.read_meta()

    def mark_pushed(self, sync_id: str):
        meta = self.read_meta()
        meta["last_pushed_at"] = iso(self.clock())
        meta["last_sync_id"] = sync_id
        self._write_json(self.meta_path, meta)
