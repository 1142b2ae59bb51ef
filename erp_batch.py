"""
ERPNext batch writer for pricing console changes.

Selling and buying prices are upserted per item as `Item Price` documents;
stock changes are gathered into one submitted `Stock Reconciliation`, so a
rejected reconciliation fails every stock line in the batch together.
"""
import json
import logging
import math
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import requests

from console_rows import ChangeSummaryRow

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 1.0


class EmptyBatchError(ValueError):
    """Raised when a batch update is requested with no changes."""


class ERPConnectionError(RuntimeError):
    """Raised when ERPNext cannot be reached at all."""


class ReconciliationError(RuntimeError):
    """Raised when a Stock Reconciliation could not be created and submitted."""


@dataclass
class ItemFailure:
    item_code: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"item_code": self.item_code, "reason": self.reason}


@dataclass
class BatchUpdateResult:
    applied: int = 0
    failures: List[ItemFailure] = field(default_factory=list)

    @property
    def failed_codes(self) -> List[str]:
        return [f.item_code for f in self.failures]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "failed": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
        }


def error_message_from_response(resp: Optional[requests.Response]) -> str:
    if resp is None:
        return "no response"
    try:
        j = resp.json()
        message = j.get("message") or j.get("exception") or j.get("_server_messages")
        if message:
            return str(message)
    except Exception:
        pass
    text = (resp.text or "").strip()
    if len(text) > 400:
        text = text[:400] + "…"
    return text or f"HTTP {resp.status_code}"


def _is_retryable(exc: Exception, method: str = "GET") -> bool:
    if method.upper() == "POST":
        # POSTs are retried only when no connection was made
        return isinstance(exc, requests.ConnectionError)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status >= 500 or status == 429
    return False


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def invalid_change_reason(change: ChangeSummaryRow) -> Optional[str]:
    """Return why a change cannot be sent to ERPNext, or None when it can."""
    for name in ("new_cost_price", "new_price"):
        value = getattr(change, name)
        if value is not None and (not _is_number(value) or value < 0):
            return f"{name} must be a number >= 0, got {value!r}"
    qty = change.new_stock_quantity
    if qty is not None and (not _is_number(qty) or qty < 0 or not float(qty).is_integer()):
        return f"new_stock_quantity must be a whole number >= 0, got {qty!r}"
    return None


ChangeLike = Union[ChangeSummaryRow, Mapping[str, Any]]


class ERPBatchClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 30,
        probe_timeout: float = 5,
        warehouse: str = "Stores",
        selling_price_list: str = "Standard Selling",
        buying_price_list: str = "Standard Buying",
        session: Optional[requests.Session] = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not base_url:
            raise ValueError("ERPNext base URL is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.warehouse = warehouse
        self.selling_price_list = selling_price_list
        self.buying_price_list = buying_price_list
        self.session = session or requests.Session()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "ERPBatchClient":
        return cls(
            config.erp_url,
            config.erp_api_key,
            config.erp_api_secret,
            timeout=config.request_timeout,
            probe_timeout=config.probe_timeout,
            warehouse=config.warehouse,
            selling_price_list=config.selling_price_list,
            buying_price_list=config.buying_price_list,
            session=session,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_key and self.api_secret:
            headers["Authorization"] = f"token {self.api_key}:{self.api_secret}"
        return headers

    def _url(self, path: str) -> str:
        return self.base_url + path

    def request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> Dict[str, Any]:
        """Send one ERP request, retrying transient failures with linear backoff."""
        attempt = 0
        while True:
            try:
                resp = self.session.request(
                    method, self._url(path), headers=self._headers(),
                    timeout=timeout or self.timeout, **kwargs
                )
                resp.raise_for_status()
                if not resp.content:
                    return {}
                return resp.json()
            except (requests.ConnectionError, requests.Timeout, requests.HTTPError) as exc:
                if attempt < self.max_retries and _is_retryable(exc, method):
                    attempt += 1
                    delay = self.retry_delay * attempt
                    logger.info("Retrying %s %s in %.1fs (%d/%d): %s", method, path, delay, attempt, self.max_retries, exc)
                    self._sleep(delay)
                    continue
                if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
                    raise ERPConnectionError(f"Could not connect to ERPNext: {exc}") from exc
                raise

    def test_connection(self) -> bool:
        try:
            resp = self.session.get(self._url("/api/method/ping"), headers=self._headers(), timeout=self.probe_timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("ERPNext connection failed: %s", exc)
            return False
        logger.info("ERPNext connection successful")
        return True

    # ---------- Item Price ----------
    def _upsert_item_price(self, item_code: str, price_list: str, rate: float):
        params = {
            "filters": json.dumps([["item_code", "=", item_code], ["price_list", "=", price_list]]),
            "fields": json.dumps(["name", "price_list_rate"]),
            "limit_page_length": 1,
        }
        found = self.request("GET", "/api/resource/Item%20Price", params=params).get("data") or []
        if found:
            name = urllib.parse.quote(found[0]["name"], safe="")
            self.request("PUT", f"/api/resource/Item%20Price/{name}", json={"price_list_rate": rate})
        else:
            self.request("POST", "/api/resource/Item%20Price", json={
                "item_code": item_code,
                "price_list": price_list,
                "price_list_rate": rate,
            })

    # ---------- Stock Reconciliation ----------
    def _reconcile_stock(self, lines: List[ChangeSummaryRow]) -> str:
        items = []
        for ch in lines:
            line = {"item_code": ch.item_code, "warehouse": self.warehouse, "qty": ch.new_stock_quantity}
            if ch.new_cost_price is not None:
                line["valuation_rate"] = ch.new_cost_price
            items.append(line)
        res = self.request("POST", "/api/resource/Stock%20Reconciliation", json={
            "purpose": "Stock Reconciliation",
            "items": items,
        })
        data = res.get("data") or res
        name = data.get("name") if isinstance(data, dict) else None
        if not name:
            raise ReconciliationError("ERPNext did not return a Stock Reconciliation name")
        self.request("POST", "/api/method/frappe.client.submit", json={
            "doc": {"doctype": "Stock Reconciliation", "name": name}
        })
        return name

    def update_prices(self, changes: Sequence[ChangeLike]) -> BatchUpdateResult:
        """Apply price/stock changes and report which item codes failed."""
        if not changes:
            raise EmptyBatchError("No changes provided")
        result = BatchUpdateResult()
        stock_lines: List[ChangeSummaryRow] = []
        logger.info("Pushing %d change(s) to ERPNext", len(changes))

        for raw in changes:
            if isinstance(raw, ChangeSummaryRow):
                ch = raw
            elif isinstance(raw, Mapping):
                ch = ChangeSummaryRow.from_payload(raw)
            else:
                result.failures.append(ItemFailure("", f"change is not an object: {raw!r}"))
                continue
            if not ch.item_code:
                result.failures.append(ItemFailure("", "item_code is missing"))
                continue
            if not ch.has_changes:
                result.failures.append(ItemFailure(ch.item_code, "no new values"))
                continue
            invalid = invalid_change_reason(ch)
            if invalid:
                logger.warning("Skipping %s: %s", ch.item_code, invalid)
                result.failures.append(ItemFailure(ch.item_code, invalid))
                continue
            try:
                if ch.new_price is not None:
                    self._upsert_item_price(ch.item_code, self.selling_price_list, ch.new_price)
                if ch.new_cost_price is not None:
                    self._upsert_item_price(ch.item_code, self.buying_price_list, ch.new_cost_price)
            except ERPConnectionError:
                if result.applied == 0 and not result.failures:
                    raise
                result.failures.append(ItemFailure(ch.item_code, "could not connect to ERPNext"))
                continue
            except requests.HTTPError as exc:
                reason = error_message_from_response(exc.response)
                logger.warning("Failed to update %s: %s", ch.item_code, reason)
                result.failures.append(ItemFailure(ch.item_code, reason))
                continue
            if ch.new_stock_quantity is not None:
                stock_lines.append(ch)
            else:
                result.applied += 1

        if stock_lines:
            try:
                docname = self._reconcile_stock(stock_lines)
                logger.info("Stock Reconciliation %s submitted for %d item(s)", docname, len(stock_lines))
                result.applied += len(stock_lines)
            except (requests.HTTPError, ERPConnectionError, ReconciliationError) as exc:
                if isinstance(exc, requests.HTTPError):
                    reason = "stock reconciliation rejected: " + error_message_from_response(exc.response)
                elif isinstance(exc, ReconciliationError):
                    reason = f"stock reconciliation failed: {exc}"
                else:
                    reason = "stock reconciliation failed: could not connect to ERPNext"
                logger.warning("%s", reason)
                for ch in stock_lines:
                    result.failures.append(ItemFailure(ch.item_code, reason))
        return result


def run_batch(client: ERPBatchClient, payload: Any) -> Tuple[int, Dict[str, Any]]:
    """Batch-sync endpoint logic: returns (http_status, json_body)."""
    if not isinstance(payload, dict):
        return 400, {"success": False, "message": "Invalid JSON payload"}
    changes = payload.get("changes")
    sync_id = payload.get("sync_id")
    if not isinstance(changes, list) or not changes:
        return 400, {"success": False, "message": "No changes provided"}

    logger.info("[BatchSync] Processing %d updates (Sync ID: %s)", len(changes), sync_id)
    if not client.test_connection():
        return 503, {"success": False, "message": "Could not connect to ERPNext"}

    try:
        result = client.update_prices(changes)
    except EmptyBatchError as exc:
        return 400, {"success": False, "message": str(exc)}
    except ERPConnectionError as exc:
        return 503, {"success": False, "message": str(exc)}

    if result.failures:
        return 422, {
            "success": False,
            "message": f"{len(result.failures)} of {len(changes)} item(s) were rejected by ERPNext",
            "details": result.to_dict(),
        }
    return 200, {"success": True, "message": "Batch update processed", "details": result.to_dict()}
