"""
Sync orchestration for pricing console changes.

One call to SyncController.execute_sync is one attempt: it gets a fresh
sync_id, notifies start, sends the batch, then notifies success or failure.
The controller always returns a SyncResult; it never raises. Failed attempts
are reported, not retried, and the caller keeps its working edits.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import requests

from console_config import ConsoleConfig
from console_rows import ChangeSummaryRow
from erp_batch import ERPBatchClient, invalid_change_reason, run_batch

logger = logging.getLogger(__name__)

# attempt states
IDLE = "idle"
STARTING = "starting"
IN_FLIGHT = "in_flight"
SUCCEEDED = "succeeded"
FAILED = "failed"

_TRANSITIONS = {
    IDLE: (STARTING, FAILED),
    STARTING: (IN_FLIGHT, FAILED),
    IN_FLIGHT: (SUCCEEDED, FAILED),
    SUCCEEDED: (),
    FAILED: (),
}

CONNECTIVITY_STATUSES = (502, 503, 504)


class SyncInputError(ValueError):
    pass


class BatchEndpointError(RuntimeError):
    def __init__(self, message: str, details: Optional[str] = None, failed_items: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or message
        self.failed_items = failed_items or []


class BatchConnectivityError(BatchEndpointError):
    """The batch endpoint or the ERP behind it could not be reached."""


class BatchRejectedError(BatchEndpointError):
    """The ERP answered but declined all or part of the batch."""


def _interpret(status: int, body: Any) -> Dict[str, Any]:
    body = body if isinstance(body, dict) else {}
    message = str(body.get("message") or f"HTTP {status}")
    if status in CONNECTIVITY_STATUSES:
        raise BatchConnectivityError(message, f"Could not connect to ERP (HTTP {status}): {message}")
    if status >= 400 or body.get("success") is not True:
        details = body.get("details")
        failures = []
        if isinstance(details, dict):
            failures = [f for f in details.get("failures") or [] if isinstance(f, dict)]
        text = message
        if failures:
            text += "; " + "; ".join(f"{f.get('item_code')}: {f.get('reason')}" for f in failures)
        raise BatchRejectedError(message, f"ERP rejected the batch (HTTP {status}): {text}", failures)
    return body


class HttpBatchEndpoint:
    """Posts the sync payload to a batch-sync URL."""

    def __init__(self, url: str, timeout: float = 60, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise BatchConnectivityError("Could not connect to ERP", f"Could not connect to ERP: {exc}") from exc
        try:
            body = resp.json()
        except ValueError:
            body = {"message": (resp.text or "").strip()[:400]}
        return _interpret(resp.status_code, body)


class LocalBatchEndpoint:
    """Runs the batch executor in-process with the same response handling."""

    def __init__(self, client: ERPBatchClient):
        self.client = client

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        status, body = run_batch(self.client, payload)
        return _interpret(status, body)


@dataclass
class SyncAttempt:
    sync_id: str
    state: str = IDLE
    history: List[str] = field(default_factory=lambda: [IDLE])

    def advance(self, state: str):
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Sync {self.sync_id}: cannot go from {self.state} to {state}")
        self.state = state
        self.history.append(state)


@dataclass
class SyncResult:
    success: bool
    sync_id: str
    message: str
    details: Optional[str] = None
    error_kind: Optional[str] = None
    failed_items: List[Dict[str, str]] = field(default_factory=list)
    state: str = IDLE

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "sync_id": self.sync_id,
            "message": self.message,
        }
        if self.details:
            out["details"] = self.details
        if self.error_kind:
            out["error_kind"] = self.error_kind
        if self.failed_items:
            out["failed_items"] = self.failed_items
        return out


ChangeLike = Union[ChangeSummaryRow, Mapping[str, Any]]


def coerce_changes(changes: Any) -> List[ChangeSummaryRow]:
    if changes is None or isinstance(changes, (str, bytes, Mapping)) or not isinstance(changes, Sequence):
        raise SyncInputError("changes must be a list")
    if not changes:
        raise SyncInputError("No changes to sync")
    rows = []
    seen = set()
    for idx, raw in enumerate(changes):
        if isinstance(raw, ChangeSummaryRow):
            row = raw
        elif isinstance(raw, Mapping):
            row = ChangeSummaryRow.from_payload(raw)
        else:
            raise SyncInputError(f"Change #{idx + 1} is not an object")
        if not row.item_code:
            raise SyncInputError(f"Change #{idx + 1} has no item_code")
        if row.item_code in seen:
            raise SyncInputError(f"Duplicate change for {row.item_code}")
        seen.add(row.item_code)
        if not row.has_changes:
            raise SyncInputError(f"Change for {row.item_code} has no new values")
        invalid = invalid_change_reason(row)
        if invalid:
            raise SyncInputError(f"{row.item_code}: {invalid}")
        rows.append(row)
    return rows


class SyncController:
    def __init__(self, endpoint, notifier, config: Optional[ConsoleConfig] = None):
        self.endpoint = endpoint
        self.notifier = notifier
        self.config = config or ConsoleConfig()
        self._in_flight = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    def _notify(self, method: str, *args):
        def call():
            try:
                getattr(self.notifier, method)(*args)
            except Exception as exc:
                logger.warning("Notification %s failed: %s", method, exc)

        if self.config.notify_in_background:
            threading.Thread(target=call, name=f"sync-{method}", daemon=True).start()
        else:
            call()

    def execute_sync(self, changes: Sequence[ChangeLike], reason: Optional[str] = None) -> SyncResult:
        attempt = SyncAttempt(str(uuid.uuid4()))
        try:
            rows = coerce_changes(changes)
        except SyncInputError as exc:
            attempt.advance(FAILED)
            logger.info("Sync %s refused: %s", attempt.sync_id, exc)
            return SyncResult(False, attempt.sync_id, "Nothing was sent to the ERP.", details=str(exc),
                              error_kind="input", state=attempt.state)

        if not self._in_flight.acquire(blocking=False):
            attempt.advance(FAILED)
            return SyncResult(False, attempt.sync_id, "Another sync is already in progress.",
                              error_kind="busy", state=attempt.state)
        try:
            return self._run(attempt, rows, reason)
        except Exception as exc:
            logger.exception("Sync %s crashed", attempt.sync_id)
            return SyncResult(False, attempt.sync_id, "Sync failed unexpectedly.", details=str(exc),
                              error_kind="internal", state=FAILED)
        finally:
            self._in_flight.release()

    def _run(self, attempt: SyncAttempt, rows: List[ChangeSummaryRow], reason: Optional[str]) -> SyncResult:
        sync_id = attempt.sync_id
        count = len(rows)
        logger.info("Starting sync %s: %d change(s), engine=%s console=%s reason=%r",
                    sync_id, count, self.config.engine_version, self.config.console_version, reason)
        attempt.advance(STARTING)
        self._notify("notify_sync_start", count, sync_id)

        payload = {
            "sync_id": sync_id,
            "reason": reason,
            "changes": [row.to_payload() for row in rows],
            "meta": {
                "engine_version": self.config.engine_version,
                "console_version": self.config.console_version,
            },
        }
        attempt.advance(IN_FLIGHT)
        failure = None
        try:
            self.endpoint.submit(payload)
        except BatchConnectivityError as exc:
            failure = SyncResult(False, sync_id, "Sync failed. Could not connect to the ERP; check the network or VPN.",
                                 details=exc.details, error_kind="connectivity")
        except BatchRejectedError as exc:
            failure = SyncResult(False, sync_id, "Sync failed. ERP rejected the transaction.",
                                 details=exc.details, error_kind="rejected", failed_items=exc.failed_items)
        except Exception as exc:
            logger.exception("Sync %s: batch submit raised", sync_id)
            failure = SyncResult(False, sync_id, "Sync failed unexpectedly.",
                                 details=str(exc) or exc.__class__.__name__, error_kind="internal")

        if failure is not None:
            attempt.advance(FAILED)
            failure.state = attempt.state
            logger.warning("Sync %s failed: %s", sync_id, failure.details)
            self._notify("notify_sync_fail", sync_id, failure.details)
            return failure

        attempt.advance(SUCCEEDED)
        logger.info("Sync %s committed", sync_id)
        self._notify("notify_sync_success", sync_id, count)
        return SyncResult(True, sync_id, "Sync successfully committed to ERP.", state=attempt.state)


def make_endpoint(config: ConsoleConfig):
    if config.batch_url:
        return HttpBatchEndpoint(config.batch_url, timeout=config.request_timeout * 2)
    if not config.erp_configured:
        raise RuntimeError("Missing ERPNEXT_URL/ERPNEXT_API_KEY/ERPNEXT_API_SECRET and no CONSOLE_BATCH_URL set")
    return LocalBatchEndpoint(ERPBatchClient.from_config(config))
