"""
Sui JSON-RPC client with primary/backup failover.

Retries on:
- 429 (rate limit)
- 5xx (server errors)
- Network errors (timeout, connection refused)
- JSON-RPC errors whose message names one of the above

Does NOT retry on other 4xx or JSON-RPC errors (bad params, missing object).
After `failover_after_failures` consecutive transient failures the client
switches to the other endpoint. Exhausted retries raise TransientChainError.
"""

import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from core.exceptions import KeeperError, TransientChainError

logger = logging.getLogger(__name__)

NETWORK_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}

FAILOVER_MARKERS = (
    "fetch",
    "network",
    "timeout",
    "econnrefused",
    "connection refused",
    "rate limit",
    "429",
    "502",
    "503",
)


def is_failover_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in FAILOVER_MARKERS)


class RpcResponseError(KeeperError):
    """Non-transient JSON-RPC error returned by the node."""

    def __init__(self, method: str, code: Optional[int], message: str):
        super().__init__(f"{method}: [{code}] {message}")
        self.method = method
        self.code = code
        self.message = message


class SuiRpcClient:
    """Synchronous JSON-RPC client. Async callers run it via asyncio.to_thread."""

    def __init__(
        self,
        primary_url: str,
        backup_url: Optional[str] = None,
        timeout: float = 20.0,
        max_retries: int = 3,
        failover_after_failures: int = 1,
        on_failover: Optional[Callable[[str], None]] = None,
    ):
        self.primary_url = primary_url
        self.backup_url = backup_url or None
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.failover_after_failures = max(1, int(failover_after_failures))
        self.on_failover = on_failover

        self._active_url = primary_url
        self._consecutive_failures = 0
        self._request_id = 0
        self._lock = threading.Lock()

    @property
    def active_url(self) -> str:
        return self._active_url

    @property
    def using_backup(self) -> bool:
        return self.backup_url is not None and self._active_url == self.backup_url

    def _next_request(self) -> tuple:
        with self._lock:
            self._request_id += 1
            return self._active_url, self._request_id

    def _record_success(self, url: str) -> None:
        with self._lock:
            if url == self._active_url:
                self._consecutive_failures = 0

    def _record_transient_failure(self, url: str, reason: str) -> None:
        """Count a failure against `url`. Failures on an endpoint already switched away from are ignored."""
        with self._lock:
            if url != self._active_url:
                return
            self._consecutive_failures += 1
            if not self.backup_url or self._consecutive_failures < self.failover_after_failures:
                return

            previous = self._active_url
            self._active_url = self.primary_url if self.using_backup else self.backup_url
            self._consecutive_failures = 0
            current = self._active_url
        logger.warning(f"RPC failover: {previous} -> {current} ({reason})")
        if self.on_failover:
            self.on_failover(current)

    def call(self, method: str, params: List[Any], max_retries: Optional[int] = None) -> Any:
        """
        Invoke a JSON-RPC method and return its `result`.

        Raises:
            TransientChainError: all attempts hit transient failures
            RpcResponseError: the node rejected the request
        """
        attempts = max_retries or self.max_retries
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            url, request_id = self._next_request()
            payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}

            try:
                response = requests.request(
                    "POST",
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                body = response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"RPC client error {status_code} on {method}")
                    raise RpcResponseError(method, status_code, str(e)) from e
                logger.warning(f"RPC HTTP {status_code} on {method}, attempt {attempt + 1}/{attempts}")
                last_exception = e
                self._record_transient_failure(url, str(status_code))

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {method} via {url}: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = e
                self._record_transient_failure(url, type(e).__name__)

            except ValueError as e:
                logger.warning(f"Malformed RPC response on {method}: {e}")
                last_exception = e
                self._record_transient_failure(url, "malformed response")

            else:
                error = body.get("error") if isinstance(body, dict) else None
                if not error:
                    self._record_success(url)
                    return body.get("result") if isinstance(body, dict) else None

                message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
                code = error.get("code") if isinstance(error, dict) else None
                if not is_failover_error(message):
                    raise RpcResponseError(method, code, message)
                logger.warning(f"RPC error on {method}: {message}, attempt {attempt + 1}/{attempts}")
                last_exception = RpcResponseError(method, code, message)
                self._record_transient_failure(url, message)

            if attempt < attempts - 1:
                backoff = min(2 ** attempt, 8) + random.uniform(0, 0.5)
                logger.info(f"Retrying {method} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {attempts} attempts exhausted for {method}")
        raise TransientChainError(f"{method} failed after {attempts} attempts", last_exception)

    # Read API

    def get_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        """`data` of sui_getObject, or None when the object does not exist."""
        result = self.call("sui_getObject", [object_id, {"showContent": True, "showType": True}])
        if not result or result.get("error"):
            return None
        return result.get("data")

    def get_dynamic_field_object(self, parent_id: str, name: str) -> Optional[Dict[str, Any]]:
        """Dynamic field keyed by a vector<u8> name (e.g. b"position")."""
        field_name = {"type": "vector<u8>", "value": list(name.encode("utf-8"))}
        result = self.call("suix_getDynamicFieldObject", [parent_id, field_name])
        if not result or result.get("error"):
            return None
        return result.get("data")

    def iter_events(self, move_event_type: str, page_size: int = 50, max_pages: int = 100) -> Iterator[Dict[str, Any]]:
        cursor = None
        for _ in range(max_pages):
            page = self.call(
                "suix_queryEvents",
                [{"MoveEventType": move_event_type}, cursor, page_size, False],
            ) or {}
            for event in page.get("data", []):
                yield event
            if not page.get("hasNextPage"):
                return
            cursor = page.get("nextCursor")
        logger.warning(f"Stopped paging {move_event_type} after {max_pages} pages")

    # Write API

    def execute_transaction_block(self, tx_bytes_b64: str, signature_b64: str) -> Dict[str, Any]:
        # Single attempt: resubmission is left to the next tick's fresh evaluation
        return self.call(
            "sui_executeTransactionBlock",
            [
                tx_bytes_b64,
                [signature_b64],
                {"showEffects": True},
                "WaitForLocalExecution",
            ],
            max_retries=1,
        )
