from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class SalesDriveError(RuntimeError):
    pass


class SalesDriveRateLimited(SalesDriveError):
    pass


@dataclass(frozen=True)
class SalesDriveClient:
    api_url: str
    api_key: str
    form_key: str = ""
    timeout_seconds: int = 60
    page_size: int = 200
    max_pages: int = 100

    @property
    def base_url(self) -> str:
        url = self.api_url.rstrip("/")
        # Accept the list endpoint pasted as the base URL.
        if url.endswith("/api/order/list"):
            url = url[: -len("/api/order/list")]
        return url

    @staticmethod
    def _decode(raw: bytes, path: str) -> dict[str, Any]:
        try:
            j = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SalesDriveError(f"Invalid JSON from SalesDrive ({path})") from e
        if not isinstance(j, dict):
            raise SalesDriveError(f"Unexpected response shape from SalesDrive ({path})")
        return j

    @staticmethod
    def _error_body(e: urllib.error.HTTPError) -> str:
        try:
            return e.read().decode("utf-8", errors="ignore")[:300]
        except OSError:
            return ""

    def _send(self, req: urllib.request.Request, path: str, *, retries: int) -> dict[str, Any]:
        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    return self._decode(resp.read(), path)
            except urllib.error.HTTPError as e:
                if e.code != 429:
                    raise SalesDriveError(f"HTTP {e.code} from SalesDrive: {self._error_body(e)}") from e
                # exponential backoff, capped
                delay = min(2 ** attempt, 10)
                logger.warning("SALESDRIVE: 429 on %s, retry in %ss", path, delay)
                time.sleep(delay)
                last_err = SalesDriveRateLimited("Rate limited (429)")
            except urllib.error.URLError as e:
                logger.warning("SALESDRIVE: %s unreachable (attempt %d): %s", path, attempt + 1, e.reason)
                last_err = e
                time.sleep(min(attempt + 1, 5))
        if isinstance(last_err, SalesDriveRateLimited):
            raise SalesDriveRateLimited(f"SalesDrive rate limit exceeded after {retries} retries")
        raise SalesDriveError(f"SalesDrive request failed after retries: {last_err}")

    def request_json(self, path: str, *, params: dict[str, Any] | None = None, retries: int = 3) -> dict[str, Any]:
        if not self.api_url or not self.api_key:
            raise SalesDriveError("SALESDRIVE_API_URL and SALESDRIVE_API_KEY are required.")
        url = self.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        req = urllib.request.Request(url, method="GET")
        req.add_header("Form-Api-Key", self.api_key)
        req.add_header("Accept", "application/json")
        return self._send(req, path, retries=retries)

    def list_orders_page(self, *, start: str, end: str, page: int) -> tuple[list[dict[str, Any]], int]:
        """One page of raw orders and the upstream total count."""
        j = self.request_json(
            "/api/order/list/",
            params={
                "page": page,
                "limit": self.page_size,
                "filter[orderTime][from]": start,
                "filter[orderTime][to]": end,
                # every status, deleted ones included
                "filter[statusId]": "__ALL__",
            },
        )
        if j.get("status") != "success":
            raise SalesDriveError(f"SalesDrive API error: {j.get('message') or 'unknown error'}")
        data = j.get("data") or []
        if not isinstance(data, list):
            data = []
        totals = j.get("totals") if isinstance(j.get("totals"), dict) else {}
        try:
            total = int(totals.get("count") or len(data))
        except (TypeError, ValueError):
            total = len(data)
        return [x for x in data if isinstance(x, dict)], total

    def fetch_orders_since(self, start_date: str, end_date: str | None = None) -> list[dict[str, Any]]:
        """
        All raw orders with orderTime in [start_date, end_date]. Dates are
        "YYYY-MM-DD" or "YYYY-MM-DD HH:MM:SS"; end defaults to now.
        """
        start = start_date if " " in start_date else f"{start_date} 00:00:00"
        if end_date:
            end = end_date if " " in end_date else f"{end_date} 23:59:59"
        else:
            end = time.strftime("%Y-%m-%d %H:%M:%S")

        orders, total = self.list_orders_page(start=start, end=end, page=1)
        pages = min(max(1, -(-total // self.page_size)), self.max_pages)
        logger.info("SALESDRIVE: %s..%s total=%d pages=%d", start, end, total, pages)
        for page in range(2, pages + 1):
            chunk, _ = self.list_orders_page(start=start, end=end, page=page)
            if not chunk:
                break
            orders.extend(chunk)
        return orders

    def update_status(self, order_number: str, status: str) -> bool:
        if not self.form_key:
            raise SalesDriveError("SALESDRIVE_FORM_KEY is required to update orders.")
        path = "/api/order/update/"
        body = json.dumps(
            {"form": self.form_key, "externalId": order_number, "data": {"statusId": str(status)}}
        ).encode("utf-8")
        req = urllib.request.Request(self.base_url + path, data=body, method="POST")
        req.add_header("Content-Type", "application/json")
        req.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            j = self._send(req, path, retries=3)
        except SalesDriveError as e:
            logger.error("SALESDRIVE: status update failed order=%s err=%s", order_number, e)
            return False
        ok = bool(j.get("success")) or j.get("status") == "success"
        if not ok:
            logger.error("SALESDRIVE: status update rejected order=%s resp=%s", order_number, str(j)[:300])
        return ok
