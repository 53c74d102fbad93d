from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import httpx

from .errors import ErrorKind
from .key_pool import mask_key
from .schemas import BillingRecord

logger = logging.getLogger(__name__)

SUBSCRIPTION_PATH = "/v1/dashboard/billing/subscription"
USAGE_PATH = "/v1/dashboard/billing/usage"
LOOKBACK_DAYS = 90
UNAVAILABLE_MARKER = "Unavailable"
EMPTY_CELL = "——"

TABLE_HEADER = "| Key  | Remaining | Used | Gross magnitude |\n| ---- | ---- | ---- | ------ |"


def billing_window(now: datetime) -> Tuple[date, date]:
    return (now - timedelta(days=LOOKBACK_DAYS)).date(), (now + timedelta(days=1)).date()


class BillingAggregator:
    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def fetch_billing(self, key: str, *, now: Optional[datetime] = None) -> BillingRecord:
        """Look up one key's balance, degrading to an unusable record on any failure."""
        start, end = billing_window(now or datetime.now(timezone.utc))
        headers = {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        try:
            subscription = await self._get_json(SUBSCRIPTION_PATH, headers)
            error = subscription.get("error")
            if isinstance(error, dict) and error.get("message"):
                raise RuntimeError(error["message"])
            total_granted = float(subscription["hard_limit_usd"])

            usage = await self._get_json(
                USAGE_PATH,
                headers,
                params={"start_date": start.isoformat(), "end_date": end.isoformat()},
            )
            total_used = float(usage["total_usage"]) / 100
        except Exception as exc:  # broad to ensure one key never sinks the batch
            logger.warning(
                "%s for key %s: %s",
                ErrorKind.BILLING_LOOKUP_DEGRADED.value,
                mask_key(key),
                exc,
            )
            return BillingRecord.unavailable(key)

        total_available = total_granted - total_used
        rate = total_available / total_granted if total_granted else 0.0
        return BillingRecord(
            key=key,
            rate=rate,
            total_granted=total_granted,
            total_used=total_used,
            total_available=total_available,
        )

    async def _get_json(self, path: str, headers: dict, params: Optional[dict] = None) -> dict:
        response = await self._client.get(f"{self._base_url}{path}", headers=headers, params=params)
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected {path} payload")
        return payload

    async def collect(self, keys: Sequence[str], *, now: Optional[datetime] = None) -> List[BillingRecord]:
        """Fetch every key concurrently and return the records in input order."""
        return list(await asyncio.gather(*(self.fetch_billing(key, now=now) for key in keys)))

    async def aggregate(self, keys: Sequence[str], *, now: Optional[datetime] = None) -> str:
        records = await self.collect(keys, now=now)
        logger.info(
            "Billing lookup finished for %d keys (%d unavailable)",
            len(records),
            sum(1 for record in records if not record.usable),
        )
        return render_billings_table(records)


def sort_billings(records: Iterable[BillingRecord]) -> List[BillingRecord]:
    """Unusable keys first, then by remaining ratio, highest first."""
    return sorted(records, key=lambda record: (record.usable, -record.rate))


def _format_amount(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def _format_row(record: BillingRecord) -> str:
    prefix = record.key[:8]
    if not record.usable:
        return f"| {prefix} | {UNAVAILABLE_MARKER} | {EMPTY_CELL} | {EMPTY_CELL} |"
    return (
        f"| {prefix} | {record.total_available:.4f}({record.rate * 100:.1f}%) "
        f"| {record.total_used:.4f} | {_format_amount(record.total_granted)} |"
    )


def render_billings_table(records: Iterable[BillingRecord]) -> str:
    rows = "\n".join(_format_row(record) for record in sort_billings(records))
    return f"{TABLE_HEADER}\n{rows}\n"


__all__ = [
    "BillingAggregator",
    "billing_window",
    "render_billings_table",
    "sort_billings",
]
