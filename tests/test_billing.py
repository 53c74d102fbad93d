import asyncio
from datetime import date, datetime, timezone

import httpx

from chatrelay.billing import (
    BillingAggregator,
    billing_window,
    render_billings_table,
    sort_billings,
)
from chatrelay.schemas import BillingRecord

NOW = datetime(2023, 5, 20, 12, 0, tzinfo=timezone.utc)

ACCOUNTS = {
    "sk-alpha-000": (20.0, 766),  # granted, usage in cents
    "sk-beta-0000": (120.0, 0),
    "sk-gamma-000": (5.0, 450),
}


def _billing_handler(failing: set[str], seen: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = request.headers["authorization"].removeprefix("Bearer ")
        if key in failing:
            raise httpx.ConnectError("connection refused", request=request)
        granted, usage = ACCOUNTS[key]
        if request.url.path.endswith("/subscription"):
            return httpx.Response(200, json={"hard_limit_usd": granted})
        return httpx.Response(200, json={"total_usage": usage})

    return handler


def _aggregator(handler) -> BillingAggregator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BillingAggregator(client, "https://api.example.com")


def test_billing_window_spans_ninety_days_back_and_one_ahead():
    assert billing_window(NOW) == (date(2023, 2, 19), date(2023, 5, 21))


def test_fetch_billing_computes_balance_and_queries_window():
    seen: list[httpx.Request] = []
    aggregator = _aggregator(_billing_handler(set(), seen))

    record = asyncio.run(aggregator.fetch_billing("sk-alpha-000", now=NOW))

    assert record.total_granted == 20.0
    assert record.total_used == 7.66
    assert record.total_available == record.total_granted - record.total_used
    assert record.rate == record.total_available / record.total_granted
    assert [r.url.path for r in seen] == [
        "/v1/dashboard/billing/subscription",
        "/v1/dashboard/billing/usage",
    ]
    assert seen[1].url.params["start_date"] == "2023-02-19"
    assert seen[1].url.params["end_date"] == "2023-05-21"


def test_collect_degrades_failing_key_without_aborting():
    seen: list[httpx.Request] = []
    aggregator = _aggregator(_billing_handler({"sk-beta-0000"}, seen))
    keys = ["sk-alpha-000", "sk-beta-0000", "sk-gamma-000"]

    records = asyncio.run(aggregator.collect(keys, now=NOW))

    assert [record.key for record in records] == keys
    assert records[1].rate == 0
    assert records[1].total_granted == 0
    assert records[1].total_used == 0
    assert records[0].total_granted == 20.0
    assert records[2].total_granted == 5.0
    for record in (records[0], records[2]):
        assert record.total_available == record.total_granted - record.total_used


def test_upstream_error_payload_degrades_key():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    record = asyncio.run(_aggregator(handler).fetch_billing("sk-bad", now=NOW))
    assert record == BillingRecord.unavailable("sk-bad")


def test_malformed_response_degrades_key():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/subscription"):
            return httpx.Response(200, json={"hard_limit_usd": 10})
        return httpx.Response(200, text="<html>oops</html>")

    record = asyncio.run(_aggregator(handler).fetch_billing("sk-html", now=NOW))
    assert record.usable is False
    assert record.rate == 0


def test_zero_grant_is_unusable_without_division():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/subscription"):
            return httpx.Response(200, json={"hard_limit_usd": 0})
        return httpx.Response(200, json={"total_usage": 0})

    record = asyncio.run(_aggregator(handler).fetch_billing("sk-zero", now=NOW))
    assert record.usable is False
    assert record.rate == 0


def test_sort_puts_unusable_first_then_descending_rate():
    records = [
        BillingRecord(key="a", rate=0.2, total_granted=10, total_used=8, total_available=2),
        BillingRecord.unavailable("b"),
        BillingRecord(key="c", rate=0.9, total_granted=10, total_used=1, total_available=9),
        BillingRecord.unavailable("d"),
        BillingRecord(key="e", rate=0.5, total_granted=10, total_used=5, total_available=5),
    ]

    ordered = sort_billings(records)

    assert [record.key for record in ordered] == ["b", "d", "c", "e", "a"]
    first_usable = next(i for i, record in enumerate(ordered) if record.usable)
    assert all(not record.usable for record in ordered[:first_usable])
    rates = [record.rate for record in ordered[first_usable:]]
    assert rates == sorted(rates, reverse=True)


def test_render_table_layout():
    records = [
        BillingRecord(key="sk-abcdefghij", rate=0.617, total_granted=20, total_used=7.66, total_available=12.34),
        BillingRecord.unavailable("sk-zzzzzzzzzz"),
    ]

    table = render_billings_table(records)

    assert table == (
        "| Key  | Remaining | Used | Gross magnitude |\n"
        "| ---- | ---- | ---- | ------ |\n"
        "| sk-zzzzz | Unavailable | —— | —— |\n"
        "| sk-abcde | 12.3400(61.7%) | 7.6600 | 20 |\n"
    )

    large_and_precise = render_billings_table(
        [
            BillingRecord(key="sk-large-0", rate=0.5, total_granted=1200000.0, total_used=600000, total_available=600000),
            BillingRecord(key="sk-precise", rate=0.5, total_granted=1234.5678, total_used=617.2839, total_available=617.2839),
        ]
    )

    assert "| 617.2839(50.0%) | 617.2839 | 1234.5678 |" in large_and_precise
    assert "| 600000.0000(50.0%) | 600000.0000 | 1200000 |" in large_and_precise
    assert "e+" not in large_and_precise


def test_aggregate_returns_table_for_all_keys():
    seen: list[httpx.Request] = []
    aggregator = _aggregator(_billing_handler({"sk-beta-0000"}, seen))

    table = asyncio.run(aggregator.aggregate(list(ACCOUNTS), now=NOW))

    rows = table.strip().splitlines()[2:]
    assert len(rows) == 3
    assert rows[0].startswith("| sk-beta- | Unavailable")
    assert rows[1].startswith("| sk-alpha")
    assert rows[2].startswith("| sk-gamma")
