"""Tests for the QuickBooks report client and request builders."""

from __future__ import annotations

import json
from datetime import date

import httpx
import pytest

from conftest import make_record
from qbolink.clock import DeterministicClock
from qbolink.connectors.quickbooks import (
    DateRange,
    QuickBooksReportClient,
    extract_query_results,
    standard_report_requests,
)
from qbolink.exceptions import ProviderFaultError, ProviderHTTPError
from qbolink.models.fetch import FetchRequest


def _client(handler, **kwargs) -> QuickBooksReportClient:  # noqa: ANN001
    return QuickBooksReportClient(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# DateRange
# ---------------------------------------------------------------------------


class TestDateRange:
    def test_parse(self) -> None:
        dr = DateRange.parse("2024-01-01", "2024-03-31")
        assert dr.as_params() == {"start_date": "2024-01-01", "end_date": "2024-03-31"}

    def test_start_after_end(self) -> None:
        with pytest.raises(ValueError):
            DateRange.parse("2024-04-01", "2024-03-31")

    def test_malformed(self) -> None:
        with pytest.raises(ValueError):
            DateRange.parse("2024/01/01", "2024-03-31")

    @pytest.mark.parametrize(
        ("period", "start", "end"),
        [
            ("current_month", date(2024, 2, 1), date(2024, 2, 29)),
            ("last_month", date(2024, 1, 1), date(2024, 1, 31)),
            ("current_quarter", date(2024, 1, 1), date(2024, 3, 31)),
            ("last_quarter", date(2023, 10, 1), date(2023, 12, 31)),
            ("current_year", date(2024, 1, 1), date(2024, 12, 31)),
            ("last_year", date(2023, 1, 1), date(2023, 12, 31)),
        ],
    )
    def test_for_period(self, period: str, start: date, end: date) -> None:
        dr = DateRange.for_period(period, today=date(2024, 2, 15))
        assert (dr.start_date, dr.end_date) == (start, end)

    def test_last_month_in_january(self) -> None:
        dr = DateRange.for_period("last_month", today=date(2024, 1, 10))
        assert (dr.start_date, dr.end_date) == (date(2023, 12, 1), date(2023, 12, 31))

    def test_unknown_period(self) -> None:
        with pytest.raises(ValueError, match="Unknown period"):
            DateRange.for_period("fortnight")


# ---------------------------------------------------------------------------
# Request set
# ---------------------------------------------------------------------------


class TestStandardReportRequests:
    def test_full_set(self) -> None:
        requests = standard_report_requests()
        names = [r.name for r in requests]
        assert len(names) == len(set(names)) == 12
        assert names[0] == "company_info"
        assert "general_ledger" in names
        assert "ap_aging_detail" in names

    def test_date_range_applied(self) -> None:
        requests = {r.name: r for r in standard_report_requests(DateRange.parse("2024-01-01", "2024-06-30"))}
        assert requests["profit_and_loss"].params["start_date"] == "2024-01-01"
        assert requests["profit_and_loss"].params["summarize_column_by"] == "Month"
        assert requests["balance_sheet"].params["date"] == "2024-06-30"
        assert "TxnDate >= '2024-01-01'" in requests["general_ledger"].params["query"]

    def test_customer_filter(self) -> None:
        requests = {r.name: r for r in standard_report_requests(customer_id="42")}
        assert requests["ar_aging_summary"].params["customer"] == "42"
        assert requests["ap_aging_summary"].params["vendor"] == "42"

    def test_extract_query_results(self) -> None:
        payload = {"QueryResponse": {"Customer": [{"Id": "1"}], "maxResults": 1}}
        assert extract_query_results(payload, "Customer") == [{"Id": "1"}]
        assert extract_query_results(payload, "Account") == []
        assert extract_query_results({}, "Customer") == []


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TestQuickBooksReportClient:
    def test_build_url(self, clock: DeterministicClock) -> None:
        client = QuickBooksReportClient(sandbox=True)
        url = client.build_url(FetchRequest("companyinfo/{realmId}"), "123")
        assert url == "https://sandbox-quickbooks.api.intuit.com/v3/company/123/companyinfo/123"

    @pytest.mark.asyncio
    async def test_direct_get(self, clock: DeterministicClock) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json={"Header": {"ReportName": "ProfitAndLoss"}})

        client = _client(handler)
        token = make_record(clock, realm_id="123", access_token="tok")
        payload = await client.fetch(FetchRequest("reports/ProfitAndLoss", {"start_date": "2024-01-01"}), token)

        request = seen["request"]
        assert payload["Header"]["ReportName"] == "ProfitAndLoss"
        assert request.method == "GET"
        assert request.url.path == "/v3/company/123/reports/ProfitAndLoss"
        assert request.url.params["start_date"] == "2024-01-01"
        assert request.url.params["minorversion"] == "75"
        assert request.headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_proxy_post(self, clock: DeterministicClock) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json={"QueryResponse": {}})

        client = _client(handler, proxy_base_url="https://proxy.example/webhook/qbo")
        token = make_record(clock, realm_id="123")
        await client.fetch(FetchRequest("query", {"query": "SELECT * FROM Account"}), token)

        request = seen["request"]
        body = json.loads(request.content)
        assert request.method == "POST"
        assert body["method"] == "GET"
        assert body["endpoint"] == "v3/company/123/query"
        assert body["params"]["query"] == "SELECT * FROM Account"

    @pytest.mark.asyncio
    async def test_error_status_raises_with_body(self, clock: DeterministicClock) -> None:
        client = _client(lambda request: httpx.Response(429, json={"error": "throttled"}, headers={"Retry-After": "3"}))
        with pytest.raises(ProviderHTTPError) as exc_info:
            await client.fetch(FetchRequest("reports/BalanceSheet"), make_record(clock))
        assert exc_info.value.status_code == 429
        assert exc_info.value.body == {"error": "throttled"}
        assert exc_info.value.headers["retry-after"] == "3"

    @pytest.mark.asyncio
    async def test_fault_in_200_raises(self, clock: DeterministicClock) -> None:
        fault = {"Fault": {"Error": [{"Message": "bad", "Detail": "Invalid query", "code": "4000"}]}}
        client = _client(lambda request: httpx.Response(200, json=fault))
        with pytest.raises(ProviderFaultError, match="Invalid query"):
            await client.fetch(FetchRequest("query", {"query": "SELECT"}), make_record(clock))
