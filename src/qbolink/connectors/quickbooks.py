"""
QuickBooks Online report client — the per-request transport used by the
fetch orchestrator.

Two modes:

- Direct: ``GET {base}/v3/company/{realmId}/{endpoint}`` with the access
  token as a bearer credential.
- Proxy: ``POST {proxy}/{endpoint}`` with ``{method, endpoint, params, data}``
  for deployments that route QBO traffic through an intermediary (e.g. n8n).
  The proxy may wrap upstream errors inside its own response body.

Payloads are returned as parsed JSON and otherwise left untouched.

QuickBooks API docs:
  https://developer.intuit.com/app/developer/qbo/docs/api/accounting/all-entities
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx

from qbolink.exceptions import ProviderFaultError, ProviderHTTPError
from qbolink.models.fetch import FetchRequest
from qbolink.models.token import TokenRecord

logger = logging.getLogger("qbolink.connectors.quickbooks")

# QuickBooks API hosts
QBO_BASE_URL = "https://quickbooks.api.intuit.com"
QBO_SANDBOX_URL = "https://sandbox-quickbooks.api.intuit.com"

# QBO caps query results per page
_PAGE_SIZE = 1000

_PERIODS = (
    "current_month",
    "current_quarter",
    "current_year",
    "last_month",
    "last_quarter",
    "last_year",
)


@dataclass(frozen=True)
class DateRange:
    """Inclusive reporting period."""

    start_date: date
    end_date: date

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValueError(f"start_date {self.start_date} is after end_date {self.end_date}")

    @classmethod
    def parse(cls, start: str, end: str) -> DateRange:
        """Build a range from ``YYYY-MM-DD`` strings.

        Raises:
            ValueError: If either date is malformed or start is after end.
        """
        return cls(date.fromisoformat(start), date.fromisoformat(end))

    @classmethod
    def for_period(cls, period: str, today: date | None = None) -> DateRange:
        """Common reporting periods relative to ``today``."""
        today = today or date.today()
        year, month = today.year, today.month

        if period == "current_month":
            return cls(date(year, month, 1), _month_end(year, month))
        if period == "last_month":
            year, month = (year - 1, 12) if month == 1 else (year, month - 1)
            return cls(date(year, month, 1), _month_end(year, month))
        if period == "current_quarter":
            first = (month - 1) // 3 * 3 + 1
            return cls(date(year, first, 1), _month_end(year, first + 2))
        if period == "last_quarter":
            first = (month - 1) // 3 * 3 + 1 - 3
            if first < 1:
                year, first = year - 1, first + 12
            return cls(date(year, first, 1), _month_end(year, first + 2))
        if period == "current_year":
            return cls(date(year, 1, 1), date(year, 12, 31))
        if period == "last_year":
            return cls(date(year - 1, 1, 1), date(year - 1, 12, 31))
        raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(_PERIODS)}")

    def as_params(self) -> dict[str, str]:
        return {"start_date": self.start_date.isoformat(), "end_date": self.end_date.isoformat()}


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def standard_report_requests(
    date_range: DateRange | None = None,
    customer_id: str | None = None,
) -> list[FetchRequest]:
    """The full financial data set for one company.

    Company info and reference lists go first; reports follow.
    """
    customer = {"customer": customer_id} if customer_id else {}
    vendor = {"vendor": customer_id} if customer_id else {}
    period = date_range.as_params() if date_range else {}
    as_of = {"date": date_range.end_date.isoformat()} if date_range else {}

    journal_query = "SELECT * FROM JournalEntry"
    if date_range:
        journal_query += (
            f" WHERE TxnDate >= '{date_range.start_date.isoformat()}'"
            f" AND TxnDate <= '{date_range.end_date.isoformat()}'"
        )
    journal_query += f" MAXRESULTS {_PAGE_SIZE}"

    return [
        FetchRequest("companyinfo/{realmId}", name="company_info", priority=10),
        FetchRequest("query", {"query": f"SELECT * FROM Customer MAXRESULTS {_PAGE_SIZE}"}, name="customers", priority=5),
        FetchRequest("query", {"query": f"SELECT * FROM Account MAXRESULTS {_PAGE_SIZE}"}, name="chart_of_accounts", priority=5),
        FetchRequest("reports/ProfitAndLoss", {"summarize_column_by": "Month", **period, **customer}, name="profit_and_loss"),
        FetchRequest("reports/BalanceSheet", {"summarize_column_by": "Month", **as_of, **customer}, name="balance_sheet"),
        FetchRequest("query", {"query": journal_query}, name="general_ledger"),
        FetchRequest("reports/TrialBalance", {**as_of, **customer}, name="trial_balance"),
        FetchRequest("reports/CashFlow", {**period, **customer}, name="cash_flow"),
        FetchRequest("reports/AgedReceivables", {**customer, "summary_columns": "true"}, name="ar_aging_summary"),
        FetchRequest("reports/AgedReceivableDetail", dict(customer), name="ar_aging_detail"),
        FetchRequest("reports/AgedPayables", {**vendor, "summary_columns": "true"}, name="ap_aging_summary"),
        FetchRequest("reports/AgedPayableDetail", dict(vendor), name="ap_aging_detail"),
    ]


def extract_query_results(payload: dict[str, Any], entity: str) -> list[dict[str, Any]]:
    """Pull the entity list out of a ``QueryResponse`` payload."""
    result = (payload.get("QueryResponse") or {}).get(entity)
    return result if isinstance(result, list) else []


class QuickBooksReportClient:
    """Issues one authenticated report/query call per :class:`FetchRequest`.

    Usage::

        client = QuickBooksReportClient(sandbox=True)
        payload = await client.fetch(FetchRequest("reports/ProfitAndLoss"), token)
    """

    def __init__(
        self,
        *,
        sandbox: bool = False,
        base_url: str | None = None,
        proxy_base_url: str | None = None,
        minor_version: int | None = 75,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.base_url = (base_url or (QBO_SANDBOX_URL if sandbox else QBO_BASE_URL)).rstrip("/")
        self.proxy_base_url = proxy_base_url.rstrip("/") if proxy_base_url else None
        self.minor_version = minor_version
        self.timeout = timeout
        self._http = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    def build_url(self, request: FetchRequest, realm_id: str) -> str:
        endpoint = request.endpoint.replace("{realmId}", realm_id).lstrip("/")
        if self.proxy_base_url:
            return f"{self.proxy_base_url}/v3/company/{realm_id}/{endpoint}"
        return f"{self.base_url}/v3/company/{realm_id}/{endpoint}"

    async def fetch(self, request: FetchRequest, token: TokenRecord) -> Any:
        """Perform the call and return the parsed payload.

        Raises:
            ProviderHTTPError: Non-2xx response (body kept for classification).
            ProviderFaultError: 2xx response carrying a QBO ``Fault``.
            httpx.TransportError: Network failure or timeout.
        """
        client = await self._get_client()
        url = self.build_url(request, token.realm_id)
        headers = {**token.auth_header, "Accept": "application/json"}
        params = dict(request.params)
        if self.minor_version is not None:
            params.setdefault("minorversion", str(self.minor_version))

        if self.proxy_base_url:
            body = {
                "method": request.method,
                "endpoint": f"v3/company/{token.realm_id}/{request.endpoint.replace('{realmId}', token.realm_id)}",
                "params": params,
                "data": request.data,
            }
            resp = await client.post(url, json=body, headers=headers)
        elif request.method.upper() == "GET":
            resp = await client.get(url, params=params, headers=headers)
        else:
            resp = await client.request(request.method.upper(), url, params=params, json=request.data, headers=headers)

        if resp.is_error:
            try:
                error_body: Any = resp.json()
            except ValueError:
                error_body = resp.text
            raise ProviderHTTPError(resp.status_code, error_body, url=url, headers=dict(resp.headers))

        payload = resp.json()
        if isinstance(payload, dict):
            fault = payload.get("Fault") or payload.get("fault")
            if fault:
                raise ProviderFaultError(fault, url=url)

        logger.debug("Fetched %s for realm %s", request.name, token.realm_id)
        return payload
