"""Elexon BMRS settlement stack client.

Fetches the bid and offer stacks for a settlement date and period.

How it works
------------
1. Every HTTP request passes through a shared sliding-window rate limiter so
   all worker threads together stay under the account-level request budget.
2. Transient failures (timeouts, connection errors, 429, 5xx) are retried by
   a ``RetryPolicy`` with capped exponential backoff. Anything else that is
   wrong with a response is permanent and aborts only that period.
3. A batch of periods is fanned out over a bounded thread pool; results are
   yielded per period as they complete so callers can persist each period
   without waiting for the whole day.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import requests
from loguru import logger
from pydantic import ValidationError

from curtailment_ledger.domain.models import ALL_PERIODS, Feed, RawRow
from curtailment_ledger.errors import (
    FetchCancelled,
    UpstreamError,
    UpstreamFatalError,
)
from curtailment_ledger.ingestion.rate_limit import (
    CancellationToken,
    RetryPolicy,
    SlidingWindowRateLimiter,
)

STACK_PATH = "balancing/settlement/stack/all"


def period_label(settlement_date: date, period: int) -> str:
    return f"[{settlement_date.isoformat()} P{period}]"


@dataclass
class PeriodFetch:
    """Outcome of fetching one settlement period."""

    settlement_period: int
    rows: list[RawRow] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchFetchResult:
    """Rows and failures for a batch of periods on one date."""

    settlement_date: date
    rows_by_period: dict[int, list[RawRow]] = field(default_factory=dict)
    errors: dict[int, Exception] = field(default_factory=dict)

    def add(self, outcome: PeriodFetch) -> None:
        if outcome.ok:
            self.rows_by_period[outcome.settlement_period] = outcome.rows
        else:
            assert outcome.error is not None
            self.errors[outcome.settlement_period] = outcome.error

    @property
    def rows(self) -> list[RawRow]:
        """Union of all fetched rows, ordered by period."""
        return [row for p in sorted(self.rows_by_period) for row in self.rows_by_period[p]]

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self.rows_by_period.values())

    @property
    def failed_periods(self) -> list[int]:
        return sorted(self.errors)

    def breakdown(self) -> dict[int, int]:
        """Row count per successfully fetched period."""
        return {p: len(self.rows_by_period[p]) for p in sorted(self.rows_by_period)}


class SettlementStackFetcher:
    """Rate-limited, retrying client for the settlement bid/offer stacks.

    Parameters
    ----------
    base_url:
        API root, e.g. ``https://data.elexon.co.uk/bmrs/api/v1``.
    rate_limiter:
        Shared request budget; the same instance must be used by every
        fetcher in the process.
    retry_policy:
        Backoff policy applied to every individual request.
    max_concurrent_requests:
        Upper bound on periods fetched in parallel.
    timeout:
        Per-request HTTP timeout in seconds.
    session:
        Optional HTTP session (anything with a ``requests``-style ``get``).
    """

    def __init__(
        self,
        base_url: str,
        rate_limiter: SlidingWindowRateLimiter,
        retry_policy: RetryPolicy | None = None,
        max_concurrent_requests: int = 10,
        timeout: float = 30.0,
        session: Any | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._limiter = rate_limiter
        self._retry = retry_policy or RetryPolicy()
        self._max_workers = max_concurrent_requests
        self._timeout = timeout
        self._session = session if session is not None else requests.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _url(self, feed: Feed, settlement_date: date, period: int) -> str:
        return f"{self._base_url}/{STACK_PATH}/{feed.value}/{settlement_date.isoformat()}/{period}"

    def _get_json(self, url: str) -> Any:
        """Single GET, with failures classified as transient or permanent."""
        try:
            resp = self._session.get(
                url, headers={"Accept": "application/json"}, timeout=self._timeout
            )
        except requests.exceptions.Timeout as exc:
            raise UpstreamError(f"Timeout: {exc}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise UpstreamError(f"Connection error: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise UpstreamFatalError(f"Request failed: {exc}") from exc

        status = resp.status_code
        if status == 429 or status >= 500:
            raise UpstreamError(f"HTTP {status} from {url}", status_code=status)
        if status >= 400:
            raise UpstreamFatalError(f"HTTP {status} from {url}")
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamFatalError(f"Response from {url} is not JSON") from exc

    @staticmethod
    def _parse(
        body: Any, settlement_date: date, period: int, feed: Feed
    ) -> list[RawRow]:
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise UpstreamFatalError(
                f"{period_label(settlement_date, period)} Invalid {feed.value} "
                "response format: expected an object with a 'data' list"
            )
        rows: list[RawRow] = []
        for item in body["data"]:
            if not isinstance(item, dict):
                raise UpstreamFatalError(
                    f"{period_label(settlement_date, period)} Non-object row in {feed.value} stack"
                )
            try:
                rows.append(
                    RawRow.model_validate(
                        {
                            **item,
                            "settlement_date": settlement_date,
                            "settlement_period": period,
                            "feed": feed,
                        }
                    )
                )
            except ValidationError as exc:
                raise UpstreamFatalError(
                    f"{period_label(settlement_date, period)} Malformed {feed.value} row: {exc}"
                ) from exc
        return rows

    def _fetch_feed(
        self,
        feed: Feed,
        settlement_date: date,
        period: int,
        cancel: CancellationToken | None,
    ) -> list[RawRow]:
        url = self._url(feed, settlement_date, period)

        def attempt() -> Any:
            self._limiter.acquire(cancel)
            return self._get_json(url)

        body = self._retry.call(
            attempt,
            cancel=cancel,
            label=f"{period_label(settlement_date, period)} {feed.value}: ",
        )
        return self._parse(body, settlement_date, period, feed)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        settlement_date: date,
        period: int,
        cancel: CancellationToken | None = None,
    ) -> list[RawRow]:
        """Fetch bid and offer rows for one settlement period.

        Raises:
            UpstreamError: Transient failure that outlived the retry policy.
            UpstreamFatalError: Permanent failure such as a schema violation.
            FetchCancelled: The cancellation token fired.
        """
        if period not in ALL_PERIODS:
            raise ValueError(f"Settlement period must be 1-48, got {period}")
        rows: list[RawRow] = []
        for feed in (Feed.BID, Feed.OFFER):
            rows.extend(self._fetch_feed(feed, settlement_date, period, cancel))
        return rows

    def iter_periods(
        self,
        settlement_date: date,
        periods: Iterable[int] = ALL_PERIODS,
        cancel: CancellationToken | None = None,
    ) -> Iterator[PeriodFetch]:
        """Fetch periods concurrently, yielding each outcome as it completes.

        Per-period upstream failures are yielded, not raised. Cancellation
        abandons queued periods and raises ``FetchCancelled``.
        """
        periods = list(dict.fromkeys(periods))
        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, max(len(periods), 1)),
            thread_name_prefix="stack-fetch",
        )
        try:
            futures: dict[Future[list[RawRow]], int] = {
                executor.submit(self.fetch, settlement_date, p, cancel): p
                for p in periods
            }
            for future in as_completed(futures):
                period = futures[future]
                try:
                    rows = future.result()
                except FetchCancelled:
                    logger.warning(
                        "{} Fetch cancelled; abandoning remaining periods",
                        period_label(settlement_date, period),
                    )
                    raise
                except (UpstreamError, UpstreamFatalError) as exc:
                    logger.error("{} Fetch failed: {}", period_label(settlement_date, period), exc)
                    yield PeriodFetch(settlement_period=period, error=exc)
                else:
                    logger.debug(
                        "{} Fetched {} rows", period_label(settlement_date, period), len(rows)
                    )
                    yield PeriodFetch(settlement_period=period, rows=rows)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def fetch_periods(
        self,
        settlement_date: date,
        periods: Iterable[int] = ALL_PERIODS,
        cancel: CancellationToken | None = None,
    ) -> BatchFetchResult:
        """Fetch a batch of periods and collect rows and errors per period."""
        result = BatchFetchResult(settlement_date=settlement_date)
        for outcome in self.iter_periods(settlement_date, periods, cancel):
            result.add(outcome)
        logger.info(
            "[{}] Fetched {} rows across {} periods ({} failed)",
            settlement_date.isoformat(),
            result.row_count,
            len(result.rows_by_period),
            len(result.errors),
        )
        return result

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if close is not None:
            close()
