"""
Bank Feed API Client

Thin async client for the upstream bank feed (Qonto-compatible API):
- GET /v2/organization - organization and its bank accounts
- GET /v2/transactions - paginated transaction list

Requests carry a timeout and are retried with backoff on transport errors,
timeouts, HTTP 429 and 5xx. Anything else surfaces as ExternalServiceError.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from config import Settings, get_settings
from database.reconciliation_models import BankSide
from reconciliation.errors import ConfigurationError, ExternalServiceError
from reconciliation.models import to_money

logger = logging.getLogger(__name__)

SERVICE_NAME = "bank_feed"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class BankFeedTransaction(BaseModel):
    """
    Transaction row as returned by the upstream feed.

    settled_at falls back to emitted_at for rows the bank has not settled yet.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    external_id: str = Field(validation_alias=AliasChoices("id", "external_id"))
    upstream_transaction_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("transaction_id", "upstream_transaction_id")
    )
    amount: Decimal
    currency: Optional[str] = None
    side: BankSide
    status: str
    settled_at: Optional[datetime] = None
    emitted_at: Optional[datetime] = None
    label: Optional[str] = None
    reference: Optional[str] = None
    note: Optional[str] = None
    operation_type: Optional[str] = None
    web_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("qonto_web_url", "web_url", "url")
    )
    raw: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_settled_at(self) -> "BankFeedTransaction":
        if self.settled_at is None:
            self.settled_at = self.emitted_at
        self.amount = abs(to_money(self.amount))
        return self

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BankFeedTransaction":
        return cls.model_validate({**data, "raw": data})


def encode_filters(filters: Optional[Dict[str, Any]]) -> List[tuple]:
    """
    Encode filters as query params; list values use the `key[]=value` form.
    """
    params = []
    for key, value in (filters or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            params.extend((f"{key}[]", str(v)) for v in value)
        elif isinstance(value, datetime):
            params.append((key, value.isoformat()))
        else:
            params.append((key, str(value)))
    return params


class BankFeedClient:
    """
    Client for the upstream bank feed.

    Args:
        base_url: API base URL
        login: API login
        secret: API secret key
        timeout: Per-request timeout in seconds
        max_retries: Retries after the first attempt
        retry_backoff: Delays between attempts (last value repeats)
        page_size: Transactions per page
        transport: Optional httpx transport (tests use httpx.MockTransport)
        sleep: Coroutine used to wait between retries
    """

    def __init__(
        self,
        base_url: str,
        login: str,
        secret: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: Sequence[float] = (1.0, 2.0, 4.0),
        page_size: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.login = login
        self.secret = secret
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_backoff = tuple(retry_backoff) or (1.0,)
        self.page_size = page_size
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "BankFeedClient":
        settings = settings or get_settings()
        kwargs = dict(
            base_url=settings.BANK_FEED_API_BASE_URL,
            login=settings.BANK_FEED_LOGIN,
            secret=settings.BANK_FEED_SECRET,
            timeout=settings.BANK_FEED_TIMEOUT_SECONDS,
            max_retries=settings.BANK_FEED_MAX_RETRIES,
            retry_backoff=settings.retry_backoff_list,
            page_size=settings.BANK_FEED_PAGE_SIZE,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _headers(self) -> Dict[str, str]:
        if not self.login or not self.secret:
            raise ConfigurationError("Bank feed API credentials not configured")
        return {
            "Authorization": f"{self.login}:{self.secret}",
            "Accept": "application/json",
        }

    def _backoff(self, attempt: int) -> float:
        return self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)]

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[List[tuple]] = None
    ) -> Dict[str, Any]:
        """Make an authenticated request, retrying transient failures."""
        headers = self._headers()
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.request(method, path, params=params, headers=headers)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                if e.response.status_code not in RETRYABLE_STATUS_CODES:
                    logger.error(f"Bank feed API error: {e.response.status_code} on {path}")
                    raise ExternalServiceError(SERVICE_NAME, e) from e
                last_error = e
            except httpx.TransportError as e:
                last_error = e
            except ValueError as e:
                raise ExternalServiceError(SERVICE_NAME, e) from e

            if attempt < self.max_retries:
                delay = self._backoff(attempt)
                logger.warning(
                    f"Bank feed request {method} {path} failed ({last_error!r}), "
                    f"retry {attempt + 1}/{self.max_retries} in {delay}s"
                )
                await self._sleep(delay)

        logger.error(f"Bank feed request {method} {path} failed after {self.max_retries + 1} attempts")
        raise ExternalServiceError(SERVICE_NAME, last_error)

    async def get_organization(self) -> Dict[str, Any]:
        """Get the organization and its bank accounts."""
        data = await self._request("GET", "/v2/organization")
        organization = data.get("organization") or {}
        return {
            "organization": organization,
            "bank_accounts": organization.get("bank_accounts") or [],
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Check credentials and connectivity. Never raises."""
        try:
            data = await self.get_organization()
        except (ExternalServiceError, ConfigurationError) as e:
            return {"success": False, "message": str(e)}

        organization = data["organization"]
        return {
            "success": True,
            "message": f"Connected to {organization.get('legal_name') or 'bank feed'}",
            "organization": organization,
        }

    async def iter_transaction_pages(
        self,
        filters: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[List[BankFeedTransaction]]:
        """
        Yield transactions one page at a time, following meta.next_page.

        Rows that do not parse (unknown side, missing id) are skipped with a warning.
        """
        page: Optional[int] = 1
        while page:
            params = encode_filters(filters)
            params.extend([("current_page", str(page)), ("per_page", str(self.page_size))])
            data = await self._request("GET", "/v2/transactions", params=params)

            rows = data.get("transactions") or []
            transactions = []
            for row in rows:
                try:
                    transactions.append(BankFeedTransaction.from_api(row))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed bank feed row {row.get('id')}: {e.error_count()} errors")

            yield transactions

            meta = data.get("meta") or {}
            next_page = meta.get("next_page")
            page = int(next_page) if next_page and rows else None

    async def fetch_transactions(self, filters: Optional[Dict[str, Any]] = None) -> List[BankFeedTransaction]:
        """Fetch every page matching the filters."""
        transactions: List[BankFeedTransaction] = []
        async for page in self.iter_transaction_pages(filters):
            transactions.extend(page)
        return transactions
