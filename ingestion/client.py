"""
HTTP client for the remote case catalog.

This module wraps the three catalog endpoints the pipeline needs:
- sidebar: the category/procedure tree
- listing: paginated case IDs for one procedure
- detail: the full record of one case

Every call is a POST carrying the API tokens and website property IDs in
the JSON body. Calls have a fixed timeout and are never retried: a failed
call raises TransportError (or DecodeError for malformed payloads) and the
caller decides what to skip.
"""

import httpx
import asyncio
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple, Union
from core.config import settings
from core.exceptions import ConfigError, TransportError, DecodeError, SyncException
from schemas.catalog import is_valid_external_id
from schemas.remote_case import RemoteCase, parse_case_payload
import logging

logger = logging.getLogger(__name__)

SIDEBAR_PATH = "/api/plugin/combine/sidebar"
LISTING_PATH = "/api/plugin/combine/cases"
DETAIL_PATH = "/api/plugin/combine/cases/{case_id}"

USER_AGENT = "case-catalog-sync/1.0"

LISTING_MODES = ("auto", "count", "page")


@dataclass
class ListingPage:
    """One page of the listing endpoint"""
    case_ids: List[int]
    # None when the backend sent no pagination object
    has_next: Optional[bool] = None


class CatalogAPIClient:
    """
    Async client for the catalog endpoints.

    Use as an async context manager; an ``http_client`` may be injected
    (tests pass one built on ``httpx.MockTransport``).

    Attributes:
        timeout: Request timeout in seconds (default: settings.REQUEST_TIMEOUT)
        concurrency: Parallel detail fetches per batch (default: settings.FETCH_CONCURRENCY)
        listing_mode: "auto", "count" or "page" cursor for the listing endpoint
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_tokens: Optional[List[str]] = None,
        website_property_ids: Optional[List[Any]] = None,
        timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
        listing_mode: Optional[str] = None,
        page_size: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url if base_url is not None else settings.CATALOG_API_BASE_URL).rstrip("/")
        self.api_tokens = [
            str(t).strip() for t in (api_tokens if api_tokens is not None else settings.CATALOG_API_TOKENS)
            if t is not None and str(t).strip()
        ]
        self.website_property_ids = self._clean_property_ids(
            website_property_ids if website_property_ids is not None else settings.CATALOG_WEBSITE_PROPERTY_IDS
        )
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.concurrency = max(1, concurrency or settings.FETCH_CONCURRENCY)
        self.listing_mode = listing_mode or settings.LISTING_MODE
        self.page_size = page_size or settings.LISTING_PAGE_SIZE

        self._client = http_client
        self._owns_client = http_client is None

    @staticmethod
    def _clean_property_ids(values: List[Any]) -> List[int]:
        cleaned = []
        for value in values or []:
            try:
                number = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid website property ID: {value!r}")
                continue
            if number != 0:
                cleaned.append(number)
        return cleaned

    def validate(self):
        """
        Check credentials before any request is made.

        Raises:
            ConfigError: If the base URL or API tokens are missing
        """
        if not self.base_url:
            raise ConfigError("Catalog API base URL is not configured")
        if not self.api_tokens:
            raise ConfigError(
                "No valid catalog API tokens configured",
                context={"setting": "CATALOG_API_TOKENS"}
            )
        if self.listing_mode not in LISTING_MODES:
            raise ConfigError(
                f"Unknown listing mode: {self.listing_mode}",
                context={"allowed": ", ".join(LISTING_MODES)}
            )

    async def __aenter__(self) -> "CatalogAPIClient":
        self.validate()
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "User-Agent": USER_AGENT,
                }
            )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _envelope(self, **extra) -> Dict[str, Any]:
        body = {
            "apiTokens": self.api_tokens,
            "websitePropertyIds": self.website_property_ids,
        }
        body.update(extra)
        return body

    async def _post(self, path: str, body: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a JSON body and decode the JSON object response.

        Raises:
            TransportError: Network failure, timeout, non-200 status or success=false
            DecodeError: Body is not a JSON object
        """
        if self._client is None:
            raise SyncException("CatalogAPIClient used outside its context manager")

        url = f"{self.base_url}{path}"
        context = {"api_url": url, **context}

        try:
            response = await self._client.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransportError(
                "Request timed out",
                context={**context, "timeout": self.timeout},
                original_exception=e
            )
        except httpx.HTTPError as e:
            raise TransportError("Request failed", context=context, original_exception=e)

        if response.status_code != 200:
            raise TransportError(
                f"Unexpected HTTP status {response.status_code}",
                context={
                    **context,
                    "status_code": response.status_code,
                    "response_body": response.text[:500]
                }
            )

        try:
            data = response.json()
        except ValueError as e:
            raise DecodeError(
                "Failed to parse JSON response",
                context={**context, "response_body": response.text[:500]},
                original_exception=e
            )

        if not isinstance(data, dict):
            raise DecodeError(
                "Response is not a JSON object",
                context={**context, "payload_type": type(data).__name__}
            )

        if data.get("success") is False:
            raise TransportError(
                "API reported failure",
                context={**context, "api_message": str(data.get("message", ""))[:500]}
            )

        return data

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def fetch_sidebar(self) -> Dict[str, Any]:
        """Fetch the category tree payload"""
        logger.info("Fetching category tree from sidebar endpoint")
        return await self._post(SIDEBAR_PATH, {"apiTokens": self.api_tokens}, {"endpoint": "sidebar"})

    def _listing_body(self, procedure_id: Union[int, str], cursor: int) -> Dict[str, Any]:
        body = self._envelope(procedureIds=[int(procedure_id)])
        if self.listing_mode in ("auto", "count"):
            body["count"] = cursor
        if self.listing_mode in ("auto", "page"):
            body["page"] = cursor
            body["limit"] = self.page_size
        return body

    async def fetch_case_page(self, procedure_id: Union[int, str], cursor: int) -> ListingPage:
        """
        Fetch one page of case IDs for a procedure.

        Args:
            procedure_id: External procedure ID
            cursor: 1-based page cursor, sent as ``count`` and/or ``page``

        Returns:
            ListingPage with valid IDs in remote order
        """
        payload = await self._post(
            LISTING_PATH,
            self._listing_body(procedure_id, cursor),
            {"endpoint": "listing", "procedure_id": procedure_id, "cursor": cursor}
        )

        items = payload.get("data") or []
        if not isinstance(items, list):
            raise DecodeError(
                "Listing data is not a list",
                context={"procedure_id": procedure_id, "cursor": cursor}
            )

        case_ids = []
        for item in items:
            value = item.get("id") if isinstance(item, dict) else item
            if is_valid_external_id(value):
                try:
                    case_ids.append(int(value))
                except (TypeError, ValueError):
                    logger.debug(f"Ignoring non-numeric case ID {value!r} for procedure {procedure_id}")

        has_next = None
        pagination = payload.get("pagination")
        if isinstance(pagination, dict) and "hasNext" in pagination:
            has_next = bool(pagination.get("hasNext"))

        return ListingPage(case_ids=case_ids, has_next=has_next)

    async def fetch_case_detail(
        self,
        case_id: Union[int, str],
        procedure_ids: Optional[List[Union[int, str]]] = None
    ) -> RemoteCase:
        """
        Fetch and decode the full record for one case.

        Raises:
            TransportError: Request failed
            DecodeError: Payload matches neither the v1 nor the v2 shape
        """
        body = self._envelope(procedureIds=[int(p) for p in (procedure_ids or [])])
        payload = await self._post(
            DETAIL_PATH.format(case_id=case_id),
            body,
            {"endpoint": "detail", "case_id": case_id}
        )
        return parse_case_payload(payload, case_id=case_id)

    async def fetch_case_details(
        self,
        case_ids: List[Union[int, str]],
        procedure_ids: Optional[List[Union[int, str]]] = None
    ) -> List[Tuple[Union[int, str], Union[RemoteCase, SyncException]]]:
        """
        Fetch several case details concurrently.

        At most ``concurrency`` requests are in flight. Results keep the
        input order; a failed fetch yields its exception in place of the
        record so one bad case never sinks the batch.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def fetch_one(case_id):
            async with semaphore:
                try:
                    return case_id, await self.fetch_case_detail(case_id, procedure_ids)
                except SyncException as e:
                    logger.warning(f"Failed to fetch case {case_id}: {e.message}")
                    return case_id, e

        return list(await asyncio.gather(*(fetch_one(case_id) for case_id in case_ids)))
