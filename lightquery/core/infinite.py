"""
Paged ("infinite") queries built on QueryClient.fetch_query.
"""

from typing import Any, Awaitable, Callable, Generic, List, Optional

from lightquery.core.client import QueryClient
from lightquery.core.query import CancellationToken
from lightquery.core.types import FetchOptions, T
from lightquery.shared.errors import ValidationError

PageFn = Callable[[Optional[Any], CancellationToken], Awaitable[T]]
NextPageParamFn = Callable[[T, List[T]], Optional[Any]]


class InfiniteQuery(Generic[T]):
    """Accumulates pages fetched under ``[*query_key, page_param]``.

    Each page is an ordinary cache entry, so pages share staleness, retry
    and invalidation with every other query. Option overrides are passed
    through to each page fetch.
    """

    def __init__(
        self,
        client: QueryClient,
        query_key: List[Any],
        query_fn: PageFn[T],
        get_next_page_param: Optional[NextPageParamFn[T]] = None,
        **overrides: Any,
    ):
        if not isinstance(query_key, (list, tuple)):
            raise ValidationError("Infinite query keys must be sequences", {"query_key": repr(query_key)})
        self.client = client
        self.query_key = list(query_key)
        self.query_fn = query_fn
        self.get_next_page_param = get_next_page_param
        self.overrides = overrides

        self.pages: List[T] = []
        self.page_params: List[Optional[Any]] = []
        self._next_param: Optional[Any] = None
        self._exhausted = False

    @property
    def has_next_page(self) -> bool:
        if not self.pages:
            return True
        return not self._exhausted

    def page_key(self, page_param: Optional[Any]) -> List[Any]:
        return [*self.query_key, page_param]

    async def fetch_page(self, page_param: Optional[Any] = None) -> T:
        """Fetch one page through the client cache."""

        async def run_page(token: CancellationToken) -> T:
            return await self.query_fn(page_param, token)

        return await self.client.fetch_query(
            FetchOptions(query_key=self.page_key(page_param), query_fn=run_page, **self.overrides)
        )

    async def fetch_first_page(self) -> T:
        """(Re)load from the first page, discarding accumulated pages."""
        first = await self.fetch_page(None)
        self.pages = [first]
        self.page_params = [None]
        self._advance()
        return first

    async def fetch_next_page(self) -> Optional[T]:
        """Append the next page; returns None when there is no next page."""
        if not self.pages:
            return await self.fetch_first_page()
        if self._exhausted:
            return None

        param = self._next_param
        page = await self.fetch_page(param)
        self.pages.append(page)
        self.page_params.append(param)
        self._advance()
        return page

    def _advance(self) -> None:
        if self.get_next_page_param is None:
            self._next_param = len(self.pages)
            self._exhausted = False
            return
        self._next_param = self.get_next_page_param(self.pages[-1], self.pages)
        self._exhausted = self._next_param is None
