"""
History Loader

Pages backwards through the message log. Offsets count canonical messages
from the newest end, matching a backend that orders by created_at
descending; overlap caused by messages arriving live between pages is
absorbed by the store's dedup.
"""

import logging

from feedsync.models import HistoryPage
from feedsync.observability import get_tracer
from feedsync.store import MessageStore
from feedsync.transport.base import MessageTransport

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class HistoryLoader:

    def __init__(self,
                 context_id: str,
                 transport: MessageTransport,
                 store: MessageStore,
                 page_size: int = DEFAULT_PAGE_SIZE,
                 max_page_size: int = MAX_PAGE_SIZE):
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self.context_id = context_id
        self.transport = transport
        self.store = store
        self.page_size = min(page_size, max_page_size)
        self.offset = 0
        self.total = 0
        self.has_more = False
        self.loading = False
        self.loading_more = False

    async def load_initial(self) -> int:
        """
        Load the newest page, replacing confirmed records in the store.

        Errors propagate; the store is left untouched on failure.

        Returns:
            Number of messages in the page
        """
        self.loading = True
        try:
            page = await self._fetch(0)
        finally:
            self.loading = False
        self.store.replace_confirmed(page.messages)
        self._advance(0, page)
        return len(page.messages)

    async def load_more(self) -> int:
        """
        Load the next older page and merge it into the store.

        A call while another page is loading, or when nothing is left, is a
        no-op returning 0. Errors propagate.

        Returns:
            Number of messages actually added to the store
        """
        if self.loading_more or self.loading or not self.has_more:
            return 0
        self.loading_more = True
        try:
            page = await self._fetch(self.offset)
        finally:
            self.loading_more = False
        added = self.store.prepend_history(page.messages)
        self._advance(self.offset, page)
        logger.info(f"[{self.context_id}] Loaded {len(page.messages)} older messages ({added} new), has_more={self.has_more}")
        return added

    async def merge_latest(self) -> int:
        """
        Re-fetch the newest page and merge it without resetting pagination.

        Used to pick up canonical records whose live event never arrived.
        Older pages already in the store are kept.
        """
        page = await self._fetch(0)
        added = self.store.prepend_history(page.messages)
        self.total = page.total
        if added:
            logger.info(f"[{self.context_id}] Resync merged {added} missing messages")
        return added

    async def _fetch(self, offset: int) -> HistoryPage:
        with tracer.start_as_current_span("history.load_page", attributes={
            "feed.context_id": self.context_id,
            "history.offset": offset,
            "history.page_size": self.page_size,
        }):
            return await self.transport.fetch_messages(self.context_id, self.page_size, offset)

    def _advance(self, offset: int, page: HistoryPage) -> None:
        self.offset = offset + len(page.messages)
        self.total = page.total
        # An empty page means the log is exhausted whatever total claims
        self.has_more = bool(page.messages) and self.offset < page.total
