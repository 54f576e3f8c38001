from __future__ import annotations

import asyncio
from typing import Iterable

from .records import Posting
from .storage import SQLiteStore
from .tokenize import tokenize


class InvertedIndex:
    """
    Token -> item id postings kept in the store's `postings` collection.

    Postings only grow: ids are appended once per token and never removed.
    Holds no state across calls beyond the lock that serializes posting
    read-modify-write cycles inside this process.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def index_tokens(self, item_id: str, tokens: Iterable[str]) -> int:
        """
        Add item_id to the posting of every token; returns how many postings changed.

        Calling this again for the same id and tokens is a no-op.
        """
        iid = (item_id or "").strip()
        if not iid:
            raise ValueError("item_id must be non-empty")

        changed = 0
        async with self._lock:
            for token in sorted({t for t in tokens if t}):
                current = await self._store.postings.get(token)
                ids = tuple(current.item_ids) if current is not None else ()
                if iid in ids:
                    continue
                await self._store.postings.put(Posting(token=token, item_ids=ids + (iid,)))
                changed += 1
        return changed

    async def search_scored(self, query: str) -> list[tuple[str, int]]:
        """
        Score items by how many distinct query tokens they match.

        Ties keep the order in which ids were first encountered; ids matching
        nothing never appear. An empty query matches nothing.
        """
        tokens = tokenize(query)
        if not tokens:
            return []

        scores: dict[str, int] = {}
        for token in sorted(tokens):
            posting = await self._store.postings.get(token)
            if posting is None:
                continue
            for iid in dict.fromkeys(posting.item_ids):
                scores[iid] = scores.get(iid, 0) + 1

        # sorted() is stable, so equal scores stay in first-encounter order.
        return sorted(scores.items(), key=lambda kv: -kv[1])

    async def search(self, query: str) -> list[str]:
        return [iid for iid, _ in await self.search_scored(query)]

    async def posting(self, token: str) -> tuple[str, ...]:
        found = await self._store.postings.get(token)
        return tuple(found.item_ids) if found is not None else ()
