"""
Parent Document Expansion and Context Budgeting
Swaps small retrieved units for their enclosing parent text and trims the final list to a token budget
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import List, Dict, Any, Optional, Iterable
import logging

from hybrid_retrieval.models import ParentDocument, SearchHit

logger = logging.getLogger(__name__)


class ParentDocumentStore(ABC):
    """Lookup of parent documents by id; a missing parent is None, not an error"""

    @abstractmethod
    async def get(self, parent_id: str) -> Optional[ParentDocument]:
        """Fetch one parent document"""


class InMemoryParentStore(ParentDocumentStore):
    """Dict-backed parent store"""

    def __init__(self, documents: Optional[Iterable[ParentDocument]] = None):
        self._documents: Dict[str, ParentDocument] = {}
        for document in documents or ():
            self.add(document)

    def add(self, document: ParentDocument) -> None:
        self._documents[document.id] = document

    async def get(self, parent_id: str) -> Optional[ParentDocument]:
        return self._documents.get(parent_id)

    def __len__(self) -> int:
        return len(self._documents)


class DocumentExpander:
    """
    Replaces a hit's text with its parent document text

    Never reorders the list and never touches identifiers. Missing parent
    mappings and store failures fall back to the hit's own text.
    """

    def __init__(self, store: ParentDocumentStore, timeout_seconds: Optional[float] = None):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._stats = {
            "total_lookups": 0,
            "expanded": 0,
            "missing_parents": 0,
            "failed_lookups": 0
        }

    async def expand(self, hit: SearchHit, timeout_seconds: Optional[float] = None) -> str:
        """Parent text for ``hit``, or the hit's own text when there is none"""
        parent_id = hit.parent_id
        if not parent_id:
            return hit.text

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        self._stats["total_lookups"] += 1
        try:
            lookup = self.store.get(parent_id)
            parent = await asyncio.wait_for(lookup, timeout=timeout) if timeout else await lookup
        except asyncio.TimeoutError:
            self._stats["failed_lookups"] += 1
            logger.warning(f"Parent lookup for {hit.id} (parent {parent_id}) timed out after {timeout}s")
            return hit.text
        except Exception as e:
            self._stats["failed_lookups"] += 1
            logger.warning(f"Parent lookup failed for {hit.id} (parent {parent_id}): {e}")
            return hit.text

        if parent is None:
            self._stats["missing_parents"] += 1
            logger.debug(f"No parent document {parent_id} for {hit.id}, keeping original text")
            return hit.text

        self._stats["expanded"] += 1
        return parent.text

    async def expand_hits(
        self,
        hits: List[SearchHit],
        timeout_seconds: Optional[float] = None
    ) -> List[SearchHit]:
        """Expand every hit concurrently; output order equals input order"""
        if not hits:
            return []

        texts = await asyncio.gather(*(self.expand(hit, timeout_seconds) for hit in hits))
        expanded = [
            replace(hit, text=text, expanded=True) if text != hit.text else hit
            for hit, text in zip(hits, texts)
        ]

        count = sum(1 for hit in expanded if hit.expanded)
        logger.info(f"Document expansion: {count}/{len(hits)} hits replaced by parent text")
        return expanded

    async def health_check(self) -> bool:
        """Store health, when the store can report it"""
        check = getattr(self.store, "health_check", None)
        if check is None:
            return True
        return bool(await check())

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)


def estimate_tokens(text: str) -> int:
    """Rough token estimation (4 chars ≈ 1 token)"""
    return max(len(text) // 4, 1)


def apply_token_budget(hits: List[SearchHit], max_tokens: Optional[int]) -> List[SearchHit]:
    """
    Truncate the list once the running token estimate would exceed ``max_tokens``

    The list is cut, never reordered, and the first hit is always kept.
    """
    if max_tokens is None or not hits:
        return list(hits)

    kept = [hits[0]]
    total_tokens = estimate_tokens(hits[0].text)

    for hit in hits[1:]:
        tokens = estimate_tokens(hit.text)
        if total_tokens + tokens > max_tokens:
            break
        kept.append(hit)
        total_tokens += tokens

    if len(kept) < len(hits):
        logger.info(
            f"Context budget {max_tokens} tokens: kept {len(kept)}/{len(hits)} hits "
            f"(~{total_tokens} tokens)"
        )
    return kept
