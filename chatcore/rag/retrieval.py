import asyncio
import logging

from chatcore.rag.index import PassageSearcher
from chatcore.rag.types import Passage, RetrievalQuery

logger = logging.getLogger("chatcore.rag")

CONTEXT_PREAMBLE = (
    "You have access to the following knowledge base context. "
    "Use it to answer the user question. "
    "If the context does not contain the answer, say so explicitly."
)


class RetrievalAdapter:
    """Fetches ranked passages; any failure degrades to an empty result."""

    def __init__(self, searcher: PassageSearcher, default_limit: int = 4):
        self._searcher = searcher
        self._default_limit = default_limit

    async def retrieve(
        self,
        query: str,
        org_id: str,
        namespace: str | None = None,
        limit: int | None = None,
    ) -> list[Passage]:
        request = RetrievalQuery(
            query=query,
            org_id=org_id,
            namespace=namespace,
            limit=limit if limit is not None and limit > 0 else self._default_limit,
        )
        try:
            return await asyncio.to_thread(self._searcher.search, request)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "retrieval_failed",
                extra={"org_id": org_id, "error": str(exc)},
            )
            return []


def build_context_block(passages: list[Passage]) -> str:
    return CONTEXT_PREAMBLE + "\n\n" + "\n\n".join(passage.text for passage in passages)
