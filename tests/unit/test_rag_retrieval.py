import asyncio

from chatcore.rag.index import VectorPassageIndex
from chatcore.rag.retrieval import CONTEXT_PREAMBLE, RetrievalAdapter, build_context_block
from chatcore.rag.types import Passage, RetrievalQuery

VOCABULARY = ["refund", "shipping", "warranty"]


class KeywordEmbedder:
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [[float(text.lower().count(word)) for word in VOCABULARY] for text in texts]


def _index() -> VectorPassageIndex:
    index = VectorPassageIndex(embedder=KeywordEmbedder())
    index.add_records(
        [
            {"id": "p-refund", "text": "Refund requests take five days.", "org_id": "org-1"},
            {
                "id": "p-ship",
                "text": "Shipping is free over $50.",
                "org_id": "org-1",
                "namespace": "kb-shipping",
            },
            {"id": "p-warranty", "text": "Warranty covers one year."},
            {"id": "p-other-org", "text": "Refund policy for org 2.", "org_id": "org-2"},
            {"id": "p-blank", "text": "   "},
        ]
    )
    return index


def test_search_ranks_and_filters_by_org() -> None:
    results = _index().search(RetrievalQuery(query="refund please", org_id="org-1"))
    assert [item.id for item in results] == ["p-refund"]
    assert results[0].score == 1.0


def test_shared_passages_are_visible_to_every_org() -> None:
    results = _index().search(RetrievalQuery(query="warranty", org_id="org-9"))
    assert [item.id for item in results] == ["p-warranty"]


def test_namespace_restricts_candidates() -> None:
    index = _index()
    scoped = RetrievalQuery(query="shipping", org_id="org-1", namespace="kb-shipping")
    assert [item.id for item in index.search(scoped)] == ["p-ship"]
    wrong_space = RetrievalQuery(query="refund", org_id="org-1", namespace="kb-shipping")
    assert index.search(wrong_space) == []


def test_index_loads_jsonl_file(tmp_path) -> None:
    path = tmp_path / "passages.jsonl"
    path.write_text(
        '{"id": "p-1", "text": "Shipping to Canada", "metadata": {"page": 3}}\n\n',
        encoding="utf-8",
    )
    index = VectorPassageIndex(embedder=KeywordEmbedder(), index_path=path)
    results = index.search(RetrievalQuery(query="shipping", org_id="org-1"))
    assert [item.id for item in results] == ["p-1"]
    assert results[0].metadata == {"page": "3"}


def test_adapter_applies_default_limit() -> None:
    index = VectorPassageIndex(embedder=KeywordEmbedder())
    index.add_records([{"text": f"refund note {idx}"} for idx in range(5)])
    adapter = RetrievalAdapter(index, default_limit=2)
    assert len(asyncio.run(adapter.retrieve("refund", "org-1"))) == 2
    assert len(asyncio.run(adapter.retrieve("refund", "org-1", limit=3))) == 3
    assert len(asyncio.run(adapter.retrieve("refund", "org-1", limit=0))) == 2


def test_adapter_degrades_to_empty_on_failure() -> None:
    class BrokenSearcher:
        def search(self, query: RetrievalQuery) -> list[Passage]:
            raise ConnectionError("vector store down")

    adapter = RetrievalAdapter(BrokenSearcher())
    assert asyncio.run(adapter.retrieve("refund", "org-1")) == []


def test_context_block_joins_passages_after_preamble() -> None:
    block = build_context_block(
        [Passage(id="a", text="First.", score=0.9), Passage(id="b", text="Second.", score=0.5)]
    )
    assert block == CONTEXT_PREAMBLE + "\n\nFirst.\n\nSecond."
