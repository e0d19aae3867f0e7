from dataclasses import dataclass, field


@dataclass(frozen=True)
class Passage:
    id: str
    text: str
    score: float
    source_id: str = ""
    org_id: str | None = None
    namespace: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalQuery:
    query: str
    org_id: str
    namespace: str | None = None
    limit: int = 4
