import abc
import json
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9@._-]+")


@dataclass(frozen=True)
class Document:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class Retriever(abc.ABC):
    """Returns documents similar to a text query, best match first."""

    @abc.abstractmethod
    async def search(self, query: str, k: int) -> List[Document]:
        """Return up to ``k`` documents. An empty list means no match."""


def _tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class InMemoryRetriever(Retriever):
    """Bag-of-words cosine similarity over an in-process document list."""

    def __init__(self, documents: Sequence[Document] = ()) -> None:
        self._docs: List[Document] = []
        self._vectors: List[Counter] = []
        self.add_documents(documents)

    def __len__(self) -> int:
        return len(self._docs)

    def add_documents(self, documents: Sequence[Document]) -> None:
        for doc in documents:
            self._docs.append(doc)
            self._vectors.append(Counter(_tokenize(doc.content)))

    @staticmethod
    def _cosine(a: Counter, b: Counter) -> float:
        if not a or not b:
            return 0.0
        dot = sum(a[t] * b[t] for t in a if t in b)
        if not dot:
            return 0.0
        norm = math.sqrt(sum(v * v for v in a.values())) * math.sqrt(sum(v * v for v in b.values()))
        return dot / norm

    async def search(self, query: str, k: int) -> List[Document]:
        if k <= 0:
            raise ValueError("k must be a positive integer")
        q = Counter(_tokenize(query))
        scored = [(self._cosine(q, vec), i) for i, vec in enumerate(self._vectors)]
        scored = [(s, i) for s, i in scored if s > 0]
        # stable on ties: earlier documents first
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [self._docs[i] for _, i in scored[:k]]


def load_emails(path: Path) -> List[Dict[str, Any]]:
    """Load a JSON list of email objects ({from, subject, body, date})."""
    if not path.exists():
        raise FileNotFoundError(f"Email data file not found: {path.resolve()}")
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path.resolve()}: {e}") from e

    if not isinstance(data, list):
        raise ValueError("Email data must be a JSON list of email objects")
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"Email at index {i} is not an object")
    return data


def email_to_document(email: Dict[str, Any], index: int) -> Document:
    content = (
        f"FROM: {email.get('from', '')}\n"
        f"SUBJECT: {email.get('subject', '')}\n"
        f"BODY: {email.get('body', '')}\n"
        f"DATE: {email.get('date', '')}"
    )
    return Document(
        content=content,
        metadata={
            "id": str(email.get("id") or f"email-{index}"),
            "from": email.get("from"),
            "date": email.get("date"),
        },
    )


def index_emails(path: Path, retriever: InMemoryRetriever | None = None) -> InMemoryRetriever:
    """Index the emails stored at ``path``; a missing file yields an empty index."""
    if retriever is None:
        retriever = InMemoryRetriever()
    if not path.exists():
        logger.warning("Email corpus %s not found; inbox search will return nothing", path)
        return retriever
    emails = load_emails(path)
    retriever.add_documents([email_to_document(e, i) for i, e in enumerate(emails)])
    logger.info("Indexed %d emails from %s", len(emails), path)
    return retriever
