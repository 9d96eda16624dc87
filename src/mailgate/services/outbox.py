import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from ..models import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    id: str
    kind: str  # "sent" or "draft"
    recipient: str
    subject: str
    body: str
    created_at: str = field(default_factory=utc_now_iso)


class Outbox:
    """Stub email transport: records sent mail and saved drafts.

    When ``path`` is given the records are mirrored to a JSON file.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._records: List[OutgoingEmail] = []
        if path is not None and path.exists():
            self._records = [OutgoingEmail(**r) for r in json.loads(path.read_text(encoding="utf-8"))]

    @property
    def sent(self) -> List[OutgoingEmail]:
        return [r for r in self._records if r.kind == "sent"]

    @property
    def drafts(self) -> List[OutgoingEmail]:
        return [r for r in self._records if r.kind == "draft"]

    def _append(self, kind: str, recipient: str, subject: str, body: str) -> OutgoingEmail:
        record = OutgoingEmail(
            id=f"EMAIL-{len(self._records) + 1}",
            kind=kind,
            recipient=recipient,
            subject=subject,
            body=body,
        )
        self._records.append(record)
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps([asdict(r) for r in self._records], indent=2), encoding="utf-8"
            )
        return record

    def send(self, recipient: str, subject: str, body: str) -> Dict[str, Any]:
        record = self._append("sent", recipient, subject, body)
        logger.info("Sent email %s to %s (subject=%r)", record.id, recipient, subject)
        return {"ok": True, "email": asdict(record)}

    def save_draft(self, subject: str, body: str, recipient: str = "") -> Dict[str, Any]:
        record = self._append("draft", recipient, subject, body)
        logger.info("Saved draft %s (subject=%r)", record.id, subject)
        return {"ok": True, "draft": asdict(record)}
