from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from refinery.events import FRAGMENT_CREATED, FRAGMENT_UPDATED, EventBus

TAG_RAW = "transcript:raw"
TAG_PROCESSED = "transcript:processed"
TAG_CLEAN = "transcript:clean"

SOURCE_TRANSCRIPTION = "transcription"


def new_id() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mid_key(a: str = "a", b: str = "z") -> str:
    """
    Fractional-index midpoint: a string that sorts strictly after `a` and before `b`
    (when a < b), so siblings never need renumbering.
    """
    m = ""
    for i in range(max(len(a), len(b)) + 1):
        ca = ord(a[i]) if i < len(a) else 97
        cb = ord(b[i]) if i < len(b) else 122
        if ca < cb - 1:
            return m + chr((ca + cb) // 2)
        m += chr(ca)
    return m + "n"


@dataclass
class SourceLink:
    id: str
    label: str
    color: str
    icon: str


@dataclass
class Fragment:
    id: str
    session_id: str
    column_id: str
    content: str
    source: str = SOURCE_TRANSCRIPTION
    speaker: Optional[str] = None
    timestamp: Optional[int] = None  # ms relative to recording start
    tags: list[str] = field(default_factory=list)
    source_links: list[SourceLink] = field(default_factory=list)
    sort_key: str = "n"
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    is_deleted: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class FragmentStore:
    """
    In-memory, insertion-ordered fragment collection for one session.

    Insertion order is creation order. Changes are announced on the session bus as
    `fragment:created` / `fragment:updated` with the fragment in the payload.
    """

    def __init__(self, bus: EventBus | None = None):
        self.bus = bus
        self._fragments: list[Fragment] = []
        self._by_id: dict[str, Fragment] = {}

    def __len__(self) -> int:
        return len(self._fragments)

    def get(self, fragment_id: str) -> Fragment | None:
        return self._by_id.get(fragment_id)

    def add(self, fragment: Fragment) -> Fragment:
        if fragment.id in self._by_id:
            raise ValueError(f"Fragment {fragment.id} already exists")
        self._fragments.append(fragment)
        self._by_id[fragment.id] = fragment
        if self.bus is not None:
            self.bus.emit(FRAGMENT_CREATED, {"fragment": fragment})
        return fragment

    def list(
        self,
        *,
        session_id: str | None = None,
        column_id: str | None = None,
        source: str | None = None,
        tag: str | None = None,
        include_deleted: bool = False,
    ) -> list[Fragment]:
        out: list[Fragment] = []
        for f in self._fragments:
            if f.is_deleted and not include_deleted:
                continue
            if session_id is not None and f.session_id != session_id:
                continue
            if column_id is not None and f.column_id != column_id:
                continue
            if source is not None and f.source != source:
                continue
            if tag is not None and tag not in f.tags:
                continue
            out.append(f)
        return out

    def update_tags(self, fragment_id: str, tags: list[str]) -> Fragment | None:
        f = self._by_id.get(fragment_id)
        if f is None:
            return None
        deduped: list[str] = []
        for t in tags:
            if t and t not in deduped:
                deduped.append(t)
        f.tags = deduped
        f.updated_at = now_iso()
        if self.bus is not None:
            self.bus.emit(FRAGMENT_UPDATED, {"fragment": f})
        return f

    def mark_deleted(self, fragment_id: str) -> Fragment | None:
        f = self._by_id.get(fragment_id)
        if f is None or f.is_deleted:
            return f
        f.is_deleted = True
        f.updated_at = now_iso()
        if self.bus is not None:
            self.bus.emit(FRAGMENT_UPDATED, {"fragment": f})
        return f

    def last_in_column(self, column_id: str) -> Fragment | None:
        live = self.list(column_id=column_id)
        if not live:
            return None
        return max(live, key=lambda f: f.sort_key or "")


def raw_transcript_fragments(
    store: FragmentStore,
    *,
    session_id: str | None = None,
    column_id: str | None = None,
) -> list[Fragment]:
    """Live-transcript fragments still waiting for cleanup, in creation order."""
    return store.list(
        session_id=session_id,
        column_id=column_id,
        source=SOURCE_TRANSCRIPTION,
        tag=TAG_RAW,
    )
