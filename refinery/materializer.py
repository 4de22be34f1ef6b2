from __future__ import annotations

import logging
from collections import Counter

from refinery.fragments import (
    SOURCE_TRANSCRIPTION,
    TAG_CLEAN,
    TAG_PROCESSED,
    TAG_RAW,
    Fragment,
    FragmentStore,
    SourceLink,
    mid_key,
    new_id,
)
from refinery.planner import Chunk
from refinery.resegment import split_speaker_marker

logger = logging.getLogger(__name__)

DEFAULT_SPEAKER = "You"
RAW_LINK_LABEL = "Raw"
RAW_LINK_COLOR = "#f97316"
RAW_LINK_ICON = "\U0001F310"


def dominant_speaker(fragments: list[Fragment], default: str = DEFAULT_SPEAKER) -> str:
    counts = Counter(f.speaker for f in fragments if f.speaker)
    if not counts:
        return default
    # most_common keeps first-seen order on ties.
    return counts.most_common(1)[0][0]


def next_sort_key(store: FragmentStore, column_id: str) -> str:
    last = store.last_in_column(column_id)
    return mid_key(last.sort_key) if last is not None and last.sort_key else "n"


def raw_source_links(fragments: list[Fragment]) -> list[SourceLink]:
    return [SourceLink(id=f.id, label=RAW_LINK_LABEL, color=RAW_LINK_COLOR, icon=RAW_LINK_ICON) for f in fragments]


def materialize_sections(
    store: FragmentStore,
    chunk: Chunk,
    sections: list[str],
    *,
    session_id: str,
    column_id: str,
) -> list[Fragment]:
    """Append one `clean` fragment per non-empty section, after the column's last fragment."""
    fallback_speaker = dominant_speaker(chunk.fragments)
    timestamp = chunk.fragments[0].timestamp if chunk.fragments else None
    created: list[Fragment] = []
    # One column scan per chunk; later keys chain off the previous one.
    sort_key = next_sort_key(store, column_id)

    for section in sections:
        speaker, content = split_speaker_marker(section)
        if not content:
            continue
        fragment = Fragment(
            id=new_id(),
            session_id=session_id,
            column_id=column_id,
            content=content,
            source=SOURCE_TRANSCRIPTION,
            speaker=speaker or fallback_speaker,
            timestamp=timestamp,
            tags=[TAG_CLEAN],
            # Section-to-source granularity is the whole chunk.
            source_links=raw_source_links(chunk.fragments),
            sort_key=sort_key,
        )
        created.append(store.add(fragment))
        sort_key = mid_key(sort_key)

    return created


def mark_processed(store: FragmentStore, fragment_ids: tuple[str, ...] | list[str]) -> int:
    """Swap `raw` for `processed` on the given ids, re-reading current tags first."""
    changed = 0
    for fid in fragment_ids:
        current = store.get(fid)
        if current is None or current.is_deleted:
            continue
        if TAG_RAW not in current.tags:
            continue
        new_tags = [t for t in current.tags if t not in (TAG_RAW, TAG_PROCESSED)]
        new_tags.append(TAG_PROCESSED)
        store.update_tags(fid, new_tags)
        changed += 1
    return changed


def materialize_chunk(
    store: FragmentStore,
    chunk: Chunk,
    sections: list[str],
    *,
    session_id: str,
    column_id: str,
) -> list[Fragment]:
    """
    Write a chunk's clean fragments, then retire its raw fragments. A chunk that yields
    no clean fragment (e.g. only bare speaker markers) keeps its raw tags.
    """
    created = materialize_sections(store, chunk, sections, session_id=session_id, column_id=column_id)
    if not created:
        logger.warning("Chunk %s produced no clean content; raw fragments left for retry", chunk.index)
        return created
    retagged = mark_processed(store, chunk.fragment_ids)
    logger.debug(
        "Chunk %s materialized: %s clean fragments, %s raw fragments retagged",
        chunk.index,
        len(created),
        retagged,
    )
    return created
