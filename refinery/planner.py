from __future__ import annotations

import math
from dataclasses import dataclass, field

from refinery.fragments import Fragment, new_id

# Output-token headroom per input token; resegmented text is roughly input length, plus markers.
_OUTPUT_EXPANSION = 1.5
_OUTPUT_OVERHEAD_TOKENS = 128
_MIN_OUTPUT_TOKENS = 256


@dataclass
class Chunk:
    index: int
    fragments: list[Fragment]
    fragment_ids: tuple[str, ...] = ()

    def __post_init__(self):
        # Snapshot taken at planning time; retagging only ever touches these ids.
        if not self.fragment_ids:
            self.fragment_ids = tuple(f.id for f in self.fragments)

    def __len__(self) -> int:
        return len(self.fragments)


@dataclass
class Batch:
    fragments: list[Fragment]
    id: str = field(default_factory=new_id)
    chunks: list[Chunk] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.fragments)


def format_chunk_text(fragments: list[Fragment]) -> str:
    lines = []
    for f in fragments:
        speaker = f"[{f.speaker}]: " if f.speaker else ""
        lines.append(speaker + (f.content or "").strip())
    return "\n".join(lines)


def plan_chunks(fragments: list[Fragment], max_chunk_fragments: int) -> list[Chunk]:
    """Split a backlog into ceil(N / C) contiguous chunks, keeping creation order."""
    size = max(1, int(max_chunk_fragments))
    return [
        Chunk(index=i, fragments=list(fragments[start : start + size]))
        for i, start in enumerate(range(0, len(fragments), size))
    ]


def plan_batch(fragments: list[Fragment], max_chunk_fragments: int) -> Batch:
    batch = Batch(fragments=list(fragments))
    batch.chunks = plan_chunks(batch.fragments, max_chunk_fragments)
    return batch


def output_token_budget(text: str, *, chars_per_token: float = 4.0, max_tokens: int = 4096) -> int:
    est_input = math.ceil(len(text or "") / max(1.0, float(chars_per_token)))
    budget = math.ceil(est_input * _OUTPUT_EXPANSION) + _OUTPUT_OVERHEAD_TOKENS
    return max(_MIN_OUTPUT_TOKENS, min(int(max_tokens), budget))
