from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Iterable, Optional

from refinery.config import PipelineSettings
from refinery.planner import Chunk, format_chunk_text, output_token_budget

logger = logging.getLogger(__name__)

CompleteFn = Callable[[str, str, Optional[int]], Awaitable[Optional[str]]]
SleepFn = Callable[[float], Awaitable[None]]

SYSTEM_PROMPT = """You are a transcript post-processor. Your job is two things:

1. RE-SEGMENT: Split the transcript into meaningful, self-contained sections. Each section should contain a complete thought, idea, or topic. Do NOT split mid-sentence or mid-idea. Sections should be 1-4 sentences each.

2. CLEAN FILLER: Remove filler words and verbal tics: um, uh, er, ah, like (when used as filler), you know, I mean, sort of, kind of, basically, actually, right?, okay so, so yeah. Also remove false starts and repeated words ("I I think" -> "I think").

CRITICAL RULES:
- This is NOT summarisation. Preserve ALL substantive content and meaning.
- Every meaningful word the speaker said must appear in your output.
- Keep the speaker's voice, vocabulary, and phrasing (minus filler).
- If speaker labels are present as [Name]:, preserve them at the start of each section where that speaker is talking.
- Separate sections with a single blank line.
- Do NOT add headers, numbers, bullets, or any formatting - just the cleaned text in sections.
- Do NOT add any commentary or meta-text.
- Output ONLY the cleaned, re-segmented transcript text."""

# Pure disfluencies; context-dependent fillers ("like", "you know") still count as content.
FILLER_TOKENS = frozenset(
    {"um", "umm", "uh", "uhh", "uhm", "er", "erm", "ah", "ahh", "eh", "hmm", "hm", "mm", "mhm", "mmm"}
)

_SECTION_SPLIT_RE = re.compile(r"\n\s*\n")
_SPEAKER_MARKER_RE = re.compile(r"^\[([^\]]+)\]:\s*")
_LINE_SPEAKER_RE = re.compile(r"^\s*\[[^\]]+\]:\s*", re.M)
_WORD_RE = re.compile(r"[a-z0-9']+")


def build_user_prompt(chunk_text: str) -> str:
    return f"Here is the raw transcript to re-segment and clean:\n\n{chunk_text}"


def split_sections(text: str | None) -> list[str]:
    s = (text or "").strip()
    if not s:
        return []
    # Strip a code fence wrapper some providers add despite the instructions.
    if s.startswith("```"):
        s = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", s).strip()
        if s.endswith("```"):
            s = s[:-3].strip()
    return [part.strip() for part in _SECTION_SPLIT_RE.split(s) if part.strip()]


def split_speaker_marker(section: str) -> tuple[str | None, str]:
    content = (section or "").strip()
    m = _SPEAKER_MARKER_RE.match(content)
    if not m:
        return None, content
    return m.group(1).strip() or None, content[m.end():].strip()


def content_tokens(text: str) -> list[str]:
    body = _LINE_SPEAKER_RE.sub("", text or "")
    out: list[str] = []
    prev = ""
    for tok in _WORD_RE.findall(body.casefold()):
        tok = tok.strip("'")
        if not tok or tok in FILLER_TOKENS:
            continue
        # Stutters ("I I think") are disfluency, not content.
        if tok == prev:
            continue
        out.append(tok)
        prev = tok
    return out


def content_retention_ratio(raw_texts: Iterable[str], sections: Iterable[str]) -> float:
    raw_count = sum(len(content_tokens(t)) for t in raw_texts)
    if raw_count <= 0:
        return 1.0
    clean_count = sum(len(content_tokens(s)) for s in sections)
    return clean_count / raw_count


async def resegment_chunk(
    chunk: Chunk,
    complete: CompleteFn,
    *,
    settings: PipelineSettings,
    sleep: SleepFn = asyncio.sleep,
) -> list[str]:
    """
    Clean one chunk with up to `settings.max_attempts` completion calls.

    Empty responses, raised errors and responses that drop too much content all count
    as failed attempts; the wait before attempt n+1 is n * retry_base_delay_seconds.
    Returns [] when every attempt failed, leaving the caller to skip the chunk.
    """
    chunk_text = format_chunk_text(chunk.fragments)
    user_prompt = build_user_prompt(chunk_text)
    max_tokens = output_token_budget(
        chunk_text,
        chars_per_token=settings.chars_per_token,
        max_tokens=settings.max_output_tokens,
    )
    raw_texts = [f.content for f in chunk.fragments]
    attempts = max(1, int(settings.max_attempts))

    for attempt in range(1, attempts + 1):
        reason = ""
        try:
            result = await complete(SYSTEM_PROMPT, user_prompt, max_tokens)
        except Exception as e:
            result = None
            reason = f"error: {e}"

        sections = split_sections(result)
        if sections and settings.min_content_ratio > 0:
            ratio = content_retention_ratio(raw_texts, sections)
            if ratio < settings.min_content_ratio:
                reason = f"content retention {ratio:.2f} below {settings.min_content_ratio:.2f}"
                sections = []
        if sections:
            if attempt > 1:
                logger.debug("Chunk %s resegmented on attempt %s", chunk.index, attempt)
            return sections

        logger.warning(
            "Resegmentation attempt %s/%s failed for chunk %s (%s fragments): %s",
            attempt,
            attempts,
            chunk.index,
            len(chunk),
            reason or "no sections in response",
        )
        if attempt < attempts:
            await sleep(attempt * float(settings.retry_base_delay_seconds))

    return []
