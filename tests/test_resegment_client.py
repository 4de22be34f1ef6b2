import unittest

from refinery.config import PipelineSettings
from refinery.fragments import Fragment, TAG_RAW
from refinery.planner import plan_chunks
from refinery.resegment import (
    SYSTEM_PROMPT,
    content_retention_ratio,
    content_tokens,
    resegment_chunk,
    split_sections,
    split_speaker_marker,
)


def _chunk(texts, speaker="Alice"):
    fragments = [
        Fragment(id=f"r{i}", session_id="s", column_id="c", content=t, speaker=speaker, tags=[TAG_RAW])
        for i, t in enumerate(texts)
    ]
    return plan_chunks(fragments, 20)[0]


class _ScriptedComplete:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def __call__(self, system_prompt, user_prompt, max_tokens=None):
        self.calls.append((system_prompt, user_prompt, max_tokens))
        item = self.responses.pop(0) if self.responses else None
        if isinstance(item, Exception):
            raise item
        return item


class _SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestSectionParsing(unittest.TestCase):
    def test_splits_on_blank_lines_and_trims(self):
        text = "[Alice]: We ship Friday.\n\n  \n[Bob]: Agreed, Friday works.\n\nLast point here."
        self.assertEqual(
            split_sections(text),
            ["[Alice]: We ship Friday.", "[Bob]: Agreed, Friday works.", "Last point here."],
        )

    def test_single_newlines_stay_inside_a_section(self):
        self.assertEqual(split_sections("line one\nline two"), ["line one\nline two"])

    def test_empty_or_missing_response_has_no_sections(self):
        self.assertEqual(split_sections(None), [])
        self.assertEqual(split_sections("   \n\n  "), [])

    def test_code_fence_wrapper_is_removed(self):
        self.assertEqual(split_sections("```text\nFirst.\n\nSecond.\n```"), ["First.", "Second."])

    def test_speaker_marker_is_split_off(self):
        self.assertEqual(split_speaker_marker("[Dr. Lee]: We need more data."), ("Dr. Lee", "We need more data."))
        self.assertEqual(split_speaker_marker("No marker here."), (None, "No marker here."))
        self.assertEqual(split_speaker_marker("[Bob]:   "), ("Bob", ""))


class TestContentPreservation(unittest.TestCase):
    def test_disfluencies_and_stutters_are_not_content(self):
        self.assertEqual(content_tokens("um I I think uh we should ship"), ["i", "think", "we", "should", "ship"])

    def test_speaker_markers_are_not_content(self):
        self.assertEqual(content_tokens("[Alice]: ship it"), ["ship", "it"])

    def test_filler_removal_keeps_full_ratio(self):
        raw = ["um so we we should uh ship on friday", "and er test on thursday"]
        clean = ["So we should ship on Friday and test on Thursday."]
        self.assertGreaterEqual(content_retention_ratio(raw, clean), 1.0)

    def test_summary_scores_low(self):
        raw = ["we reviewed the quarterly numbers and revenue grew twelve percent in europe and asia"]
        clean = ["Revenue grew."]
        self.assertLess(content_retention_ratio(raw, clean), 0.5)

    def test_empty_raw_counts_as_fully_preserved(self):
        self.assertEqual(content_retention_ratio(["um uh"], []), 1.0)


class TestResegmentRetry(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.settings = PipelineSettings(max_attempts=3, retry_base_delay_seconds=2.0, min_content_ratio=0.5)
        self.sleep = _SleepRecorder()

    async def test_first_attempt_success(self):
        chunk = _chunk(["um we ship on friday"])
        complete = _ScriptedComplete(["[Alice]: We ship on Friday."])
        sections = await resegment_chunk(chunk, complete, settings=self.settings, sleep=self.sleep)
        self.assertEqual(sections, ["[Alice]: We ship on Friday."])
        self.assertEqual(len(complete.calls), 1)
        system_prompt, user_prompt, max_tokens = complete.calls[0]
        self.assertEqual(system_prompt, SYSTEM_PROMPT)
        self.assertIn("[Alice]: um we ship on friday", user_prompt)
        self.assertGreaterEqual(max_tokens, 256)
        self.assertEqual(self.sleep.delays, [])

    async def test_two_empty_responses_then_success_uses_linear_backoff(self):
        chunk = _chunk(["we ship on friday"])
        complete = _ScriptedComplete([None, "   ", "We ship on Friday."])
        sections = await resegment_chunk(chunk, complete, settings=self.settings, sleep=self.sleep)
        self.assertEqual(sections, ["We ship on Friday."])
        self.assertEqual(len(complete.calls), 3)
        self.assertEqual(self.sleep.delays, [2.0, 4.0])

    async def test_all_attempts_failing_returns_empty(self):
        chunk = _chunk(["we ship on friday"])
        complete = _ScriptedComplete([RuntimeError("boom"), "", None, "never used"])
        sections = await resegment_chunk(chunk, complete, settings=self.settings, sleep=self.sleep)
        self.assertEqual(sections, [])
        self.assertEqual(len(complete.calls), 3)
        self.assertEqual(self.sleep.delays, [2.0, 4.0])

    async def test_summarising_response_counts_as_failed_attempt(self):
        chunk = _chunk(["we reviewed the quarterly numbers and revenue grew twelve percent in europe and asia"])
        complete = _ScriptedComplete(
            [
                "Revenue grew.",
                "We reviewed the quarterly numbers and revenue grew twelve percent in Europe and Asia.",
            ]
        )
        sections = await resegment_chunk(chunk, complete, settings=self.settings, sleep=self.sleep)
        self.assertEqual(len(complete.calls), 2)
        self.assertEqual(len(sections), 1)
        self.assertIn("twelve percent", sections[0])

    async def test_ratio_zero_disables_guard(self):
        settings = PipelineSettings(max_attempts=3, retry_base_delay_seconds=2.0, min_content_ratio=0.0)
        chunk = _chunk(["we reviewed the quarterly numbers and revenue grew twelve percent"])
        complete = _ScriptedComplete(["Revenue grew."])
        sections = await resegment_chunk(chunk, complete, settings=settings, sleep=self.sleep)
        self.assertEqual(sections, ["Revenue grew."])


if __name__ == "__main__":
    unittest.main()
