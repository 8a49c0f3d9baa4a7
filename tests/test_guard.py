"""
Tests for silicon_stream.guard (RepetitionGuard, normalize, GuardConfig).

Covers:
  - normalize(): case folding, punctuation stripping, whitespace collapsing
  - promptRepeat / lineRepeat / sentenceLimit / lengthLimit, in check order
  - Exact length ceiling (1199 vs 1200)
  - Unique, short text never triggers
  - Stop decisions are sticky
"""

import pytest

from silicon_stream.guard import Continue, GuardConfig, RepetitionGuard, Stop, normalize

# ========================================================================
# normalize
# ========================================================================


class TestNormalize:
    def test_lowercases_and_strips_punctuation(self):
        assert normalize("Hello, World!") == "hello world"

    def test_collapses_whitespace_including_newlines(self):
        assert normalize("  a\n\n b\t c  ") == " a b c "

    def test_empty(self):
        assert normalize("") == ""
        assert normalize("?!.") == ""

    def test_ends_are_not_trimmed(self):
        assert normalize("What is up ?") == "what is up "


# ========================================================================
# Individual checks
# ========================================================================


class TestPromptRepeat:
    def test_three_echoes_stop(self):
        guard = RepetitionGuard("What is the capital of France?")
        decision = guard.register("what is the capital of france " * 3)
        assert isinstance(decision, Stop)
        assert decision.reason == "promptRepeat"
        assert decision.evidence_count == 3

    def test_two_echoes_continue(self):
        guard = RepetitionGuard("Tell me a joke")
        assert guard.register("Tell me a joke. Tell me a joke") == Continue()
        assert guard.prompt_echoes == 2

    def test_trailing_space_in_prompt_is_part_of_the_match(self):
        guard = RepetitionGuard("What is up ?")
        assert guard.normalized_prompt == "what is up "
        assert guard.register("What is up? What is up? What is up?") == Continue()
        assert guard.prompt_echoes == 2

    def test_empty_prompt_skips_check(self):
        guard = RepetitionGuard("   ")
        assert guard.register("anything anything anything") == Continue()


class TestLineRepeat:
    def test_four_identical_trailing_lines_stop(self):
        guard = RepetitionGuard("prompt")
        decision = guard.register("I am looping\n" * 4)
        assert isinstance(decision, Stop)
        assert decision.reason == "lineRepeat"
        assert decision.evidence_count == 4
        assert decision.sample == "I am looping"

    def test_blank_lines_between_repeats_are_ignored(self):
        guard = RepetitionGuard("prompt")
        decision = guard.register("same line here\n\n" * 4)
        assert isinstance(decision, Stop)
        assert decision.reason == "lineRepeat"

    def test_short_lines_do_not_count(self):
        guard = RepetitionGuard("prompt")
        assert guard.register("ok\nok\nok\nok\nok") == Continue()

    def test_three_repeats_continue(self):
        guard = RepetitionGuard("prompt")
        assert guard.register("repeat me please\n" * 3) == Continue()
        assert guard.duplicate_run == 3


class TestSentenceLimit:
    def test_three_sentences_over_eighty_chars_stop(self):
        guard = RepetitionGuard("prompt")
        text = (
            "The first sentence is moderately long. "
            "The second one adds some more words. "
            "And a third"
        )
        assert len(text) > 80
        decision = guard.register(text)
        assert isinstance(decision, Stop)
        assert decision.reason == "sentenceLimit"
        assert decision.evidence_count == 3

    def test_three_short_sentences_continue(self):
        guard = RepetitionGuard("prompt")
        assert guard.register("One. Two. Three.") == Continue()
        assert guard.sentence_count == 3


class TestLengthLimit:
    def test_1199_characters_continue(self):
        guard = RepetitionGuard("prompt", GuardConfig(max_sentences=10_000))
        assert guard.register("a" * 1199) == Continue()

    def test_1200_characters_stop(self):
        guard = RepetitionGuard("prompt", GuardConfig(max_sentences=10_000))
        guard.register("a" * 1199)
        decision = guard.register("a")
        assert isinstance(decision, Stop)
        assert decision.reason == "lengthLimit"
        assert decision.evidence_count == 1200

    def test_sample_is_trailing_window(self):
        guard = RepetitionGuard("prompt", GuardConfig(max_sentences=10_000))
        decision = guard.register("b" * 1000 + "c" * 200)
        assert decision.sample == "c" * 160


# ========================================================================
# Ordering, stickiness, config
# ========================================================================


class TestGuardBehaviour:
    def test_prompt_repeat_checked_before_line_repeat(self):
        guard = RepetitionGuard("loop forever now")
        decision = guard.register("loop forever now\n" * 4)
        assert decision.reason == "promptRepeat"

    def test_unique_short_text_never_stops(self):
        guard = RepetitionGuard("Describe a cat")
        for word in ["Cats ", "are ", "small ", "furry ", "animals ", "that ", "purr"]:
            assert guard.register(word) == Continue()
        assert guard.stopped is False

    def test_stop_is_sticky(self):
        guard = RepetitionGuard("prompt")
        first = guard.register("x" * 1200)
        assert guard.register("fresh text") is first
        assert guard.generated == "x" * 1200

    def test_custom_thresholds(self):
        guard = RepetitionGuard("prompt", GuardConfig(max_characters=10))
        decision = guard.register("0123456789")
        assert decision.reason == "lengthLimit"

    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            GuardConfig(max_characters=0)
