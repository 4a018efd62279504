from gateway.domain.streaming.reasoning import extract_reasoning, strip_reasoning


class TestExtractReasoning:
    """Splitting inline reasoning from the visible answer"""

    def test_no_reasoning(self):
        extracted = extract_reasoning("  Just the answer. ")
        assert extracted.visible_content == "Just the answer."
        assert extracted.reasoning_content == ""

    def test_leading_think_span(self):
        extracted = extract_reasoning("<think>Check the calendar.</think>\n\nYou are free at 3pm.")
        assert extracted.visible_content == "You are free at 3pm."
        assert extracted.reasoning_content == "Check the calendar."

    def test_tags_are_case_insensitive_and_varied(self):
        extracted = extract_reasoning("<Thought>one</Thought>A<reasoning>two</reasoning>B")
        assert extracted.visible_content == "AB"
        assert extracted.reasoning_content == "one\n\ntwo"

    def test_unterminated_span_is_all_reasoning(self):
        extracted = extract_reasoning("Partial<think>still thinking when cut off")
        assert extracted.visible_content == "Partial"
        assert extracted.reasoning_content == "still thinking when cut off"

    def test_empty(self):
        extracted = extract_reasoning("")
        assert extracted.visible_content == ""
        assert extracted.reasoning_content == ""

    def test_strip_reasoning(self):
        assert strip_reasoning("<think>x</think> Summary words") == "Summary words"
