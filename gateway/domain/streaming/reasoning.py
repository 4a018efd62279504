from typing import List, Tuple
from dataclasses import dataclass
import re

REASONING_TAGS: Tuple[str, ...] = ("think", "thought", "reasoning")

_START_TAG = re.compile(r"<(%s)>" % "|".join(REASONING_TAGS), re.IGNORECASE)


@dataclass
class ExtractedReasoning:
    visible_content: str
    reasoning_content: str


def extract_reasoning(text: str) -> ExtractedReasoning:
    """
    Split inline reasoning spans such as ``<think>...</think>`` from the answer.

    A start tag without its closing tag means the output was cut off while
    reasoning: everything from the tag onward is treated as reasoning.
    """

    if not text:
        return ExtractedReasoning(visible_content="", reasoning_content="")

    visible: List[str] = []
    reasoning: List[str] = []
    position = 0

    while True:
        start = _START_TAG.search(text, position)
        if start is None:
            visible.append(text[position:])
            break

        visible.append(text[position:start.start()])
        end = re.compile(r"</%s>" % re.escape(start.group(1)), re.IGNORECASE).search(text, start.end())
        if end is None:
            reasoning.append(text[start.end():])
            break

        reasoning.append(text[start.end():end.start()])
        position = end.end()

    return ExtractedReasoning(
        visible_content="".join(visible).strip(),
        reasoning_content="\n\n".join(part.strip() for part in reasoning if part.strip())
    )


def strip_reasoning(text: str) -> str:
    return extract_reasoning(text).visible_content
