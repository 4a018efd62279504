from typing import Dict, List, Iterable
import uuid

from gateway.domain.models.conversation import FunctionCall, ToolCallRequest
from gateway.domain.streaming.completion_client import ToolCallFragment


class ToolCallAccumulator:
    """
    Assembles streamed tool-call fragments keyed by their ``index``.

    The first fragment for an index seeds the entry; later fragments only
    extend the argument string (name and id are set once).
    """

    def __init__(self):
        self._calls: Dict[int, ToolCallRequest] = {}

    def feed(self, fragments: Iterable[ToolCallFragment]):
        for fragment in fragments:
            name = fragment.function.name if fragment.function else None
            arguments = fragment.function.arguments if fragment.function else None

            entry = self._calls.get(fragment.index)
            if entry is None:
                self._calls[fragment.index] = ToolCallRequest(
                    index=fragment.index,
                    id=fragment.id or "",
                    function=FunctionCall(name=name or "", arguments=arguments or "")
                )
                continue

            if arguments:
                entry.function.arguments += arguments
            if name and not entry.function.name:
                entry.function.name = name
            if fragment.id and not entry.id:
                entry.id = fragment.id

    def __bool__(self) -> bool:
        return bool(self._calls)

    def finalize(self) -> List[ToolCallRequest]:
        """Compact the index map into an ordered list, assigning ids the model left out"""

        calls = []
        for index in sorted(self._calls):
            call = self._calls[index]
            if not call.id:
                call.id = f"call_{uuid.uuid4().hex[:12]}"
            calls.append(call)
        return calls
