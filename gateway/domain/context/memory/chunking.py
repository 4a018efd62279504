from typing import List
from dataclasses import dataclass
import hashlib
import uuid

CHUNK_SIZE_CHARS = 1000


@dataclass
class DocumentChunk:
    id: str
    text: str
    start_line: int
    end_line: int

    @property
    def hash(self) -> str:
        return content_hash(self.text)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_document(content: str, chunk_size: int = CHUNK_SIZE_CHARS) -> List[DocumentChunk]:
    """
    Split a document into line-aligned chunks of roughly ``chunk_size`` characters.

    Line lengths accumulate (line breaks not counted) until the threshold is
    reached; the last chunk takes whatever remains. Whitespace-only chunks
    are dropped. Line numbers are 1-based and inclusive.
    """

    lines = content.split("\n")
    chunks: List[DocumentChunk] = []
    current: List[str] = []
    current_size = 0
    start_line = 1

    for i, line in enumerate(lines):
        current.append(line)
        current_size += len(line)

        if current_size >= chunk_size or i == len(lines) - 1:
            if "".join(current).strip():
                chunks.append(DocumentChunk(
                    id=str(uuid.uuid4()),
                    text="\n".join(current),
                    start_line=start_line,
                    end_line=i + 1
                ))
            current = []
            current_size = 0
            start_line = i + 2

    return chunks
