from pydantic import BaseModel, Field


class MemorySearchResult(BaseModel):
    """A chunk of a memory document returned by search"""
    id: str
    path: str = Field(description="Document path relative to the agent directory")
    text: str
    score: float
    start_line: int = Field(description="1-based first line")
    end_line: int = Field(description="1-based last line, inclusive")

    @property
    def location(self) -> str:
        return f"{self.path}:{self.start_line}-{self.end_line}"
