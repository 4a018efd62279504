from typing import Dict, List, Any, Optional, Sequence
import json
import math


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0 for mismatched lengths or a zero vector"""

    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def decode_embedding(raw: Optional[str]) -> List[float]:
    """Parse a stored embedding; malformed or empty values decode to []"""

    if not raw:
        return []
    try:
        vector = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(vector, list) or not all(isinstance(v, (int, float)) for v in vector):
        return []
    return [float(v) for v in vector]


class VectorMemoryStore:
    """Ranks stored chunk rows by similarity to a query embedding"""

    def rank(self, query_vector: Sequence[float], rows: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
        """
        Score every row with a usable embedding and keep the best ``limit``.

        Rows are mappings with at least ``embedding`` (JSON text); the returned
        rows are copies with a ``score`` key and without the embedding.
        """

        scored = []
        for row in rows:
            vector = decode_embedding(row.get("embedding"))
            if not vector:
                continue
            result = {key: value for key, value in row.items() if key != "embedding"}
            result["score"] = cosine_similarity(query_vector, vector)
            scored.append(result)

        scored.sort(key=lambda r: r["score"], reverse=True)
        return scored[:limit]
