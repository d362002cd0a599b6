"""Immutable recognition results.

A Result is a snapshot of a stream's current best path. It is built fresh
on every request and never cached, so reading it twice without a decode
step in between gives identical output.
"""

import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Result:
    text: str = ""
    tokens: tuple[str, ...] = ()
    timestamps: tuple[float, ...] = ()  # seconds since stream start, parallel to tokens
    start_time: float = 0.0  # seconds since stream start at which the segment began
    segment: int = 0
    is_final: bool = False

    @property
    def pairs(self) -> Iterator[tuple[str, float]]:
        """(token, timestamp) pairs; empty when the model gives no alignment."""
        return iter(zip(self.tokens, self.timestamps))

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_final": self.is_final,
            "segment": self.segment,
            "start_time": self.start_time,
            "text": self.text,
            "timestamps": list(self.timestamps),
            "tokens": list(self.tokens),
        }

    def as_json(self) -> str:
        return json.dumps(
            self.as_dict(),
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        )

    def __str__(self) -> str:
        return self.as_json()
