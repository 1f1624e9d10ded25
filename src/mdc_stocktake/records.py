"""Values that travel from the session to the background workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Transaction:
    """A signed stock-on-hand delta for one (location, code) pair."""

    location: str
    code: str
    soh: int

    def inverse(self) -> "Transaction":
        """Return the compensating transaction used by undo."""
        return Transaction(location=self.location, code=self.code, soh=-self.soh)


@dataclass(frozen=True)
class Data:
    """Channel record carrying one transaction."""

    transaction: Transaction


class EndOfStream:
    """Channel record announcing that no further transactions follow."""

    _instance: "EndOfStream | None" = None

    def __new__(cls) -> "EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()

Record = Union[Data, EndOfStream]


__all__ = ["Transaction", "Data", "EndOfStream", "END_OF_STREAM", "Record"]
