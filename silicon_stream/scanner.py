from __future__ import annotations

from collections.abc import Iterable
from typing import NamedTuple


class ScanResult(NamedTuple):
    text: str
    hit_stop: bool


class StopSequenceScanner:
    """Incremental splitter that cuts a fragment stream at the first stop marker.

    A tail of up to ``max_stop_length - 1`` characters is held back after each
    fragment, because it could be the beginning of a marker that completes in
    the next fragment. The text released is therefore independent of how the
    stream happens to be chunked.

    Example:
        scanner = StopSequenceScanner(["<end>"])
        scanner.consume("Hi there")   # ScanResult("Hi t", False)
        scanner.consume("<en")        # ScanResult("her", False)
        scanner.consume("d>ignored")  # ScanResult("e", True)
    """

    def __init__(self, stop_markers: Iterable[str] = ()) -> None:
        self.stop_markers: tuple[str, ...] = tuple(m for m in stop_markers if m)
        self.max_stop_length = max((len(m) for m in self.stop_markers), default=0)
        self._tail = ""
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def held(self) -> str:
        return self._tail

    def consume(self, fragment: str) -> ScanResult:
        if self._stopped:
            return ScanResult("", True)
        if not self.stop_markers:
            return ScanResult(fragment, False)

        combined = self._tail + fragment

        match_start = -1
        for marker in self.stop_markers:
            index = combined.find(marker)
            # strict comparison keeps the earlier marker on ties
            if index != -1 and (match_start == -1 or index < match_start):
                match_start = index

        if match_start != -1:
            self._tail = ""
            self._stopped = True
            return ScanResult(combined[:match_start], True)

        if self.max_stop_length <= 1:
            self._tail = ""
            return ScanResult(combined, False)

        keep = min(self.max_stop_length - 1, len(combined))
        cut = len(combined) - keep
        self._tail = combined[cut:]
        return ScanResult(combined[:cut], False)

    def flush(self) -> str:
        """Release the held tail once the stream has ended without a marker."""
        if self._stopped:
            return ""
        tail, self._tail = self._tail, ""
        return tail

    def __repr__(self) -> str:
        return f"StopSequenceScanner(stop_markers={list(self.stop_markers)!r})"
