from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenStats:
    token_count: int
    time_to_first_token: float | None
    tokens_per_second: float | None
    elapsed_seconds: float

    def summary(self) -> str:
        parts = [f"{self.token_count} tokens"]
        if self.time_to_first_token is not None:
            parts.append(f"TTFT {self.time_to_first_token * 1000:.0f}ms")
        if self.tokens_per_second is not None:
            parts.append(f"{self.tokens_per_second:.1f} tok/s")
        return ", ".join(parts)


def calculate_token_stats(
    token_count: int,
    start_time: float,
    first_token_time: float | None,
    end_time: float,
) -> TokenStats:
    """Derive latency and throughput from monotonic timestamps (seconds)."""
    elapsed = end_time - start_time
    time_to_first_token = None if first_token_time is None else first_token_time - start_time
    tokens_per_second = token_count / elapsed if token_count > 0 and elapsed > 0 else None
    return TokenStats(
        token_count=token_count,
        time_to_first_token=time_to_first_token,
        tokens_per_second=tokens_per_second,
        elapsed_seconds=elapsed,
    )
