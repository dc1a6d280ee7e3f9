"""Backoff ladder for failed call attempts."""

# 5 minutes, 30 minutes, then 2 hours for every later attempt
RETRY_DELAYS_SECONDS: tuple[int, ...] = (300, 1800, 7200)


def delay_for_attempt(attempt: int) -> int:
    """Backoff in seconds before ``attempt`` runs; clamps outside 1..len."""
    index = min(max(attempt, 1) - 1, len(RETRY_DELAYS_SECONDS) - 1)
    return RETRY_DELAYS_SECONDS[index]
