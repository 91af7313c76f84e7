import random


def calculate_delay(
    attempts: int,
    base_delay_seconds: int = 10,
    max_delay_seconds: int = 3600,
    jitter: bool = True
) -> float:
    """
    Exponential backoff delay in seconds for the retry after `attempts` failures.

    Formula:
        delay = min(base * (2 ^ attempts), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    attempts <= 0 is treated as the first retry (delay = base).
    """
    if attempts < 0:
        attempts = 0

    # 2^20 * base is far beyond any sensible max_delay.
    safe_attempts = min(attempts, 20)

    delay = base_delay_seconds * (2 ** safe_attempts)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% jitter to avoid thundering herd
        delay += random.uniform(0, delay * 0.1)

    return float(delay)
