from __future__ import annotations

from dagrun.config.schema import ExponentialBackoff, FixedBackoff, RetryPolicy


def backoff_for_attempt(attempt: int, policy: RetryPolicy) -> float:
    """
    Return seconds to wait before re-attempting after ``attempt`` failed.

    attempt is one-based: 1 means the first attempt just failed.
    """
    strategy = policy.backoff
    match strategy:
        case FixedBackoff(delay_sec=delay):
            return max(0.0, float(delay))
        case ExponentialBackoff(base_sec=base, factor=factor, cap_sec=cap):
            exponent = max(0, attempt - 1)
            try:
                delay = base * factor**exponent
            except OverflowError:
                return max(0.0, float(cap))
            return max(0.0, float(min(cap, delay)))
    raise TypeError(f"unsupported backoff strategy: {strategy!r}")


def should_retry(attempts: int, policy: RetryPolicy) -> bool:
    return attempts < policy.max_attempts


def effective_policy(task_policy: RetryPolicy | None, default: RetryPolicy) -> RetryPolicy:
    return task_policy if task_policy is not None else default
