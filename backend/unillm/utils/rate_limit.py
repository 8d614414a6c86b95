from typing import Dict

from aiolimiter import AsyncLimiter

from unillm.core.config import settings

# In-memory per-key limiter; one process only
_limiters: Dict[str, AsyncLimiter] = {}


def get_limiter(key: str) -> AsyncLimiter:
    if key not in _limiters:
        _limiters[key] = AsyncLimiter(max(1, settings.RATE_LIMIT_PER_MINUTE), time_period=60)
    return _limiters[key]


def reset_limiters() -> None:
    _limiters.clear()
