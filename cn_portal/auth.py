# cn_portal/auth.py
"""
x-api-key checks and the two request throttles.

The general limiter guards every /api route when auth is on. The bot-search
limiter guards /api/bot/search per caller and is active even with MOCK_AUTH,
since the assistant's UI calls it on every keystroke.

Env vars:
- MOCK_AUTH (default: true): accept any caller
- API_KEYS: comma-separated allowed keys
- API_KEYS_FILE: optional file, one key per line, '#' starts a comment
- RATE_LIMIT_PER_MINUTE (default: 60), RATE_LIMIT_WINDOW_SECONDS (default: 60)
- BOT_SEARCH_LIMIT (default: 10), BOT_SEARCH_WINDOW_SECONDS (default: 5)
- REDIS_URL: share limiter windows across workers
"""

import os
import time
import threading
from typing import Callable, Dict, Optional, Set, Tuple

from cn_portal import monitoring

try:
    import redis as _redis_mod
except ImportError:
    _redis_mod = None

MOCK_AUTH = os.getenv("MOCK_AUTH", "true").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
BOT_SEARCH_LIMIT = int(os.getenv("BOT_SEARCH_LIMIT", "10"))
BOT_SEARCH_WINDOW_SECONDS = int(os.getenv("BOT_SEARCH_WINDOW_SECONDS", "5"))
REDIS_URL = os.getenv("REDIS_URL", "")

ANONYMOUS = "anonymous"

Decision = Tuple[bool, Optional[int]]  # (allowed, remaining)


def parse_api_keys(env_value: str = "", file_path: str = "") -> Set[str]:
    keys = {k.strip() for k in env_value.split(",") if k.strip()}
    if file_path and os.path.exists(file_path):
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.split("#", 1)[0].strip()
                    if line:
                        keys.add(line)
        except OSError as e:
            monitoring.logger.warning("API key file unreadable", extra={"path": file_path, "error": str(e)})
    return keys


API_KEYS = parse_api_keys(os.getenv("API_KEYS", ""), os.getenv("API_KEYS_FILE", ""))


class InMemoryFixedWindowLimiter:
    """Per-process fixed-window counter keyed by caller."""

    def __init__(self, limit: int = 60, window_seconds: int = 60,
                 clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_seconds = max(1, window_seconds)
        self._clock = clock
        self._counts: Dict[str, Tuple[int, int]] = {}  # caller -> (window index, hits)
        self._lock = threading.Lock()

    def _window(self) -> int:
        return int(self._clock()) // self.window_seconds

    def allow_request(self, caller: str) -> Decision:
        window = self._window()
        with self._lock:
            seen_window, hits = self._counts.get(caller, (window, 0))
            if seen_window != window:
                hits = 0
            if hits >= self.limit:
                return False, 0
            self._counts[caller] = (window, hits + 1)
            return True, self.limit - hits - 1

    def reset(self):
        with self._lock:
            self._counts.clear()


class RedisFixedWindowLimiter:
    """Same windows kept in Redis (INCR + EXPIRE) so workers share them."""

    def __init__(self, redis_url: str, limit: int = 60, window_seconds: int = 60,
                 prefix: str = "rate"):
        if _redis_mod is None:
            raise RuntimeError("redis package not installed")
        self.limit = limit
        self.window_seconds = max(1, window_seconds)
        self.prefix = prefix
        self._client = _redis_mod.from_url(redis_url, decode_responses=True)

    def allow_request(self, caller: str) -> Decision:
        window = int(time.time()) // self.window_seconds
        key = f"{self.prefix}:{caller}:{window}"
        try:
            hits = int(self._client.incr(key))
            if hits == 1:
                self._client.expire(key, self.window_seconds * 2)
        except _redis_mod.RedisError as e:
            # fail open; a limiter outage must not take the API down
            monitoring.logger.warning("Rate limiter backend error", extra={"limiter": self.prefix, "error": str(e)})
            return True, None
        if hits > self.limit:
            return False, 0
        return True, self.limit - hits


def build_limiter(prefix: str, limit: int, window_seconds: int):
    if REDIS_URL and _redis_mod is not None:
        try:
            return RedisFixedWindowLimiter(REDIS_URL, limit, window_seconds, prefix=prefix)
        except ValueError as e:
            monitoring.logger.warning("Bad REDIS_URL, using in-process limiter", extra={"error": str(e)})
    return InMemoryFixedWindowLimiter(limit, window_seconds)


_rate_limiter = build_limiter("rate", RATE_LIMIT_PER_MINUTE, RATE_LIMIT_WINDOW_SECONDS)
_bot_search_limiter = build_limiter("botsearch", BOT_SEARCH_LIMIT, BOT_SEARCH_WINDOW_SECONDS)


def caller_identity(api_key: Optional[str]) -> str:
    """Identity used for per-caller throttling and audit rows."""
    return api_key or ANONYMOUS


def is_key_allowed(api_key: Optional[str]) -> bool:
    if MOCK_AUTH:
        return True
    return bool(api_key) and api_key in API_KEYS


def check_rate_limit(api_key: str) -> Decision:
    """Consume one unit of the caller's general quota."""
    if MOCK_AUTH:
        return True, None
    if not api_key:
        return False, 0
    return _rate_limiter.allow_request(api_key)


def check_bot_search_limit(api_key: Optional[str]) -> bool:
    allowed, _ = _bot_search_limiter.allow_request(caller_identity(api_key))
    return allowed
