# catalog_sync/infrastructure/ratelimit/shared_call_bucket.py
from __future__ import annotations
import logging
from typing import Optional, Tuple

import redis

logger = logging.getLogger(__name__)


"""
店铺级共享漏桶（对应 Shopify REST 的 X-Shopify-Shop-Api-Call-Limit 模型）
    key: {prefix}:{env}:{shop}:bucket
    - 每个请求往桶里加 1；桶按 leak_per_sec 匀速漏掉
    - 加 1 之后会超过 capacity - reserve 时不放行，返回要等的毫秒数
    - 响应头里的 used/max 是远端真实水位：observe() 把本地水位抬到不低于它
    CLI 和 celery worker 同时对同一个店铺发请求时靠它排队。时间一律取 Redis 服务器时间。
"""
class SharedCallBucket:

    _DRAIN = """
    local t = redis.call('TIME')
    local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
    local state = redis.call('HMGET', KEYS[1], 'level', 'at')
    local level = tonumber(state[1]) or 0
    local at = tonumber(state[2]) or now
    local elapsed = math.max(0, now - at)
    level = math.max(0, level - elapsed * tonumber(ARGV[1]))
    """

    ACQUIRE_SCRIPT = _DRAIN + """
    local ceiling = tonumber(ARGV[2])
    local wait_ms = 0
    local admitted = 0
    if level + 1 <= ceiling then
        level = level + 1
        admitted = 1
    else
        wait_ms = math.ceil((level + 1 - ceiling) / tonumber(ARGV[1]))
    end
    redis.call('HSET', KEYS[1], 'level', level, 'at', now)
    redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[3]))
    return {admitted, wait_ms}
    """

    OBSERVE_SCRIPT = _DRAIN + """
    level = math.max(level, tonumber(ARGV[2]))
    redis.call('HSET', KEYS[1], 'level', level, 'at', now)
    redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[3]))
    return level
    """

    def __init__(
        self,
        client,
        key: str,
        *,
        capacity: int = 40,
        leak_per_sec: float = 2.0,
        reserve: int = 0,
        idle_ttl_ms: int = 120_000,
        max_wait_ms: Optional[int] = 5000,
    ) -> None:
        self.r = client
        self.key = key
        self.capacity = max(1, int(capacity))
        self.ceiling = max(1, self.capacity - max(0, int(reserve)))
        self.leak_per_ms = max(0.001, float(leak_per_sec)) / 1000.0
        self.idle_ttl_ms = int(idle_ttl_ms)
        self.max_wait_ms = max_wait_ms
        self._shas = {}

    @classmethod
    def from_settings(cls, *, shop: Optional[str], settings=None) -> Optional["SharedCallBucket"]:
        """未启用或没配 REDIS_URL 时返回 None（只用进程内 cool-down）。"""
        if settings is None:
            from catalog_sync.core.config import settings

        if not getattr(settings, "SHOPIFY_GLOBAL_RL_ENABLED", False):
            return None
        url = getattr(settings, "REDIS_URL", None)
        if not url:
            logger.warning("ratelimit.disabled reason=no_redis_url shop=%s", shop)
            return None

        prefix = getattr(settings, "SHOPIFY_GLOBAL_RL_KEY_PREFIX", "shopify:rl")
        env = getattr(settings, "ENVIRONMENT", "dev")
        return cls(
            redis.from_url(url, decode_responses=True),
            f"{prefix}:{env}:{(shop or 'shop').lower()}:bucket",
            capacity=int(getattr(settings, "SHOPIFY_GLOBAL_RL_BURST", 40)),
            leak_per_sec=int(getattr(settings, "SHOPIFY_GLOBAL_RL_MAX_RPM", 120)) / 60.0,
            reserve=int(getattr(settings, "SHOPIFY_BUCKET_MIN_HEADROOM", 0)),
            max_wait_ms=int(getattr(settings, "SHOPIFY_GLOBAL_RL_MAX_WAIT_MS", 5000)),
        )

    def _run(self, script: str, level_arg: float):
        sha = self._shas.get(script)
        if sha is None:
            sha = self._shas[script] = self.r.script_load(script)
        args = (self.leak_per_ms, level_arg, self.idle_ttl_ms)
        try:
            return self.r.evalsha(sha, 1, self.key, *args)
        except redis.exceptions.NoScriptError:
            # Redis 重启后脚本缓存丢失
            self._shas[script] = self.r.script_load(script)
            return self.r.evalsha(self._shas[script], 1, self.key, *args)

    def acquire_once(self) -> Tuple[bool, int]:
        """占一个位置；返回 (admitted, wait_ms)，wait_ms 不超过 max_wait_ms。"""
        res = self._run(self.ACQUIRE_SCRIPT, self.ceiling)
        admitted = int(res[0]) == 1
        wait_ms = 0 if admitted else max(0, int(float(res[1])))
        if self.max_wait_ms is not None:
            wait_ms = min(wait_ms, self.max_wait_ms)
        return admitted, wait_ms

    def observe(self, used: int, cap: int) -> None:
        # 远端 max 与本地 capacity 不同时按比例换算
        level = used * self.capacity / cap if cap > 0 else used
        self._run(self.OBSERVE_SCRIPT, level)
