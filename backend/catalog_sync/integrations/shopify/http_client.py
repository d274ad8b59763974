"""
低层 HTTP 客户端（唯一发出 Shopify 请求的地方）：鉴权/限流/重试/观测
  - 静态 Admin token 或 client credentials 换 token（提前 5 分钟刷新，401 时强制刷新一次）；
  - 状态码分类走 retry_policy：429 按 Retry-After，502/503 固定 3s，超时指数退避 + 抖动；
  - 每个 host 最多 N 个在途请求；Retry-After / 漏桶余量不足时设置 cool-down，后续请求先等；
  - 每次调用向 sink 报告 {method, path, status, attempt, elapsed_ms}。
"""
from __future__ import annotations

import logging, threading, time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import requests
from requests import RequestException

from catalog_sync.core.config import settings as default_settings
from catalog_sync.infrastructure.ratelimit import SharedCallBucket
from catalog_sync.integrations.shopify import retry_policy
from catalog_sync.integrations.shopify.retry_policy import Outcome, classify_status, parse_retry_after
from catalog_sync.integrations.shopify.payload_utils import parse_call_limit
from catalog_sync.integrations.shopify.errors import (
    ShopifyAuthError, ShopifyGraphQLError, ShopifyNetworkError, ShopifyNotFoundError,
    ShopifyPayloadError, ShopifyRateLimitError, ShopifyServerError, ShopifyUserInputError,
)

logger = logging.getLogger(__name__)

# Shopify REST 漏桶每秒漏 2 个
BUCKET_LEAK_PER_SEC = 2.0

Sink = Callable[[Dict[str, Any]], None]


@dataclass
class _Token:
    value: str
    expires_at: Optional[datetime]  # UTC；静态 token 为 None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _log_sink(event: Dict[str, Any]) -> None:
    logger.debug(
        "shopify.http method=%s path=%s status=%s attempt=%s elapsed_ms=%s",
        event.get("method"), event.get("path"), event.get("status"), event.get("attempt"), event.get("elapsed_ms"),
    )


class ShopifyHttpClient:
    """Shopify Admin API 的传输层：REST + GraphQL + staged upload + 结果下载。"""

    def __init__(
        self,
        shop_domain: Optional[str] = None,
        api_version: Optional[str] = None,
        admin_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[int] = None,
        upload_timeout: Optional[int] = None,
        max_connections_per_host: Optional[int] = None,
        bucket_min_headroom: Optional[int] = None,
        token_refresh_margin_sec: Optional[int] = None,
        session: Optional[requests.Session] = None,
        sink: Optional[Sink] = None,
        sleep: Callable[[float], None] = time.sleep,
        limiter: Optional[SharedCallBucket] = None,
        settings=None,
    ) -> None:
        """初始化客户端，允许覆盖配置以便测试或多店铺场景。"""
        cfg = settings or default_settings
        self.shop_domain = (shop_domain or cfg.SHOPIFY_STORE_DOMAIN or "").strip().rstrip("/")
        self.api_version = api_version or cfg.SHOPIFY_API_VERSION

        token = admin_token
        if token is None and cfg.SHOPIFY_ADMIN_TOKEN is not None:
            token = cfg.SHOPIFY_ADMIN_TOKEN.get_secret_value()
        secret = client_secret
        if secret is None and cfg.SHOPIFY_CLIENT_SECRET is not None:
            secret = cfg.SHOPIFY_CLIENT_SECRET.get_secret_value()
        self.client_id = client_id or cfg.SHOPIFY_CLIENT_ID
        self.client_secret = secret

        self.timeout = timeout or cfg.SHOPIFY_HTTP_TIMEOUT
        self.upload_timeout = upload_timeout or cfg.SHOPIFY_UPLOAD_TIMEOUT
        self.max_connections_per_host = max_connections_per_host or cfg.SHOPIFY_MAX_CONNECTIONS_PER_HOST
        self.bucket_min_headroom = (
            cfg.SHOPIFY_BUCKET_MIN_HEADROOM if bucket_min_headroom is None else bucket_min_headroom
        )
        self.token_ttl_fallback_sec = cfg.SHOPIFY_TOKEN_TTL_SEC
        self.token_refresh_margin = timedelta(
            seconds=cfg.SHOPIFY_TOKEN_REFRESH_MARGIN_SEC if token_refresh_margin_sec is None else token_refresh_margin_sec
        )

        if not self.shop_domain:
            raise ShopifyAuthError("shop domain is not configured")
        if not token and not (self.client_id and self.client_secret):
            raise ShopifyAuthError("no admin token and no client credentials configured")

        self._session = session or requests.Session()
        self._sink: Sink = sink or _log_sink
        self._sleep = sleep
        self._static_token = bool(token)
        self._token: Optional[_Token] = _Token(value=token, expires_at=None) if token else None
        self._token_lock = threading.Lock()

        self._host_lock = threading.Lock()
        self._host_slots: Dict[str, threading.BoundedSemaphore] = {}
        self._cooldown_lock = threading.Lock()
        self._cooldown_until_mono: float = 0.0

        # 多进程共享的店铺级漏桶（可选）
        self._global_limiter = limiter if limiter is not None else SharedCallBucket.from_settings(
            shop=self.shop_domain, settings=cfg
        )


    # ---------- 端点 ----------
    @property
    def admin_base(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.admin_base}/{path.lstrip('/')}"


    # ---------- Public: REST ----------
    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._as_json(self.request("GET", path, params=params))

    def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self._as_json(self.request("POST", path, json_body=body))

    def put(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self._as_json(self.request("PUT", path, json_body=body))

    def delete(self, path: str) -> Any:
        return self._as_json(self.request("DELETE", path))


    # ---------- Public: GraphQL ----------
    def graphql(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        op_name: str = "",
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        POST graphql.json，返回 data 节点。
          - HTTP 层的重试在 request() 里
          - 顶层 errors 为 THROTTLED 时按限流处理（等 cool-down 后重发）
          - 其他顶层 errors 直接抛 ShopifyGraphQLError
        """
        payload = {"query": query, "variables": variables or {}}
        # 不打印 query 全文，仅打 op_name / 变量键
        safe_vars_keys = list(payload["variables"].keys())
        policy = retry_policy.RATE_LIMITED

        attempt = 0
        while True:
            start = time.perf_counter()
            resp = self.request("POST", "graphql.json", json_body=payload, timeout=timeout, op_name=op_name)
            latency_ms = int((time.perf_counter() - start) * 1000)
            data = self._as_json(resp)
            if not isinstance(data, dict):
                raise ShopifyPayloadError(f"GraphQL response is not an object: op={op_name}")

            errors = data.get("errors")
            if errors:
                if _is_throttled(errors) and policy.should_retry(attempt):
                    logger.warning("shopify.graphql.throttled op=%s attempt=%s", op_name, attempt)
                    self._extend_cooldown(policy.next_delay(attempt))
                    attempt += 1
                    continue
                logger.error("shopify.graphql.gql_errors op=%s latency_ms=%s errors=%s", op_name, latency_ms, errors)
                raise ShopifyGraphQLError(f"GraphQL top-level errors: {errors}", errors=errors)

            logger.info("shopify.graphql.ok op=%s latency_ms=%s vars=%s", op_name, latency_ms, safe_vars_keys)
            return data.get("data") or {}


    # ---------- Public: staged upload / 下载 ----------
    def upload_staged(self, url: str, parameters: List[Dict[str, str]], file_path: str) -> None:
        """
        multipart POST：先按顺序放 stagedTargets.parameters，最后放 file。
        最多 5 次，2^n·2s 退避；2xx 即成功。
        """
        policy = retry_policy.STAGED_UPLOAD
        filename = file_path.replace("\\", "/").rsplit("/", 1)[-1]
        host = urlparse(url).netloc

        attempt = 0
        while True:
            start = time.perf_counter()
            status: Optional[int] = None
            error: Optional[str] = None
            try:
                with open(file_path, "rb") as fh:
                    fields: List[Any] = [(p["name"], (None, p["value"])) for p in parameters]
                    fields.append(("file", (filename, fh, "text/jsonl")))
                    with self._host_slot(host):
                        resp = self._session.post(url, files=fields, timeout=self.upload_timeout)
                status = resp.status_code
                if 200 <= status < 300:
                    self._emit("POST", "staged_upload", status, attempt, start)
                    logger.info("shopify.staged_upload.ok file=%s attempt=%s", filename, attempt)
                    return
                error = f"status={status} body={(resp.text or '')[:300]}"
            except RequestException as e:
                error = f"{type(e).__name__}: {e}"

            self._emit("POST", "staged_upload", status, attempt, start)
            logger.warning("shopify.staged_upload.retry file=%s attempt=%s err=%s", filename, attempt, error)
            if not policy.should_retry(attempt):
                if status is None:
                    raise ShopifyNetworkError(f"staged upload failed after {attempt + 1} attempts: {error}")
                raise ShopifyServerError(f"staged upload failed after {attempt + 1} attempts: {error}", status=status)
            self._sleep(policy.next_delay(attempt))
            attempt += 1

    def stream_lines(self, url: str) -> Iterator[str]:
        """
        流式下载 JSONL（Bulk 结果 URL 是预签名的，不带 token）。
        生成器被提前关闭时也会释放连接。
        """
        host = urlparse(url).netloc
        policy = retry_policy.TIMEOUT
        attempt = 0
        while True:
            start = time.perf_counter()
            slot = self._slot_for(host)
            slot.acquire()
            try:
                resp = self._session.get(url, stream=True, timeout=(10, self.timeout))
            except RequestException as e:
                slot.release()
                self._emit("GET", "bulk_result", None, attempt, start)
                if not policy.should_retry(attempt):
                    raise ShopifyNetworkError(f"result download failed: {e}") from e
                self._sleep(policy.next_delay(attempt))
                attempt += 1
                continue
            break

        try:
            self._emit("GET", "bulk_result", resp.status_code, attempt, start)
            if resp.status_code >= 400:
                raise ShopifyServerError(f"result download failed: status={resp.status_code}", status=resp.status_code)
            for line in resp.iter_lines(decode_unicode=True):
                if line:
                    yield line
        except RequestException as e:
            raise ShopifyNetworkError(f"result download interrupted: {e}") from e
        finally:
            resp.close()
            slot.release()


    # ---------- Public: cool-down ----------
    def cooldown_remaining(self) -> float:
        with self._cooldown_lock:
            return max(0.0, self._cooldown_until_mono - time.monotonic())

    def cooldown_until(self) -> Optional[datetime]:
        """限流冷却结束的 UTC 时刻；没有冷却返回 None。"""
        remaining = self.cooldown_remaining()
        if remaining <= 0:
            return None
        return _now_utc() + timedelta(seconds=remaining)

    def close(self) -> None:
        self._session.close()


    # ---------- Internals ----------
    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        op_name: str = "",
    ) -> requests.Response:
        """执行一次带重试的 Admin API 调用；返回 2xx 响应，否则抛终态异常。"""
        url = self._url(path)
        host = urlparse(url).netloc
        label = op_name or path
        timeout = timeout or self.timeout

        attempt = 0          # 总次数（观测用）
        net_attempt = 0
        gateway_attempt = 0
        rate_attempt = 0
        refreshed = False

        while True:
            self._wait_for_cooldown()
            self._respect_global_limit()
            headers = self._headers()

            start = time.perf_counter()
            try:
                with self._host_slot(host):
                    resp = self._session.request(
                        method, url, headers=headers, json=json_body, params=params, timeout=timeout
                    )
            except RequestException as e:
                self._emit(method, label, None, attempt, start)
                policy = retry_policy.TIMEOUT
                logger.warning(
                    "shopify.http.network_error method=%s path=%s attempt=%s/%s err=%s",
                    method, label, net_attempt, policy.max_attempts, type(e).__name__,
                )
                if not policy.should_retry(net_attempt):
                    raise ShopifyNetworkError(f"Shopify {method} {label} failed: {e}") from e
                self._sleep(policy.next_delay(net_attempt))
                net_attempt += 1
                attempt += 1
                continue

            self._emit(method, label, resp.status_code, attempt, start)
            self._observe_bucket(resp.headers)
            outcome = classify_status(resp.status_code)

            if outcome is Outcome.SUCCESS:
                return resp

            if outcome is Outcome.AUTH:
                if refreshed or self._static_token:
                    raise ShopifyAuthError(f"Shopify {method} {label} unauthorized: {(resp.text or '')[:300]}")
                logger.info("shopify.http.401 refreshing token once")
                self._authenticate(force=True)
                refreshed = True
                attempt += 1
                continue

            if outcome is Outcome.RATE_LIMITED:
                policy = retry_policy.RATE_LIMITED
                wait_s = parse_retry_after(resp.headers.get("Retry-After"))
                logger.warning(
                    "shopify.http.429_throttled method=%s path=%s retry_after=%s attempt=%s",
                    method, label, wait_s, rate_attempt,
                )
                if not policy.should_retry(rate_attempt):
                    raise ShopifyRateLimitError(f"429 after {rate_attempt + 1} attempts: {method} {label}")
                self._extend_cooldown(wait_s)
                rate_attempt += 1
                attempt += 1
                continue

            if outcome in (Outcome.GATEWAY, Outcome.SERVER):
                policy = retry_policy.policy_for(outcome)
                logger.warning(
                    "shopify.http.server_error method=%s path=%s status=%s attempt=%s",
                    method, label, resp.status_code, gateway_attempt,
                )
                if not policy.should_retry(gateway_attempt):
                    raise ShopifyServerError(
                        f"Shopify {method} {label} → {resp.status_code} after retries", status=resp.status_code
                    )
                self._sleep(policy.next_delay(gateway_attempt))
                gateway_attempt += 1
                attempt += 1
                continue

            text = resp.text or ""
            message = f"Shopify {method} {label} → {resp.status_code}: {text[:300]}"
            if outcome is Outcome.NOT_FOUND:
                raise ShopifyNotFoundError(message, status=resp.status_code, body=text)
            raise ShopifyUserInputError(message, status=resp.status_code, body=text)

    def _as_json(self, resp: requests.Response) -> Any:
        """空响应返回 None；非 JSON 抛 ShopifyPayloadError。"""
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            text = (resp.text or "")[:500]  # 截断，避免日志过大
            raise ShopifyPayloadError(f"non-JSON response (status={resp.status_code}): {text}") from e

    def _headers(self) -> Dict[str, str]:
        self._ensure_token()
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Shopify-Access-Token": self._token.value,  # type: ignore[union-attr]
            "User-Agent": "NeverlandCatalogSync/ShopifyHttpClient (+python)",
        }

    def _emit(self, method: str, path: str, status: Optional[int], attempt: int, start: float) -> None:
        event = {
            "method": method,
            "path": path,
            "status": status,
            "attempt": attempt,
            "elapsed_ms": int((time.perf_counter() - start) * 1000),
        }
        try:
            self._sink(event)
        except Exception:
            logger.exception("observability sink failed")

    def _slot_for(self, host: str) -> threading.BoundedSemaphore:
        with self._host_lock:
            sem = self._host_slots.get(host)
            if sem is None:
                sem = threading.BoundedSemaphore(self.max_connections_per_host)
                self._host_slots[host] = sem
            return sem

    @contextmanager
    def _host_slot(self, host: str) -> Iterator[None]:
        sem = self._slot_for(host)
        sem.acquire()
        try:
            yield
        finally:
            sem.release()


    # ---------- 限流 ----------
    def _extend_cooldown(self, seconds: float) -> None:
        if seconds <= 0:
            return
        with self._cooldown_lock:
            self._cooldown_until_mono = max(self._cooldown_until_mono, time.monotonic() + seconds)

    def _wait_for_cooldown(self) -> None:
        remaining = self.cooldown_remaining()
        if remaining > 0:
            logger.info("shopify.http.cooldown wait_s=%.2f", remaining)
            self._sleep(remaining)

    def _observe_bucket(self, headers) -> None:
        """漏桶余量低于阈值时，按 2 次/秒的漏速设置 cool-down。"""
        parsed = parse_call_limit(headers.get("X-Shopify-Shop-Api-Call-Limit"))
        if not parsed:
            return
        used, cap = parsed
        self._share_bucket_level(used, cap)
        headroom = cap - used
        if headroom < self.bucket_min_headroom:
            wait_s = (self.bucket_min_headroom - headroom) / BUCKET_LEAK_PER_SEC
            logger.info("shopify.http.bucket_low used=%s max=%s defer_s=%.2f", used, cap, wait_s)
            self._extend_cooldown(wait_s)

    def _respect_global_limit(self) -> None:
        """共享漏桶（若启用）；Redis 出错时只记日志，继续走进程内的 cool-down。"""
        limiter = self._global_limiter
        if limiter is None:
            return
        try:
            for _ in range(20):
                allowed, wait_ms = limiter.acquire_once()
                if allowed:
                    return
                self._sleep(max(0.001, (wait_ms or 1000) / 1000.0))
            self._sleep(1.0)
        except Exception as e:
            logger.warning("shopify.http.shared_bucket_disabled err=%s", e)
            self._global_limiter = None

    def _share_bucket_level(self, used: int, cap: int) -> None:
        # 远端水位同步给其它进程
        observe = getattr(self._global_limiter, "observe", None)
        if observe is None:
            return
        try:
            observe(used, cap)
        except Exception as e:
            logger.warning("shopify.http.shared_bucket_disabled err=%s", e)
            self._global_limiter = None


    # ---------- 鉴权 ----------
    def _ensure_token(self) -> None:
        """静态 token 直接用；client credentials 在过期前 margin 秒刷新。"""
        if self._static_token:
            return
        token = self._token
        if token is None or token.expires_at is None or _now_utc() >= token.expires_at - self.token_refresh_margin:
            self._authenticate(force=True)

    def _authenticate(self, force: bool = False) -> None:
        """POST /admin/oauth/access_token（grant_type=client_credentials）换取 token。"""
        if self._static_token:
            return
        with self._token_lock:
            token = self._token
            if token and not force and token.expires_at and _now_utc() < token.expires_at - self.token_refresh_margin:
                return

            url = f"https://{self.shop_domain}/admin/oauth/access_token"
            form = {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
            try:
                resp = self._session.post(url, data=form, headers={"Accept": "application/json"}, timeout=self.timeout)
            except RequestException as e:
                raise ShopifyAuthError(f"token exchange request error: {e}") from e

            if resp.status_code >= 400:
                raise ShopifyAuthError(f"token exchange failed: {resp.status_code} {(resp.text or '')[:300]}")
            try:
                data = resp.json()
            except ValueError as e:
                raise ShopifyAuthError(f"token exchange non-JSON response: {e}") from e

            value = data.get("access_token")
            if not isinstance(value, str) or not value:
                raise ShopifyAuthError("token exchange response missing access_token")

            expires_at = self._extract_token_expiry(data)
            self._token = _Token(value=value, expires_at=expires_at)
            logger.info("shopify authenticated via client credentials; token expires at %s", expires_at.isoformat())

    def _extract_token_expiry(self, data: Dict[str, Any]) -> datetime:
        now = _now_utc()
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            return now + timedelta(seconds=float(expires_in))
        return now + timedelta(seconds=self.token_ttl_fallback_sec)


def _is_throttled(errors: Any) -> bool:
    if not isinstance(errors, list):
        return False
    for err in errors:
        code = ((err or {}).get("extensions") or {}).get("code") if isinstance(err, dict) else None
        if code == "THROTTLED":
            return True
    return False
