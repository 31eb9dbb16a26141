from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from wowziri.config import Settings, get_settings, reset_settings_cache
from wowziri.logging import get_logger
from wowziri.service.auth import AuthService
from wowziri.service.email import EmailService, EmailTransport, build_transport
from wowziri.service.model_backend import ModelBackend, build_backend
from wowziri.service.relay import StreamRelay
from wowziri.service.tokens import TokenIssuer
from wowziri.service.verification import VerificationEngine
from wowziri.storage.memory import MemoryStore
from wowziri.storage.postgres import PostgresStore
from wowziri.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Collaborators can be injected for tests; anything not supplied is built
    from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        email_transport: Optional[EmailTransport] = None,
        backend: Optional[ModelBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            deployment_mode=self.settings.deployment_mode.value,
            use_memory_store=self.settings.use_memory_store,
        )

        if store is not None:
            self.store = store
        else:
            try:
                self.store = (
                    MemoryStore(fs_root=self.settings.shared_fs_root or None)
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.clock = clock or utcnow
        self.tokens = TokenIssuer(self.settings, clock=self.clock)
        self.email = EmailService(
            email_transport or build_transport(self.settings),
            app_name=self.settings.app_name,
            from_name=self.settings.email_from_name,
        )
        self.verification = VerificationEngine(
            self.store, self.email, self.tokens, self.settings, clock=self.clock
        )
        self.auth = AuthService(self.store, self.tokens, self.verification, self.settings)
        self.backend = backend or build_backend(self.settings)
        self.relay = StreamRelay(self.backend, chunk_size=self.settings.relay_chunk_size)

        self.rate_limiter = RateLimiter(self.clock)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            verification_strategy=self.settings.verification_strategy.value,
            llm_provider=self.settings.llm_provider.value,
            backend_shape=self.backend.shape.value,
        )

    async def close(self) -> None:
        closer = getattr(self.backend, "aclose", None)
        if closer is not None:
            await closer()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.is_production:
            raise RuntimeError("runtime reset is not allowed in production")
        runtime = Runtime(settings)
        return runtime


class RateLimiter:
    """In-process token buckets keyed by ``scope:subject``; state is lost on restart."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        """Spend ``cost`` tokens from ``key``; returns (allowed, remaining, reset_seconds)."""
        per_second = limit / window_seconds
        async with self._lock:
            now = self._clock()
            level, stamp = self._buckets.get(key, (float(limit), now))
            level = min(float(limit), level + max(0.0, (now - stamp).total_seconds()) * per_second)
            allowed = level >= cost
            if allowed:
                level -= cost
            self._buckets[key] = (level, now)
        wait = 0 if allowed else int((cost - level) / per_second) + 1
        return allowed, int(level), wait


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Consult the runtime's limiter for ``key``.

    A non-positive ``limit`` disables the check. Returns bool, or
    ``(allowed, remaining, reset_seconds)`` when ``return_remaining`` is set.
    """
    if limit <= 0:
        outcome = (True, limit, 0)
    else:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        outcome = await runtime.rate_limiter.hit(key, limit, window_seconds, cost)
        if not outcome[0]:
            logger.info(
                "rate_limited", scope=key.split(":", 1)[0], limit=limit, window_seconds=window_seconds
            )
    return outcome if return_remaining else outcome[0]
