from __future__ import annotations

from datetime import timedelta
from typing import Optional

import httpx

from taskkeeper.config import Settings, get_settings
from taskkeeper.logging import get_logger
from taskkeeper.service.auth import AuthService
from taskkeeper.service.cleanup_worker import CleanupWorker
from taskkeeper.service.credentials import CredentialService
from taskkeeper.service.email import EmailService
from taskkeeper.service.rate_limit import RateLimiterRegistry
from taskkeeper.storage.memory import MemoryStore
from taskkeeper.storage.surreal import SurrealStore

logger = get_logger(__name__)


class Runtime:
    """Owns the service instances of one application.

    Built in the FastAPI lifespan and stored on ``app.state.runtime``; routes
    receive it through a dependency rather than a module-level singleton.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: "SurrealStore | MemoryStore | None" = None,
        email: Optional[EmailService] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        backend_transport: Optional[httpx.AsyncBaseTransport] = None,
        email_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", use_memory_store=self.settings.use_memory_store)

        if store is None:
            if self.settings.use_memory_store:
                store = MemoryStore(session_ttl=timedelta(days=self.settings.session_ttl_days))
            else:
                store = SurrealStore.from_settings(self.settings, transport=backend_transport)
        self.store = store
        logger.info("runtime_store_initialized", store_type=type(store).__name__)

        self.credentials = CredentialService(self.settings.legacy_hash_secret)
        self.email = email or EmailService.from_settings(self.settings, transport=email_transport)
        self.limiters = limiters or RateLimiterRegistry.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.email,
            verification_ttl=timedelta(minutes=self.settings.verification_code_ttl_minutes),
            reset_ttl=timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        self.cleanup_worker = CleanupWorker(
            self.limiters,
            self.store,
            rate_limit_interval=self.settings.rate_limit_cleanup_interval_seconds,
            session_interval=self.settings.session_cleanup_interval_seconds,
        )

    async def start(self) -> None:
        await self.cleanup_worker.start()

    async def close(self) -> None:
        """Stop background work and release HTTP connections."""
        await self.cleanup_worker.stop()
        await self.email.close()
        await self.store.close()
        logger.info("runtime_closed")
