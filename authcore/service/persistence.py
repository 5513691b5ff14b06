from __future__ import annotations

import asyncio
from typing import Any

from authcore.logging import get_logger
from authcore.service.errors import TransientError
from authcore.storage.common import AuthStore
from authcore.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class StoreGateway:
    """Runs blocking store calls off the event loop with a hard deadline.

    A call that times out or cannot reach the database raises
    ``TransientError``; callers must never read that as a failed
    credential check.

    The deadline abandons the worker thread, it does not stop it. A store
    call that was already running (a backup-code or SMS consumption, say)
    may still commit after the caller has seen ``TransientError``. The
    Postgres store is given the same limit as a server-side
    ``statement_timeout`` so the database aborts such work too.
    """

    def __init__(self, store: AuthStore, *, timeout: float = 5.0) -> None:
        self.store = store
        self.timeout = timeout

    async def call(self, op: str, *args: Any, **kwargs: Any) -> Any:
        fn = getattr(self.store, op)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("store_call_timeout", op=op, timeout=self.timeout)
            raise TransientError("Storage did not respond in time, please retry") from None
        except StoreUnavailable as exc:
            logger.error("store_call_unavailable", op=op, error=str(exc))
            raise TransientError("Storage is unavailable, please retry") from exc
