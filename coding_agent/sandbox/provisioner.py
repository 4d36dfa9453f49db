import asyncio
import logging
from collections.abc import Awaitable, Callable

from coding_agent.sandbox.utils import SandboxHandle


logger = logging.getLogger("coding_agent.sandbox.provisioner")


SandboxFactory = Callable[[str | None], Awaitable[SandboxHandle]]


class SandboxSlot:
    """Lazily provisioned, session-scoped sandbox cell.

    The first ensure() publishes a provisioning task in the slot; every later
    or concurrent caller awaits that same task, so the factory runs once per
    successful provisioning. A failed attempt is cleared so a later tool call
    can try again.
    """

    def __init__(self, repo_url: str | None, factory: SandboxFactory) -> None:
        self.repo_url = repo_url
        self._factory = factory
        self._pending: asyncio.Task[SandboxHandle] | None = None
        self._handle: SandboxHandle | None = None
        self._closed = False
        self._created = False

    @property
    def handle(self) -> SandboxHandle | None:
        return self._handle

    @property
    def created(self) -> bool:
        return self._created

    async def _provision(self) -> SandboxHandle:
        logger.info("provisioning sandbox repo=%s", self.repo_url)
        handle = await self._factory(self.repo_url)
        self._handle = handle
        self._created = True
        return handle

    async def ensure(self) -> SandboxHandle:
        if self._handle is not None:
            return self._handle
        if self._closed:
            raise RuntimeError("sandbox slot is closed")
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._provision())
        pending = self._pending
        try:
            # shield: one cancelled caller must not cancel provisioning shared by others
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            raise
        except Exception:
            if self._pending is pending:
                self._pending = None
            raise

    async def close(self) -> None:
        """Stop the sandbox if one was ever created. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            try:
                await pending
            except Exception:
                logger.warning("sandbox provisioning failed during teardown", exc_info=True)
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await handle.stop()
            logger.info("sandbox %s stopped", handle.sandbox_id)
        except Exception:
            logger.exception("failed to stop sandbox %s", handle.sandbox_id)
