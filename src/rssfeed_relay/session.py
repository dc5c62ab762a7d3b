"""Outbound bot session setup with bounded startup retries."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rssfeed_relay.gateway import GatewayFactory, TelegramGateway

if TYPE_CHECKING:
    from rssfeed_relay.scheduler import Scheduler

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 5
DEFAULT_BACKOFF_SECONDS = 3.0


class SessionError(Exception):
    """Raised when the outbound session cannot be established."""


@dataclass
class BotSession:
    """A connected system bot, handed explicitly to the scheduler."""

    gateway: TelegramGateway
    identity: dict = field(default_factory=dict)

    @property
    def username(self) -> str:
        return self.identity.get("username") or "unknown"


async def connect_session(
    token: str,
    factory: GatewayFactory,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
) -> BotSession:
    """Build a gateway for ``token`` and confirm it with a handshake.

    Retries with linearly increasing waits (``attempt * backoff_seconds``).

    Raises:
        SessionError: If no bot token is configured or every attempt failed.
    """
    if not token:
        raise SessionError("No bot token configured")

    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        logger.info("Connecting bot (attempt %d/%d)", attempt, attempts)
        gateway = None
        try:
            gateway = factory(token)
            identity = await gateway.get_identity()
            logger.info("Connected as @%s", identity.get("username"))
            return BotSession(gateway=gateway, identity=identity)
        except Exception as e:
            last_error = e
            logger.error("Bot connection failed (%d/%d): %s", attempt, attempts, e)
            if gateway is not None:
                await gateway.aclose()
        if attempt < attempts:
            await asyncio.sleep(attempt * backoff_seconds)

    raise SessionError(f"Bot failed to start after {attempts} attempts: {last_error}")


class SessionManager:
    """Ties the scheduler's lifecycle to the system bot session.

    A failed connection leaves the scheduler stopped but does not raise, so
    the administrative surface stays usable for reconfiguration and
    ``restart()``.
    """

    def __init__(
        self,
        scheduler: "Scheduler",
        factory: GatewayFactory,
        token: str,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        self.scheduler = scheduler
        self.factory = factory
        self.token = token
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.session: BotSession | None = None
        self.last_error: str | None = None

    async def start(self) -> bool:
        """Connect and start the scheduler. Returns True on success."""
        await self.stop()
        try:
            session = await connect_session(
                self.token, self.factory, self.attempts, self.backoff_seconds
            )
        except SessionError as e:
            self.last_error = str(e)
            logger.error("%s; scheduler stays stopped", e)
            return False

        self.session = session
        self.last_error = None
        self.scheduler.start_all(session)
        return True

    async def restart(self, token: str | None = None) -> bool:
        """Retry the connection, optionally with a new token."""
        if token is not None:
            self.token = token
        return await self.start()

    async def stop(self) -> None:
        """Stop timers, let in-flight checks finish, then close the session."""
        await self.scheduler.aclose()
        if self.session is None:
            return
        self.scheduler.router.detach()
        await self.session.gateway.aclose()
        self.session = None
        logger.info("Bot session stopped")
