"""
Gateway runner -- routes inbound envelopes to agent loops.

Every collaborator (chat bridge, CLI, scheduler) hands the gateway an
InboundMessage. Each conversation gets at most one running agent task; a
new message for a conversation that is still busy cancels the in-flight run
(its caller receives status "cancelled") and starts a fresh one, so the
user's latest message always wins. Different conversations run
concurrently.

Bridges either await ``submit()`` directly or push onto the inbound queue
with ``put()`` and let ``serve()`` deliver responses through the channel
senders registered with ``register_channel()``.
"""

import asyncio
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set

from agent.agent_loop import AgentLoop
from gateway.events import STATUS_CANCELLED, STATUS_ERROR, InboundMessage, OutboundMessage
from gateway.hooks import HookRegistry
from nanobot_constants import get_nanobot_home

logger = logging.getLogger(__name__)

ChannelSender = Callable[[OutboundMessage], Awaitable[None]]

INTERNAL_ERROR_TEXT = "Sorry, something went wrong while handling your message."

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> Path:
    """Console + rotating file logging. Returns the log file path."""
    log_dir = Path(log_dir) if log_dir else get_nanobot_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "nanobot.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        if getattr(handler, "_nanobot_handler", False):
            root.removeHandler(handler)

    file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    file_handler._nanobot_handler = True
    root.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    console._nanobot_handler = True
    root.addHandler(console)

    # Third-party HTTP chatter drowns out our own debug lines.
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_file


class GatewayRunner:
    """
    Main gateway controller.

    Args:
        agent: The agent loop shared by all conversations (it keeps no
            per-conversation state between runs).
        hooks: Lifecycle hook registry.
        queue_size: Capacity of the inbound queue used by ``serve()``.
    """

    def __init__(self, agent: AgentLoop, *, hooks: Optional[HookRegistry] = None, queue_size: int = 100):
        self.agent = agent
        self.hooks = hooks or HookRegistry()
        self.inbound: "asyncio.Queue[InboundMessage]" = asyncio.Queue(maxsize=queue_size)
        self._channels: Dict[str, ChannelSender] = {}
        # Track running agent tasks per conversation for supersede support
        self._running: Dict[str, asyncio.Task] = {}
        self._superseded: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._running_flag = False

    # -- Channels -------------------------------------------------------------

    def register_channel(self, name: str, sender: ChannelSender) -> None:
        self._channels[name] = sender

    async def deliver(self, message: OutboundMessage) -> None:
        """Send an outbound message through its channel's sender.

        Raises:
            LookupError: no sender registered for the channel.
        """
        sender = self._channels.get(message.channel)
        if sender is None:
            raise LookupError(f"No sender registered for channel '{message.channel}'")
        await sender(message)

    # -- Direct path ----------------------------------------------------------

    def is_busy(self, conversation_id: str) -> bool:
        task = self._running.get(conversation_id)
        return task is not None and not task.done()

    async def submit(self, message: InboundMessage) -> OutboundMessage:
        """Run the agent for one inbound message and return its response.

        Supersedes (cancels) any run still in flight for the same conversation.
        """
        conversation_id = message.conversation_id
        previous = self._running.get(conversation_id)
        if previous is not None and not previous.done():
            logger.info("[%s] new message supersedes in-flight run", conversation_id)
            self._superseded.add(previous)
            previous.cancel()
            await asyncio.wait({previous})
            await self.hooks.emit("message:cancelled", {"session_id": conversation_id})

        task = asyncio.create_task(self._run(message), name=f"agent:{conversation_id}")
        self._running[conversation_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._superseded:
                return OutboundMessage(
                    conversation_id=conversation_id,
                    text="",
                    status=STATUS_CANCELLED,
                    channel=message.channel,
                    chat_id=message.target_chat_id,
                )
            raise
        finally:
            self._superseded.discard(task)
            if self._running.get(conversation_id) is task:
                del self._running[conversation_id]

    async def _run(self, message: InboundMessage) -> OutboundMessage:
        try:
            result = await self.agent.run(
                message.conversation_id,
                message.text,
                attachments=message.attachments,
                channel=message.channel,
                chat_id=message.target_chat_id,
                sender=message.sender,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] agent run crashed", message.conversation_id)
            return OutboundMessage(
                conversation_id=message.conversation_id,
                text=INTERNAL_ERROR_TEXT,
                status=STATUS_ERROR,
                channel=message.channel,
                chat_id=message.target_chat_id,
            )
        return OutboundMessage(
            conversation_id=message.conversation_id,
            text=result.text,
            status=result.status,
            channel=message.channel,
            chat_id=message.target_chat_id,
            tool_trace=[entry.to_dict() for entry in result.tool_trace],
        )

    # -- Queue path -----------------------------------------------------------

    async def put(self, message: InboundMessage) -> None:
        await self.inbound.put(message)

    async def _handle_and_deliver(self, message: InboundMessage) -> None:
        response = await self.submit(message)
        if response.status == STATUS_CANCELLED:
            return
        try:
            await self.deliver(response)
        except Exception as e:
            logger.error("[%s] delivery to %s failed: %s", message.conversation_id, message.channel, e)

    async def serve(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Consume the inbound queue until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        self._running_flag = True
        await self.hooks.emit("gateway:startup", {"channels": sorted(self._channels)})
        logger.info("Gateway serving channels: %s", ", ".join(sorted(self._channels)) or "(none)")
        try:
            while not stop_event.is_set():
                try:
                    message = await asyncio.wait_for(self.inbound.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                task = asyncio.create_task(self._handle_and_deliver(message))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
        finally:
            self._running_flag = False
            await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to unwind."""
        tasks = [t for t in list(self._running.values()) + list(self._background) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Gateway stopped (%d in-flight runs cancelled)", len(tasks))
