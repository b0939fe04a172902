"""
piggyflow.orchestration.message_bus - Priority Message Bus
===========================================================

The communication backbone between the orchestrator and the worker agents.
Agents never call each other: they register handlers for
``(agent identifier, MessageType)`` pairs and the bus delivers queued
messages to them, one message at a time, highest priority first.

Architecture Context:

    ┌──────────────┐  send_request()   ┌───────────────────────────────┐
    │ Orchestrator │ ────────────────> │ MessageBus                    │
    └──────────────┘                   │   queue (priority, FIFO ties) │
           ▲                           │   routes                      │
           │   reply (reply_to=id)     │   handlers[(to, type)]        │
           └────────────────────────── └───────────────┬───────────────┘
                                                       │ dispatch
                                             ┌─────────▼─────────┐
                                             │ agent handler(s)  │
                                             └───────────────────┘

Communication Patterns:
    1. **Fire-and-forget**: ``send_message(message)``.
    2. **Request-Response**: ``send_request(from, to, payload, timeout)``
       queues a HIGH priority TASK_REQUEST and awaits the first reply whose
       ``reply_to`` is the request id. Handler return values are wrapped into
       a TASK_RESPONSE; handler exceptions into an ERROR reply.
    3. **Broadcast**: ``broadcast_message(from, type, payload)`` fans a
       MEDIUM priority copy out to every known agent except the sender.

Processing Model:
    A single asyncio task dequeues the head of the queue, runs every handler
    for it concurrently (``asyncio.gather(return_exceptions=True)``) and
    yields to the event loop before taking the next message. A slow handler
    therefore delays the whole bus; ordering wins over throughput. Handlers
    may be plain functions or coroutines.

Events:
    handler:registered, handler:unregistered, route:added, route:removed,
    message:queued, message:processed, message:failed, queue:cleared,
    processing:paused, processing:resumed

Usage:
    >>> bus = MessageBus()
    >>> bus.register_handler(
    ...     AgentType.TESTING, MessageType.TASK_REQUEST,
    ...     lambda msg: {"passed": True},
    ... )
    >>> await bus.start()
    >>> await bus.send_request("orchestrator", AgentType.TESTING, {"suite": "a11y"})
    {'passed': True}
    >>> await bus.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable, Iterable
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from piggyflow.core.config import MessageBusConfig
from piggyflow.core.enums import (
    KNOWN_AGENTS,
    AgentType,
    MessagePriority,
    MessageType,
)
from piggyflow.core.events import EventEmitter
from piggyflow.core.exceptions import MessageBusError
from piggyflow.core.messages import (
    AgentMessage,
    MessageFilter,
    MessageRoute,
    MessageStats,
    agent_key,
)

logger = structlog.get_logger()


# =============================================================================
# Type Aliases
# =============================================================================
# A handler receives the message and may return a value (sync) or an
# awaitable of a value (async). For TASK_REQUEST messages, non-None return
# values become the TASK_RESPONSE payload.
# =============================================================================
MessageHandler = Callable[[AgentMessage], Any]
AgentId = Union[AgentType, str]
HandlerKey = tuple[str, MessageType]


class MessageBus(EventEmitter):
    """In-process, priority-ordered message bus with request correlation.

    Attributes:
        _handlers: ``(agent, type)`` → handlers, in registration order.
        _routes: Routing rules keyed by route id, in registration order.
        _queue: Pending messages, sorted by priority rank, FIFO within a rank.
        _pending_requests: Request id → Future resolved by its first reply.
        _stats: Running counters (see MessageStats).
        _worker: The processing task; created by ``start()`` or lazily on
            the first enqueue when ``auto_start`` is configured.
    """

    def __init__(self, config: Optional[MessageBusConfig] = None) -> None:
        super().__init__()
        self._config = config or MessageBusConfig()

        self._handlers: dict[HandlerKey, list[MessageHandler]] = {}
        self._routes: dict[str, MessageRoute] = {}
        self._queue: list[AgentMessage] = []
        self._pending_requests: dict[str, asyncio.Future[Any]] = {}
        self._stats = MessageStats()

        # -----------------------------------------------------------------
        # Processing state
        # -----------------------------------------------------------------
        # _wakeup is set whenever there may be work: a message was queued,
        # processing resumed, or the bus is stopping.
        # -----------------------------------------------------------------
        self._worker: Optional[asyncio.Task[None]] = None
        self._wakeup = asyncio.Event()
        self._paused = False
        self._stopped = False

        self._logger = logger.bind(component="message_bus")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def is_paused(self) -> bool:
        return self._paused

    # =========================================================================
    # Handler and Route Registration
    # =========================================================================

    def register_handler(
        self,
        agent: AgentId,
        message_type: MessageType,
        handler: MessageHandler,
    ) -> None:
        """Register ``handler`` for messages of ``message_type`` sent to ``agent``.

        Several handlers may share a key; they all run for every message.
        """
        key = (agent_key(agent), MessageType(message_type))
        self._handlers.setdefault(key, []).append(handler)

        self._logger.debug(
            "handler_registered",
            agent=key[0],
            message_type=key[1].value,
            total_handlers=len(self._handlers[key]),
        )
        self.emit("handler:registered", {"agent": key[0], "message_type": key[1]})

    def unregister_handler(
        self,
        agent: AgentId,
        message_type: MessageType,
        handler: MessageHandler,
    ) -> bool:
        """Remove one registration of ``handler``. Returns False if absent."""
        key = (agent_key(agent), MessageType(message_type))
        handlers = self._handlers.get(key)
        if not handlers or handler not in handlers:
            return False

        handlers.remove(handler)
        if not handlers:
            del self._handlers[key]

        self._logger.debug(
            "handler_unregistered",
            agent=key[0],
            message_type=key[1].value,
        )
        self.emit("handler:unregistered", {"agent": key[0], "message_type": key[1]})
        return True

    def add_route(self, route: MessageRoute) -> None:
        """Add a routing rule. Re-adding an id replaces the rule in place."""
        self._routes[route.id] = route
        self._logger.debug("route_added", route_id=route.id, target=route.target_agent)
        self.emit("route:added", route)

    def remove_route(self, route_id: str) -> bool:
        route = self._routes.pop(route_id, None)
        if route is None:
            return False
        self._logger.debug("route_removed", route_id=route_id)
        self.emit("route:removed", route)
        return True

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_message(
        self,
        message: Union[AgentMessage, dict[str, Any]],
    ) -> AgentMessage:
        """Validate, route and queue a message.

        Args:
            message: An AgentMessage, or a dict in its wire form
                (``from``/``to`` keys).

        Returns:
            The message as queued (after routing rewrites).

        Raises:
            MessageBusError: INVALID_MESSAGE if required fields are missing
                or empty; MESSAGE_EXPIRED if its TTL already elapsed.
        """
        message = self._validate_message(message)

        if message.is_expired():
            self._stats.failed_messages += 1
            error = MessageBusError(
                message=f"Message expired: {message.id}",
                error_code="MESSAGE_EXPIRED",
                details={"message_id": message.id, "ttl": message.ttl},
            )
            self._logger.warning(
                "message_expired_dropping",
                message_id=message.id,
                ttl=message.ttl,
            )
            self.emit("message:failed", {"message": message, "error": error})
            raise error

        routed = self._apply_routing(message)
        self._enqueue(routed)
        return routed

    async def send_request(
        self,
        from_agent: AgentId,
        to_agent: AgentId,
        payload: Any,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a TASK_REQUEST and wait for its reply.

        Args:
            from_agent: Requesting agent (usually "orchestrator").
            to_agent: Agent expected to handle the request.
            payload: Request data.
            timeout: Milliseconds to wait; also used as the message TTL.
                Defaults to ``request_timeout_ms``.

        Returns:
            The TASK_RESPONSE payload: the single non-None handler return
            value, or a list of them when several handlers replied.

        Raises:
            MessageBusError: REQUEST_TIMEOUT when no reply arrives in time;
                REQUEST_FAILED when the reply is an ERROR message.
        """
        timeout_ms = timeout if timeout is not None else self._config.request_timeout_ms

        request = AgentMessage(
            from_agent=from_agent,
            to_agent=to_agent,
            type=MessageType.TASK_REQUEST,
            payload=payload,
            priority=MessagePriority.HIGH,
            ttl=max(1, int(timeout_ms)),
        )

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending_requests[request.id] = future

        self._logger.debug(
            "request_sending",
            message_id=request.id,
            to=request.to_agent,
            timeout_ms=timeout_ms,
        )

        try:
            await self.send_message(request)
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            self._logger.warning(
                "request_timeout",
                message_id=request.id,
                to=request.to_agent,
                timeout_ms=timeout_ms,
            )
            raise MessageBusError(
                message=f"Request timeout: {request.id}",
                error_code="REQUEST_TIMEOUT",
                details={
                    "message_id": request.id,
                    "to": request.to_agent,
                    "timeout_ms": timeout_ms,
                },
            )
        finally:
            self._pending_requests.pop(request.id, None)

    async def broadcast_message(
        self,
        from_agent: AgentId,
        message_type: MessageType,
        payload: Any,
        targets: Optional[Iterable[AgentId]] = None,
    ) -> list[AgentMessage]:
        """Queue a MEDIUM priority copy for every target except the sender.

        Returns once all copies are queued, not processed.
        """
        sender = agent_key(from_agent)
        recipients = [agent_key(t) for t in (targets if targets is not None else KNOWN_AGENTS)]

        sends = [
            self.send_message(
                AgentMessage(
                    from_agent=sender,
                    to_agent=target,
                    type=message_type,
                    payload=payload,
                    priority=MessagePriority.MEDIUM,
                )
            )
            for target in recipients
            if target != sender
        ]
        return list(await asyncio.gather(*sends))

    # =========================================================================
    # Queue Inspection and Control
    # =========================================================================

    def filter_messages(self, message_filter: MessageFilter) -> list[AgentMessage]:
        """Pending messages matching ``message_filter``, in queue order."""
        return [m for m in self._queue if message_filter.matches(m)]

    def get_message_stats(self) -> MessageStats:
        return self._stats.model_copy(deep=True)

    def clear_message_queue(self) -> int:
        """Drop every pending message. Returns how many were dropped."""
        cleared = len(self._queue)
        self._queue.clear()
        self._logger.info("queue_cleared", cleared=cleared)
        self.emit("queue:cleared", cleared)
        return cleared

    def pause_processing(self) -> None:
        self._paused = True
        self._logger.info("processing_paused", queue_size=len(self._queue))
        self.emit("processing:paused")

    def resume_processing(self) -> None:
        self._paused = False
        self._wakeup.set()
        self._logger.info("processing_resumed", queue_size=len(self._queue))
        self.emit("processing:resumed")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the processing task. Idempotent."""
        self._stopped = False
        if self.is_running:
            return
        self._worker = asyncio.create_task(self._process_loop())
        self._wakeup.set()
        self._logger.info("message_bus_started")

    async def stop(self) -> None:
        """Stop processing and fail every pending request with BUS_STOPPED.

        Queued messages stay queued; ``start()`` resumes them.
        """
        self._stopped = True
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        for message_id, future in self._pending_requests.items():
            if not future.done():
                future.set_exception(
                    MessageBusError(
                        message="Message bus stopped while waiting for response",
                        error_code="BUS_STOPPED",
                        details={"message_id": message_id},
                    )
                )
        self._pending_requests.clear()
        self._logger.info("message_bus_stopped", queue_size=len(self._queue))

    # =========================================================================
    # Internal Helper Methods
    # =========================================================================

    def _validate_message(
        self,
        message: Union[AgentMessage, dict[str, Any]],
    ) -> AgentMessage:
        if isinstance(message, dict):
            try:
                message = AgentMessage.model_validate(message)
            except ValidationError as exc:
                raise MessageBusError(
                    message=f"Invalid message format: {exc.error_count()} error(s)",
                    error_code="INVALID_MESSAGE",
                    details={"errors": exc.errors(include_url=False)},
                ) from exc

        if not isinstance(message, AgentMessage):
            raise MessageBusError(
                message="Invalid message format",
                error_code="INVALID_MESSAGE",
                details={"type": type(message).__name__},
            )

        missing = [
            name
            for name, value in (
                ("id", message.id),
                ("from", message.from_agent),
                ("to", message.to_agent),
            )
            if not value
        ]
        if missing:
            raise MessageBusError(
                message=f"Invalid message format: empty {', '.join(missing)}",
                error_code="INVALID_MESSAGE",
                details={"message_id": message.id, "missing": missing},
            )
        return message

    def _apply_routing(self, message: AgentMessage) -> AgentMessage:
        for route in self._routes.values():
            if route.matches(message):
                return message.model_copy(
                    update={
                        "to_agent": route.target_agent,
                        "priority": route.priority or message.priority,
                    }
                )
        return message

    def _enqueue(self, message: AgentMessage) -> None:
        # Insert after every message of the same or higher priority.
        rank = message.priority.rank
        index = len(self._queue)
        for i, queued in enumerate(self._queue):
            if queued.priority.rank > rank:
                index = i
                break
        self._queue.insert(index, message)

        self._record_queued(message)
        self._logger.debug(
            "message_queued",
            message_id=message.id,
            message_type=message.type.value,
            priority=message.priority.value,
            position=index,
        )
        self.emit("message:queued", message)

        self._wakeup.set()
        if self._config.auto_start and not self._stopped and not self.is_running:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return
            self._worker = asyncio.create_task(self._process_loop())

    async def _process_loop(self) -> None:
        while True:
            if self._paused or not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            message = self._queue.pop(0)
            await self._process_message(message)
            # One message per turn of the event loop.
            await asyncio.sleep(0)

    async def _process_message(self, message: AgentMessage) -> None:
        started = time.monotonic()
        try:
            await self._dispatch(message)
        except Exception as exc:
            self._stats.failed_messages += 1
            self._logger.warning(
                "message_processing_failed",
                message_id=message.id,
                message_type=message.type.value,
                to=message.to_agent,
                error=str(exc),
            )
            self.emit("message:failed", {"message": message, "error": exc})

            if message.type == MessageType.TASK_REQUEST:
                self._enqueue(
                    message.create_reply(
                        MessageType.ERROR,
                        {"error": str(exc)},
                        priority=MessagePriority.HIGH,
                    )
                )
            return

        self._stats.processed_messages += 1
        self._record_processing_time((time.monotonic() - started) * 1000)
        self.emit("message:processed", message)

    async def _dispatch(self, message: AgentMessage) -> None:
        resolved = self._resolve_pending_request(message)

        key = (message.to_agent, message.type)
        handlers = list(self._handlers.get(key, ()))
        if not handlers:
            if resolved:
                return
            raise MessageBusError(
                message=f"No handlers registered for {key[0]}:{key[1].value}",
                error_code="NO_HANDLERS",
                details={"message_id": message.id},
            )

        results = await asyncio.gather(
            *(self._invoke_handler(handler, message) for handler in handlers),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise MessageBusError(
                message="Handler failures: " + ", ".join(str(f) for f in failures),
                error_code="HANDLER_FAILED",
                details={"message_id": message.id, "failures": len(failures)},
            )

        if message.type == MessageType.TASK_REQUEST:
            responses = [r for r in results if r is not None]
            if responses:
                payload = responses[0] if len(responses) == 1 else responses
                self._enqueue(message.create_reply(MessageType.TASK_RESPONSE, payload))

    def _resolve_pending_request(self, message: AgentMessage) -> bool:
        if message.reply_to is None:
            return False
        future = self._pending_requests.pop(message.reply_to, None)
        if future is None:
            return False

        if not future.done():
            if message.type == MessageType.ERROR:
                reason = "Task failed"
                if isinstance(message.payload, dict):
                    reason = message.payload.get("error") or reason
                future.set_exception(
                    MessageBusError(
                        message=reason,
                        error_code="REQUEST_FAILED",
                        details={"message_id": message.reply_to},
                    )
                )
            else:
                future.set_result(message.payload)
        return True

    async def _invoke_handler(
        self,
        handler: MessageHandler,
        message: AgentMessage,
    ) -> Any:
        try:
            result = handler(message)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            self._logger.error(
                "handler_invocation_error",
                message_id=message.id,
                message_type=message.type.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            # Re-raise so gather(return_exceptions=True) captures it.
            raise

    def _record_queued(self, message: AgentMessage) -> None:
        stats = self._stats
        stats.total_messages += 1
        type_key = message.type.value
        priority_key = message.priority.value
        stats.messages_by_type[type_key] = stats.messages_by_type.get(type_key, 0) + 1
        stats.messages_by_priority[priority_key] = (
            stats.messages_by_priority.get(priority_key, 0) + 1
        )
        stats.messages_by_agent[message.from_agent] = (
            stats.messages_by_agent.get(message.from_agent, 0) + 1
        )

    def _record_processing_time(self, elapsed_ms: float) -> None:
        processed = self._stats.processed_messages
        average = self._stats.average_processing_time
        self._stats.average_processing_time = (
            average * (processed - 1) + elapsed_ms
        ) / processed
