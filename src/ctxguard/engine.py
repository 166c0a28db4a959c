"""Engine: wires contexts, monitors, archives and the status socket together."""

import asyncio
import logging
import re
import signal
import time
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Optional, Union

from .archive import ArchiveError, ArchiveStore
from .config import Config
from .context import (
    CleanupMode,
    Context,
    ContextRegistry,
    Scope,
    get_default_registry,
)
from .context.session import scope_configs_from
from .ipc.protocol import (
    ArchivesResponse,
    CleanupResponse,
    Command,
    CommandType,
    ContextResponse,
    ContextsResponse,
    EventResponse,
    Response,
    ResponseStatus,
    SimpleResponse,
    StatusResponse,
    TangentResponse,
    UsageResponse,
)
from .ipc.server import IPCServer
from .levels import Level, LevelChange, Thresholds
from .monitor import ThresholdMonitor
from .tokens import ExactCounter, TokenAccountant, build_counter

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 3600.0  # Seconds between retention sweeps while running

# Type alias for engine-wide level change callbacks: (context_id, change)
EngineLevelCallback = Callable[[str, LevelChange], Union[None, Awaitable[None]]]


def _dirname(context_id: str) -> str:
    return re.sub(r"[^\w.-]", "_", context_id)


def _rejected(message: str, error: Exception) -> SimpleResponse:
    return SimpleResponse(status=ResponseStatus.ERROR, message=message, error=str(error))


class ContextEngine:
    """Hosts the contexts of one agent process.

    Each context gets its own token cache, archive directory and threshold
    monitor; only the exact-count client is shared. Level changes from every
    monitor are relayed to engine subscribers.
    """

    def __init__(
        self,
        config: Config,
        registry: Optional[ContextRegistry] = None,
        exact_counter: Optional[ExactCounter] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Base configuration; per-context overrides are applied
                on top of it in create_context().
            registry: Registry to host contexts in. Defaults to the
                process-wide registry.
            exact_counter: Exact token counting call. If omitted and exact
                counting is enabled, an Anthropic counter is built when an
                API key is available.
        """
        self._config = config
        self.registry = registry if registry is not None else get_default_registry()
        self._start_time = time.time()

        self._counter = None
        if exact_counter is None and config.tokens.exact_counting:
            self._counter = build_counter(
                model=config.tokens.model,
                timeout=config.tokens.timeout,
            )
            if self._counter is not None:
                exact_counter = self._counter.count_tokens
        self._exact_counter = exact_counter

        self._monitors: dict[str, ThresholdMonitor] = {}
        self._listeners: list[EngineLevelCallback] = []
        self._running = False

        self._ipc_server: Optional[IPCServer] = None
        if config.ipc.enabled:
            self._ipc_server = IPCServer(
                socket_path=config.ipc.get_socket_path(),
                command_handler=self._handle_command,
            )

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    def monitor(self, context_id: str) -> Optional[ThresholdMonitor]:
        return self._monitors.get(context_id)

    # -- Context lifecycle --

    async def create_context(
        self,
        context_id: str,
        scope: Union[Scope, str] = Scope.SESSION,
        *,
        task: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
        force: bool = False,
    ) -> Context:
        """Create (or return the existing) context with its own monitor.

        Args:
            context_id: Registry key.
            scope: Initial scope.
            task: Top-level task.
            overrides: Nested config dict merged over the engine config,
                e.g. {"thresholds": {"warning": 50}, "tokens": {"capacity": 100000}}.
            force: Replace an existing context with the same id.
        """
        existing = self.registry.get(context_id)
        if existing is not None and not force:
            return existing

        scope = Scope(scope)
        cfg = self._config.merged(overrides)
        thresholds = Thresholds(
            warning=cfg.thresholds.warning,
            critical=cfg.thresholds.critical,
            emergency=cfg.thresholds.emergency,
        )
        if existing is not None:
            await self._stop_monitor(context_id)

        accountant = TokenAccountant(
            exact_counter=self._exact_counter,
            cache_size=cfg.tokens.cache_size,
            chars_per_token=cfg.tokens.chars_per_token,
        )
        archive = ArchiveStore(
            cfg.archive.get_directory() / _dirname(context_id),
            retention_days=cfg.archive.retention_days,
            max_records=cfg.archive.max_records,
        )

        context = self.registry.create(
            context_id,
            scope,
            force=force,
            task=task,
            scope_configs=scope_configs_from(cfg.compaction),
            thresholds=thresholds,
            capacity=cfg.tokens.capacity,
            accountant=accountant,
            archive=archive,
            compaction=cfg.compaction,
        )

        monitor = ThresholdMonitor(
            context,
            thresholds,
            poll_interval=cfg.monitor.poll_interval,
            auto_cleanup=cfg.monitor.auto_cleanup,
            history_size=cfg.monitor.history_size,
        )
        monitor.subscribe(lambda change: self._relay(context_id, change))
        self._monitors[context_id] = monitor
        if self._running:
            monitor.start()

        return context

    async def remove_context(self, context_id: str) -> Optional[Context]:
        """Stop monitoring a context and drop it from the registry."""
        await self._stop_monitor(context_id)
        return self.registry.remove(context_id)

    async def _stop_monitor(self, context_id: str) -> None:
        monitor = self._monitors.pop(context_id, None)
        if monitor is not None:
            await monitor.stop()

    async def sweep_expired(self, now: Optional[float] = None) -> list[str]:
        """Archive and remove contexts idle past their scope retention.

        A context whose final archive cannot be written is kept.
        """
        removed = []
        for context_id in self.registry.expired(now):
            context = self.registry.get(context_id)
            if context is None:
                continue
            if len(context) and context.archive is not None:
                snapshot = await context.get_usage_snapshot()
                try:
                    context.archive.archive(
                        context.serialize(),
                        "retention_expiry",
                        token_count=snapshot.tokens,
                        context_id=context_id,
                        meta={"scope": context.scope.value, "events": len(context)},
                    )
                except ArchiveError as e:
                    logger.error(f"Keeping expired context {context_id}, archive failed: {e}")
                    continue
            await self.remove_context(context_id)
            removed.append(context_id)

        if removed:
            logger.info(f"Expired {len(removed)} idle contexts: {', '.join(removed)}")
        return removed

    # -- Level change relay --

    def subscribe(self, callback: EngineLevelCallback) -> None:
        """Register a callback for level changes of any context."""
        self._listeners.append(callback)

    def unsubscribe(self, callback: EngineLevelCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def _relay(self, context_id: str, change: LevelChange) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(context_id, change)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in engine level listener: {e}")

    # -- Status socket --

    def highest_level(self) -> Level:
        return max((m.level for m in self._monitors.values()), default=Level.SAFE)

    async def _handle_command(self, command: Command) -> Response:
        """Handle IPC commands."""
        if command.type == CommandType.STATUS:
            return StatusResponse(
                status=ResponseStatus.OK,
                uptime_seconds=time.time() - self._start_time,
                context_count=len(self.registry),
                highest_level=self.highest_level().value,
                levels={cid: m.level.value for cid, m in self._monitors.items()},
            )

        elif command.type == CommandType.CONTEXTS:
            contexts = []
            for context_id in self.registry.list_active():
                context = self.registry.get(context_id)
                if context is None:
                    continue
                summary = context.summary()
                monitor = self._monitors.get(context_id)
                summary["level"] = monitor.level.value if monitor else None
                contexts.append(summary)
            return ContextsResponse(status=ResponseStatus.OK, contexts=contexts)

        elif command.type == CommandType.SHUTDOWN:
            self._shutdown_event.set()
            return SimpleResponse(status=ResponseStatus.OK, message="Shutting down")

        elif command.type == CommandType.CREATE:
            existed = self.registry.get(command.context_id) is not None
            try:
                context = await self.create_context(
                    command.context_id,
                    command.scope or Scope.SESSION,
                    task=command.task,
                    overrides=command.overrides,
                    force=command.force,
                )
            except (ValueError, TypeError) as e:
                return _rejected("Invalid context settings", e)
            if existed and not command.force:
                message = "Context already exists"
            else:
                message = "Replaced" if existed else "Created"
            return ContextResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                context=context.summary(),
                message=message,
            )

        context = self.registry.get(command.context_id) if command.context_id else None
        if context is None:
            return SimpleResponse(
                status=ResponseStatus.ERROR,
                message="Unknown context",
                error=f"No context with id {command.context_id!r}",
            )

        if command.type == CommandType.USAGE:
            snapshot = await context.get_usage_snapshot()
            monitor = self._monitors.get(context.context_id)
            return UsageResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                usage=snapshot.to_dict(),
                trend=monitor.trend().to_dict() if monitor else {},
                compression=context.compression_stats(),
            )

        elif command.type == CommandType.CLEANUP:
            try:
                mode = CleanupMode(command.mode or CleanupMode.STANDARD.value)
            except ValueError:
                return SimpleResponse(
                    status=ResponseStatus.ERROR,
                    message="Invalid cleanup mode",
                    error=f"Unknown mode {command.mode!r}",
                )
            result = await context.cleanup(mode, reason="manual")
            return CleanupResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                result=result.to_dict(),
                error=result.error,
            )

        elif command.type == CommandType.ARCHIVES:
            if context.archive is None:
                return ArchivesResponse(status=ResponseStatus.OK, context_id=context.context_id)
            records = context.archive.search(limit=command.limit)
            return ArchivesResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                archives=[r.to_dict() for r in records],
                stats=context.archive.stats(),
            )

        elif command.type == CommandType.REMOVE:
            await self.remove_context(context.context_id)
            return ContextResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                context=context.summary(),
                message="Removed",
            )

        elif command.type == CommandType.EVENT:
            try:
                event = context.add_event(command.event_type, command.payload, command.importance)
            except (ValueError, TypeError) as e:
                return _rejected("Invalid event", e)
            return EventResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                event_id=event.id,
                events=len(context),
            )

        elif command.type in (CommandType.TANGENT_PUSH, CommandType.TANGENT_POP):
            try:
                if command.type == CommandType.TANGENT_PUSH:
                    frame = context.push_tangent(
                        command.reason or "", command.new_task, command.return_point
                    )
                else:
                    frame = context.pop_tangent(result=command.result)
            except ValueError as e:
                return _rejected("Tangent rejected", e)
            return TangentResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                frame=asdict(frame),
                current_task=context.current_task,
                depth=len(context.tangents),
            )

        elif command.type == CommandType.THRESHOLDS:
            monitor = self._monitors.get(context.context_id)
            if monitor is None:
                return SimpleResponse(
                    status=ResponseStatus.ERROR,
                    message="Context is not monitored",
                    error=context.context_id,
                )
            try:
                thresholds = monitor.update_thresholds(**command.thresholds)
            except (ValueError, TypeError) as e:
                return _rejected("Invalid thresholds", e)
            summary = context.summary()
            summary["thresholds"] = asdict(thresholds)
            return ContextResponse(
                status=ResponseStatus.OK,
                context_id=context.context_id,
                context=summary,
                message="Thresholds updated",
            )

        return SimpleResponse(
            status=ResponseStatus.ERROR,
            message="Unsupported command",
            error=command.type.value,
        )

    # -- Run loop --

    async def start(self) -> None:
        """Start the status socket and every registered monitor."""
        if self._running:
            return
        if self._ipc_server is not None:
            await self._ipc_server.start()
        for monitor in self._monitors.values():
            monitor.start()
        self._running = True
        logger.info(f"Engine started with {len(self._monitors)} contexts")

    async def stop(self) -> None:
        """Stop monitors (letting in-flight cleanups finish) and the socket."""
        if not self._running:
            return
        self._running = False
        for monitor in list(self._monitors.values()):
            await monitor.stop()
        if self._ipc_server is not None:
            await self._ipc_server.stop()
        if self._counter is not None:
            await self._counter.close()
        logger.info("Engine stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM or a shutdown command."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()
        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=SWEEP_INTERVAL)
                except asyncio.TimeoutError:
                    await self.sweep_expired()
        except Exception as e:
            logger.error(f"Error in engine loop: {e}", exc_info=True)
        finally:
            await self.stop()
