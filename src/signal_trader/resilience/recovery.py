"""Failure accounting and recovery for external dependencies.

Every collaborator call goes through ``RecoverySystem.call``. Failures are
counted per dependency, trip that dependency's circuit breaker after
``error_threshold`` failures, and schedule a recovery probe:

- authentication failures are surfaced and never retried,
- rate limits wait a per-service cooldown,
- everything else follows exponential backoff with jitter,
  up to ``max_retry_attempts`` per error episode.

The system state snapshot (positions, pending signals, counters, breakers) is
written on a timer and on shutdown, and restored on startup with
``is_running`` forced to False.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from signal_trader.config import Settings
from signal_trader.errors import (
    AuthenticationError,
    NetworkError,
    PersistenceError,
    RateLimitError,
    ServiceError,
    TradeValidationError,
    TradingError,
)
from signal_trader.events import (
    AuthenticationFailed,
    CircuitBreakerOpened,
    ErrorLogged,
    EventBus,
    NetworkErrorDetected,
    RateLimited,
    RecoveryAbandoned,
    RecoveryFailed,
    RecoverySucceeded,
)
from signal_trader.interfaces import RecoveryProbe, StateStore
from signal_trader.journal.store import JournalStore
from signal_trader.resilience.breaker import CircuitBreakerRegistry, retry_delay
from signal_trader.resilience.connectivity import ConnectivityMonitor
from signal_trader.schemas import (
    CircuitBreakerState,
    ConnectionStatus,
    ServiceStatus,
    SystemState,
    utcnow,
)
from signal_trader.types import ErrorStatistics
from signal_trader.utils.logging import get_logger, log_service_error
from signal_trader.utils.scheduling import PeriodicTask

T = TypeVar("T")

AI_SERVICE = "ai"
EXCHANGE_SERVICE = "exchange"
NETWORK_SERVICE = "network"
SERVICES = (AI_SERVICE, EXCHANGE_SERVICE, NETWORK_SERVICE)

_RECENT_ERROR_WINDOW = timedelta(hours=1)


class RecoverySystem:
    """Owns breakers, error counters, connection status and the state snapshot."""

    def __init__(
        self,
        settings: Settings,
        bus: EventBus,
        *,
        store: StateStore | None = None,
        journal: JournalStore | None = None,
        connectivity: ConnectivityMonitor | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._bus = bus
        self._store = store
        self._journal = journal
        self._connectivity = connectivity or ConnectivityMonitor(
            bus,
            probe_url=settings.connectivity_probe_url,
            timeout=settings.network_timeout,
            clock=clock,
        )
        self._clock = clock
        self._rng = rng
        self._sleep = sleep
        self._logger = get_logger("signal_trader.resilience.recovery")

        self._state = SystemState()
        self._service_status: dict[str, ServiceStatus] = {
            AI_SERVICE: "disconnected",
            EXCHANGE_SERVICE: "disconnected",
        }
        self._breakers = CircuitBreakerRegistry(
            SERVICES,
            threshold=settings.error_threshold,
            recovery_timeout=settings.recovery_timeout,
            clock=clock,
        )
        self._probes: dict[str, RecoveryProbe] = {}
        self._recovery_tasks: dict[str, asyncio.Task[None]] = {}
        self._abandoned: set[str] = set()
        self._backup_task = PeriodicTask(
            "state_backup", settings.state_backup_interval, self._periodic_save
        )
        self._connectivity_task = PeriodicTask(
            "connectivity_check", settings.connectivity_check_interval, self._connectivity.check
        )

    # ------------------------------------------------------------------ calls

    def register_probe(self, service: str, probe: RecoveryProbe) -> None:
        """Register the health check used to recover ``service``."""
        self._probes[service] = probe

    async def call(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        *,
        context: str,
    ) -> T:
        """Run one external call with a timeout and failure accounting.

        Errors are reported and re-raised as ``TradingError`` subclasses.
        """
        try:
            result = await asyncio.wait_for(operation(), timeout=self._settings.network_timeout)
        except TimeoutError as exc:
            error = NetworkError(
                f"{context} timed out after {self._settings.network_timeout}s",
                service=service,
                code="TIMEOUT",
            )
            await self.report_error(service, error, context=context)
            raise error from exc
        except TradeValidationError:
            raise
        except TradingError as exc:
            if exc.service is None:
                exc.service = service
            await self.report_error(service, exc, context=context)
            raise
        except Exception as exc:
            error = ServiceError(str(exc) or type(exc).__name__, service=service)
            await self.report_error(service, error, context=context)
            raise error from exc
        self.record_success(service)
        return result

    def record_success(self, service: str) -> None:
        """A successful call closes the breaker and ends the recovery episode."""
        if self._breakers.state(service).failure_count or self._breakers.is_open(service):
            self._logger.info("service_call_recovered", service=service)
        self._breakers.reset(service)
        self._state.recovery_attempts.pop(service, None)
        self._abandoned.discard(service)
        self._cancel_recovery(service)
        if service in self._service_status:
            self._service_status[service] = "connected"

    # ---------------------------------------------------------- error intake

    async def report_error(self, service: str, error: Exception, *, context: str) -> None:
        """Count one failure of ``service`` and decide how to recover."""
        await self.log_error(error, f"{service}: {context}")

        now = self._clock()
        self._state.error_counts[service] = self._state.error_counts.get(service, 0) + 1
        self._state.last_errors[service] = now
        if service in self._service_status:
            self._service_status[service] = "disconnected"

        if self._breakers.record_failure(service):
            breaker = self._breakers.state(service)
            self._logger.warning(
                "circuit_breaker_opened",
                service=service,
                failure_count=breaker.failure_count,
                next_retry_time=breaker.next_retry_time.isoformat()
                if breaker.next_retry_time
                else None,
            )
            await self._bus.publish(
                CircuitBreakerOpened(
                    service=service,
                    failure_count=breaker.failure_count,
                    next_retry_time=breaker.next_retry_time or now,
                )
            )

        if isinstance(error, AuthenticationError):
            self._logger.error("authentication_failed", service=service, error=str(error))
            await self._bus.publish(AuthenticationFailed(service=service, error=str(error)))
            return

        if isinstance(error, RateLimitError):
            cooldown = self._settings.rate_limit_cooldown(service)
            self._logger.warning("rate_limited", service=service, cooldown_seconds=cooldown)
            await self._bus.publish(
                RateLimited(service=service, error=str(error), cooldown_seconds=cooldown)
            )
            await self.schedule_recovery(
                service, delay=cooldown + self._rng() * 0.1 * cooldown
            )
            return

        if isinstance(error, NetworkError) and service != NETWORK_SERVICE:
            await self.handle_network_error(error)

        await self.schedule_recovery(service)

    async def handle_network_error(self, error: NetworkError) -> None:
        """Mark the network offline and schedule a reachability recovery."""
        await self._connectivity.mark_offline()
        await self._bus.publish(NetworkErrorDetected(error=str(error), retryable=error.retryable))
        if error.retryable:
            await self.schedule_recovery(NETWORK_SERVICE)

    async def log_error(self, error: Exception, context: str) -> None:
        """Log with context, append to the persistent error log, publish ``ErrorLogged``."""
        code = getattr(error, "code", "UNKNOWN")
        log_service_error(
            self._logger,
            service=getattr(error, "service", None) or context.split(":", 1)[0],
            code=code,
            error=str(error),
            context=context,
            error_type=type(error).__name__,
        )
        if self._journal is not None:
            try:
                self._journal.append(
                    "error",
                    {
                        "context": context,
                        "name": type(error).__name__,
                        "code": code,
                        "message": str(error),
                    },
                )
            except PersistenceError as exc:
                self._logger.warning("error_log_write_failed", error=str(exc))
        await self._bus.publish(
            ErrorLogged(
                context=context,
                error_type=type(error).__name__,
                code=code,
                message=str(error),
            )
        )

    # -------------------------------------------------------------- recovery

    async def schedule_recovery(self, service: str, delay: float | None = None) -> bool:
        """Schedule one recovery attempt. Returns False when skipped."""
        if not self._settings.enable_auto_recovery:
            return False
        if not self._breakers.allows_recovery(service):
            self._logger.debug("recovery_skipped_breaker_open", service=service)
            return False
        attempts = self._state.recovery_attempts.get(service, 0)
        if attempts >= self._settings.max_retry_attempts:
            if service not in self._abandoned:
                self._abandoned.add(service)
                self._logger.warning("recovery_abandoned", service=service, attempts=attempts)
                await self._bus.publish(RecoveryAbandoned(service=service, attempts=attempts))
            return False
        pending = self._recovery_tasks.get(service)
        if pending is not None and not pending.done():
            return False

        if delay is None:
            delay = retry_delay(
                attempts,
                self._settings.base_retry_delay,
                self._settings.max_retry_delay,
                rng=self._rng,
            )
        self._logger.info(
            "recovery_scheduled",
            service=service,
            delay_seconds=round(delay, 3),
            attempt=attempts + 1,
        )
        self._recovery_tasks[service] = asyncio.get_running_loop().create_task(
            self._delayed_recovery(service, delay),
            name=f"recovery:{service}",
        )
        return True

    async def attempt_recovery(self, service: str) -> bool:
        """Probe ``service`` once, counting the attempt. Reschedules on failure."""
        self._state.recovery_attempts[service] = self._state.recovery_attempts.get(service, 0) + 1
        success = await self._recover(service)
        if not success:
            await self.schedule_recovery(service)
        return success

    async def force_recovery(self, service: str) -> bool:
        """Operator-triggered recovery, ignoring breaker and attempt limits."""
        self._logger.info("forcing_recovery", service=service)
        self._cancel_recovery(service)
        return await self._recover(service)

    def reset_error_tracking(self, service: str) -> None:
        """Clear counters and the breaker of ``service``."""
        self._state.error_counts.pop(service, None)
        self._state.last_errors.pop(service, None)
        self._state.recovery_attempts.pop(service, None)
        self._abandoned.discard(service)
        self._breakers.reset(service)
        self._logger.info("error_tracking_reset", service=service)

    async def _delayed_recovery(self, service: str, delay: float) -> None:
        await self._sleep(delay)
        if self._recovery_tasks.get(service) is asyncio.current_task():
            del self._recovery_tasks[service]
        await self.attempt_recovery(service)

    async def _recover(self, service: str) -> bool:
        self._set_service_status(service, "recovering")
        try:
            success = await self._run_probe(service)
        except Exception as exc:  # noqa: BLE001 - a broken probe is a failed recovery.
            await self.log_error(exc, f"{service}: recovery probe")
            success = False

        if success:
            self.reset_error_tracking(service)
            self._set_service_status(service, "connected")
            self._logger.info("recovery_succeeded", service=service)
            await self._bus.publish(RecoverySucceeded(service=service))
            return True

        self._set_service_status(service, "disconnected")
        self._logger.warning("recovery_failed", service=service)
        await self._bus.publish(RecoveryFailed(service=service))
        return False

    async def _run_probe(self, service: str) -> bool:
        if service == NETWORK_SERVICE:
            return await self._connectivity.check() == "online"
        probe = self._probes.get(service)
        if probe is None:
            self._logger.warning("no_recovery_probe", service=service)
            return False
        return bool(await asyncio.wait_for(probe(), timeout=self._settings.network_timeout))

    def _cancel_recovery(self, service: str) -> None:
        task = self._recovery_tasks.pop(service, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _set_service_status(self, service: str, status: ServiceStatus) -> None:
        if service in self._service_status:
            self._service_status[service] = status

    # ---------------------------------------------------------------- status

    def is_in_recovery_mode(self) -> bool:
        return (
            any(status == "recovering" for status in self._service_status.values())
            or self._connectivity.status == "unstable"
        )

    def get_connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            ai=self._service_status[AI_SERVICE],
            exchange=self._service_status[EXCHANGE_SERVICE],
            network=self._connectivity.status,
            last_check=self._connectivity.last_check,
        )

    def get_error_statistics(self) -> ErrorStatistics:
        cutoff = self._clock() - _RECENT_ERROR_WINDOW
        recent = sum(
            self._state.error_counts.get(service, 0)
            for service, last in self._state.last_errors.items()
            if last > cutoff
        )
        return ErrorStatistics(
            total_errors=sum(self._state.error_counts.values()),
            errors_by_service=dict(self._state.error_counts),
            recent_errors=recent,
            recovery_attempts=dict(self._state.recovery_attempts),
        )

    def breaker_state(self, service: str) -> CircuitBreakerState:
        return self._breakers.state(service)

    def pending_recoveries(self) -> list[str]:
        return [name for name, task in self._recovery_tasks.items() if not task.done()]

    # ------------------------------------------------------------- snapshots

    def update_system_state(self, **fields: Any) -> None:
        """Merge session-owned fields (positions, pending signals, cache, running flag)."""
        unknown = set(fields) - set(SystemState.model_fields)
        if unknown:
            raise ValueError(f"unknown_state_fields: {sorted(unknown)}")
        self._state = self._state.model_copy(update=fields)

    def get_system_state(self) -> SystemState:
        state = self._state.model_copy(deep=True)
        state.connection_status = self.get_connection_status()
        state.circuit_breakers = self._breakers.snapshot()
        return state

    def save_state(self) -> bool:
        """Write the snapshot. Failures are logged, never raised."""
        state = self.get_system_state()
        state.last_save_time = self._clock()
        if self._store is None:
            return False
        try:
            self._store.save(state)
        except PersistenceError as exc:
            self._logger.error("state_save_failed", error=str(exc))
            return False
        self._state.last_save_time = state.last_save_time
        return True

    def restore(self) -> SystemState | None:
        """Reload the last snapshot. A restored process is never "running"."""
        if self._store is None:
            return None
        try:
            saved = self._store.load()
        except PersistenceError as exc:
            self._logger.error("state_load_failed", error=str(exc))
            return None
        if saved is None:
            return None

        self._state = saved.model_copy(
            update={"is_running": False, "start_time": None, "last_save_time": self._clock()},
            deep=True,
        )
        self._breakers.restore(saved.circuit_breakers)
        self._service_status[AI_SERVICE] = saved.connection_status.ai
        self._service_status[EXCHANGE_SERVICE] = saved.connection_status.exchange
        self._connectivity.status = saved.connection_status.network
        self._logger.info(
            "state_restored",
            positions=len(saved.active_positions),
            pending_signals=len(saved.pending_signals),
            services_with_errors=sorted(saved.error_counts),
        )
        return self.get_system_state()

    # ------------------------------------------------------------ monitoring

    def start_monitoring(self) -> None:
        self._backup_task.start()
        self._connectivity_task.start()
        self._logger.info(
            "system_monitoring_started",
            backup_interval=self._settings.state_backup_interval,
            connectivity_interval=self._settings.connectivity_check_interval,
        )

    async def stop_monitoring(self) -> None:
        await self._backup_task.stop()
        await self._connectivity_task.stop()
        tasks = list(self._recovery_tasks.values())
        self._recovery_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.save_state()
        self._logger.info("system_monitoring_stopped")

    async def _periodic_save(self) -> None:
        self.save_state()
