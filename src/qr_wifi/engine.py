"""Association engine turning decoded credentials into a joined network."""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .config import DEFAULT_ENGINE_SETTINGS, EngineSettings
from .connection_log import AttemptEvent, ConnectionLog
from .credentials import Credential
from .permissions import PermissionGate, PermissionPrompt, fixed_prompt
from .retry_policy import BackoffSchedule, RetryPolicy
from .wifi import AdapterError, WiFiBackend, WiFiError, WiFiNetwork

_T = TypeVar("_T")

AttemptListener = Callable[[AttemptEvent], None]


class AttemptState(str, Enum):
    IDLE = "idle"
    CHECKING_PERMISSION = "checking_permission"
    SCANNING = "scanning"
    ASSOCIATING = "associating"
    CONNECTED = "connected"
    DEFERRED = "deferred"
    FAILED = "failed"


class ErrorKind(str, Enum):
    NO_INTERFACE = "no_interface"
    NETWORK_NOT_FOUND = "network_not_found"
    MISSING_SECRET = "missing_secret"
    PERMISSION_DENIED = "permission_denied"
    USER_DEFERRED = "user_deferred"
    RETRIES_EXHAUSTED = "retries_exhausted"
    FATAL = "fatal"


_DEFAULT_MESSAGES = {
    ErrorKind.NO_INTERFACE: "No Wi-Fi interface available",
    ErrorKind.NETWORK_NOT_FOUND: "Network not found",
    ErrorKind.MISSING_SECRET: "Password required for secured network",
    ErrorKind.PERMISSION_DENIED: "Permission to control Wi-Fi was denied",
    ErrorKind.USER_DEFERRED: "Waiting for permission to be granted",
    ErrorKind.RETRIES_EXHAUSTED: "Maximum retries exceeded",
    ErrorKind.FATAL: "Connection failed",
}


class AssociationError(WiFiError):
    """Classified terminal failure of a connection attempt."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        cause: AdapterError | None = None,
    ) -> None:
        text = message or _DEFAULT_MESSAGES[kind]
        if cause is not None and message is None:
            text = f"{text}: {cause}"
        super().__init__(text)
        self.kind = kind
        self.cause = cause

    def to_dict(self) -> dict[str, object | None]:
        return {
            "kind": self.kind.value,
            "detail": str(self),
            "cause": self.cause.to_dict() if self.cause is not None else None,
        }


@dataclass(slots=True)
class AssociationAttempt:
    """Mutable bookkeeping for the attempt currently in flight."""

    credential: Credential
    scan_retries: int = 0
    association_retries: int = 0
    last_error: AdapterError | None = None


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    """Non-error result of :meth:`AssociationEngine.connect`."""

    state: AttemptState
    credential: Credential
    network: WiFiNetwork | None = None
    retries: int = 0
    error_kind: ErrorKind | None = None

    @property
    def connected(self) -> bool:
        return self.state is AttemptState.CONNECTED

    @property
    def deferred(self) -> bool:
        return self.state is AttemptState.DEFERRED

    def to_dict(self) -> dict[str, object | None]:
        return {
            "state": self.state.value,
            "ssid": self.credential.ssid,
            "network": self.network.to_dict() if self.network is not None else None,
            "retries": self.retries,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
        }


def _signal_key(network: WiFiNetwork) -> float:
    return float(network.signal) if network.signal is not None else -math.inf


def select_strongest(networks: list[WiFiNetwork]) -> WiFiNetwork | None:
    """Return the network with the highest signal; the first one wins ties."""

    if not networks:
        return None
    return max(networks, key=_signal_key)


class AssociationEngine:
    """Join networks on behalf of decoded QR credentials.

    Attempts are serialized: a second :meth:`connect` waits for the first to
    finish. Adapter calls run on a dedicated single worker thread so the
    interface never sees two operations at once, even if a caller gives up
    on an attempt midway. When permission is missing and the user chooses to
    open the settings panel, the credential is parked and the engine
    reconnects on its own once the gate reports access was granted.
    """

    def __init__(
        self,
        backend: WiFiBackend,
        permission_gate: PermissionGate,
        *,
        settings: EngineSettings | None = None,
        policy: RetryPolicy | None = None,
        prompt: PermissionPrompt | None = None,
        connection_log: ConnectionLog | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._backend = backend
        self._gate = permission_gate
        self._base_policy = policy or RetryPolicy()
        self._custom_prompt = prompt
        self.apply_settings(settings or DEFAULT_ENGINE_SETTINGS)
        self._connection_log = connection_log if connection_log is not None else ConnectionLog()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self._logger = logger or logging.getLogger(__name__)

        self._lock = asyncio.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._resume_task: asyncio.Task[None] | None = None
        self._resume_waiting = False
        self._state = AttemptState.IDLE
        self._attempt: AssociationAttempt | None = None
        self._pending: Credential | None = None
        self._listeners: list[AttemptListener] = []
        self._listeners_lock = threading.Lock()

    def apply_settings(self, settings: EngineSettings) -> None:
        """Replace the retry limits, delays and permission behaviour."""

        self._settings = settings
        self._policy = self._base_policy.extend(
            codes=settings.extra_retryable_codes,
            domains=settings.extra_retryable_domains,
        )
        self._backoff = BackoffSchedule(
            initial_delay=settings.initial_backoff,
            jitter_ratio=settings.jitter_ratio,
            scan_step=settings.scan_retry_step,
        )
        self._prompt = self._custom_prompt or fixed_prompt(settings.open_settings_on_denied)

    # ------------------------------ lifecycle ------------------------------
    def start(self) -> None:
        """Bind to the running loop and subscribe to permission grants."""

        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wifi-adapter")
        self._unsubscribe = self._gate.subscribe(self._handle_permission_granted)

    async def aclose(self) -> None:
        """Unsubscribe from the gate and stop background work."""

        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            unsubscribe()
        task = self._resume_task
        self._resume_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._resume_waiting = False
        self._pending = None
        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.shutdown(wait=False)
        self._loop = None

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> AttemptState:
        return self._state

    @property
    def pending_credential(self) -> Credential | None:
        return self._pending

    @property
    def current_attempt(self) -> AssociationAttempt | None:
        return self._attempt

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def connection_log(self) -> ConnectionLog:
        return self._connection_log

    @property
    def permission_gate(self) -> PermissionGate:
        return self._gate

    def snapshot(self) -> dict[str, object | None]:
        attempt = self._attempt
        pending = self._pending
        return {
            "state": self._state.value,
            "ssid": attempt.credential.ssid if attempt is not None else None,
            "scan_retries": attempt.scan_retries if attempt is not None else 0,
            "association_retries": attempt.association_retries if attempt is not None else 0,
            "pending_ssid": pending.ssid if pending is not None else None,
        }

    # ------------------------------ listeners ------------------------------
    def add_listener(self, listener: AttemptListener) -> Callable[[], None]:
        """Register ``listener`` for progress events and return a remover."""

        with self._listeners_lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._listeners_lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _remove

    # ------------------------------ operations -----------------------------
    async def connect(self, credential: Credential) -> AttemptOutcome:
        """Join the network described by ``credential``.

        Returns a ``CONNECTED`` outcome on success, or a ``DEFERRED`` outcome
        when the attempt is parked awaiting permission. Every other terminal
        result raises :class:`AssociationError`.
        """

        self.start()
        async with self._lock:
            return await self._run_attempt(credential)

    def cancel_pending(self) -> Credential | None:
        """Forget a deferred attempt, returning its credential if one was parked."""

        credential = self._pending
        self._pending = None
        task = self._resume_task
        if task is not None and self._resume_waiting:
            task.cancel()
            self._resume_waiting = False
        if credential is not None:
            if self._state is AttemptState.DEFERRED:
                self._state = AttemptState.IDLE
            self._emit("cancelled", "Deferred connection cancelled", credential)
        return credential

    def open_permission_settings(self) -> None:
        self._gate.open_settings_panel()

    def open_network_settings(self) -> None:
        self._backend.open_network_settings()

    # ----------------------------- implementation --------------------------
    async def _run_attempt(self, credential: Credential) -> AttemptOutcome:
        attempt = AssociationAttempt(credential=credential)
        self._attempt = attempt
        self._pending = None
        self._emit("started", f"Connecting to {credential.ssid}", credential)
        try:
            outcome = await self._associate(attempt)
        except AssociationError as exc:
            self._state = AttemptState.FAILED
            metadata: dict[str, object | None] = {"kind": exc.kind.value}
            if exc.cause is not None:
                metadata["code"] = exc.cause.code
                metadata["domain"] = exc.cause.domain or None
            self._emit("failed", str(exc), credential, metadata=metadata)
            raise
        except asyncio.CancelledError:
            self._state = AttemptState.IDLE
            self._emit("cancelled", f"Stopped reporting on {credential.ssid}", credential)
            raise
        finally:
            self._attempt = None
        if outcome.deferred:
            self._emit(
                "deferred",
                f"Waiting for Wi-Fi permission before joining {credential.ssid}",
                credential,
            )
        else:
            self._emit(
                "succeeded",
                f"Connected to {credential.ssid}",
                credential,
                metadata={
                    "retries": outcome.retries,
                    "bssid": outcome.network.bssid if outcome.network else None,
                    "signal": outcome.network.signal if outcome.network else None,
                },
            )
        return outcome

    async def _associate(self, attempt: AssociationAttempt) -> AttemptOutcome:
        credential = attempt.credential
        self._state = AttemptState.CHECKING_PERMISSION
        try:
            available = await self._call_backend(self._backend.has_interface)
        except AdapterError as exc:
            raise AssociationError(ErrorKind.NO_INTERFACE, cause=exc) from exc
        if not available:
            raise AssociationError(ErrorKind.NO_INTERFACE)

        if not await self._ensure_permission(credential):
            self._state = AttemptState.DEFERRED
            return AttemptOutcome(
                state=AttemptState.DEFERRED,
                credential=credential,
                error_kind=ErrorKind.USER_DEFERRED,
            )

        if credential.requires_secret and credential.secret is None:
            raise AssociationError(ErrorKind.MISSING_SECRET)

        max_retries = self._settings.max_association_retries
        retry = 0
        while True:
            try:
                network = await self._scan_for_network(attempt, retry)
                self._state = AttemptState.ASSOCIATING
                await self._call_backend(self._backend.associate, network, credential.secret)
            except AdapterError as exc:
                attempt.last_error = exc
                if not self._policy.is_retryable(exc):
                    raise AssociationError(ErrorKind.FATAL, cause=exc) from exc
                retry += 1
                attempt.association_retries = retry
                if retry >= max_retries:
                    raise AssociationError(ErrorKind.RETRIES_EXHAUSTED, cause=exc) from exc
                delay = self._backoff.association_delay(retry, self._rng)
                self._emit(
                    "retrying",
                    f"Attempt {retry} to join {credential.ssid} failed; retrying in {delay:.2f}s",
                    credential,
                    metadata={"retry": retry, "delay": round(delay, 3), "code": exc.code},
                )
                await self._sleep(delay)
                continue
            self._state = AttemptState.CONNECTED
            return AttemptOutcome(
                state=AttemptState.CONNECTED,
                credential=credential,
                network=network,
                retries=retry,
            )

    async def _scan_for_network(self, attempt: AssociationAttempt, retry: int) -> WiFiNetwork:
        self._state = AttemptState.SCANNING
        ssid = attempt.credential.ssid
        max_scans = self._settings.max_scan_retries
        scan_attempt = 0
        while True:
            try:
                networks = await self._call_backend(self._backend.scan, ssid)
            except AdapterError as exc:
                scan_attempt += 1
                if not self._policy.is_busy(exc) or scan_attempt >= max_scans:
                    raise
                attempt.scan_retries += 1
                delay = self._backoff.scan_delay(scan_attempt, retry)
                self._logger.debug(
                    "Scan for %s busy (attempt %d); retrying in %.2fs", ssid, scan_attempt, delay
                )
                await self._sleep(delay)
                continue
            network = select_strongest(list(networks))
            if network is None:
                raise AssociationError(ErrorKind.NETWORK_NOT_FOUND, f"Network {ssid!r} not found")
            return network

    async def _call_backend(self, func: Callable[..., _T], *args: Any) -> _T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, func, *args)
        except AdapterError:
            raise
        except Exception as exc:
            raise AdapterError(str(exc) or type(exc).__name__, transient=False) from exc

    async def _ensure_permission(self, credential: Credential) -> bool:
        """Return ``True`` when authorized and ``False`` when deferred."""

        gate = self._gate
        loop = asyncio.get_running_loop()
        if await loop.run_in_executor(None, gate.is_authorized):
            return True
        try:
            granted = await gate.request_authorization(self._settings.permission_timeout)
        except AdapterError as exc:
            self._logger.warning("Permission request failed: %s", exc)
            granted = False
        if granted:
            return True

        decision = self._prompt(credential)
        if inspect.isawaitable(decision):
            decision = await decision
        if not decision:
            raise AssociationError(ErrorKind.PERMISSION_DENIED)
        self._pending = credential
        try:
            gate.open_settings_panel()
        except Exception:
            self._logger.warning("Unable to open permission settings", exc_info=True)
        return False

    def _handle_permission_granted(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_resume)

    def _schedule_resume(self) -> None:
        credential = self._pending
        if credential is None or self._loop is None:
            return
        if self._resume_waiting:
            return
        self._resume_waiting = True
        self._resume_task = self._loop.create_task(self._resume(credential))

    async def _resume(self, credential: Credential) -> None:
        # The credential stays parked until the delay ends.
        self._emit("resuming", f"Permission granted; reconnecting to {credential.ssid}", credential)
        try:
            await self._sleep(self._settings.resume_delay)
        finally:
            self._resume_waiting = False
        if self._pending is not credential:
            return
        self._pending = None
        try:
            await self.connect(credential)
        except AssociationError as exc:
            self._logger.info("Resumed connection to %s failed: %s", credential.ssid, exc)
        except Exception:
            self._logger.warning(
                "Resumed connection to %s raised unexpectedly", credential.ssid, exc_info=True
            )

    def _emit(
        self,
        event: str,
        message: str,
        credential: Credential,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        self._logger.info("Wi-Fi event %s: %s", event, message)
        entry = self._connection_log.record(
            event,
            message,
            ssid=credential.ssid,
            state=self._state.value,
            metadata=metadata,
        )
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                self._logger.debug("Wi-Fi listener failed", exc_info=True)


__all__ = [
    "AssociationAttempt",
    "AssociationEngine",
    "AssociationError",
    "AttemptListener",
    "AttemptOutcome",
    "AttemptState",
    "ErrorKind",
    "select_strongest",
]
