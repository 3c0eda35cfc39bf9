"""Authorization gate guarding access to the Wi-Fi subsystem.

Joining a network needs the host to grant the process control over
networking. A :class:`PermissionGate` reports whether that is the case, asks
for it when it is not, and tells subscribers when access is granted later so
a deferred connection attempt can resume on its own.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import threading
from enum import Enum
from typing import Awaitable, Callable, Sequence

from .config import DEFAULT_PERMISSION_TIMEOUT
from .credentials import Credential
from .wifi import AdapterError, launch_first_available, split_terse_fields

NETWORK_CONTROL_PERMISSION = "org.freedesktop.NetworkManager.network-control"

DEFAULT_PERMISSION_SETTINGS_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("gnome-control-center", "privacy"),
    ("gnome-control-center", "wifi"),
    ("nm-connection-editor",),
)

PermissionListener = Callable[[], None]
PermissionPrompt = Callable[[Credential], "bool | Awaitable[bool]"]


class PermissionStatus(str, Enum):
    NOT_DETERMINED = "not_determined"
    DENIED = "denied"
    RESTRICTED = "restricted"
    AUTHORIZED = "authorized"


class PermissionGate:
    """Abstract interface to the host's authorization subsystem."""

    def __init__(self) -> None:
        self._listeners: list[PermissionListener] = []
        self._listeners_lock = threading.Lock()
        self._last_status: PermissionStatus | None = None

    # ------------------------------ interface ------------------------------
    def status(self) -> PermissionStatus:  # pragma: no cover - interface only
        raise NotImplementedError

    def open_settings_panel(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def _await_decision(self) -> bool:
        """Wait for the subsystem to settle; subclasses may prompt the user."""

        return await asyncio.get_running_loop().run_in_executor(None, self.is_authorized)

    def close(self) -> None:
        return None

    # ------------------------------ operations -----------------------------
    def is_authorized(self) -> bool:
        return self._observe(self.status()) is PermissionStatus.AUTHORIZED

    async def request_authorization(self, timeout: float = DEFAULT_PERMISSION_TIMEOUT) -> bool:
        """Ask for access, resolving to the best-known status after ``timeout``."""

        try:
            return await asyncio.wait_for(self._await_decision(), timeout=timeout)
        except asyncio.TimeoutError:
            logging.getLogger(__name__).info(
                "Authorization request timed out after %.1fs", timeout
            )
            return await asyncio.get_running_loop().run_in_executor(None, self.is_authorized)

    def subscribe(self, listener: PermissionListener) -> Callable[[], None]:
        """Register ``listener`` for grant notifications and return an unsubscriber."""

        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    # ----------------------------- implementation --------------------------
    def _observe(self, status: PermissionStatus) -> PermissionStatus:
        """Track ``status`` and notify listeners on a transition to authorized."""

        previous = self._last_status
        self._last_status = status
        if status is PermissionStatus.AUTHORIZED and previous not in (
            None,
            PermissionStatus.AUTHORIZED,
        ):
            self._notify_granted()
        return status

    def _notify_granted(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:  # pragma: no cover - defensive logging
                logging.getLogger(__name__).debug(
                    "Permission listener failed", exc_info=True
                )


class AlwaysAuthorizedGate(PermissionGate):
    """Gate for hosts where the process already controls networking."""

    def status(self) -> PermissionStatus:
        return PermissionStatus.AUTHORIZED

    def open_settings_panel(self) -> None:
        logging.getLogger(__name__).debug("Settings panel requested on an authorized host")


class NMCLIPermissionGate(PermissionGate):
    """Check NetworkManager's polkit permissions via nmcli and pkcheck."""

    def __init__(
        self,
        permissions: Sequence[str] = (NETWORK_CONTROL_PERMISSION,),
        *,
        timeout: float = 15.0,
        poll_interval: float = 2.0,
        settings_commands: Sequence[Sequence[str]] = DEFAULT_PERMISSION_SETTINGS_COMMANDS,
    ) -> None:
        super().__init__()
        if not permissions:
            raise ValueError("At least one permission is required")
        self._permissions = tuple(permissions)
        self._timeout = timeout
        self._poll_interval = max(0.1, poll_interval)
        self._settings_commands = tuple(tuple(command) for command in settings_commands)
        self._watch_thread: threading.Thread | None = None
        self._watch_stop_event: threading.Event | None = None

    def _run(self, args: Sequence[str], *, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                list(args),
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout if timeout is None else timeout,
            )
        except FileNotFoundError as exc:
            raise AdapterError(f"{args[0]} command unavailable", transient=False) from exc
        except subprocess.TimeoutExpired as exc:
            raise AdapterError(f"{args[0]} command timed out", transient=True) from exc

    def _read_permissions(self) -> dict[str, str]:
        completed = self._run(["nmcli", "-t", "-f", "PERMISSION,VALUE", "general", "permissions"])
        if completed.returncode != 0:
            message = (completed.stderr or completed.stdout or "").strip()
            raise AdapterError(
                message or "Unable to read NetworkManager permissions",
                code=completed.returncode,
                domain="nmcli",
            )
        values: dict[str, str] = {}
        for line in completed.stdout.splitlines():
            if not line.strip():
                continue
            parts = split_terse_fields(line)
            if len(parts) < 2:
                continue
            values[parts[0].strip()] = parts[1].strip().lower()
        return values

    def status(self) -> PermissionStatus:
        try:
            values = self._read_permissions()
        except AdapterError as exc:
            logging.getLogger(__name__).info("Unable to query Wi-Fi permissions: %s", exc)
            return PermissionStatus.RESTRICTED
        result = PermissionStatus.AUTHORIZED
        for permission in self._permissions:
            value = values.get(permission)
            if value is None:
                return PermissionStatus.RESTRICTED
            if value == "no":
                return PermissionStatus.DENIED
            if value != "yes":
                # "auth": polkit will ask the user.
                result = PermissionStatus.NOT_DETERMINED
        return result

    def _pkcheck(self, timeout: float) -> bool:
        for permission in self._permissions:
            completed = self._run(
                [
                    "pkcheck",
                    "--action-id",
                    permission,
                    "--process",
                    str(os.getpid()),
                    "--allow-user-interaction",
                ],
                timeout=timeout,
            )
            if completed.returncode != 0:
                return False
        return True

    async def _await_decision(self) -> bool:
        loop = asyncio.get_running_loop()
        current = await loop.run_in_executor(None, self.status)
        if current is PermissionStatus.AUTHORIZED:
            return self._observe(current) is PermissionStatus.AUTHORIZED
        if current is not PermissionStatus.NOT_DETERMINED:
            self._observe(current)
            return False
        try:
            granted = await loop.run_in_executor(None, self._pkcheck, self._timeout)
        except AdapterError as exc:
            logging.getLogger(__name__).info("Interactive authorization failed: %s", exc)
            granted = False
        if granted:
            self._observe(PermissionStatus.AUTHORIZED)
        return granted

    def open_settings_panel(self) -> None:
        launch_first_available(self._settings_commands)

    # ------------------------------ watching -------------------------------
    def start_watching(self) -> None:
        """Poll permissions in the background so grants reach subscribers."""

        if self._watch_thread and self._watch_thread.is_alive():
            return
        stop_event = threading.Event()
        self._watch_stop_event = stop_event

        def _run() -> None:
            while not stop_event.is_set():
                try:
                    self._observe(self.status())
                except Exception:  # pragma: no cover - defensive logging
                    logging.getLogger(__name__).exception("Permission watcher error")
                if stop_event.wait(self._poll_interval):
                    break

        thread = threading.Thread(target=_run, name="wifi-permission-watch", daemon=True)
        self._watch_thread = thread
        thread.start()

    def stop_watching(self) -> None:
        stop_event = self._watch_stop_event
        thread = self._watch_thread
        if stop_event is None or thread is None:
            return
        stop_event.set()
        thread.join(timeout=5.0)
        self._watch_thread = None
        self._watch_stop_event = None

    def close(self) -> None:
        self.stop_watching()


def fixed_prompt(open_settings: bool) -> PermissionPrompt:
    """Return a prompt that always gives the same answer."""

    def _prompt(credential: Credential) -> bool:
        del credential
        return open_settings

    return _prompt


__all__ = [
    "AlwaysAuthorizedGate",
    "NETWORK_CONTROL_PERMISSION",
    "NMCLIPermissionGate",
    "PermissionGate",
    "PermissionListener",
    "PermissionPrompt",
    "PermissionStatus",
    "fixed_prompt",
]
