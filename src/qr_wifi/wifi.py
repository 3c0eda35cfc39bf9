"""Wi-Fi scanning and association backends for QRWiFi."""

from __future__ import annotations

import errno
import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Sequence


EBUSY = errno.EBUSY

NMCLI_ERROR_DOMAIN = "nmcli"

# nmcli exit statuses (see nmcli(1), "EXIT STATUS").
NMCLI_EXIT_UNKNOWN = 1
NMCLI_EXIT_INVALID_INPUT = 2
NMCLI_EXIT_TIMEOUT = 3
NMCLI_EXIT_ACTIVATION_FAILED = 4
NMCLI_EXIT_NOT_RUNNING = 8
NMCLI_EXIT_NOT_FOUND = 10

_NMCLI_TRANSIENT_EXIT_CODES = frozenset(
    {
        NMCLI_EXIT_UNKNOWN,
        NMCLI_EXIT_TIMEOUT,
        NMCLI_EXIT_ACTIVATION_FAILED,
        NMCLI_EXIT_NOT_RUNNING,
        NMCLI_EXIT_NOT_FOUND,
    }
)

DEFAULT_NETWORK_SETTINGS_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("gnome-control-center", "wifi"),
    ("nm-connection-editor",),
    ("systemsettings", "kcm_networkmanagement"),
)


class WiFiError(RuntimeError):
    """Raised when Wi-Fi operations fail."""


class AdapterError(WiFiError):
    """Raised by a backend or permission gate with a classifiable cause.

    ``code`` and ``domain`` identify the native error. Backends that know
    whether a failure is worth retrying set ``transient``; ``busy`` marks the
    "resource busy" condition that warrants an immediate rescan.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        domain: str = "",
        transient: bool | None = None,
        busy: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.domain = domain
        self.transient = transient
        self.busy = busy

    def to_dict(self) -> dict[str, object | None]:
        return {
            "message": str(self),
            "code": self.code,
            "domain": self.domain or None,
            "transient": self.transient,
            "busy": self.busy,
        }


def _channel_from_frequency(freq_mhz: float | None) -> int | None:
    """Best-effort conversion from MHz to Wi-Fi channel numbers."""

    if freq_mhz is None or freq_mhz <= 0:
        return None
    # IEEE 802.11 2.4 GHz channels use a 5 MHz spacing starting at 2412 MHz.
    if 2400 <= freq_mhz <= 2500:
        if round(freq_mhz) == 2484:
            return 14
        channel = int(round((freq_mhz - 2407) / 5))
        if 1 <= channel <= 13:
            return channel
        return None
    if 4900 <= freq_mhz <= 5900:
        channel = int(round((freq_mhz - 5000) / 5))
        return channel if channel > 0 else None
    # 6 GHz channels start at 5955 MHz (channel 1).
    if 5925 <= freq_mhz <= 7125:
        channel = int(round((freq_mhz - 5950) / 5))
        return channel if channel > 0 else None
    return None


@dataclass(slots=True)
class WiFiNetwork:
    """Represents a Wi-Fi network discovered during a scan."""

    ssid: str
    signal: int | None = None
    security: str | None = None
    bssid: str | None = None
    frequency: float | None = None
    channel: int | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "ssid": self.ssid,
            "signal": self.signal,
            "security": self.security,
            "bssid": self.bssid,
            "frequency": self.frequency,
            "channel": self.channel,
        }


class WiFiBackend:
    """Abstract interface for the Wi-Fi subsystem.

    Implementations block; the association engine runs them on its own
    worker thread so only one call reaches the interface at a time.
    """

    def has_interface(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def scan(self, ssid: str) -> Sequence[WiFiNetwork]:  # pragma: no cover - interface only
        raise NotImplementedError

    def associate(self, network: WiFiNetwork, secret: str | None) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def open_network_settings(self) -> None:  # pragma: no cover - optional hook
        """Open the desktop's network preferences when available."""

        return None


def launch_first_available(commands: Sequence[Sequence[str]]) -> bool:
    """Start the first command found on ``PATH`` without waiting for it."""

    logger = logging.getLogger(__name__)
    for command in commands:
        if not command or shutil.which(command[0]) is None:
            continue
        try:
            subprocess.Popen(
                list(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.debug("Unable to launch %s: %s", command[0], exc)
            continue
        logger.info("Launched %s", " ".join(command))
        return True
    logger.warning("No settings application available to launch")
    return False


def split_terse_fields(line: str) -> list[str]:
    """Split an ``nmcli -t`` line on unescaped colons.

    nmcli escapes literal backslashes and colons inside values, which matters
    for BSSIDs (``AA\\:BB\\:...``) and SSIDs containing colons.
    """

    fields: list[str] = []
    current: list[str] = []
    index = 0
    length = len(line)
    while index < length:
        char = line[index]
        if char == "\\" and index + 1 < length:
            current.append(line[index + 1])
            index += 2
            continue
        if char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
        index += 1
    fields.append("".join(current))
    return fields


def _is_busy_message(message: str) -> bool:
    lowered = message.lower()
    return "busy" in lowered or "already scanning" in lowered or "scan in progress" in lowered


def _is_secret_failure(message: str) -> bool:
    lowered = message.lower()
    return any(
        token in lowered
        for token in (
            "secrets were required",
            "no secrets",
            "invalid password",
            "802-1x supplicant",
            "key-mgmt",
        )
    )


def _is_not_authorized(message: str) -> bool:
    lowered = message.lower()
    return "not authorized" in lowered or "not authorised" in lowered


class NMCLIBackend(WiFiBackend):
    """Interact with NetworkManager via nmcli commands."""

    def __init__(
        self,
        interface: str | None = None,
        *,
        timeout: float = 30.0,
        settings_commands: Sequence[Sequence[str]] = DEFAULT_NETWORK_SETTINGS_COMMANDS,
    ) -> None:
        self._preferred_interface = interface
        self._timeout = timeout
        self._settings_commands = tuple(tuple(command) for command in settings_commands)
        self._detected_interface: str | None = None

    # ------------------------------- helpers -------------------------------
    def _run(self, args: Sequence[str]) -> str:
        try:
            completed = subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:  # pragma: no cover - environment specific
            raise AdapterError(
                "nmcli command unavailable",
                code=errno.ENOENT,
                domain=NMCLI_ERROR_DOMAIN,
                transient=False,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise AdapterError(
                "nmcli command timed out",
                code=NMCLI_EXIT_TIMEOUT,
                domain=NMCLI_ERROR_DOMAIN,
                transient=True,
            ) from exc
        except subprocess.CalledProcessError as exc:
            error_output = (exc.stderr or "").strip() or (exc.stdout or "").strip() or str(exc)
            raise self._classify_failure(error_output, exc.returncode) from exc
        return completed.stdout

    @staticmethod
    def _classify_failure(message: str, returncode: int) -> AdapterError:
        busy = _is_busy_message(message)
        if busy:
            return AdapterError(
                message, code=EBUSY, domain=NMCLI_ERROR_DOMAIN, transient=True, busy=True
            )
        if _is_not_authorized(message) or _is_secret_failure(message):
            transient = False
        else:
            transient = returncode in _NMCLI_TRANSIENT_EXIT_CODES
        return AdapterError(
            message, code=returncode, domain=NMCLI_ERROR_DOMAIN, transient=transient
        )

    def _detect_interface(self) -> str | None:
        if self._preferred_interface:
            return self._preferred_interface
        if self._detected_interface:
            return self._detected_interface
        output = self._run(["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"])
        for line in output.splitlines():
            if not line.strip():
                continue
            parts = split_terse_fields(line)
            if len(parts) < 3:
                continue
            device, dev_type, state = (part.strip() for part in parts[:3])
            if dev_type == "wifi" and state != "unavailable":
                self._detected_interface = device
                return device
        return None

    def _get_interface(self) -> str:
        interface = self._detect_interface()
        if interface is None:
            raise AdapterError(
                "No Wi-Fi interface detected",
                code=NMCLI_EXIT_NOT_FOUND,
                domain=NMCLI_ERROR_DOMAIN,
                transient=False,
            )
        return interface

    @staticmethod
    def _parse_network(line: str) -> WiFiNetwork | None:
        parts = split_terse_fields(line)
        while len(parts) < 5:
            parts.append("")
        bssid_raw, ssid_raw, signal_raw, security_raw, freq_raw = parts[:5]
        ssid = ssid_raw.strip()
        if not ssid:
            return None
        signal = None
        if signal_raw.strip():
            try:
                signal = int(float(signal_raw.strip()))
            except ValueError:
                signal = None
        frequency = None
        if freq_raw.strip():
            try:
                frequency = float(freq_raw.strip().split()[0])
            except ValueError:
                frequency = None
        return WiFiNetwork(
            ssid=ssid,
            signal=signal,
            security=security_raw.strip() or None,
            bssid=bssid_raw.strip() or None,
            frequency=frequency,
            channel=_channel_from_frequency(frequency),
        )

    # ---------------------------- interface impl ---------------------------
    def has_interface(self) -> bool:
        try:
            return self._detect_interface() is not None
        except AdapterError as exc:
            logging.getLogger(__name__).info("Wi-Fi interface lookup failed: %s", exc)
            return False

    def scan(self, ssid: str) -> Sequence[WiFiNetwork]:
        interface = self._get_interface()
        output = self._run(
            [
                "nmcli",
                "-t",
                "-f",
                "BSSID,SSID,SIGNAL,SECURITY,FREQ",
                "device",
                "wifi",
                "list",
                "ifname",
                interface,
                "--rescan",
                "yes",
            ]
        )
        networks: list[WiFiNetwork] = []
        for line in output.splitlines():
            if not line.strip():
                continue
            network = self._parse_network(line)
            if network is not None and network.ssid == ssid:
                networks.append(network)
        return networks

    def associate(self, network: WiFiNetwork, secret: str | None) -> None:
        interface = self._get_interface()
        args = ["nmcli", "device", "wifi", "connect", network.ssid]
        if secret:
            args.extend(["password", secret])
        args.extend(["ifname", interface])
        if network.bssid:
            args.extend(["bssid", network.bssid])
        self._run(args)

    def open_network_settings(self) -> None:
        launch_first_available(self._settings_commands)


__all__ = [
    "AdapterError",
    "DEFAULT_NETWORK_SETTINGS_COMMANDS",
    "EBUSY",
    "NMCLIBackend",
    "NMCLI_ERROR_DOMAIN",
    "WiFiBackend",
    "WiFiError",
    "WiFiNetwork",
    "launch_first_available",
    "split_terse_fields",
]
