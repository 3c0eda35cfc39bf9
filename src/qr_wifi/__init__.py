"""QRWiFi package: join Wi-Fi networks advertised by QR codes."""

from typing import Any

from .credentials import Credential, parse_wifi_payload
from .engine import AssociationEngine, AssociationError, AttemptOutcome, ErrorKind
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "AssociationEngine",
    "AssociationError",
    "AttemptOutcome",
    "Credential",
    "ErrorKind",
    "create_app",
    "parse_wifi_payload",
]
