"""Parse Wi-Fi QR payloads into network credentials.

QR codes advertising a network use the ``WIFI:`` text encoding::

    WIFI:S:<ssid>;T:<security>;P:<password>;;

Each field is ``key:value;``. Delimiters inside a value are escaped with a
backslash (``\\;``, ``\\:``, ``\\\\``). Payloads come straight from a camera, so
the parser treats its input as untrusted: it never raises, runs in a single
pass and allocates no more than the size of the input.
"""

from __future__ import annotations

from dataclasses import dataclass, field

WIFI_PREFIX = "WIFI:"
NO_PASSWORD_SECURITY = "nopass"

SSID_KEY = "S"
SECURITY_KEY = "T"
PASSWORD_KEY = "P"

# Generators also escape commas and double quotes (MECARD heritage).
_ESCAPABLE = frozenset(';:\\,"')
_FIELD_SEPARATOR = ";"
_KEY_SEPARATOR = ":"


@dataclass(frozen=True, slots=True)
class Credential:
    """Network credentials decoded from a single QR scan."""

    ssid: str
    secret: str | None = field(default=None, repr=False)
    security: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.ssid, str) or not self.ssid:
            raise ValueError("SSID must be a non-empty string")
        if self.secret is not None and not isinstance(self.secret, str):
            raise ValueError("Secret must be a string or None")
        if self.security is not None and not isinstance(self.security, str):
            raise ValueError("Security label must be a string or None")

    @property
    def requires_secret(self) -> bool:
        """Return ``True`` when the security label demands a secret."""

        return bool(self.security) and self.security != NO_PASSWORD_SECURITY

    @property
    def is_open(self) -> bool:
        return not self.requires_secret

    def describe(self) -> str:
        """Return a short human readable summary shown before connecting."""

        lines = [f"SSID: {self.ssid}"]
        if self.secret:
            lines.append(f"Password: {self.secret}")
        elif self.security == NO_PASSWORD_SECURITY:
            lines.append("Password: None (Open Network)")
        lines.append(f"Security: {self.security}" if self.security is not None else "Security: Unknown")
        return "\n".join(lines)

    def to_dict(self, *, include_secret: bool = False) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "ssid": self.ssid,
            "security": self.security,
            "has_secret": self.secret is not None,
            "requires_secret": self.requires_secret,
        }
        if include_secret:
            payload["secret"] = self.secret
        return payload


def _read_key(text: str, start: int) -> tuple[str | None, int]:
    """Return the key starting at ``start`` and the index after its colon.

    A field that reaches ``;`` before ``:`` has no key; ``None`` is returned
    with the index just past that separator so the caller can skip it.
    """

    index = start
    length = len(text)
    while index < length:
        char = text[index]
        if char == _KEY_SEPARATOR:
            return text[start:index], index + 1
        if char == _FIELD_SEPARATOR:
            return None, index + 1
        index += 1
    return None, length


def _read_value(text: str, start: int) -> tuple[str | None, int]:
    """Decode a field value up to the first unescaped separator.

    Escapes are resolved while copying, so decoded characters are never
    inspected again. Returns ``None`` when the value is not terminated.
    """

    decoded: list[str] = []
    index = start
    length = len(text)
    while index < length:
        char = text[index]
        if char == "\\" and index + 1 < length and text[index + 1] in _ESCAPABLE:
            decoded.append(text[index + 1])
            index += 2
            continue
        if char == _FIELD_SEPARATOR:
            return "".join(decoded), index + 1
        decoded.append(char)
        index += 1
    return None, length


def _iter_fields(text: str):
    index = len(WIFI_PREFIX)
    length = len(text)
    while index < length:
        if text[index] == _FIELD_SEPARATOR:
            # Second half of the ``;;`` terminator.
            return
        key, index = _read_key(text, index)
        if key is None:
            continue
        value, index = _read_value(text, index)
        if value is None:
            return
        yield key, value


def parse_wifi_payload(text: object) -> Credential | None:
    """Parse ``text`` into a :class:`Credential`.

    Returns ``None`` when the payload does not start with ``WIFI:`` or does
    not carry a non-empty SSID. Unknown keys are ignored and the first
    occurrence of a key wins.
    """

    if not isinstance(text, str) or not text.startswith(WIFI_PREFIX):
        return None
    values: dict[str, str] = {}
    for key, value in _iter_fields(text):
        if key in (SSID_KEY, SECURITY_KEY, PASSWORD_KEY) and key not in values:
            values[key] = value
    ssid = values.get(SSID_KEY)
    if not ssid:
        return None
    return Credential(
        ssid=ssid,
        secret=values.get(PASSWORD_KEY),
        security=values.get(SECURITY_KEY),
    )


__all__ = [
    "Credential",
    "NO_PASSWORD_SECURITY",
    "WIFI_PREFIX",
    "parse_wifi_payload",
]
