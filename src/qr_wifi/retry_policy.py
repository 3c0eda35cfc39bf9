"""Retry classification and backoff timing for network association."""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import Iterable

from .wifi import EBUSY, AdapterError

# Native codes reported by the macOS wireless stack that clear up on retry.
COREWLAN_RETRYABLE_CODES = frozenset(
    {
        EBUSY,
        -3900,  # generic error
        -3901,  # no memory
        -3902,  # unknown error
        -3903,  # not supported
        -3904,  # invalid parameter
        -3905,  # no such property
        -3906,  # no such SSID
        -3913,  # operation not permitted
        -3924,  # interface powered off
    }
)
COREWLAN_ERROR_DOMAIN = "com.apple.wifi.apple80211API.error"
COREWLAN_DOMAIN_FRAGMENT = "CoreWLAN"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Decide whether an adapter failure is transient.

    An adapter that sets :attr:`AdapterError.transient` has already mapped
    its native code; otherwise the closed allow-lists below apply and
    anything unlisted is fatal on first occurrence.
    """

    retryable_codes: frozenset[int] = COREWLAN_RETRYABLE_CODES
    retryable_domains: frozenset[str] = frozenset({COREWLAN_ERROR_DOMAIN})
    retryable_domain_fragments: tuple[str, ...] = (COREWLAN_DOMAIN_FRAGMENT,)
    busy_codes: frozenset[int] = frozenset({EBUSY})

    def is_retryable(self, error: BaseException) -> bool:
        if not isinstance(error, AdapterError):
            return False
        if error.transient is not None:
            return error.transient
        if error.busy:
            return True
        if error.code is not None and error.code in self.retryable_codes:
            return True
        domain = error.domain or ""
        if domain in self.retryable_domains:
            return True
        return any(fragment in domain for fragment in self.retryable_domain_fragments if fragment)

    def is_busy(self, error: BaseException) -> bool:
        if not isinstance(error, AdapterError):
            return False
        return error.busy or (error.code is not None and error.code in self.busy_codes)

    def extend(
        self,
        *,
        codes: Iterable[int] = (),
        domains: Iterable[str] = (),
    ) -> "RetryPolicy":
        """Return a copy with additional retryable codes and domains."""

        extra_codes = frozenset(int(code) for code in codes)
        extra_domains = frozenset(str(domain) for domain in domains if str(domain).strip())
        if not extra_codes and not extra_domains:
            return self
        return replace(
            self,
            retryable_codes=self.retryable_codes | extra_codes,
            retryable_domains=self.retryable_domains | extra_domains,
        )


@dataclass(frozen=True, slots=True)
class BackoffSchedule:
    """Delays between scan and association retries."""

    initial_delay: float = 0.5
    jitter_ratio: float = 0.3
    scan_step: float = 0.2

    def association_delay(self, retry: int, rng: random.Random | None = None) -> float:
        """Return the pause before association retry ``retry`` (1-based).

        The base doubles per retry and jitter is drawn from
        ``[0, jitter_ratio * base]``, so delays strictly increase as long as
        ``jitter_ratio < 1``.
        """

        if retry < 1:
            raise ValueError("retry must be 1 or greater")
        base = self.initial_delay * (2 ** (retry - 1))
        source = rng if rng is not None else random
        jitter = source.uniform(0.0, self.jitter_ratio * base)
        return base + jitter

    def scan_delay(self, scan_attempt: int, association_retry: int) -> float:
        return self.scan_step * (scan_attempt + association_retry)


__all__ = [
    "BackoffSchedule",
    "COREWLAN_ERROR_DOMAIN",
    "COREWLAN_RETRYABLE_CODES",
    "RetryPolicy",
]
