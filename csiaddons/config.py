"""Controller settings that can be overridden through a ConfigMap."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction

from csiaddons.kube import ApiError, KubeClient

CONFIG_MAP_NAME = "csi-addons-config"
RECLAIM_SPACE_TIMEOUT_KEY = "reclaim-space-timeout"
MAX_CONCURRENT_RECONCILES_KEY = "max-concurrent-reconciles"
DEFAULT_NAMESPACE = "csi-addons-system"
DEFAULT_MAX_CONCURRENT_RECONCILES = 100
DEFAULT_RECLAIM_SPACE_TIMEOUT = timedelta(minutes=3)

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_PART = re.compile(r"([0-9]*(?:\.[0-9]*)?)(ns|us|µs|μs|ms|s|m|h)")
_INTEGER = re.compile(r"[+-]?[0-9]+")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"300ms"`` or ``"-1.5s"``."""
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'invalid duration "{text}"')

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _PART.match(rest, pos)
        if match is None or not any(ch.isdigit() for ch in match.group(1)):
            raise ValueError(f'invalid duration "{text}"')
        total += Fraction(match.group(1)) * _UNIT_NANOS[match.group(2)]
        pos = match.end()

    nanos = int(total)
    if negative:
        nanos = -nanos
    return timedelta(microseconds=nanos / 1000)


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f'invalid syntax "{text}"')
    return int(text)


@dataclass
class Config:
    """Options of the controller, with their defaults."""

    namespace: str = DEFAULT_NAMESPACE
    reclaim_space_timeout: timedelta = DEFAULT_RECLAIM_SPACE_TIMEOUT
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    def read_config_map(self, kube_client: KubeClient) -> None:
        """Update the options from the ConfigMap; a missing ConfigMap is ignored."""
        try:
            config_map = kube_client.read_config_map(self.namespace, CONFIG_MAP_NAME)
        except ApiError as exc:
            if exc.is_not_found:
                return
            raise RuntimeError(
                f'failed to get configmap "{CONFIG_MAP_NAME}": {exc}'
            ) from exc
        self.read_config(config_map.get("data"))

    def read_config(self, data: Mapping[str, str] | None) -> None:
        """Update the options from a key/value mapping."""
        for key, value in (data or {}).items():
            if key == RECLAIM_SPACE_TIMEOUT_KEY:
                try:
                    self.reclaim_space_timeout = parse_duration(value)
                except ValueError as exc:
                    raise ValueError(
                        f'failed to parse key "{key}" value "{value}" as duration: {exc}'
                    ) from exc
            elif key == MAX_CONCURRENT_RECONCILES_KEY:
                try:
                    self.max_concurrent_reconciles = _parse_int(value)
                except ValueError as exc:
                    raise ValueError(
                        f'failed to parse key "{key}" value "{value}" as int: {exc}'
                    ) from exc
            else:
                raise ValueError(f'unknown config key "{key}"')