from __future__ import annotations

from collections.abc import Callable

from .client import _reset_clients_for_tests
from .mocks import ANY, FakeDynamoDBClient, client_error


def no_sleep(_: float) -> None:
    return None


def recording_sleep() -> tuple[list[float], Callable[[float], None]]:
    """A sleep stand-in that records requested delays instead of waiting."""
    delays: list[float] = []

    def sleep(seconds: float) -> None:
        delays.append(seconds)

    return delays, sleep


def reset_clients() -> None:
    _reset_clients_for_tests()


__all__ = [
    "ANY",
    "FakeDynamoDBClient",
    "client_error",
    "no_sleep",
    "recording_sleep",
    "reset_clients",
]
