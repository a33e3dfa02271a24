"""Explicit status transition tables shared by the billing aggregates."""
from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, TypeVar

from domain.common.exceptions import InvalidStatusTransitionException

S = TypeVar("S", bound=Enum)


def transition_table(status_cls: type[S], table: dict[S, set[S]]) -> Mapping[S, frozenset[S]]:
    """Freeze a transition table, requiring an entry for every member of ``status_cls``."""
    missing = [member.value for member in status_cls if member not in table]
    if missing:
        raise ValueError(f"{status_cls.__name__} transition table misses {missing}")
    return MappingProxyType({status: frozenset(targets) for status, targets in table.items()})


def ensure_transition(entity: str, table: Mapping[S, frozenset[S]], current: S, target: S) -> None:
    if target not in table[current]:
        raise InvalidStatusTransitionException(entity, current.value, target.value)
