"""
Explicit asynchronous outcome types.

Engine and network calls return ``Ok(value)`` or ``Err(error)`` instead of
invoking success callbacks, so compile-then-execute is plain sequencing::

    result = await adapter.compile(config)
    if not result.ok:
        ...
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .errors import LabError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: LabError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
