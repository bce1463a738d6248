"""Tagged result values returned by side-effecting collaborators."""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome with a machine-readable kind and optional detail."""

    kind: str
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
