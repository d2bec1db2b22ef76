from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar, Union

from warden.service.errors import AuthErrorKind, ServiceError, error_for_kind

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    kind: AuthErrorKind
    detail: dict = field(default_factory=dict)
    retry_after: int = 0

    @property
    def ok(self) -> bool:
        return False

    def to_error(self) -> ServiceError:
        return error_for_kind(self.kind, detail=self.detail, retry_after=self.retry_after)

    def unwrap(self):
        raise self.to_error()


Result = Union[Ok[T], Err]


def unwrap(result: "Result[T]") -> T:
    """Return the success value or raise the mapped ServiceError."""
    return result.unwrap()


def err_kind(result: "Result[T]") -> Optional[AuthErrorKind]:
    return result.kind if isinstance(result, Err) else None


__all__ = ["Err", "Ok", "Result", "err_kind", "unwrap"]
