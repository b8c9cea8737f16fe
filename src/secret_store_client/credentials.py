"""Opaque holder for secret strings (API keys, tokens, secret values).

Usage example:
    from secret_store_client.credentials import Credential

    token = Credential("s3cr3t")
    print(token)              # Credential(****)
    header = token.reveal()   # explicit access only
    token.wipe()              # zero the backing buffer
"""

from __future__ import annotations

from types import TracebackType
from typing import NoReturn, Self

_MASK = "Credential(****)"


class CredentialWipedError(RuntimeError):
    """Raised when a wiped credential is revealed."""

    def __init__(self) -> None:
        super().__init__("Credential has been wiped and can no longer be revealed.")


class Credential:
    """Secret string stored in a mutable buffer that is zeroed on drop.

    The value is never part of ``repr``/``str``/format output and is only
    reachable through :meth:`reveal`.
    """

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, value: str | bytes | bytearray) -> None:
        if isinstance(value, str):
            self._buffer = bytearray(value.encode("utf-8"))
        else:
            self._buffer = bytearray(value)
        self._wiped = False

    @classmethod
    def coerce(cls, value: Credential | str | bytes) -> Credential:
        if isinstance(value, Credential):
            return value
        return cls(value)

    def reveal(self) -> str:
        """Return the secret as text."""
        if self._wiped:
            raise CredentialWipedError()
        return self._buffer.decode("utf-8")

    def reveal_bytes(self) -> bytes:
        if self._wiped:
            raise CredentialWipedError()
        return bytes(self._buffer)

    def wipe(self) -> None:
        """Overwrite the backing memory with zeros."""
        for index in range(len(self._buffer)):
            self._buffer[index] = 0
        self._wiped = True

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def __len__(self) -> int:
        return len(self._buffer)

    def __bool__(self) -> bool:
        return not self._wiped and len(self._buffer) > 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Credential):
            return NotImplemented
        return self._wiped == other._wiped and self._buffer == other._buffer

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return _MASK

    __str__ = __repr__

    def __format__(self, format_spec: str) -> str:
        return _MASK

    def __reduce__(self) -> NoReturn:
        raise TypeError("Credential objects cannot be pickled.")

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.wipe()

    def __del__(self) -> None:
        buffer = getattr(self, "_buffer", None)
        if buffer is not None:
            for index in range(len(buffer)):
                buffer[index] = 0
