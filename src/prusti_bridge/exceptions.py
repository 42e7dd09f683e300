"""Exception types raised by prusti-bridge."""

from __future__ import annotations


class NeverThrown(RuntimeError):
    """Raised when a code path that should be unreachable is reached.

    The optional env payload describes the offending values; it is carried for
    logging only.
    """

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})

    def __str__(self) -> str:
        base = super().__str__()
        if not self.env:
            return base
        details = ", ".join(f"{key}={value!r}" for key, value in self.env.items())
        return f"{base} ({details})"


class ServerError(RuntimeError):
    """A supervised server broke a lifecycle invariant or died before becoming ready."""

    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name

    def __str__(self) -> str:
        return f"[{self.name}] {super().__str__()}"
