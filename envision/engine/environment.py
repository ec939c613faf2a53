"""Environment accessors: read, set and unset the live variable set.

The engine never touches ``os.environ`` directly. A child process cannot
change its parent shell, so ``ShellEnvironment`` applies each mutation to
its own view and queues the equivalent shell statement; the command line
prints the queue on stdout for the shell hook to evaluate.
"""
from __future__ import annotations

import logging
import os
import shlex
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping

from .errors import ReadonlyVariableError

logger = logging.getLogger(__name__)


class EnvironmentAccessor(ABC):
    """Abstract view over one process environment."""

    def __init__(self, readonly: Iterable[str] = ()) -> None:
        self._readonly = frozenset(readonly)

    def is_readonly(self, name: str) -> bool:
        return name in self._readonly

    @abstractmethod
    def items(self) -> dict[str, str]:
        """Copy of every live name/value pair."""

    def get(self, name: str) -> str | None:
        return self.items().get(name)

    def set(self, name: str, value: str) -> None:
        if self.is_readonly(name):
            raise ReadonlyVariableError(name, "set")
        self._set(name, value)

    def unset(self, name: str) -> None:
        if self.is_readonly(name):
            raise ReadonlyVariableError(name, "unset")
        self._unset(name)

    @abstractmethod
    def _set(self, name: str, value: str) -> None: ...

    @abstractmethod
    def _unset(self, name: str) -> None: ...

    def copy(self) -> InMemoryEnvironment:
        """Detached in-memory copy with the same readonly set (dry runs)."""
        return InMemoryEnvironment(self.items(), readonly=self._readonly)


class InMemoryEnvironment(EnvironmentAccessor):
    """Plain dict-backed environment."""

    def __init__(
        self,
        initial: Mapping[str, str] | None = None,
        readonly: Iterable[str] = (),
    ) -> None:
        super().__init__(readonly)
        self._values: dict[str, str] = dict(initial or {})

    def items(self) -> dict[str, str]:
        return dict(self._values)

    def get(self, name: str) -> str | None:
        return self._values.get(name)

    def _set(self, name: str, value: str) -> None:
        self._values[name] = value

    def _unset(self, name: str) -> None:
        self._values.pop(name, None)


def export_statement(name: str, value: str) -> str:
    return f"export {name}={shlex.quote(value)}"


def unset_statement(name: str) -> str:
    return f"unset {name}"


class ShellEnvironment(InMemoryEnvironment):
    """The invoking shell's environment.

    Reads start from ``environ`` (``os.environ`` by default). Mutations
    update this view and queue an ``export``/``unset`` statement; nothing
    reaches the shell until ``render_statements()`` output is evaluated.
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        readonly: Iterable[str] = (),
    ) -> None:
        super().__init__(os.environ if environ is None else environ, readonly)
        self._statements: list[str] = []

    @property
    def pending(self) -> list[str]:
        return list(self._statements)

    def _set(self, name: str, value: str) -> None:
        super()._set(name, value)
        self._statements.append(export_statement(name, value))
        logger.debug("Queued export of %s", name)

    def _unset(self, name: str) -> None:
        super()._unset(name)
        self._statements.append(unset_statement(name))
        logger.debug("Queued unset of %s", name)

    def render_statements(self) -> str:
        """Queued statements as an evaluable script, then clear the queue."""
        if not self._statements:
            return ""
        script = "\n".join(self._statements) + "\n"
        self._statements.clear()
        return script
