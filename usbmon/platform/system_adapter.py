"""ISystemAdapter interface — abstraction for subprocess calls."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ISystemAdapter(ABC):
    @abstractmethod
    def run_command(self, args: list[str], timeout: float = 1.0) -> CommandResult: ...
