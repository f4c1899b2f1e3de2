"""Typed step outcomes for the deployment pipeline.

Components never terminate the process. They return a `StepResult` and the
orchestrator decides what to do with the first failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    INPUT = "input"
    SYNC = "sync"
    CONNECTION = "connection"
    PROVISION = "provision"
    TRANSFER = "transfer"
    LIFECYCLE = "lifecycle"
    PROXY = "proxy"
    VALIDATION = "validation"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class StepResult:
    step: str
    ok: bool
    message: str
    failure_kind: FailureKind | None = None
    detail: str = ""

    @classmethod
    def success(cls, step: str, message: str, *, detail: str = "") -> StepResult:
        return cls(step=step, ok=True, message=message, detail=detail)

    @classmethod
    def failure(cls, step: str, kind: FailureKind, message: str, *, detail: str = "") -> StepResult:
        return cls(step=step, ok=False, message=message, failure_kind=kind, detail=detail)

    def format(self) -> str:
        if self.ok:
            return f"[{self.step}] {self.message}"
        return f"ERROR [{self.step}/{self.failure_kind.value}] {self.message}"
