"""
Read-only verification pass - re-reads the store and checks that applied
values are what they should be.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .mutator import KeyLike, as_key
from .schema import ConfigKey, ValueKind
from .store import KeyValueStore
from .tiers import Guard, MutationStep, StepAction, Tier, evaluate_guard
from ..util.logging import StructuredLogger


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


@dataclass
class Expectation:
    """Value `name` under `key` should equal `expected`; None means it should be absent."""
    key: ConfigKey
    name: str
    expected: Any = None
    kind: Optional[ValueKind] = None
    guard: Guard = None

    def __post_init__(self):
        self.key = as_key(self.key)
        if self.kind is not None:
            self.kind = ValueKind(self.kind)

    @property
    def label(self) -> str:
        return f"{self.key}\\{self.name}"


@dataclass
class CheckResult:
    label: str
    status: CheckStatus
    expected: Any = None
    actual: Any = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "status": self.status.value,
            "expected": _printable(self.expected),
            "actual": _printable(self.actual),
            "message": self.message,
        }


@dataclass
class VerificationReport:
    checks: List[CheckResult] = field(default_factory=list)

    def _count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def passed(self) -> int:
        return self._count(CheckStatus.PASS)

    @property
    def failed(self) -> int:
        return self._count(CheckStatus.FAIL)

    @property
    def skipped(self) -> int:
        return self._count(CheckStatus.SKIP)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "checks": [c.to_dict() for c in self.checks],
        }


def _printable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


def _matches(expected: Any, actual: Any) -> bool:
    if isinstance(expected, (list, tuple)) and isinstance(actual, (list, tuple)):
        return list(expected) == list(actual)
    if isinstance(expected, (bytes, bytearray)) and isinstance(actual, (bytes, bytearray)):
        return bytes(expected) == bytes(actual)
    return expected == actual


def check(store: KeyValueStore, expectation: Expectation) -> CheckResult:
    label = expectation.label
    try:
        if not evaluate_guard(expectation.guard):
            return CheckResult(label, CheckStatus.SKIP, expectation.expected, message="guard not satisfied")
    except Exception as e:
        return CheckResult(label, CheckStatus.FAIL, expectation.expected, message=f"Guard raised: {e}")

    found = store.get(expectation.key, expectation.name)

    if expectation.expected is None:
        if found is None:
            return CheckResult(label, CheckStatus.PASS)
        return CheckResult(label, CheckStatus.FAIL, None, found.data, "value should be absent")

    if found is None:
        return CheckResult(label, CheckStatus.FAIL, expectation.expected, None, "value missing")

    if expectation.kind is not None and found.kind != expectation.kind:
        return CheckResult(label, CheckStatus.FAIL, expectation.expected, found.data,
                           f"kind is {found.kind.value}, expected {expectation.kind.value}")

    if not _matches(expectation.expected, found.data):
        return CheckResult(label, CheckStatus.FAIL, expectation.expected, found.data, "value differs")

    return CheckResult(label, CheckStatus.PASS, expectation.expected, found.data)


def verify(store: KeyValueStore, expectations: Sequence[Expectation],
           logger: Optional[StructuredLogger] = None) -> VerificationReport:
    """Check every expectation. Never writes to the store."""
    report = VerificationReport()
    for expectation in expectations:
        result = check(store, expectation)
        report.checks.append(result)
        if logger and result.status == CheckStatus.FAIL:
            logger.warning(f"Verification failed for {result.label}: {result.message}")

    if logger:
        logger.log_operation("verify", "success" if report.success else "failed", {
            "passed": report.passed,
            "failed": report.failed,
            "skipped": report.skipped,
        })
    return report


def expectations_from_tiers(tiers: Sequence[Tier]) -> List[Expectation]:
    """Expected end state of every key step in enabled tiers.

    A later step on the same value supersedes an earlier one. ActionSteps have
    no readable end state and are left out.
    """
    latest: Dict[tuple, Expectation] = {}
    for tier in tiers:
        if not tier.enabled:
            continue
        for step in tier.steps:
            if not isinstance(step, MutationStep):
                continue
            ident = (step.target, step.name.lower())
            if step.action == StepAction.REMOVE:
                latest[ident] = Expectation(step.target, step.name, None, guard=step.guard)
            else:
                latest[ident] = Expectation(step.target, step.name, step.value, step.kind, guard=step.guard)
    return list(latest.values())


def expect(key: KeyLike, name: str, expected: Any = None, **options) -> Expectation:
    return Expectation(as_key(key), name, expected, **options)
