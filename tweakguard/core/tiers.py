"""
Tier definitions - named, independently gated groups of mutation steps.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from .mutator import KeyLike, as_key
from .schema import ConfigKey, ValueKind

# A guard is a precomputed boolean from a detection collaborator, a
# zero-argument predicate, or None for "always run".
Guard = Union[bool, Callable[[], bool], None]


class StepAction(str, Enum):
    SET = "set"
    REMOVE = "remove"


class TierRisk(str, Enum):
    SAFE = "safe"
    CAUTION = "caution"
    RISKY = "risky"
    LUDICROUS = "ludicrous"

    @property
    def priority(self) -> int:
        return RISK_PRIORITY[self]


RISK_PRIORITY = {
    TierRisk.SAFE: 0,
    TierRisk.CAUTION: 1,
    TierRisk.RISKY: 2,
    TierRisk.LUDICROUS: 3,
}


def evaluate_guard(guard: Guard) -> bool:
    """Resolve a guard to a boolean. Predicates may raise; callers handle that."""
    if guard is None:
        return True
    if callable(guard):
        return bool(guard())
    return bool(guard)


@dataclass
class MutationStep:
    """One desired write or removal of a named value under a key."""
    target: ConfigKey
    name: str
    value: Any = None
    kind: ValueKind = ValueKind.DWORD
    action: StepAction = StepAction.SET
    skip_backup: bool = False
    guard: Guard = None
    fatal: bool = False
    reboot_reason: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        self.target = as_key(self.target)
        self.kind = ValueKind(self.kind)
        self.action = StepAction(self.action)

    @property
    def label(self) -> str:
        return self.description or f"{self.action.value} {self.target}\\{self.name}"


@dataclass
class ActionStep:
    """A non-key side effect (service change, boot flag) run inside a tier.

    The callable reports failure by returning a falsy value or raising;
    returning None counts as success.
    """
    name: str
    action: Callable[[], Any]
    guard: Guard = None
    fatal: bool = False
    reboot_reason: Optional[str] = None
    description: str = ""

    @property
    def label(self) -> str:
        return self.description or self.name


Step = Union[MutationStep, ActionStep]


@dataclass
class Tier:
    name: str
    steps: List[Step] = field(default_factory=list)
    enabled: bool = False
    risk: TierRisk = TierRisk.SAFE
    description: str = ""

    def __post_init__(self):
        self.risk = TierRisk(self.risk)

    def keys(self) -> List[ConfigKey]:
        """Distinct keys touched by this tier, in step order."""
        seen = []
        for step in self.steps:
            if isinstance(step, MutationStep) and step.target not in seen:
                seen.append(step.target)
        return seen


def set_step(key: KeyLike, name: str, value: Any, kind: Union[ValueKind, str] = ValueKind.DWORD, **options) -> MutationStep:
    return MutationStep(as_key(key), name, value, ValueKind(kind), StepAction.SET, **options)


def remove_step(key: KeyLike, name: str, **options) -> MutationStep:
    return MutationStep(as_key(key), name, action=StepAction.REMOVE, **options)


def risk_profile(tiers: List[Tier]) -> TierRisk:
    """Highest risk among enabled tiers; SAFE when none are enabled."""
    highest = TierRisk.SAFE
    for tier in tiers:
        if tier.enabled and tier.risk.priority > highest.priority:
            highest = tier.risk
    return highest


def restore_point_recommended(tiers: List[Tier]) -> bool:
    """True when any enabled tier is CAUTION or riskier."""
    return risk_profile(tiers).priority >= TierRisk.CAUTION.priority
