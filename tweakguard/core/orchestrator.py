"""
Tier orchestration - runs opt-in tiers of mutation steps in order and
aggregates per-step outcomes into a session report.

Failure isolation is per step: a failed step is logged and the next one
runs. Only a step marked fatal aborts its tier, and then the failure
propagates to the caller. Nothing is rolled back automatically; reverting
applied steps is the job of an explicit Undo.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .mutator import ConfigMutator
from .schema import ErrorKind, MutationResult, TweakGuardError
from .tiers import (
    MutationStep,
    Step,
    StepAction,
    Tier,
    TierRisk,
    evaluate_guard,
    restore_point_recommended,
    risk_profile,
)
from ..util.logging import StructuredLogger


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class TierStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    DISABLED = "disabled"
    NOT_RUN = "not_run"


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"


@dataclass
class StepRecord:
    """Result of executing one step."""
    tier: str
    index: int
    label: str
    outcome: StepOutcome
    error: Optional[ErrorKind] = None
    message: str = ""
    fatal: bool = False
    backup_artifact: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "index": self.index,
            "label": self.label,
            "outcome": self.outcome.value,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "fatal": self.fatal,
            "backup_artifact": self.backup_artifact,
        }


@dataclass
class TierReport:
    name: str
    status: TierStatus
    risk: TierRisk = TierRisk.SAFE
    records: List[StepRecord] = field(default_factory=list)

    def _count(self, outcome: StepOutcome) -> int:
        return sum(1 for r in self.records if r.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(StepOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(StepOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(StepOutcome.SKIPPED)

    @property
    def planned(self) -> int:
        return self._count(StepOutcome.PLANNED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "risk": self.risk.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "planned": self.planned,
            "steps": [r.to_dict() for r in self.records],
        }


@dataclass
class SessionReport:
    """Structured outcome of one apply run, for a CLI or UI to render."""
    session_id: str
    started_at: datetime
    state: SessionState = SessionState.RUNNING
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    tiers: List[TierReport] = field(default_factory=list)
    reboot_reasons: List[str] = field(default_factory=list)
    risk_profile: TierRisk = TierRisk.SAFE
    restore_point_recommended: bool = False

    @property
    def succeeded(self) -> int:
        return sum(t.succeeded for t in self.tiers)

    @property
    def failed(self) -> int:
        return sum(t.failed for t in self.tiers)

    @property
    def skipped(self) -> int:
        return sum(t.skipped for t in self.tiers)

    def tier(self, name: str) -> Optional[TierReport]:
        for report in self.tiers:
            if report.name == name:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "reboot_reasons": list(self.reboot_reasons),
            "risk_profile": self.risk_profile.value,
            "restore_point_recommended": self.restore_point_recommended,
            "tiers": [t.to_dict() for t in self.tiers],
        }


class FatalTierFailure(TweakGuardError):
    """A step marked fatal failed; its tier was aborted.

    Steps applied before the failure stay applied. `report` holds the
    partial session report.
    """

    def __init__(self, tier: str, record: StepRecord, report: SessionReport):
        super().__init__(f"Fatal step failed in tier '{tier}': {record.label}: {record.message}")
        self.tier = tier
        self.record = record
        self.report = report


class TierOrchestrator:
    """Runs tiers strictly in order, one step at a time.

    `cancel_event` is checked between steps, never during a write. Each
    `apply` starts with the event cleared, so one cancelled session does not
    cancel the next. With `dry_run` the guards are evaluated and steps are
    reported as PLANNED without touching the store.
    """

    def __init__(self, mutator: ConfigMutator, logger: StructuredLogger,
                 cancel_event: Optional[threading.Event] = None, dry_run: bool = False):
        self.mutator = mutator
        self.logger = logger
        self.cancel_event = cancel_event or threading.Event()
        self.dry_run = dry_run
        self.state = SessionState.IDLE
        self.position: Optional[Tuple[int, int]] = None

    def cancel(self):
        self.cancel_event.set()

    def apply(self, tiers: List[Tier]) -> SessionReport:
        """Run every enabled tier. Raises FatalTierFailure on a fatal step failure."""
        if self.state == SessionState.RUNNING:
            raise TweakGuardError("An apply session is already running")
        self.cancel_event.clear()

        report = SessionReport(
            session_id=str(uuid.uuid4()),
            started_at=datetime.now(timezone.utc),
            dry_run=self.dry_run,
            risk_profile=risk_profile(tiers),
            restore_point_recommended=restore_point_recommended(tiers),
        )
        self.state = SessionState.RUNNING
        self.mutator.begin_session()

        self.logger.log_operation("session", "started", {
            "session_id": report.session_id,
            "tiers": [t.name for t in tiers if t.enabled],
            "dry_run": self.dry_run,
            "risk_profile": report.risk_profile.value,
        })

        for tier_index, tier in enumerate(tiers):
            if self.state == SessionState.CANCELLED:
                report.tiers.append(TierReport(tier.name, TierStatus.NOT_RUN, tier.risk))
                continue

            if not tier.enabled:
                report.tiers.append(TierReport(tier.name, TierStatus.DISABLED, tier.risk))
                self.logger.log_tier(tier.name, "disabled")
                continue

            tier_report = self._run_tier(tier_index, tier, report)
            report.tiers.append(tier_report)

            if tier_report.status == TierStatus.ABORTED:
                fatal_record = tier_report.records[-1]
                for remaining in tiers[tier_index + 1:]:
                    report.tiers.append(TierReport(remaining.name, TierStatus.NOT_RUN, remaining.risk))
                self._finish(report, SessionState.ABORTED)
                raise FatalTierFailure(tier.name, fatal_record, report)

            if tier_report.status == TierStatus.CANCELLED:
                self.state = SessionState.CANCELLED

        if self.state == SessionState.CANCELLED:
            final = SessionState.CANCELLED
        elif any(t.status == TierStatus.COMPLETED_WITH_ERRORS for t in report.tiers):
            final = SessionState.COMPLETED_WITH_ERRORS
        else:
            final = SessionState.COMPLETED
        self._finish(report, final)
        return report

    def _finish(self, report: SessionReport, state: SessionState):
        self.state = state
        self.position = None
        report.state = state
        report.finished_at = datetime.now(timezone.utc)
        self.logger.log_operation("session", state.value, {
            "session_id": report.session_id,
            "succeeded": report.succeeded,
            "failed": report.failed,
            "skipped": report.skipped,
        })

    def _run_tier(self, tier_index: int, tier: Tier, report: SessionReport) -> TierReport:
        tier_report = TierReport(tier.name, TierStatus.COMPLETED, tier.risk)
        self.logger.log_tier(tier.name, "started", {"steps": len(tier.steps), "risk": tier.risk.value})

        for step_index, step in enumerate(tier.steps):
            if self.cancel_event.is_set():
                tier_report.status = TierStatus.CANCELLED
                self.logger.log_tier(tier.name, "cancelled", {"next_step": step_index})
                return tier_report

            self.position = (tier_index, step_index)
            record = self._run_step(tier, step_index, step)
            tier_report.records.append(record)

            if record.outcome == StepOutcome.SUCCEEDED and step.reboot_reason:
                if step.reboot_reason not in report.reboot_reasons:
                    report.reboot_reasons.append(step.reboot_reason)

            if record.outcome == StepOutcome.FAILED:
                if step.fatal:
                    tier_report.status = TierStatus.ABORTED
                    self.logger.log_tier(tier.name, "aborted", {"step": record.label})
                    return tier_report
                tier_report.status = TierStatus.COMPLETED_WITH_ERRORS

        self.logger.log_tier(tier.name, tier_report.status.value, {
            "succeeded": tier_report.succeeded,
            "failed": tier_report.failed,
            "skipped": tier_report.skipped,
        })
        return tier_report

    def _run_step(self, tier: Tier, index: int, step: Step) -> StepRecord:
        record = StepRecord(tier.name, index, step.label, StepOutcome.SUCCEEDED, fatal=step.fatal)

        try:
            allowed = evaluate_guard(step.guard)
        except Exception as e:
            record.outcome = StepOutcome.FAILED
            record.message = f"Guard raised: {e}"
            self.logger.log_step_failed(tier.name, step.label, record.message, step.fatal)
            return record

        if not allowed:
            record.outcome = StepOutcome.SKIPPED
            record.message = "guard not satisfied"
            self.logger.log_step_skipped(tier.name, step.label)
            return record

        if self.dry_run:
            record.outcome = StepOutcome.PLANNED
            self.logger.log_operation("tier.step", "planned", {"tier": tier.name, "step": step.label})
            return record

        try:
            if isinstance(step, MutationStep):
                result = self._apply_mutation(step)
                record.backup_artifact = result.backup.path.name if result.backup else None
                if not result:
                    record.outcome = StepOutcome.FAILED
                    record.error = result.error
                    record.message = result.message
            else:
                outcome = step.action()
                if outcome is not None and not outcome:
                    record.outcome = StepOutcome.FAILED
                    record.error = getattr(outcome, "error", None)
                    record.message = getattr(outcome, "message", "") or f"{step.name} reported failure"
        except Exception as e:
            record.outcome = StepOutcome.FAILED
            record.message = str(e) or type(e).__name__

        if record.outcome == StepOutcome.FAILED:
            self.logger.log_step_failed(tier.name, step.label, record.message, step.fatal)
        return record

    def _apply_mutation(self, step: MutationStep) -> MutationResult:
        if step.action == StepAction.REMOVE:
            return self.mutator.remove_value(step.target, step.name, skip_backup=step.skip_backup)
        return self.mutator.set_value(step.target, step.name, step.value, step.kind, skip_backup=step.skip_backup)
