"""
SLA metrics derived from protocol history.

The audit duration of a protocol runs from its first AUDIT event to its
last exit event (ADMINISTRATIVE, RELEASE or FINISHED).  Protocols lacking
either boundary, or whose exit is not after the entry (clock skew,
malformed history), contribute nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from medaudit.models import AuditRequest, WorkflowStep

NO_SAMPLES_LABEL = "---"

_EXIT_STEPS = frozenset(
    {WorkflowStep.ADMINISTRATIVE, WorkflowStep.RELEASE, WorkflowStep.FINISHED}
)
_HOUR_MS = 60 * 60 * 1000
_MINUTE_MS = 60 * 1000


@dataclass(frozen=True)
class AuditDurationStats:
    label: str
    raw_millis: float
    count: int


def audit_duration_millis(request: AuditRequest) -> Optional[int]:
    """Audit duration of one protocol in milliseconds, or None."""
    entry = next((e for e in request.history if e.step == WorkflowStep.AUDIT), None)
    exit_event = next(
        (e for e in reversed(request.history) if e.step in _EXIT_STEPS), None
    )
    if entry is None or exit_event is None:
        return None
    delta = exit_event.timestamp - entry.timestamp
    millis = round(delta.total_seconds() * 1000)
    return millis if millis > 0 else None


def format_duration(millis: float) -> str:
    """``"1.5 Dias"`` from 24 whole hours on, ``"{h}h {m}m"`` below."""
    hours = int(millis // _HOUR_MS)
    minutes = int((millis % _HOUR_MS) // _MINUTE_MS)
    if hours >= 24:
        return f"{hours / 24:.1f} Dias"
    return f"{hours}h {minutes}m"


def compute_average_audit_duration(requests: Iterable[AuditRequest]) -> AuditDurationStats:
    """Average audit duration over every protocol with a valid sample."""
    samples = [m for m in (audit_duration_millis(r) for r in requests) if m is not None]
    if not samples:
        return AuditDurationStats(label=NO_SAMPLES_LABEL, raw_millis=0, count=0)
    average = sum(samples) / len(samples)
    return AuditDurationStats(label=format_duration(average), raw_millis=average, count=len(samples))


def count_by_step(requests: Iterable[AuditRequest]) -> dict[WorkflowStep, int]:
    """Number of protocols per workflow step; every step is present."""
    counts = {step: 0 for step in WorkflowStep}
    for request in requests:
        counts[request.workflow_step] += 1
    return counts
