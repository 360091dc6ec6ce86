"""
Protocol Report Generator.

Builds a structured summary of one protocol for the people who act on it:
translated step and status labels, the beneficiary, item totals, dossier
completeness, a chronological timeline and the protocol's SLA sample.

Reports are read-only views.  They never change the protocol they describe.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any, Optional

from medaudit.models import AuditRequest
from medaudit.sla import NO_SAMPLES_LABEL, audit_duration_millis, format_duration

STEP_LABELS: dict[str, str] = {
    "ADMINISTRATIVE": "TRIAGEM ADM",
    "AUDIT": "AUDITORIA MÉDICA",
    "RELEASE": "LIBERAÇÃO DE GUIA",
    "FINISHED": "PROTOCOLO ENCERRADO",
}

STATUS_LABELS: dict[str, str] = {
    "PENDING_AUDIT": "PEND. AUDITORIA",
    "RETURNED_TO_OPERATOR": "DEVOLVIDO",
    "DRAFT": "RASCUNHO",
    "COMPLETED": "CONCLUÍDO",
    "CANCELED": "CANCELADO",
    "PENDING": "PENDENTE",
    "FAVORABLE": "FAVORÁVEL",
    "UNFAVORABLE": "DIVERGENTE",
    "PARTIAL": "PARCIAL",
}

_LABELS = {**STEP_LABELS, **STATUS_LABELS}


def format_enum(value: Any) -> str:
    """Display label of an enum value.

    Known values are translated; anything else has underscores replaced by
    spaces.  ``None`` and non-scalar values give an empty string.
    """
    if value is None:
        return ""
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, str) and value in _LABELS:
        return _LABELS[value]
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return ""
    return str(value).replace("_", " ")


def calculate_age(birth_date: Optional[date], today: Optional[date] = None) -> str:
    """Age in whole years as ``"{n} anos"``; empty when the date is unknown."""
    if birth_date is None:
        return ""
    today = today or datetime.now(timezone.utc).date()
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return f"{max(years, 0)} anos"


class ProtocolReport:
    """Structured summary of one protocol."""

    def __init__(
        self,
        request_id: str,
        tenant_id: str,
        step: str,
        step_label: str,
        status: str,
        status_label: str,
        beneficiary: dict[str, str],
        items: list[dict[str, Any]],
        requested_total: float,
        authorized_total: float,
        documents: list[dict[str, Any]],
        missing_documents: list[str],
        timeline: list[dict[str, str]],
        auth_code: Optional[str],
        audit_duration: str,
        generated_at: str,
    ) -> None:
        self.request_id = request_id
        self.tenant_id = tenant_id
        self.step = step
        self.step_label = step_label
        self.status = status
        self.status_label = status_label
        self.beneficiary = beneficiary
        self.items = items
        self.requested_total = requested_total
        self.authorized_total = authorized_total
        self.documents = documents
        self.missing_documents = missing_documents
        self.timeline = timeline
        self.auth_code = auth_code
        self.audit_duration = audit_duration
        self.generated_at = generated_at

    @property
    def dossier_complete(self) -> bool:
        return not self.missing_documents

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Protocol Report",
            "request_id": self.request_id,
            "tenant_id": self.tenant_id,
            "step": self.step,
            "step_label": self.step_label,
            "status": self.status,
            "status_label": self.status_label,
            "beneficiary": self.beneficiary,
            "items": self.items,
            "requested_total": self.requested_total,
            "authorized_total": self.authorized_total,
            "documents": self.documents,
            "missing_documents": self.missing_documents,
            "dossier_complete": self.dossier_complete,
            "timeline": self.timeline,
            "auth_code": self.auth_code,
            "audit_duration": self.audit_duration,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"ProtocolReport(request_id={self.request_id}, "
            f"step={self.step}, status={self.status})"
        )


def generate_protocol_report(request: AuditRequest, today: Optional[date] = None) -> ProtocolReport:
    """Generate a report from a protocol.

    Args:
        request: The protocol.
        today: Reference date for the beneficiary's age (defaults to today, UTC).

    Returns:
        A ``ProtocolReport``.
    """
    items = [
        {
            "id": item.id,
            "code": item.procedure.code,
            "description": item.procedure.description,
            "quantity_requested": item.quantity_requested,
            "quantity_authorized": item.quantity_authorized,
            "unit_value": item.unit_value,
            "total_value": item.total_value,
            "status": item.status.value,
            "status_label": format_enum(item.status),
            "justification": item.justification,
        }
        for item in request.items
    ]
    requested_total = round(sum(i.quantity_requested * i.unit_value for i in request.items), 2)
    authorized_total = round(sum(i.total_value for i in request.items), 2)

    documents = [
        {"id": d.id, "name": d.name, "required": d.required, "file_count": len(d.files)}
        for d in request.documents
    ]
    missing = [d.name for d in request.documents if d.required and not d.has_files]

    duration = audit_duration_millis(request)

    return ProtocolReport(
        request_id=request.id,
        tenant_id=request.tenant_id,
        step=request.workflow_step.value,
        step_label=format_enum(request.workflow_step),
        status=request.status.value,
        status_label=format_enum(request.status),
        beneficiary={
            "name": request.beneficiary.name,
            "card_id": request.beneficiary.card_id,
            "age": calculate_age(request.beneficiary.birth_date, today),
        },
        items=items,
        requested_total=requested_total,
        authorized_total=authorized_total,
        documents=documents,
        missing_documents=missing,
        timeline=_build_timeline(request),
        auth_code=request.auth_code,
        audit_duration=format_duration(duration) if duration is not None else NO_SAMPLES_LABEL,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_timeline(request: AuditRequest) -> list[dict[str, str]]:
    return [
        {
            "step": event.step.value,
            "step_label": format_enum(event.step),
            "user": event.user,
            "role": event.role.value,
            "timestamp": event.timestamp.isoformat(),
            "description": event.description,
        }
        for event in request.history
    ]
