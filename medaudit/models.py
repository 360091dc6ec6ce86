"""
Core data models for the MedAudit protocol workflow.

A *protocol* (``AuditRequest``) is one end-to-end medical-authorization
case.  It moves through four coarse workflow steps
(ADMINISTRATIVE -> AUDIT -> RELEASE -> FINISHED) while its ``status``
tracks the approval outcome independently of the step.

The models here are plain value types.  Transition rules live in
``medaudit.workflow`` and visibility rules in ``medaudit.queue_router``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


GENERAL_QUEUE = "GERAL"
"""Sentinel value of ``especialidade_alvo`` for the generalist triage pool."""

TEMP_MESSAGE_PREFIX = "temp-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class WorkflowStep(str, enum.Enum):
    """Process position of a protocol.

    ``FINISHED`` is terminal.  ``AUDIT`` and ``RELEASE`` may return to
    ``ADMINISTRATIVE`` ("return to operator").
    """

    ADMINISTRATIVE = "ADMINISTRATIVE"
    AUDIT = "AUDIT"
    RELEASE = "RELEASE"
    FINISHED = "FINISHED"


class RequestStatus(str, enum.Enum):
    """Approval outcome classification, orthogonal to ``WorkflowStep``."""

    DRAFT = "DRAFT"
    PENDING_AUDIT = "PENDING_AUDIT"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    RETURNED_TO_OPERATOR = "RETURNED_TO_OPERATOR"


class ItemStatus(str, enum.Enum):
    """Clinical decision on a single requested item."""

    PENDING = "PENDING"
    FAVORABLE = "FAVORABLE"
    UNFAVORABLE = "UNFAVORABLE"
    PARTIAL = "PARTIAL"


class Role(str, enum.Enum):
    """Actor roles.

    * ``ADMIN_MASTER``    -- platform administrator, sees every tenant.
    * ``EMPRESA_GESTORA`` -- manager of a gestora and its operators.
    * ``OPERADORA``       -- operator staff; registers and releases guides.
    * ``AUDITOR_MEDICO``  -- medical auditor (generalist or specialist).
    """

    ADMIN_MASTER = "ADMIN_MASTER"
    EMPRESA_GESTORA = "EMPRESA_GESTORA"
    OPERADORA = "OPERADORA"
    AUDITOR_MEDICO = "AUDITOR_MEDICO"


class AuditorType(str, enum.Enum):
    GENERALISTA = "GENERALISTA"
    ESPECIALISTA = "ESPECIALISTA"


class TenantType(str, enum.Enum):
    GESTORA = "GESTORA"
    OPERADORA = "OPERADORA"


class TenantStatus(str, enum.Enum):
    ATIVO = "ATIVO"
    INATIVO = "INATIVO"


class RulePriority(str, enum.Enum):
    ALTA = "ALTA"
    MEDIA = "MEDIA"
    BAIXA = "BAIXA"


class Recommendation(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    PARTIAL = "PARTIAL"


class QueueTab(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class ProcedureType(str, enum.Enum):
    SADT = "SADT"
    OPME = "OPME"
    PROCEDIMENTO = "PROCEDIMENTO"
    FARMACO = "FARMACO"
    TAXA = "TAXA"
    INSUMO = "INSUMO"


class Coverage(str, enum.Enum):
    COBERTO = "COBERTO"
    SEM_COBERTURA = "SEM_COBERTURA"


class RiskRating(str, enum.Enum):
    BAIXO_RISCO = "BAIXO RISCO"
    RACIONALIZACAO = "RACIONALIZAÇÃO"


# ---------------------------------------------------------------------------
# Actors and tenants
# ---------------------------------------------------------------------------

class User(BaseModel):
    """The acting user, as supplied by the auth/session provider."""

    id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1)
    role: Role
    tenant_id: Optional[str] = Field(
        default=None,
        description="Tenant the user belongs to (None for ADMIN_MASTER).",
    )
    parent_tenant_id: Optional[str] = None
    tipo_auditor: AuditorType = Field(
        default=AuditorType.GENERALISTA,
        description="Only meaningful for AUDITOR_MEDICO.",
    )
    especialidade: Optional[str] = Field(
        default=None,
        description="Clinical specialty; only meaningful for specialists.",
    )

    @model_validator(mode="after")
    def specialist_needs_specialty(self) -> "User":
        if self.tipo_auditor == AuditorType.ESPECIALISTA and not (self.especialidade or "").strip():
            raise ValueError("ESPECIALISTA auditors must declare a specialty.")
        return self

    @property
    def is_specialist(self) -> bool:
        return (
            self.role == Role.AUDITOR_MEDICO
            and self.tipo_auditor == AuditorType.ESPECIALISTA
        )


class Tenant(BaseModel):
    """A managing (GESTORA) or operating (OPERADORA) organization."""

    id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1)
    commercial_name: Optional[str] = None
    type: TenantType
    parent_id: Optional[str] = Field(
        default=None,
        description="Managing gestora of an operator tenant.",
    )
    status: TenantStatus = TenantStatus.ATIVO
    cnpj: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    uf: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def gestora_has_no_parent(self) -> "Tenant":
        if self.type == TenantType.GESTORA and self.parent_id:
            raise ValueError("A GESTORA tenant sits at the top of the hierarchy and has no parent.")
        return self

    @property
    def display_name(self) -> str:
        return self.commercial_name or self.name


class MedicalAuditor(BaseModel):
    """Auditor profile.

    ``operator_ids`` are the operator tenants ("postos de atuação") where the
    auditor may see AUDIT-step work.  The relation is many-to-many and does
    not imply ownership.
    """

    id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1)
    crm: str = ""
    uf: str = ""
    specialty: str = ""
    tipo_auditor: AuditorType = AuditorType.GENERALISTA
    rqe: Optional[str] = None
    rating: float = Field(default=0.0, ge=0, le=5)
    is_active: bool = True
    gestora_id: str = Field(..., min_length=1)
    operator_ids: list[str] = Field(default_factory=list)

    @field_validator("operator_ids")
    @classmethod
    def unique_operators(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def specialist_needs_specialty(self) -> "MedicalAuditor":
        if self.tipo_auditor == AuditorType.ESPECIALISTA and not self.specialty.strip():
            raise ValueError("ESPECIALISTA auditors must declare a specialty.")
        return self


# ---------------------------------------------------------------------------
# Protocol parts
# ---------------------------------------------------------------------------

class Beneficiary(BaseModel):
    id: str = Field(default_factory=lambda: f"b-{uuid.uuid4().hex[:12]}")
    name: str = ""
    card_id: str = ""
    birth_date: Optional[date] = None
    gender: str = "NÃO DECLAROU"


class Procedure(BaseModel):
    """Catalog entry (TUSS procedure, material or fee)."""

    id: int
    code: str
    tuss_code: str = ""
    description: str
    fees_value: float = Field(default=0.0, ge=0)
    risk_rating: RiskRating = RiskRating.BAIXO_RISCO
    rationalization: str = ""
    coverage: Coverage = Coverage.COBERTO
    type: ProcedureType = ProcedureType.PROCEDIMENTO
    is_active: bool = True


class AuditItem(BaseModel):
    """A requested procedure line.

    Items are amended in place by auditors and never deleted.
    """

    id: str = Field(default_factory=lambda: f"i-{uuid.uuid4().hex[:12]}")
    procedure: Procedure
    quantity_requested: int = Field(default=1, ge=1)
    quantity_authorized: int = Field(default=1, ge=0)
    unit_value: float = Field(default=0.0, ge=0)
    status: ItemStatus = ItemStatus.PENDING
    justification: str = ""

    @classmethod
    def from_procedure(cls, procedure: Procedure, quantity: int = 1) -> "AuditItem":
        """New item with the authorized quantity mirroring the requested one."""
        return cls(
            procedure=procedure,
            quantity_requested=quantity,
            quantity_authorized=quantity,
            unit_value=procedure.fees_value,
        )

    @property
    def total_value(self) -> float:
        return round(self.quantity_authorized * self.unit_value, 2)


class FileMetadata(BaseModel):
    name: str
    size: int = Field(default=0, ge=0)
    type: str = ""
    url: Optional[str] = None
    last_modified: datetime = Field(default_factory=_utcnow)


class WorkflowDocument(BaseModel):
    """A dossier slot.  Files accumulate and are never removed."""

    id: str = Field(default_factory=lambda: f"doc-{uuid.uuid4().hex[:8]}")
    name: str
    required: bool = True
    files: list[FileMetadata] = Field(default_factory=list)

    @property
    def has_files(self) -> bool:
        return bool(self.files)


class TimelineEvent(BaseModel):
    """Immutable history record appended on every transition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"ev-{uuid.uuid4().hex}")
    step: WorkflowStep
    user: str
    role: Role
    description: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class AIRule(BaseModel):
    """Governance rule injected into the advisory prompt."""

    id: str = Field(default_factory=_new_id)
    title: str
    description: str = ""
    is_active: bool = True
    priority: RulePriority = RulePriority.MEDIA


class AIDecisionSupport(BaseModel):
    """Advisory recommendation.  Never applied to status or step."""

    recommendation: Recommendation
    confidence: float = Field(..., ge=0, le=1)
    reasoning: str
    regulatory_references: list[str] = Field(default_factory=list)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    request_id: str
    sender_id: str
    sender_name: str = ""
    sender_role: Role
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    visibility: str = "ALL"

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_MESSAGE_PREFIX)


# ---------------------------------------------------------------------------
# Protocol aggregate
# ---------------------------------------------------------------------------

class AdministrativeFields(BaseModel):
    """TISS guide fields captured with a protocol."""

    guia_number: str = ""
    request_date: Optional[date] = None
    requesting_unimed: str = ""
    service_type: str = "EXAME AMBULATORIAL"
    request_character: int = Field(default=1, description="1 = elective, 2 = urgency.")
    accident_indication: int = Field(default=9, description="9 = not an accident.")
    service_date: Optional[date] = None
    co_authorization: bool = False
    executing_unimed: str = ""
    executing_unimed_city: str = ""
    transaction_number: str = ""


class RequestDraft(AdministrativeFields):
    """A protocol that has not been persisted yet."""

    beneficiary: Beneficiary = Field(default_factory=Beneficiary)
    cid10: str = ""
    clinical_summary: str = ""
    items: list[AuditItem] = Field(default_factory=list)
    documents: list[WorkflowDocument] = Field(default_factory=list)


class AuditRequest(AdministrativeFields):
    """Aggregate root: one medical-authorization protocol.

    Owns its items, documents and history exclusively.  ``version`` is the
    optimistic concurrency counter checked by the record store on update.
    """

    id: str = Field(default_factory=_new_id)
    tenant_id: str = Field(..., min_length=1, description="Owning operator tenant.")
    beneficiary: Beneficiary
    cid10: str = ""
    clinical_summary: str = ""
    items: list[AuditItem] = Field(..., min_length=1)
    documents: list[WorkflowDocument] = Field(default_factory=list)
    history: list[TimelineEvent] = Field(default_factory=list)
    workflow_step: WorkflowStep = WorkflowStep.ADMINISTRATIVE
    status: RequestStatus = RequestStatus.PENDING_AUDIT
    especialidade_alvo: Optional[str] = None
    auth_code: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_update: datetime = Field(default_factory=_utcnow)
    version: int = Field(default=0, ge=0)

    @field_validator("history")
    @classmethod
    def history_time_ordered(cls, v: list[TimelineEvent]) -> list[TimelineEvent]:
        for previous, current in zip(v, v[1:]):
            if current.timestamp < previous.timestamp:
                raise ValueError(
                    f"History event '{current.id}' is older than its predecessor "
                    f"'{previous.id}'. History must be time-ordered."
                )
        return v

    def find_item(self, item_id: str) -> AuditItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise KeyError(f"Item '{item_id}' not found in request '{self.id}'")

    def find_document(self, document_id: str) -> WorkflowDocument:
        for doc in self.documents:
            if doc.id == document_id:
                return doc
        raise KeyError(f"Document slot '{document_id}' not found in request '{self.id}'")


class RequestMetadataPatch(BaseModel):
    """Fields a transition or an explicit save may change.

    Only fields explicitly set are applied.
    """

    especialidade_alvo: Optional[str] = None
    status: Optional[RequestStatus] = None
    beneficiary: Optional[Beneficiary] = None
    cid10: Optional[str] = None
    clinical_summary: Optional[str] = None
    guia_number: Optional[str] = None
    request_date: Optional[date] = None
    requesting_unimed: Optional[str] = None
    service_type: Optional[str] = None
    request_character: Optional[int] = None
    accident_indication: Optional[int] = None
    service_date: Optional[date] = None
    co_authorization: Optional[bool] = None
    executing_unimed: Optional[str] = None
    executing_unimed_city: Optional[str] = None
    transaction_number: Optional[str] = None

    def changes(self) -> dict:
        return {name: getattr(self, name) for name in self.model_fields_set}
