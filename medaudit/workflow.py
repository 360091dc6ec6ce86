"""
Protocol Workflow State Machine.

This module implements the lifecycle of a protocol as an explicit state
machine.  All functions are pure: they validate, then return a *new*
``AuditRequest`` and never touch the one they were given.  Persistence is
the service layer's job.

**State machine:**

    ADMINISTRATIVE -> AUDIT -> RELEASE -> FINISHED

With the return path:

    AUDIT | RELEASE -> ADMINISTRATIVE

and the AUDIT -> AUDIT re-routing between the general triage queue and a
named specialty queue.

**Guards enforced in code:**

* ``FINISHED`` is terminal -- every further transition is rejected and no
  history event is appended.
* Every transition is checked against ``rbac.is_transition_allowed``.
* Generalists may only forward general-queue work to a named specialty;
  specialists may only return work routed to their own specialty.
* Reaching ``FINISHED`` requires an authorization code.
* Auditors only act on ``AUDIT`` protocols sitting in their own work
  queue (``queue_router.is_actionable``).
* Item amendments are only possible in ``AUDIT`` and only by auditors.
* Every successful transition appends exactly one ``TimelineEvent`` with a
  timestamp strictly after the previous one.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from medaudit.models import (
    GENERAL_QUEUE,
    AuditItem,
    AuditRequest,
    AuditorType,
    FileMetadata,
    ItemStatus,
    RequestDraft,
    RequestMetadataPatch,
    RequestStatus,
    Role,
    TimelineEvent,
    User,
    WorkflowDocument,
    WorkflowStep,
)
from medaudit.queue_router import is_actionable
from medaudit.rbac import check_permission, is_transition_allowed, transition_action


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[WorkflowStep, set[WorkflowStep]] = {
    WorkflowStep.ADMINISTRATIVE: {WorkflowStep.AUDIT},
    WorkflowStep.AUDIT: {
        WorkflowStep.AUDIT,
        WorkflowStep.RELEASE,
        WorkflowStep.ADMINISTRATIVE,
    },
    WorkflowStep.RELEASE: {WorkflowStep.FINISHED, WorkflowStep.ADMINISTRATIVE},
    WorkflowStep.FINISHED: set(),  # terminal state
}

CREATED_DESCRIPTION = "Protocolo registrado com sucesso através do painel da operadora."

PatchLike = Union[RequestMetadataPatch, dict, None]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class WorkflowError(Exception):
    """Base class for every error raised by the workflow core."""


class RequestValidationError(WorkflowError, ValueError):
    """Raised when a draft or patch is rejected before any persistence."""


class InvalidTransitionError(WorkflowError):
    """Raised when a step change is not part of the workflow graph."""


class TerminalStepError(InvalidTransitionError):
    """Raised on any attempt to act on a FINISHED protocol."""


class UnauthorizedActionError(WorkflowError, PermissionError):
    """Raised when the actor's role may not perform the action."""


class UnauthorizedTransitionError(UnauthorizedActionError):
    """Raised when the actor may not perform a given transition."""


class ItemEditError(WorkflowError):
    """Raised when items are amended outside AUDIT or by a non-auditor."""


class TenantMismatchError(WorkflowError, PermissionError):
    """Raised when an actor acts on a protocol outside their tenant scope."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _coerce_patch(patch: PatchLike) -> RequestMetadataPatch:
    if patch is None:
        return RequestMetadataPatch()
    if isinstance(patch, RequestMetadataPatch):
        return patch
    return RequestMetadataPatch.model_validate(patch)


def _next_timestamp(request: AuditRequest, now: Optional[datetime]) -> datetime:
    """``now`` pushed past the last history event if the clock went backwards."""
    now = now or datetime.now(timezone.utc)
    if request.history and now <= request.history[-1].timestamp:
        return request.history[-1].timestamp + timedelta(microseconds=1)
    return now


def _apply_changes(request: AuditRequest, changes: dict) -> None:
    for name, value in changes.items():
        if name == "beneficiary" and value is not None:
            value = value.model_copy(update={"name": value.name.upper()})
        setattr(request, name, value)


def _require_not_finished(request: AuditRequest) -> None:
    if request.workflow_step == WorkflowStep.FINISHED:
        raise TerminalStepError(
            f"Protocol '{request.id}' is FINISHED. No further changes are accepted."
        )


def _in_own_queue(request: AuditRequest, actor: User) -> bool:
    """False when an auditor reaches for AUDIT work routed to another queue."""
    if actor.role != Role.AUDITOR_MEDICO or request.workflow_step != WorkflowStep.AUDIT:
        return True
    return is_actionable(request, actor)


def _check_rerouting(
    request: AuditRequest,
    actor: User,
    target: Optional[str],
    specialties: Optional[Iterable[str]],
) -> None:
    """Guard the AUDIT -> AUDIT hand-off between the general and specialty queues."""
    if target is None:
        raise InvalidTransitionError(
            "AUDIT -> AUDIT re-routes the protocol and needs an 'especialidade_alvo'."
        )

    current = request.especialidade_alvo or GENERAL_QUEUE

    if actor.tipo_auditor == AuditorType.GENERALISTA:
        if target == GENERAL_QUEUE:
            raise UnauthorizedTransitionError(
                "Generalist auditors forward protocols to a named specialty, "
                "not back to the general queue."
            )
        if current != GENERAL_QUEUE:
            raise UnauthorizedTransitionError(
                f"Protocol '{request.id}' is already routed to '{current}'. "
                "Generalists only route protocols from the general queue."
            )
        known = set(specialties) if specialties is not None else None
        if known is not None and target not in known:
            raise RequestValidationError(
                f"Unknown specialty '{target}'. Configured specialties: {sorted(known)}"
            )
        return

    if target != GENERAL_QUEUE:
        raise UnauthorizedTransitionError(
            "Specialist auditors can only return protocols to the general queue."
        )
    if current != actor.especialidade:
        raise UnauthorizedTransitionError(
            f"Protocol '{request.id}' is routed to '{current}', not to the "
            f"specialist's own queue '{actor.especialidade}'."
        )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def validate_draft(draft: RequestDraft) -> None:
    """Reject drafts that may not leave DRAFT.

    Raises:
        RequestValidationError: If the draft has no items or no beneficiary name.
    """
    if not draft.items:
        raise RequestValidationError(
            "A protocol needs at least one requested item before it can be registered."
        )
    if not draft.beneficiary.name.strip():
        raise RequestValidationError("The beneficiary name is mandatory.")


def new_request(
    draft: RequestDraft,
    actor: User,
    tenant_id: str,
    documents: Optional[list[WorkflowDocument]] = None,
    now: Optional[datetime] = None,
) -> AuditRequest:
    """Build a protocol from a validated draft.

    The protocol starts in ADMINISTRATIVE / PENDING_AUDIT with one history
    event.  Items start with the authorized quantity equal to the requested
    one and PENDING status.  The draft's own documents win over the
    template ``documents``.

    Raises:
        UnauthorizedActionError: If the actor's role cannot register protocols.
        RequestValidationError: If the draft is invalid.
    """
    if not check_permission(actor.role, "create_request"):
        raise UnauthorizedActionError(
            f"Role '{actor.role.value}' cannot register protocols."
        )
    validate_draft(draft)

    now = now or datetime.now(timezone.utc)
    items = [
        item.model_copy(
            update={
                "quantity_authorized": item.quantity_requested,
                "status": ItemStatus.PENDING,
                "justification": "",
            },
            deep=True,
        )
        for item in draft.items
    ]
    slots = draft.documents or documents or []

    fields = draft.model_dump(exclude={"beneficiary", "items", "documents"})
    return AuditRequest(
        **fields,
        tenant_id=tenant_id,
        beneficiary=draft.beneficiary.model_copy(
            update={"name": draft.beneficiary.name.strip().upper()}
        ),
        items=items,
        documents=[doc.model_copy(deep=True) for doc in slots],
        history=[
            TimelineEvent(
                step=WorkflowStep.ADMINISTRATIVE,
                user=actor.name,
                role=actor.role,
                description=CREATED_DESCRIPTION,
                timestamp=now,
            )
        ],
        workflow_step=WorkflowStep.ADMINISTRATIVE,
        status=RequestStatus.PENDING_AUDIT,
        created_at=now,
        last_update=now,
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def check_transition(
    request: AuditRequest,
    next_step: WorkflowStep,
    actor: User,
    metadata_patch: PatchLike = None,
    specialties: Optional[Iterable[str]] = None,
) -> None:
    """Raise if ``actor`` may not move ``request`` to ``next_step``.

    Args:
        request: The protocol.
        next_step: The target step.
        actor: The acting user.
        metadata_patch: Fields to apply with the step change.
        specialties: Known specialty queues; when given, a generalist may
            only forward to one of them.

    Raises:
        TerminalStepError: If the protocol is FINISHED.
        InvalidTransitionError: If the step pair is outside the graph.
        UnauthorizedTransitionError: If the actor may not perform it, or an
            auditor acts on a protocol outside their work queue.
        RequestValidationError: If the target specialty is unknown.
    """
    _require_not_finished(request)

    allowed = _VALID_TRANSITIONS.get(request.workflow_step, set())
    if next_step not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from {request.workflow_step.value} to {next_step.value}. "
            f"Allowed transitions: {sorted(s.value for s in allowed)}"
        )

    if not is_transition_allowed(actor.role, request.workflow_step, next_step):
        raise UnauthorizedTransitionError(
            f"Role '{actor.role.value}' may not move a protocol from "
            f"{request.workflow_step.value} to {next_step.value}."
        )
    if not _in_own_queue(request, actor):
        raise UnauthorizedTransitionError(
            f"Protocol '{request.id}' is routed to "
            f"'{request.especialidade_alvo or GENERAL_QUEUE}', outside the work "
            f"queue of '{actor.name}'."
        )

    changes = _coerce_patch(metadata_patch).changes()
    rerouting = request.workflow_step == WorkflowStep.AUDIT and next_step == WorkflowStep.AUDIT
    if rerouting:
        _check_rerouting(request, actor, changes.get("especialidade_alvo"), specialties)
    elif "especialidade_alvo" in changes:
        raise RequestValidationError(
            "The target specialty only changes through an AUDIT -> AUDIT re-routing."
        )


def apply_transition(
    request: AuditRequest,
    next_step: WorkflowStep,
    actor: User,
    description: str,
    metadata_patch: PatchLike = None,
    now: Optional[datetime] = None,
    auth_code: Optional[str] = None,
    specialties: Optional[Iterable[str]] = None,
) -> AuditRequest:
    """Validate and apply a transition, returning the updated protocol.

    Appends one history event, sets the step, applies ``metadata_patch``
    together with the step change and, for FINISHED, stores ``auth_code``.

    Raises:
        Everything ``check_transition`` raises.
        ValueError: If FINISHED is reached without ``auth_code``.
    """
    check_transition(request, next_step, actor, metadata_patch, specialties)
    if next_step == WorkflowStep.FINISHED and not auth_code:
        raise ValueError("An authorization code is required to finish a protocol.")

    timestamp = _next_timestamp(request, now)
    updated = request.model_copy(deep=True)
    updated.history.append(
        TimelineEvent(
            step=next_step,
            user=actor.name,
            role=actor.role,
            description=description,
            timestamp=timestamp,
        )
    )
    updated.workflow_step = next_step
    _apply_changes(updated, _coerce_patch(metadata_patch).changes())
    if next_step == WorkflowStep.FINISHED:
        updated.auth_code = auth_code
    updated.last_update = timestamp
    return updated


def forward_to_audit(request: AuditRequest, actor: User, **kwargs) -> AuditRequest:
    """Operator sends a registered protocol to the medical audit queue."""
    return apply_transition(
        request, WorkflowStep.AUDIT, actor, "Enviado para Auditoria.", **kwargs
    )


def forward_to_specialist(
    request: AuditRequest, actor: User, specialty: str, **kwargs
) -> AuditRequest:
    """Generalist hands the protocol off to one named specialty queue."""
    specialty = specialty.strip().upper()
    return apply_transition(
        request,
        WorkflowStep.AUDIT,
        actor,
        f"Protocolo encaminhado para fila especializada: {specialty}",
        metadata_patch=RequestMetadataPatch(especialidade_alvo=specialty),
        **kwargs,
    )


def return_to_general(request: AuditRequest, actor: User, **kwargs) -> AuditRequest:
    """Specialist bounces the protocol back to the generalist pool."""
    return apply_transition(
        request,
        WorkflowStep.AUDIT,
        actor,
        "Especialista devolveu o processo para a Fila Geral de Triagem.",
        metadata_patch=RequestMetadataPatch(especialidade_alvo=GENERAL_QUEUE),
        **kwargs,
    )


def conclude_analysis(request: AuditRequest, actor: User, **kwargs) -> AuditRequest:
    return apply_transition(
        request, WorkflowStep.RELEASE, actor, "Parecer técnico finalizado.", **kwargs
    )


def return_to_operator(
    request: AuditRequest,
    actor: User,
    description: str = "Devolvido para fila operadora por inconsistência.",
    **kwargs,
) -> AuditRequest:
    return apply_transition(request, WorkflowStep.ADMINISTRATIVE, actor, description, **kwargs)


def suggest_second_opinion(request: AuditRequest, actor: User, **kwargs) -> AuditRequest:
    """Auditor returns the protocol suggesting a technical second opinion."""
    if actor.role != Role.AUDITOR_MEDICO:
        raise UnauthorizedTransitionError("Only medical auditors suggest a second opinion.")
    return return_to_operator(
        request,
        actor,
        "O médico auditor sugere enviar para a Segunda Opinião.",
        **kwargs,
    )


def suggest_medical_board(request: AuditRequest, actor: User, **kwargs) -> AuditRequest:
    """Auditor returns the protocol suggesting a medical board (junta médica)."""
    if actor.role != Role.AUDITOR_MEDICO:
        raise UnauthorizedTransitionError("Only medical auditors suggest a medical board.")
    return return_to_operator(
        request,
        actor,
        "O médico auditor sugere enviar para Junta Médica.",
        **kwargs,
    )


def effectuate_guide(
    request: AuditRequest, actor: User, auth_code: str, **kwargs
) -> AuditRequest:
    """Operator effectuates the released guide; the protocol is closed."""
    return apply_transition(
        request,
        WorkflowStep.FINISHED,
        actor,
        "Guia efetivada. Autorização emitida.",
        auth_code=auth_code,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# In-place amendments (no history event)
# ---------------------------------------------------------------------------

def update_item(
    request: AuditRequest,
    item_id: str,
    actor: User,
    quantity_authorized: Optional[int] = None,
    status: Optional[ItemStatus] = None,
    justification: Optional[str] = None,
) -> AuditRequest:
    """Amend one item's clinical decision.

    Does not append a history event; the change is persisted with the next
    explicit save or transition.

    Raises:
        ItemEditError: Outside AUDIT, when the actor is not an auditor or
            when the protocol sits in another auditor's queue.
        RequestValidationError: On a negative quantity.
        KeyError: If ``item_id`` is not part of the protocol.
    """
    if request.workflow_step != WorkflowStep.AUDIT:
        raise ItemEditError(
            f"Items can only be amended during AUDIT (protocol is in "
            f"{request.workflow_step.value})."
        )
    if not check_permission(actor.role, "edit_items"):
        raise ItemEditError(f"Role '{actor.role.value}' cannot amend items.")
    if not _in_own_queue(request, actor):
        raise ItemEditError(
            f"Protocol '{request.id}' is routed to "
            f"'{request.especialidade_alvo or GENERAL_QUEUE}', outside the work "
            f"queue of '{actor.name}'."
        )
    if quantity_authorized is not None and quantity_authorized < 0:
        raise RequestValidationError("The authorized quantity cannot be negative.")

    updated = request.model_copy(deep=True)
    item: AuditItem = updated.find_item(item_id)
    if quantity_authorized is not None:
        item.quantity_authorized = quantity_authorized
    if status is not None:
        item.status = ItemStatus(status)
    if justification is not None:
        item.justification = justification
    return updated


def update_metadata(request: AuditRequest, actor: User, patch: PatchLike) -> AuditRequest:
    """Apply an explicit metadata edit (beneficiary, CID, TISS fields, status).

    Raises:
        TerminalStepError: If the protocol is FINISHED.
        UnauthorizedActionError: If the role cannot edit metadata.
        RequestValidationError: If the patch tries to re-route the protocol.
    """
    _require_not_finished(request)
    if not check_permission(actor.role, "edit_metadata"):
        raise UnauthorizedActionError(f"Role '{actor.role.value}' cannot edit protocol data.")

    changes = _coerce_patch(patch).changes()
    if "especialidade_alvo" in changes:
        raise RequestValidationError(
            "The target specialty only changes through an AUDIT -> AUDIT re-routing."
        )
    updated = request.model_copy(deep=True)
    _apply_changes(updated, changes)
    return updated


_ITEM_DECISION_FIELDS = {"quantity_authorized", "status", "justification"}


def merge_edits(stored: AuditRequest, edited: AuditRequest, actor: User) -> AuditRequest:
    """Carry the buffered edits of ``edited`` onto the ``stored`` protocol.

    Only item decisions and ``RequestMetadataPatch`` fields are read from
    ``edited``, through ``update_item`` and ``update_metadata`` and their
    guards.  Step, history, auth code, documents and ownership always come
    from ``stored``.  Returns ``stored`` itself when nothing changed.

    Raises:
        TerminalStepError: If the stored protocol is FINISHED.
        ItemEditError: If items were added, removed or changed beyond
            their clinical decision, or the item rules reject the edit.
        UnauthorizedActionError: If the role cannot edit metadata.
        RequestValidationError: If the edit re-routes the protocol.
    """
    _require_not_finished(stored)
    if [i.id for i in edited.items] != [i.id for i in stored.items]:
        raise ItemEditError("Items cannot be added, removed or reordered after registration.")

    merged = stored
    for before, after in zip(stored.items, edited.items):
        if before.model_dump(exclude=_ITEM_DECISION_FIELDS) != after.model_dump(
            exclude=_ITEM_DECISION_FIELDS
        ):
            raise ItemEditError(f"Only the clinical decision of item '{after.id}' can be amended.")
        decision = {
            name: getattr(after, name)
            for name in _ITEM_DECISION_FIELDS
            if getattr(after, name) != getattr(before, name)
        }
        if decision:
            merged = update_item(merged, after.id, actor, **decision)

    patch = {
        name: getattr(edited, name)
        for name in RequestMetadataPatch.model_fields
        if getattr(edited, name) != getattr(stored, name)
    }
    if patch:
        merged = update_metadata(merged, actor, patch)
    if merged is not stored:
        merged.last_update = _next_timestamp(merged, None)
    return merged


def attach_files(
    request: AuditRequest, document_id: str, files: list[FileMetadata]
) -> AuditRequest:
    """Append uploaded files to a dossier slot.

    Raises:
        TerminalStepError: If the protocol is FINISHED.
        RequestValidationError: If the slot does not exist.
    """
    _require_not_finished(request)
    updated = request.model_copy(deep=True)
    try:
        document = updated.find_document(document_id)
    except KeyError as exc:
        raise RequestValidationError(str(exc)) from exc
    document.files.extend(f.model_copy() for f in files)
    return updated


def describe_action(request: AuditRequest, next_step: WorkflowStep, patch: PatchLike = None) -> str:
    """Permission action name of a transition, for logs."""
    changes = _coerce_patch(patch).changes()
    return transition_action(
        request.workflow_step, next_step, changes.get("especialidade_alvo")
    ) or "invalid"
