"""
Queue Routing -- who sees which protocol.

Visibility is computed on demand from the full protocol set; nothing is
cached.  Three predicates must hold for a protocol to appear in an actor's
queue:

1. **Tab** -- COMPLETED shows FINISHED protocols, IN_PROGRESS everything else.
2. **Role** -- operators, managers and master admins see everything handed
   to them by the data-fetch boundary.  Auditors on IN_PROGRESS only see
   AUDIT-step work: specialists the protocols routed to their exact
   specialty, generalists the ones in the general queue (unset or
   ``GERAL``).  Auditors see every FINISHED protocol on COMPLETED.
3. **Search** -- case-insensitive substring match on beneficiary name or
   protocol id.

This is the whole dispatch policy: generalists triage and either conclude
or hand off to exactly one specialty queue, specialists may bounce work
back.  There is no capacity or priority ordering; input order is kept.

Tenant scoping happens before this, at the data-fetch boundary
(``tenant_scope`` / ``scope_requests``).
"""

from __future__ import annotations

from typing import Iterable, Optional

from medaudit.models import (
    GENERAL_QUEUE,
    AuditRequest,
    AuditorType,
    MedicalAuditor,
    QueueTab,
    Role,
    Tenant,
    TenantType,
    User,
    WorkflowStep,
)
from medaudit.rbac import allowed_targets, check_permission


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def matches_tab(request: AuditRequest, tab: QueueTab) -> bool:
    finished = request.workflow_step == WorkflowStep.FINISHED
    return finished if tab == QueueTab.COMPLETED else not finished


def matches_role(request: AuditRequest, actor: User, tab: QueueTab) -> bool:
    if actor.role != Role.AUDITOR_MEDICO:
        return True
    if tab == QueueTab.COMPLETED:
        return True
    if request.workflow_step != WorkflowStep.AUDIT:
        return False
    if actor.tipo_auditor == AuditorType.ESPECIALISTA:
        return request.especialidade_alvo == actor.especialidade
    return not request.especialidade_alvo or request.especialidade_alvo == GENERAL_QUEUE


def matches_search(request: AuditRequest, term: str) -> bool:
    if not term:
        return True
    needle = term.lower()
    return needle in request.beneficiary.name.lower() or needle in request.id.lower()


def visible_queue(
    requests: Iterable[AuditRequest],
    actor: User,
    tab: QueueTab,
    search: str = "",
) -> list[AuditRequest]:
    """Protocols ``actor`` sees on ``tab``, filtered by ``search``.

    Args:
        requests: Full (tenant-scoped) protocol set.
        actor: The user asking for their queue.
        tab: IN_PROGRESS or COMPLETED.
        search: Optional free-text term.

    Returns:
        The matching protocols in input order.
    """
    tab = QueueTab(tab)
    return [
        r
        for r in requests
        if matches_tab(r, tab) and matches_role(r, actor, tab) and matches_search(r, search)
    ]


def is_actionable(request: AuditRequest, actor: User) -> bool:
    """Whether ``request`` sits in the actor's work queue and some transition
    is open to the actor's role from its current step."""
    if not matches_role(request, actor, QueueTab.IN_PROGRESS):
        return False
    if not matches_tab(request, QueueTab.IN_PROGRESS):
        return False
    return bool(allowed_targets(actor.role, request.workflow_step))


# ---------------------------------------------------------------------------
# Tenant scoping (data-fetch boundary)
# ---------------------------------------------------------------------------

def tenant_scope(
    actor: User,
    tenants: Iterable[Tenant] = (),
    auditor: Optional[MedicalAuditor] = None,
) -> Optional[set[str]]:
    """Tenant ids whose protocols ``actor`` may load.

    Returns ``None`` for an unrestricted scope (roles granted
    ``view_all_tenants``, i.e. the master admin).

    * EMPRESA_GESTORA -- its own tenant plus every operator parented to it.
    * OPERADORA       -- its own tenant.
    * AUDITOR_MEDICO  -- the operators listed in the auditor profile, or
      the auditor's own tenant when no profile/links exist.  An inactive
      profile sees nothing.
    """
    if check_permission(actor.role, "view_all_tenants"):
        return None

    if actor.role == Role.EMPRESA_GESTORA:
        scope = {actor.tenant_id} if actor.tenant_id else set()
        scope.update(
            t.id
            for t in tenants
            if t.type == TenantType.OPERADORA and t.parent_id and t.parent_id == actor.tenant_id
        )
        return scope

    if actor.role == Role.AUDITOR_MEDICO and auditor is not None:
        if not auditor.is_active:
            return set()
        if auditor.operator_ids:
            return set(auditor.operator_ids)

    return {actor.tenant_id} if actor.tenant_id else set()


def scope_requests(
    requests: Iterable[AuditRequest], scope: Optional[set[str]]
) -> list[AuditRequest]:
    if scope is None:
        return list(requests)
    return [r for r in requests if r.tenant_id in scope]
