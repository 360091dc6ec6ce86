"""
Role-Based Access Control (RBAC) for MedAudit.

Two layers are defined here:

* a ``(role, action) -> allowed`` permission table used by the service
  layer to gate operations (editing items, attaching documents, asking
  for advice, ...);
* ``is_transition_allowed(role, from_step, to_step)``, the server-side
  guard for workflow transitions.  The state machine calls it on every
  transition so the legal-actor table holds regardless of which client
  issued the call.

**Legal transitions by role:**

=============== ================ ================ ===================
From            Role             To               Action
=============== ================ ================ ===================
ADMINISTRATIVE  OPERADORA        AUDIT            forward_to_audit
AUDIT           AUDITOR_MEDICO   AUDIT            forward_to_specialist /
                                                  return_to_general
AUDIT           AUDITOR_MEDICO   RELEASE          conclude_analysis
AUDIT, RELEASE  auditor/manager  ADMINISTRATIVE   return_to_operator
RELEASE         OPERADORA        FINISHED         effectuate_guide
=============== ================ ================ ===================
"""

from __future__ import annotations

from typing import Optional

from medaudit.models import GENERAL_QUEUE, Role, WorkflowStep


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

_ACTIONS = (
    "create_request",
    "forward_to_audit",
    "forward_to_specialist",
    "return_to_general",
    "conclude_analysis",
    "return_to_operator",
    "effectuate_guide",
    "edit_items",
    "edit_metadata",
    "attach_documents",
    "request_advice",
    "send_message",
    "view_all_tenants",
    "manage_catalog",
)

_GRANTS: dict[Role, set[str]] = {
    Role.OPERADORA: {
        "create_request",
        "forward_to_audit",
        "effectuate_guide",
        "edit_metadata",
        "attach_documents",
        "send_message",
    },
    Role.AUDITOR_MEDICO: {
        "forward_to_specialist",
        "return_to_general",
        "conclude_analysis",
        "return_to_operator",
        "edit_items",
        "edit_metadata",
        "attach_documents",
        "request_advice",
        "send_message",
    },
    Role.EMPRESA_GESTORA: {
        "return_to_operator",
        "edit_metadata",
        "request_advice",
        "send_message",
    },
    Role.ADMIN_MASTER: {
        "create_request",
        "return_to_operator",
        "edit_metadata",
        "request_advice",
        "send_message",
        "view_all_tenants",
        "manage_catalog",
    },
}

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    (role, action): action in _GRANTS[role]
    for role in Role
    for action in _ACTIONS
}


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role may perform an action.  Unknown actions are denied."""
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        PermissionError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    """Return every action with its permission flag for ``role``."""
    return {
        action: allowed
        for (r, action), allowed in _PERMISSIONS.items()
        if r == role
    }


# ---------------------------------------------------------------------------
# Transition guard
# ---------------------------------------------------------------------------

_TRANSITION_ROLES: dict[tuple[WorkflowStep, WorkflowStep], frozenset[Role]] = {
    (WorkflowStep.ADMINISTRATIVE, WorkflowStep.AUDIT): frozenset({Role.OPERADORA}),
    (WorkflowStep.AUDIT, WorkflowStep.AUDIT): frozenset({Role.AUDITOR_MEDICO}),
    (WorkflowStep.AUDIT, WorkflowStep.RELEASE): frozenset({Role.AUDITOR_MEDICO}),
    (WorkflowStep.AUDIT, WorkflowStep.ADMINISTRATIVE): frozenset(
        {Role.AUDITOR_MEDICO, Role.EMPRESA_GESTORA, Role.ADMIN_MASTER}
    ),
    (WorkflowStep.RELEASE, WorkflowStep.ADMINISTRATIVE): frozenset(
        {Role.AUDITOR_MEDICO, Role.EMPRESA_GESTORA, Role.ADMIN_MASTER}
    ),
    (WorkflowStep.RELEASE, WorkflowStep.FINISHED): frozenset({Role.OPERADORA}),
}


def is_transition_allowed(role: Role, from_step: WorkflowStep, to_step: WorkflowStep) -> bool:
    """Whether ``role`` may move a protocol from ``from_step`` to ``to_step``.

    Pairs outside the workflow graph (and anything leaving FINISHED) are
    never allowed.
    """
    return role in _TRANSITION_ROLES.get((from_step, to_step), frozenset())


def allowed_targets(role: Role, from_step: WorkflowStep) -> set[WorkflowStep]:
    """Steps ``role`` may move a protocol to from ``from_step``."""
    return {
        to_step
        for (source, to_step), roles in _TRANSITION_ROLES.items()
        if source == from_step and role in roles
    }


def transition_action(
    from_step: WorkflowStep,
    to_step: WorkflowStep,
    especialidade_alvo: Optional[str] = None,
) -> Optional[str]:
    """Name the permission action a transition corresponds to.

    AUDIT -> AUDIT is a re-routing: towards a named specialty it is
    ``forward_to_specialist``, towards the general queue it is
    ``return_to_general``.  Returns ``None`` for pairs outside the graph.
    """
    if (from_step, to_step) not in _TRANSITION_ROLES:
        return None
    if to_step == WorkflowStep.ADMINISTRATIVE:
        return "return_to_operator"
    if to_step == WorkflowStep.FINISHED:
        return "effectuate_guide"
    if to_step == WorkflowStep.RELEASE:
        return "conclude_analysis"
    if from_step == WorkflowStep.ADMINISTRATIVE:
        return "forward_to_audit"
    if especialidade_alvo is None or especialidade_alvo == GENERAL_QUEUE:
        return "return_to_general"
    return "forward_to_specialist"
