"""
Protocol Service -- async orchestration of the workflow core.

``ProtocolService`` binds the pure state machine, routing and SLA code to
the record store, blob storage and advisory oracle.  Every mutation is:

1. validated by the core *before* any store call,
2. applied copy-on-write to the *stored* ``AuditRequest``, taking only the
   guarded edits (item decisions, metadata) from the caller's copy,
3. persisted whole with an optimistic version check.

Callers re-read through ``reload()`` / ``queue()`` after a mutation; the
service keeps no cache of its own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from medaudit.advisory import AdvisoryOracle
from medaudit.config import DocumentSlotTemplate, SettingsRegistry, WorkflowSettings
from medaudit.models import (
    AIDecisionSupport,
    AIRule,
    AuditRequest,
    FileMetadata,
    MedicalAuditor,
    Procedure,
    QueueTab,
    RequestDraft,
    Role,
    Tenant,
    User,
    WorkflowDocument,
    WorkflowStep,
)
from medaudit.queue_router import scope_requests, tenant_scope, visible_queue
from medaudit.rbac import check_permission
from medaudit.store import (
    BlobStorage,
    ConflictError,
    PersistenceError,
    RecordStore,
    UploadError,
)
from medaudit.workflow import (
    PatchLike,
    TenantMismatchError,
    RequestValidationError,
    UnauthorizedActionError,
    apply_transition,
    attach_files as attach_to_slot,
    check_transition,
    describe_action,
    merge_edits,
    new_request,
    validate_draft,
)

logger = logging.getLogger(__name__)

REQUESTS_COLLECTION = "audit_requests"
TEMPLATES_COLLECTION = "document_templates"
TENANTS_COLLECTION = "tenants"
AUDITORS_COLLECTION = "medical_auditors"
RULES_COLLECTION = "ai_rules"
PROCEDURES_COLLECTION = "procedures"

MIN_SEARCH_LENGTH = 3
SEARCH_LIMIT = 15

UploadItem = tuple[str, bytes, Optional[str]]
"""``(file name, content, content type)`` of one file to upload."""


class ProtocolService:
    """Async facade over the protocol workflow.

    Args:
        store: Record store holding protocols, templates, tenants and auditors.
        storage: Blob storage for dossier files.
        registry: Per-tenant settings; built-in defaults when omitted.
        oracle: Advisory oracle; ``advise`` is unavailable without one.
    """

    def __init__(
        self,
        store: RecordStore,
        storage: BlobStorage,
        registry: Optional[SettingsRegistry] = None,
        oracle: Optional[AdvisoryOracle] = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.registry = registry or SettingsRegistry()
        self.oracle = oracle

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def settings_for(self, tenant_id: str) -> WorkflowSettings:
        """Settings of ``tenant_id``, inherited from its gestora when unset."""
        records = await self.store.get(TENANTS_COLLECTION, {"id": tenant_id})
        parent_id = records[0].get("parent_id") if records else None
        return self.registry.get_or_default(tenant_id, parent_id)

    async def _scope(
        self,
        actor: User,
        tenants: Optional[Iterable[Tenant]],
        auditor: Optional[MedicalAuditor],
    ) -> Optional[set[str]]:
        if actor.role == Role.EMPRESA_GESTORA and tenants is None:
            records = await self.store.get(TENANTS_COLLECTION, {"parent_id": actor.tenant_id})
            tenants = [Tenant.model_validate(r) for r in records]
        if actor.role == Role.AUDITOR_MEDICO and auditor is None:
            records = await self.store.get(AUDITORS_COLLECTION, {"id": actor.id})
            auditor = MedicalAuditor.model_validate(records[0]) if records else None
        return tenant_scope(actor, tenants or (), auditor)

    async def reload(
        self,
        actor: User,
        tenants: Optional[Iterable[Tenant]] = None,
        auditor: Optional[MedicalAuditor] = None,
    ) -> list[AuditRequest]:
        """Full fetch of every protocol the actor's tenant scope covers.

        ``tenants`` / ``auditor`` are looked up in the store when omitted.
        """
        scope = await self._scope(actor, tenants, auditor)
        records = await self.store.get(REQUESTS_COLLECTION)
        requests = [AuditRequest.model_validate(r) for r in records]
        return scope_requests(requests, scope)

    async def queue(
        self,
        actor: User,
        tab: QueueTab = QueueTab.IN_PROGRESS,
        search: str = "",
        tenants: Optional[Iterable[Tenant]] = None,
        auditor: Optional[MedicalAuditor] = None,
    ) -> list[AuditRequest]:
        requests = await self.reload(actor, tenants, auditor)
        return visible_queue(requests, actor, tab, search)

    async def get(self, request_id: str) -> AuditRequest:
        """Fetch one protocol by id.

        Raises:
            KeyError: If no such protocol is stored.
        """
        records = await self.store.get(REQUESTS_COLLECTION, {"id": request_id})
        if not records:
            raise KeyError(f"Request '{request_id}' not found")
        return AuditRequest.model_validate(records[0])

    async def document_slots(self, tenant_id: str) -> list[WorkflowDocument]:
        """Dossier a new protocol of ``tenant_id`` starts with.

        Tenant-specific template rows win over global ones (``tenant_id``
        unset); with no stored rows the configured default slots apply.
        """
        records = await self.store.get(TEMPLATES_COLLECTION)
        own = [r for r in records if r.get("tenant_id") == tenant_id]
        rows = own or [r for r in records if not r.get("tenant_id")]
        if not rows:
            return (await self.settings_for(tenant_id)).default_documents()
        return [
            DocumentSlotTemplate(name=r["name"], required=r.get("required", True)).to_document(i)
            for i, r in enumerate(rows, start=1)
        ]

    async def search_procedures(self, term: str) -> list[Procedure]:
        """Catalog lookup by code or description, at most ``SEARCH_LIMIT`` hits.

        Terms shorter than ``MIN_SEARCH_LENGTH`` return nothing.
        """
        needle = term.strip().lower()
        if len(needle) < MIN_SEARCH_LENGTH:
            return []
        records = await self.store.get(PROCEDURES_COLLECTION)
        hits = [
            Procedure.model_validate(r)
            for r in records
            if needle in str(r.get("code", "")).lower()
            or needle in str(r.get("description", "")).lower()
        ]
        return hits[:SEARCH_LIMIT]

    async def rules(self) -> list[AIRule]:
        """Governance rules fed to the advisory oracle, newest first."""
        records = await self.store.get(RULES_COLLECTION)
        records.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return [AIRule.model_validate(r) for r in records]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _guard_tenant(self, request: AuditRequest, actor: User) -> None:
        scope = await self._scope(actor, None, None)
        if scope is not None and request.tenant_id not in scope:
            raise TenantMismatchError(
                f"User '{actor.name}' cannot act on request '{request.id}' "
                f"of tenant '{request.tenant_id}'."
            )

    async def _rebase(self, request: AuditRequest, actor: User) -> AuditRequest:
        """The stored copy of ``request`` with the caller's guarded edits merged in.

        Raises:
            KeyError: If the protocol is not stored.
            TenantMismatchError: If it is outside the actor's scope.
            ConflictError: If the caller read an older version.
            WorkflowError: Anything ``merge_edits`` rejects.
        """
        stored = await self.get(request.id)
        await self._guard_tenant(stored, actor)
        if request.version != stored.version:
            logger.warning(
                "Stale copy of request %s: stored %d, got %d",
                request.id, stored.version, request.version,
            )
            raise ConflictError(
                f"Request '{request.id}' is at version {stored.version}, "
                f"expected {request.version}. Reload and retry."
            )
        return merge_edits(stored, request, actor)

    async def _persist(self, request: AuditRequest) -> AuditRequest:
        try:
            record = await self.store.update(
                REQUESTS_COLLECTION,
                request.model_dump(mode="json"),
                expected_version=request.version,
            )
        except PersistenceError as exc:
            logger.error("Failed to persist request %s: %s", request.id, exc)
            raise
        return AuditRequest.model_validate(record)

    async def create_request(
        self, draft: RequestDraft, actor: User, tenant_id: Optional[str] = None
    ) -> AuditRequest:
        """Register a protocol from ``draft``.

        Validation happens before any store call, so a rejected draft leaves
        nothing behind.

        Raises:
            UnauthorizedActionError: If the actor cannot register protocols.
            RequestValidationError: If the draft is invalid or no tenant applies.
            TenantMismatchError: If an operator registers for another tenant.
            PersistenceError: If the store rejects the insert.
        """
        if not check_permission(actor.role, "create_request"):
            raise UnauthorizedActionError(f"Role '{actor.role.value}' cannot register protocols.")
        validate_draft(draft)

        owner = tenant_id or actor.tenant_id
        if not owner:
            raise RequestValidationError("A protocol must belong to an operator tenant.")
        if actor.role == Role.OPERADORA and owner != actor.tenant_id:
            raise TenantMismatchError(
                f"Operator of tenant '{actor.tenant_id}' cannot register for '{owner}'."
            )

        documents = None if draft.documents else await self.document_slots(owner)
        request = new_request(draft, actor, owner, documents=documents)
        try:
            record = await self.store.insert(REQUESTS_COLLECTION, request.model_dump(mode="json"))
        except PersistenceError as exc:
            logger.error("Failed to register request for tenant %s: %s", owner, exc)
            raise
        logger.info("Request %s registered by %s for tenant %s", request.id, actor.name, owner)
        return AuditRequest.model_validate(record)

    async def transition(
        self,
        request: AuditRequest,
        next_step: WorkflowStep,
        actor: User,
        description: str,
        metadata_patch: PatchLike = None,
    ) -> AuditRequest:
        """Move ``request`` to ``next_step`` and persist it.

        The transition applies to the stored protocol; from ``request`` only
        the edits ``merge_edits`` accepts are carried along.  The
        authorization code is only requested from the store once every
        guard passed and the target is FINISHED.

        Raises:
            TenantMismatchError: If the request is outside the actor's scope.
            WorkflowError: Anything the state machine rejects.
            ConflictError: If the stored request changed since it was read.
            PersistenceError: On any other store failure.
        """
        next_step = WorkflowStep(next_step)
        request = await self._rebase(request, actor)

        specialties = (await self.settings_for(request.tenant_id)).specialties
        check_transition(request, next_step, actor, metadata_patch, specialties)

        auth_code = None
        if next_step == WorkflowStep.FINISHED:
            auth_code = await self.store.generate_auth_code()
            logger.info("Authorization code %s issued for request %s", auth_code, request.id)

        updated = apply_transition(
            request,
            next_step,
            actor,
            description,
            metadata_patch=metadata_patch,
            auth_code=auth_code,
            specialties=specialties,
        )
        saved = await self._persist(updated)
        logger.info(
            "Request %s: %s (%s -> %s) by %s",
            request.id,
            describe_action(request, next_step, metadata_patch),
            request.workflow_step.value,
            next_step.value,
            actor.name,
        )
        return saved

    async def save(self, request: AuditRequest, actor: User) -> AuditRequest:
        """Persist buffered item and metadata edits.  No history event.

        Step, history, auth code, routing and documents are never taken
        from ``request``; they only change through ``transition`` and
        ``attach_files``.

        Raises:
            TerminalStepError: If the stored protocol is FINISHED.
            ItemEditError: If the item edits break the amendment rules.
            UnauthorizedActionError: If the actor cannot edit metadata.
            ConflictError: If the stored request changed since it was read.
        """
        saved = await self._persist(await self._rebase(request, actor))
        logger.info("Request %s saved by %s", request.id, actor.name)
        return saved

    async def attach_files(
        self,
        request: AuditRequest,
        document_id: str,
        files: Iterable[UploadItem],
        actor: User,
    ) -> tuple[AuditRequest, list[str]]:
        """Upload files concurrently and attach the successful ones.

        Returns:
            The persisted request and the names of the files that failed.

        Raises:
            UnauthorizedActionError: If the actor cannot attach documents.
            RequestValidationError: If the slot does not exist.
            UploadError: If every upload failed.
        """
        if not check_permission(actor.role, "attach_documents"):
            raise UnauthorizedActionError(f"Role '{actor.role.value}' cannot attach documents.")
        request = await self._rebase(request, actor)
        # Fail on a bad slot before uploading anything.
        attach_to_slot(request, document_id, [])

        files = list(files)
        if not files:
            return request, []
        results = await asyncio.gather(
            *(self.storage.upload(data, name, content_type) for name, data, content_type in files),
            return_exceptions=True,
        )

        uploaded: list[FileMetadata] = []
        failed: list[str] = []
        for (name, _, _), result in zip(files, results):
            if isinstance(result, BaseException):
                logger.warning("Upload of %s failed for request %s: %s", name, request.id, result)
                failed.append(name)
            else:
                uploaded.append(result)

        if not uploaded:
            raise UploadError(
                f"All {len(files)} uploads failed for request '{request.id}': {failed}"
            )

        saved = await self._persist(attach_to_slot(request, document_id, uploaded))
        logger.info(
            "%d file(s) attached to %s on request %s", len(uploaded), document_id, request.id
        )
        return saved, failed

    async def advise(
        self,
        request: AuditRequest,
        actor: User,
        rules: Optional[Iterable[AIRule]] = None,
    ) -> AIDecisionSupport:
        """Advisory recommendation; never applied to the request.

        ``rules`` defaults to the governance rules stored in ``ai_rules``.

        Raises:
            UnauthorizedActionError: If the actor cannot request advice.
            RuntimeError: If the service was built without an oracle.
        """
        if not check_permission(actor.role, "request_advice"):
            raise UnauthorizedActionError(f"Role '{actor.role.value}' cannot request advice.")
        if self.oracle is None:
            raise RuntimeError("No advisory oracle configured.")
        if rules is None:
            rules = await self.rules()
        return await self.oracle.analyze(request, rules)

    # ------------------------------------------------------------------
    # Catalog administration
    # ------------------------------------------------------------------

    async def upsert_procedure(self, procedure: Procedure, actor: User) -> Procedure:
        """Add or replace a catalog procedure.

        Raises:
            UnauthorizedActionError: If the actor cannot manage the catalog.
        """
        if not check_permission(actor.role, "manage_catalog"):
            raise UnauthorizedActionError(f"Role '{actor.role.value}' cannot manage the catalog.")
        record = await self.store.upsert(PROCEDURES_COLLECTION, procedure.model_dump(mode="json"))
        logger.info("Procedure %s (%s) saved by %s", procedure.code, procedure.id, actor.name)
        return Procedure.model_validate(record)

    async def upsert_rule(self, rule: AIRule, actor: User) -> AIRule:
        """Add or replace a governance rule.

        Raises:
            UnauthorizedActionError: If the actor cannot manage the catalog.
        """
        if not check_permission(actor.role, "manage_catalog"):
            raise UnauthorizedActionError(f"Role '{actor.role.value}' cannot manage AI rules.")
        record = await self.store.upsert(RULES_COLLECTION, rule.model_dump(mode="json"))
        logger.info("AI rule %s saved by %s", rule.id, actor.name)
        return AIRule.model_validate(record)
