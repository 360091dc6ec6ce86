"""
Tests for medaudit.service -- async protocol orchestration.

Covers: the end-to-end routing scenario, validation before persistence,
document templates, authorization codes on FINISHED only, optimistic
concurrency, tenant isolation, partial and total upload failures, and the
permission-checked advisory call.
"""

from __future__ import annotations

import json

import pytest

from medaudit.advisory import CONTINGENCY_DECISION, AdvisoryOracle
from medaudit.config import SettingsRegistry, WorkflowSettings
from medaudit.models import (
    AIRule,
    AuditItem,
    AuditorType,
    Beneficiary,
    ItemStatus,
    MedicalAuditor,
    Procedure,
    QueueTab,
    Recommendation,
    RequestDraft,
    RulePriority,
    Role,
    Tenant,
    TenantType,
    User,
    WorkflowDocument,
    WorkflowStep,
)
from medaudit.service import (
    AUDITORS_COLLECTION,
    PROCEDURES_COLLECTION,
    REQUESTS_COLLECTION,
    RULES_COLLECTION,
    TEMPLATES_COLLECTION,
    TENANTS_COLLECTION,
    ProtocolService,
)
from medaudit.store import (
    ConflictError,
    InMemoryBlobStorage,
    InMemoryRecordStore,
    PersistenceError,
    UploadError,
)
from medaudit.workflow import (
    ItemEditError,
    RequestValidationError,
    TenantMismatchError,
    TerminalStepError,
    UnauthorizedActionError,
    UnauthorizedTransitionError,
    update_item,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

OPERATOR = User(id="u-op", name="Ana", role=Role.OPERADORA, tenant_id="op_1", parent_tenant_id="g1")
OTHER_OPERATOR = User(id="u-op2", name="Beto", role=Role.OPERADORA, tenant_id="op_2")
GENERALIST = User(id="u-gen", name="Dr. Geral", role=Role.AUDITOR_MEDICO)
NEURO = User(
    id="u-neuro", name="Dra. Neuro", role=Role.AUDITOR_MEDICO,
    tipo_auditor=AuditorType.ESPECIALISTA, especialidade="NEUROCIRURGIA",
)
ORTHO = User(
    id="u-ortho", name="Dr. Orto", role=Role.AUDITOR_MEDICO,
    tipo_auditor=AuditorType.ESPECIALISTA, especialidade="ORTOPEDIA",
)
MANAGER = User(id="u-gest", name="Gestora", role=Role.EMPRESA_GESTORA, tenant_id="g1")
MASTER = User(id="u-master", name="Master", role=Role.ADMIN_MASTER)


class FakeGenerator:
    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    async def generate(self, prompt, system_instruction, output_schema):
        self.prompts.append(prompt)
        return self.answer


async def _make_service(
    registry: SettingsRegistry | None = None,
    storage: InMemoryBlobStorage | None = None,
    answer: str = "",
) -> ProtocolService:
    store = InMemoryRecordStore()
    tenants = [
        Tenant(id="g1", name="Gestora 1", type=TenantType.GESTORA),
        Tenant(id="op_1", name="Operadora 1", type=TenantType.OPERADORA, parent_id="g1"),
        Tenant(id="op_2", name="Operadora 2", type=TenantType.OPERADORA),
    ]
    for tenant in tenants:
        await store.insert(TENANTS_COLLECTION, tenant.model_dump(mode="json"))
    for user in (GENERALIST, NEURO, ORTHO):
        profile = MedicalAuditor(
            id=user.id, name=user.name, tipo_auditor=user.tipo_auditor,
            specialty=user.especialidade or "", gestora_id="g1", operator_ids=["op_1"],
        )
        await store.insert(AUDITORS_COLLECTION, profile.model_dump(mode="json"))
    return ProtocolService(
        store,
        storage or InMemoryBlobStorage(),
        registry,
        AdvisoryOracle(FakeGenerator(answer)),
    )


def _make_draft(items: int = 1) -> RequestDraft:
    procedure = Procedure(id=7, code="30715016", description="ARTRODESE", fees_value=500.0)
    return RequestDraft(
        beneficiary=Beneficiary(name="maria silva"),
        cid10="M51.1",
        items=[AuditItem.from_procedure(procedure) for _ in range(items)],
    )


async def _in_audit(service: ProtocolService):
    request = await service.create_request(_make_draft(), OPERATOR)
    return await service.transition(request, WorkflowStep.AUDIT, OPERATOR, "Enviado para Auditoria.")


def _ids(requests) -> list[str]:
    return [r.id for r in requests]


# ---------------------------------------------------------------------------
# 1. End-to-end routing scenario
# ---------------------------------------------------------------------------

class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_specialty_routing_scenario(self):
        service = await _make_service()

        request = await service.create_request(_make_draft(items=1), OPERATOR)
        assert request.workflow_step == WorkflowStep.ADMINISTRATIVE

        request = await service.transition(request, WorkflowStep.AUDIT, OPERATOR, "Enviado para Auditoria.")
        assert request.id not in _ids(await service.queue(NEURO))
        assert request.id not in _ids(await service.queue(ORTHO))
        assert request.id in _ids(await service.queue(GENERALIST))

        request = await service.transition(
            request, WorkflowStep.AUDIT, GENERALIST,
            "Protocolo encaminhado para fila especializada: NEUROCIRURGIA",
            metadata_patch={"especialidade_alvo": "NEUROCIRURGIA"},
        )
        assert request.id not in _ids(await service.queue(GENERALIST))
        assert request.id in _ids(await service.queue(NEURO))
        assert request.id not in _ids(await service.queue(ORTHO))

    @pytest.mark.asyncio
    async def test_full_lifecycle_issues_auth_code_once(self):
        service = await _make_service()
        request = await _in_audit(service)
        request = await service.transition(request, WorkflowStep.RELEASE, GENERALIST, "Parecer técnico finalizado.")
        assert request.auth_code is None

        request = await service.transition(request, WorkflowStep.FINISHED, OPERATOR, "Guia efetivada.")
        assert request.auth_code.startswith("AUT-")
        assert len(request.history) == 4
        assert request.id in _ids(await service.queue(OPERATOR, QueueTab.COMPLETED))

        with pytest.raises(TerminalStepError):
            await service.transition(request, WorkflowStep.AUDIT, OPERATOR, "again")
        assert len((await service.get(request.id)).history) == 4


# ---------------------------------------------------------------------------
# 2. Creation
# ---------------------------------------------------------------------------

class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_invalid_draft_writes_nothing(self):
        service = await _make_service()
        with pytest.raises(RequestValidationError):
            await service.create_request(_make_draft(items=0), OPERATOR)
        assert await service.store.get(REQUESTS_COLLECTION) == []

    @pytest.mark.asyncio
    async def test_auditor_cannot_register(self):
        service = await _make_service()
        with pytest.raises(UnauthorizedActionError):
            await service.create_request(_make_draft(), GENERALIST)

    @pytest.mark.asyncio
    async def test_operator_cannot_register_for_other_tenant(self):
        service = await _make_service()
        with pytest.raises(TenantMismatchError):
            await service.create_request(_make_draft(), OPERATOR, tenant_id="op_2")

    @pytest.mark.asyncio
    async def test_default_dossier_without_templates(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        assert len(request.documents) == 5
        assert request.beneficiary.name == "MARIA SILVA"

    @pytest.mark.asyncio
    async def test_gestora_settings_inherited(self):
        registry = SettingsRegistry()
        registry.register(WorkflowSettings(
            tenant_id="g1", specialties=["COLUNA"], document_slots=[{"name": "LAUDO"}],
        ))
        service = await _make_service(registry=registry)
        request = await service.create_request(_make_draft(), OPERATOR)
        assert [d.name for d in request.documents] == ["LAUDO"]

    @pytest.mark.asyncio
    async def test_stored_templates_win_tenant_first(self):
        service = await _make_service()
        await service.store.insert(TEMPLATES_COLLECTION, {"name": "GLOBAL", "tenant_id": None})
        await service.store.insert(TEMPLATES_COLLECTION, {"name": "PROPRIO", "tenant_id": "op_1"})
        assert [d.name for d in await service.document_slots("op_1")] == ["PROPRIO"]
        assert [d.name for d in await service.document_slots("op_2")] == ["GLOBAL"]

    @pytest.mark.asyncio
    async def test_draft_documents_kept(self):
        service = await _make_service()
        draft = _make_draft()
        draft.documents = [WorkflowDocument(name="UNICO")]
        request = await service.create_request(draft, OPERATOR)
        assert [d.name for d in request.documents] == ["UNICO"]

    @pytest.mark.asyncio
    async def test_store_failure_surfaces(self):
        service = await _make_service()
        service.store.fail_next("insert", "db down")
        with pytest.raises(PersistenceError, match="db down"):
            await service.create_request(_make_draft(), OPERATOR)


# ---------------------------------------------------------------------------
# 3. Transitions and persistence
# ---------------------------------------------------------------------------

class TestTransitions:
    @pytest.mark.asyncio
    async def test_unknown_specialty_rejected(self):
        service = await _make_service()
        request = await _in_audit(service)
        with pytest.raises(RequestValidationError):
            await service.transition(
                request, WorkflowStep.AUDIT, GENERALIST, "x",
                metadata_patch={"especialidade_alvo": "PEDIATRIA"},
            )

    @pytest.mark.asyncio
    async def test_auth_code_not_consumed_by_rejected_finish(self):
        service = await _make_service()
        request = await _in_audit(service)
        request = await service.transition(request, WorkflowStep.RELEASE, GENERALIST, "ok")
        with pytest.raises(UnauthorizedTransitionError):
            await service.transition(request, WorkflowStep.FINISHED, MASTER, "x")
        request = await service.transition(request, WorkflowStep.FINISHED, OPERATOR, "ok")
        assert request.auth_code.endswith("-000001")

    @pytest.mark.asyncio
    async def test_stale_request_raises_conflict(self):
        service = await _make_service()
        request = await _in_audit(service)
        await service.transition(request, WorkflowStep.RELEASE, GENERALIST, "first")
        with pytest.raises(ConflictError):
            await service.transition(request, WorkflowStep.ADMINISTRATIVE, MANAGER, "stale")

    @pytest.mark.asyncio
    async def test_operator_of_other_tenant_rejected(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        with pytest.raises(TenantMismatchError):
            await service.transition(request, WorkflowStep.AUDIT, OTHER_OPERATOR, "x")

    @pytest.mark.asyncio
    async def test_save_persists_item_edits_without_history(self):
        service = await _make_service()
        request = await _in_audit(service)
        edited = update_item(request, request.items[0].id, GENERALIST, quantity_authorized=0)
        saved = await service.save(edited, GENERALIST)
        assert saved.items[0].quantity_authorized == 0
        assert len(saved.history) == len(request.history)
        assert saved.version == request.version + 1


# ---------------------------------------------------------------------------
# 4. Scoping
# ---------------------------------------------------------------------------

class TestScoping:
    @pytest.mark.asyncio
    async def test_reload_scopes_by_tenant(self):
        service = await _make_service()
        mine = await service.create_request(_make_draft(), OPERATOR)
        theirs = await service.create_request(_make_draft(), OTHER_OPERATOR)

        assert _ids(await service.reload(OPERATOR)) == [mine.id]
        assert _ids(await service.reload(OTHER_OPERATOR)) == [theirs.id]
        assert _ids(await service.reload(MANAGER)) == [mine.id]
        assert _ids(await service.reload(GENERALIST)) == [mine.id]
        assert set(_ids(await service.reload(MASTER))) == {mine.id, theirs.id}

    @pytest.mark.asyncio
    async def test_search(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        assert _ids(await service.queue(OPERATOR, search="silva")) == [request.id]
        assert await service.queue(OPERATOR, search="nobody") == []


# ---------------------------------------------------------------------------
# 5. File uploads
# ---------------------------------------------------------------------------

class TestAttachFiles:
    @pytest.mark.asyncio
    async def test_partial_failure_attaches_successes(self):
        service = await _make_service(storage=InMemoryBlobStorage(fail_names={"bad.pdf"}))
        request = await service.create_request(_make_draft(), OPERATOR)
        saved, failed = await service.attach_files(
            request, "doc-1",
            [("laudo.pdf", b"1", "application/pdf"), ("bad.pdf", b"2", None)],
            OPERATOR,
        )
        assert failed == ["bad.pdf"]
        assert [f.name for f in saved.find_document("doc-1").files] == ["laudo.pdf"]
        stored = await service.get(request.id)
        assert len(stored.find_document("doc-1").files) == 1

    @pytest.mark.asyncio
    async def test_total_failure_raises(self):
        service = await _make_service(storage=InMemoryBlobStorage(fail_names={"a.pdf", "b.pdf"}))
        request = await service.create_request(_make_draft(), OPERATOR)
        with pytest.raises(UploadError):
            await service.attach_files(request, "doc-1", [("a.pdf", b"1", None), ("b.pdf", b"2", None)], OPERATOR)
        assert (await service.get(request.id)).find_document("doc-1").files == []

    @pytest.mark.asyncio
    async def test_unknown_slot_rejected_before_upload(self):
        storage = InMemoryBlobStorage()
        service = await _make_service(storage=storage)
        request = await service.create_request(_make_draft(), OPERATOR)
        with pytest.raises(RequestValidationError):
            await service.attach_files(request, "doc-99", [("a.pdf", b"1", None)], OPERATOR)
        assert storage.objects == {}

    @pytest.mark.asyncio
    async def test_manager_cannot_attach(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        with pytest.raises(UnauthorizedActionError):
            await service.attach_files(request, "doc-1", [("a.pdf", b"1", None)], MANAGER)


# ---------------------------------------------------------------------------
# 6. Advisory
# ---------------------------------------------------------------------------

class TestAdvise:
    @pytest.mark.asyncio
    async def test_advice_is_not_applied(self):
        answer = json.dumps({
            "recommendation": "REJECT", "confidence": 0.8,
            "reasoning": "Sem laudo.", "regulatoryReferences": [],
        })
        service = await _make_service(answer=answer)
        request = await _in_audit(service)
        decision = await service.advise(request, GENERALIST)
        assert decision.recommendation == Recommendation.REJECT
        stored = await service.get(request.id)
        assert stored.workflow_step == WorkflowStep.AUDIT
        assert stored.status == request.status

    @pytest.mark.asyncio
    async def test_empty_answer_gives_contingency(self):
        service = await _make_service(answer="")
        request = await _in_audit(service)
        assert await service.advise(request, GENERALIST) == CONTINGENCY_DECISION

    @pytest.mark.asyncio
    async def test_operator_cannot_request_advice(self):
        service = await _make_service()
        request = await _in_audit(service)
        with pytest.raises(UnauthorizedActionError):
            await service.advise(request, OPERATOR)


# ---------------------------------------------------------------------------
# 7. Saving buffered edits
# ---------------------------------------------------------------------------

class TestSave:
    @pytest.mark.asyncio
    async def test_tampered_step_and_history_not_persisted(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        tampered = request.model_copy(deep=True)
        tampered.workflow_step = WorkflowStep.FINISHED
        tampered.history = []
        tampered.auth_code = "AUT-FAKE"
        tampered.cid10 = "M54.5"

        saved = await service.save(tampered, OPERATOR)

        stored = await service.get(request.id)
        assert stored.workflow_step == WorkflowStep.ADMINISTRATIVE
        assert stored.history == request.history
        assert stored.auth_code is None
        assert stored.cid10 == "M54.5"
        assert saved == stored

    @pytest.mark.asyncio
    async def test_operator_item_edit_rejected(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        tampered = request.model_copy(deep=True)
        tampered.items[0].status = ItemStatus.FAVORABLE
        tampered.items[0].quantity_authorized = 99

        with pytest.raises(ItemEditError):
            await service.save(tampered, OPERATOR)

        stored = await service.get(request.id)
        assert stored.items[0].status == ItemStatus.PENDING
        assert stored.items[0].quantity_authorized == 1
        assert stored.version == request.version

    @pytest.mark.asyncio
    async def test_finished_request_cannot_be_saved(self):
        service = await _make_service()
        request = await _in_audit(service)
        request = await service.transition(request, WorkflowStep.RELEASE, GENERALIST, "ok")
        request = await service.transition(request, WorkflowStep.FINISHED, OPERATOR, "ok")
        request.cid10 = "X"
        with pytest.raises(TerminalStepError):
            await service.save(request, OPERATOR)

    @pytest.mark.asyncio
    async def test_stale_save_raises_conflict(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        await service.save(request.model_copy(update={"cid10": "A00"}), OPERATOR)
        with pytest.raises(ConflictError):
            await service.save(request.model_copy(update={"cid10": "B00"}), OPERATOR)
        assert (await service.get(request.id)).cid10 == "A00"

    @pytest.mark.asyncio
    async def test_tampered_history_dropped_on_transition(self):
        service = await _make_service()
        request = await service.create_request(_make_draft(), OPERATOR)
        tampered = request.model_copy(deep=True)
        tampered.history = []
        moved = await service.transition(tampered, WorkflowStep.AUDIT, OPERATOR, "Enviado.")
        assert [e.step for e in moved.history] == [WorkflowStep.ADMINISTRATIVE, WorkflowStep.AUDIT]


# ---------------------------------------------------------------------------
# 8. Work-queue ownership
# ---------------------------------------------------------------------------

class TestQueueOwnership:
    @pytest.mark.asyncio
    async def test_other_specialist_cannot_conclude(self):
        service = await _make_service()
        request = await _in_audit(service)
        request = await service.transition(
            request, WorkflowStep.AUDIT, GENERALIST, "x",
            metadata_patch={"especialidade_alvo": "NEUROCIRURGIA"},
        )
        with pytest.raises(UnauthorizedTransitionError):
            await service.transition(request, WorkflowStep.RELEASE, ORTHO, "Parecer.")
        with pytest.raises(UnauthorizedTransitionError):
            await service.transition(request, WorkflowStep.RELEASE, GENERALIST, "Parecer.")
        assert (await service.get(request.id)).workflow_step == WorkflowStep.AUDIT

        request = await service.transition(request, WorkflowStep.RELEASE, NEURO, "Parecer.")
        assert request.workflow_step == WorkflowStep.RELEASE

    @pytest.mark.asyncio
    async def test_other_specialist_cannot_save_item_edits(self):
        service = await _make_service()
        request = await _in_audit(service)
        request = await service.transition(
            request, WorkflowStep.AUDIT, GENERALIST, "x",
            metadata_patch={"especialidade_alvo": "NEUROCIRURGIA"},
        )
        edited = request.model_copy(deep=True)
        edited.items[0].quantity_authorized = 0
        with pytest.raises(ItemEditError):
            await service.save(edited, ORTHO)
        saved = await service.save(edited, NEURO)
        assert saved.items[0].quantity_authorized == 0


# ---------------------------------------------------------------------------
# 9. Governance rules and procedure catalog
# ---------------------------------------------------------------------------

class TestCatalog:
    @pytest.mark.asyncio
    async def test_advise_loads_stored_rules(self):
        service = await _make_service(answer="")
        await service.upsert_rule(
            AIRule(title="Exigir RM recente", priority=RulePriority.ALTA), MASTER
        )
        await service.upsert_rule(AIRule(title="Regra inativa", is_active=False), MASTER)
        request = await _in_audit(service)

        await service.advise(request, GENERALIST)

        prompt = service.oracle.generator.prompts[-1]
        assert "Exigir RM recente" in prompt
        assert "Regra inativa" not in prompt

    @pytest.mark.asyncio
    async def test_explicit_rules_win(self):
        service = await _make_service(answer="")
        await service.upsert_rule(AIRule(title="Armazenada"), MASTER)
        request = await _in_audit(service)
        await service.advise(request, GENERALIST, rules=[AIRule(title="Explicita")])
        prompt = service.oracle.generator.prompts[-1]
        assert "Explicita" in prompt
        assert "Armazenada" not in prompt

    @pytest.mark.asyncio
    async def test_rules_newest_first(self):
        service = await _make_service()
        for rule_id, month in (("r-old", "01"), ("r-new", "02")):
            await service.store.insert(
                RULES_COLLECTION,
                {"id": rule_id, "title": rule_id, "created_at": f"2026-{month}-01T00:00:00+00:00"},
            )
        assert [r.id for r in await service.rules()] == ["r-new", "r-old"]

    @pytest.mark.asyncio
    async def test_search_procedures(self):
        service = await _make_service()
        await service.upsert_procedure(
            Procedure(id=1, code="30715016", description="ARTRODESE DA COLUNA"), MASTER
        )
        await service.upsert_procedure(Procedure(id=2, code="40808041", description="RESSONANCIA"), MASTER)

        assert [p.id for p in await service.search_procedures("artrodese")] == [1]
        assert [p.id for p in await service.search_procedures("4080")] == [2]
        assert await service.search_procedures("ar") == []

    @pytest.mark.asyncio
    async def test_search_limited(self):
        service = await _make_service()
        for i in range(20):
            await service.store.insert(
                PROCEDURES_COLLECTION, {"id": i, "code": f"100{i:02d}", "description": "CONSULTA"}
            )
        assert len(await service.search_procedures("consulta")) == 15

    @pytest.mark.asyncio
    async def test_catalog_management_needs_permission(self):
        service = await _make_service()
        with pytest.raises(UnauthorizedActionError):
            await service.upsert_procedure(Procedure(id=1, code="1", description="X"), OPERATOR)
        with pytest.raises(UnauthorizedActionError):
            await service.upsert_rule(AIRule(title="X"), MANAGER)
        assert await service.store.get(RULES_COLLECTION) == []
