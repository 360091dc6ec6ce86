"""
Tests for medaudit.models -- domain value types and their invariants.
"""

from datetime import datetime, timedelta, timezone

import pytest

from medaudit.models import (
    AIDecisionSupport,
    AuditItem,
    AuditRequest,
    AuditorType,
    Beneficiary,
    ChatMessage,
    MedicalAuditor,
    Procedure,
    RequestMetadataPatch,
    RequestStatus,
    Role,
    Tenant,
    TenantType,
    TimelineEvent,
    User,
    WorkflowStep,
)


def _make_procedure(fees: float = 100.0) -> Procedure:
    return Procedure(id=1, code="40301010", description="HEMOGRAMA COMPLETO", fees_value=fees)


def _make_request(**overrides) -> AuditRequest:
    fields = dict(
        tenant_id="op_1",
        beneficiary=Beneficiary(name="MARIA SILVA"),
        items=[AuditItem.from_procedure(_make_procedure())],
    )
    fields.update(overrides)
    return AuditRequest(**fields)


class TestAuditItem:
    def test_from_procedure_mirrors_quantities_and_price(self):
        item = AuditItem.from_procedure(_make_procedure(fees=250.5), quantity=3)
        assert item.quantity_requested == 3
        assert item.quantity_authorized == 3
        assert item.unit_value == 250.5
        assert item.id.startswith("i-")

    def test_total_value_uses_authorized_quantity(self):
        item = AuditItem.from_procedure(_make_procedure(fees=10.0), quantity=4)
        item.quantity_authorized = 2
        assert item.total_value == 20.0

    def test_requested_quantity_must_be_positive(self):
        with pytest.raises(Exception):
            AuditItem(procedure=_make_procedure(), quantity_requested=0)


class TestAuditRequest:
    def test_defaults(self):
        request = _make_request()
        assert request.workflow_step == WorkflowStep.ADMINISTRATIVE
        assert request.status == RequestStatus.PENDING_AUDIT
        assert request.version == 0
        assert request.especialidade_alvo is None

    def test_request_needs_at_least_one_item(self):
        with pytest.raises(Exception):
            _make_request(items=[])

    def test_request_needs_tenant(self):
        with pytest.raises(Exception):
            _make_request(tenant_id="")

    def test_unknown_step_rejected(self):
        with pytest.raises(Exception):
            _make_request(workflow_step="ARCHIVED")

    def test_history_must_be_time_ordered(self):
        now = datetime.now(timezone.utc)
        first = TimelineEvent(step=WorkflowStep.ADMINISTRATIVE, user="a", role=Role.OPERADORA, timestamp=now)
        older = TimelineEvent(
            step=WorkflowStep.AUDIT, user="a", role=Role.OPERADORA, timestamp=now - timedelta(seconds=1)
        )
        with pytest.raises(Exception, match="time-ordered"):
            _make_request(history=[first, older])

    def test_find_item_and_document(self):
        request = _make_request()
        item_id = request.items[0].id
        assert request.find_item(item_id).id == item_id
        with pytest.raises(KeyError):
            request.find_item("missing")
        with pytest.raises(KeyError):
            request.find_document("doc-9")

    def test_json_round_trip_is_lossless(self):
        request = _make_request(especialidade_alvo="ORTOPEDIA")
        restored = AuditRequest.model_validate(request.model_dump(mode="json"))
        assert restored == request

    def test_timeline_event_is_immutable(self):
        event = TimelineEvent(step=WorkflowStep.AUDIT, user="a", role=Role.OPERADORA)
        with pytest.raises(Exception):
            event.description = "changed"


class TestActorsAndTenants:
    def test_gestora_cannot_have_parent(self):
        with pytest.raises(Exception):
            Tenant(name="G", type=TenantType.GESTORA, parent_id="other")

    def test_display_name_prefers_commercial_name(self):
        tenant = Tenant(name="Razao Social", commercial_name="Fantasia", type=TenantType.OPERADORA)
        assert tenant.display_name == "Fantasia"

    def test_specialist_auditor_needs_specialty(self):
        with pytest.raises(Exception):
            MedicalAuditor(name="Dr. X", tipo_auditor=AuditorType.ESPECIALISTA, gestora_id="g1")

    def test_specialist_user_needs_specialty(self):
        with pytest.raises(Exception):
            User(name="Dr. X", role=Role.AUDITOR_MEDICO, tipo_auditor=AuditorType.ESPECIALISTA)
        with pytest.raises(Exception):
            User(
                name="Dr. X", role=Role.AUDITOR_MEDICO,
                tipo_auditor=AuditorType.ESPECIALISTA, especialidade="  ",
            )

    def test_auditor_operator_links_deduplicated(self):
        auditor = MedicalAuditor(name="Dr. X", gestora_id="g1", operator_ids=["a", "b", "a"])
        assert auditor.operator_ids == ["a", "b"]

    def test_is_specialist(self):
        specialist = User(
            name="Dr. Y", role=Role.AUDITOR_MEDICO,
            tipo_auditor=AuditorType.ESPECIALISTA, especialidade="COLUNA",
        )
        assert specialist.is_specialist
        assert not User(name="Op", role=Role.OPERADORA).is_specialist


class TestSmallValues:
    def test_confidence_bounds(self):
        with pytest.raises(Exception):
            AIDecisionSupport(recommendation="APPROVE", confidence=1.5, reasoning="x")

    def test_temporary_chat_message(self):
        msg = ChatMessage(
            id="temp-1", request_id="r1", sender_id="u1", sender_role=Role.OPERADORA, content="oi"
        )
        assert msg.is_temporary

    def test_patch_reports_only_explicit_fields(self):
        patch = RequestMetadataPatch(cid10="M51.1", especialidade_alvo=None)
        assert patch.changes() == {"cid10": "M51.1", "especialidade_alvo": None}
        assert RequestMetadataPatch().changes() == {}
