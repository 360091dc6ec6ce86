"""
Synthetic Scenario: One Protocol From Registration to Guide Release
===================================================================

This script walks a single protocol through the whole MedAudit workflow
using in-memory collaborators and entirely synthetic data.  No real
beneficiary data is used and no external service is called.

Steps demonstrated:
  1. Load tenant settings from YAML
  2. Register a protocol as the operator
  3. Forward it to medical audit and route it to a specialty queue
  4. Exchange chat messages on the protocol
  5. Ask the advisory oracle (offline generator)
  6. Specialist amends an item and concludes the analysis
  7. Operator effectuates the guide
  8. Protocol report and SLA metrics

Usage:
    python -m examples.protocol_walkthrough
    # or: python examples/protocol_walkthrough.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from medaudit.advisory import AdvisoryOracle
from medaudit.chat import ChatSession
from medaudit.config import SettingsRegistry, WorkflowSettings, load_settings_from_yaml
from medaudit.models import (
    AIRule,
    AuditItem,
    AuditorType,
    Beneficiary,
    ItemStatus,
    MedicalAuditor,
    Procedure,
    QueueTab,
    RequestDraft,
    Role,
    RulePriority,
    Tenant,
    TenantType,
    User,
    WorkflowStep,
)
from medaudit.report import generate_protocol_report
from medaudit.service import AUDITORS_COLLECTION, TENANTS_COLLECTION, ProtocolService
from medaudit.sla import compute_average_audit_duration, count_by_step
from medaudit.store import InMemoryBlobStorage, InMemoryPubSub, InMemoryRecordStore
from medaudit.workflow import update_item


class OfflineGenerator:
    """Stands in for the Gemini endpoint so the walkthrough runs offline."""

    async def generate(self, prompt, system_instruction, output_schema):
        return json.dumps({
            "recommendation": "PARTIAL",
            "confidence": 0.72,
            "reasoning": "(Sintético) Indicação pertinente; quantidade de OPME acima do protocolo.",
            "regulatoryReferences": ["RN 465/2021 - DUT"],
        })


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    _banner("MedAudit Synthetic Scenario: Protocol Lifecycle")
    print("All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load tenant settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Tenant Settings")

    sample_yaml = Path(__file__).parent / "workflow_settings.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)[0]
        print(f"Loaded settings for {settings.tenant_id}: {settings.specialties}")
    else:
        settings = WorkflowSettings(tenant_id="gestora_alfa")
        print(f"Using built-in settings: {settings.specialties}")

    registry = SettingsRegistry()
    registry.register(settings)

    store = InMemoryRecordStore()
    storage = InMemoryBlobStorage()
    channel = InMemoryPubSub()
    service = ProtocolService(store, storage, registry, AdvisoryOracle(OfflineGenerator()))

    gestora = Tenant(id="gestora_alfa", name="Gestora Alfa (sintética)", type=TenantType.GESTORA)
    operadora = Tenant(
        id="op_norte", name="Operadora Norte (sintética)", type=TenantType.OPERADORA,
        parent_id=gestora.id,
    )
    for tenant in (gestora, operadora):
        await store.insert(TENANTS_COLLECTION, tenant.model_dump(mode="json"))

    operator = User(
        id="u-op", name="Ana Operadora", role=Role.OPERADORA,
        tenant_id=operadora.id, parent_tenant_id=gestora.id,
    )
    generalist = User(id="u-gen", name="Dr. Bruno Geral", role=Role.AUDITOR_MEDICO)
    specialist = User(
        id="u-neuro", name="Dra. Carla Neuro", role=Role.AUDITOR_MEDICO,
        tipo_auditor=AuditorType.ESPECIALISTA, especialidade="NEUROCIRURGIA",
    )
    for user, specialty in ((generalist, ""), (specialist, "NEUROCIRURGIA")):
        profile = MedicalAuditor(
            id=user.id, name=user.name, tipo_auditor=user.tipo_auditor,
            specialty=specialty, gestora_id=gestora.id, operator_ids=[operadora.id],
        )
        await store.insert(AUDITORS_COLLECTION, profile.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Step 2: Register protocol
    # ------------------------------------------------------------------
    _banner("Step 2: Register Protocol")

    procedure = Procedure(
        id=1, code="30715016", tuss_code="30715016",
        description="ARTRODESE DA COLUNA VIA ANTERIOR", fees_value=3500.0,
    )
    draft = RequestDraft(
        beneficiary=Beneficiary(name="Beneficiário Sintético", card_id="0001-SYN"),
        cid10="M51.1",
        clinical_summary="(Sintético) Hérnia discal lombar com déficit motor.",
        items=[AuditItem.from_procedure(procedure, quantity=2)],
    )
    request = await service.create_request(draft, operator)
    print(f"Protocol {request.id} registered in {request.workflow_step.value}")
    print(f"  Dossier slots: {[d.name for d in request.documents]}")

    request, failed = await service.attach_files(
        request, request.documents[0].id,
        [("laudo.pdf", b"%PDF-synthetic", "application/pdf")], operator,
    )
    print(f"  Attached laudo.pdf (failed: {failed})")

    # ------------------------------------------------------------------
    # Step 3: Audit and specialty routing
    # ------------------------------------------------------------------
    _banner("Step 3: Audit Routing")

    request = await service.transition(request, WorkflowStep.AUDIT, operator, "Enviado para Auditoria.")
    print(f"Generalist queue: {[r.id for r in await service.queue(generalist)]}")
    print(f"Specialist queue: {[r.id for r in await service.queue(specialist)]}")

    request = await service.transition(
        request, WorkflowStep.AUDIT, generalist,
        "Protocolo encaminhado para fila especializada: NEUROCIRURGIA",
        metadata_patch={"especialidade_alvo": "NEUROCIRURGIA"},
    )
    print("Routed to NEUROCIRURGIA.")
    print(f"Generalist queue: {[r.id for r in await service.queue(generalist)]}")
    print(f"Specialist queue: {[r.id for r in await service.queue(specialist)]}")

    # ------------------------------------------------------------------
    # Step 4: Chat
    # ------------------------------------------------------------------
    _banner("Step 4: Collaboration Chat")

    session = ChatSession(request.id, store, channel)
    await session.load()
    await session.send(specialist, "Favor confirmar o nível operado.")
    await session.send(operator, "L4-L5, conforme laudo anexo.")
    for message in session.messages:
        print(f"  [{message.sender_role.value}] {message.sender_name}: {message.content}")
    session.close()

    # ------------------------------------------------------------------
    # Step 5: Advisory oracle
    # ------------------------------------------------------------------
    _banner("Step 5: AI Decision Support (advisory only)")

    rules = [AIRule(title="OPME", description="Limitar a 1 kit por nível.", priority=RulePriority.ALTA)]
    decision = await service.advise(request, specialist, rules)
    print(json.dumps(decision.model_dump(mode="json"), indent=2, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Step 6: Specialist decision
    # ------------------------------------------------------------------
    _banner("Step 6: Specialist Decision")

    request = update_item(
        request, request.items[0].id, specialist,
        quantity_authorized=1, status=ItemStatus.PARTIAL,
        justification="Um nível comprovado em imagem.",
    )
    request = await service.save(request, specialist)
    request = await service.transition(request, WorkflowStep.RELEASE, specialist, "Parecer técnico finalizado.")
    print(f"Analysis concluded. Step: {request.workflow_step.value}")

    # ------------------------------------------------------------------
    # Step 7: Guide release
    # ------------------------------------------------------------------
    _banner("Step 7: Guide Release")

    request = await service.transition(
        request, WorkflowStep.FINISHED, operator, "Guia efetivada. Autorização emitida.",
    )
    print(f"Protocol closed with authorization code {request.auth_code}")

    # ------------------------------------------------------------------
    # Step 8: Report and metrics
    # ------------------------------------------------------------------
    _banner("Step 8: Protocol Report and SLA")

    report = generate_protocol_report(request)
    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False, default=str))

    everything = await service.reload(User(name="Master", role=Role.ADMIN_MASTER))
    stats = compute_average_audit_duration(everything)
    print(f"\nAverage audit time: {stats.label} over {stats.count} protocol(s)")
    print(f"Completed tab: {[r.id for r in await service.queue(operator, QueueTab.COMPLETED)]}")
    print(f"By step: { {s.value: n for s, n in count_by_step(everything).items()} }")

    _banner("Scenario Complete")
    print("All data was synthetic. AI output was advisory only.")


if __name__ == "__main__":
    asyncio.run(main())
