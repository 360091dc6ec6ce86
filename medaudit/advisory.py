"""
Advisory Oracle -- AI decision support for medical auditors.

``AdvisoryOracle.analyze`` turns a protocol plus the tenant's active
governance rules into a prompt, asks a ``TextGenerator`` for a structured
JSON answer and validates it into an ``AIDecisionSupport``.

The oracle never raises.  Network errors, empty answers, malformed JSON
and schema violations all degrade to ``CONTINGENCY_DECISION`` so callers
have no error path to handle.  The recommendation is advisory only: it is
never applied to a protocol's status or step.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Iterable, Optional, Protocol

import httpx

from medaudit.config import AdvisorySettings
from medaudit.models import AIDecisionSupport, AIRule, AuditRequest, Recommendation, RulePriority

logger = logging.getLogger(__name__)


SYSTEM_INSTRUCTION = (
    "Atue como um Auditor Médico sênior brasileiro especializado em regulação e "
    "auditoria prospectiva. Sua tarefa é analisar a pertinência técnica desta "
    "solicitação com base nas evidências clínicas, documentais e REGRAS DE "
    "GOVERNANÇA DA GESTORA. O retorno deve ser estritamente técnico e "
    "fundamentado em evidências."
)

NO_DOCUMENTS_ALERT = "ALERTA: NENHUM DOCUMENTO ANEXADO"
NO_RULES_TEXT = "Nenhuma regra customizada ativa. Siga as diretrizes padrão da ANS (DUT)."

DECISION_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "recommendation": {"type": "STRING", "enum": [r.value for r in Recommendation]},
        "confidence": {"type": "NUMBER"},
        "reasoning": {"type": "STRING"},
        "regulatoryReferences": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["recommendation", "confidence", "reasoning", "regulatoryReferences"],
}

CONTINGENCY_DECISION = AIDecisionSupport(
    recommendation=Recommendation.PARTIAL,
    confidence=0,
    reasoning=(
        "Não foi possível processar a análise técnica via IA seguindo as regras "
        "inteligentes. Realize a conferência manual."
    ),
    regulatory_references=["Protocolo de Contingência - Falha na Injeção de Regras IA"],
)

_PRIORITY_ORDER = {RulePriority.ALTA: 0, RulePriority.MEDIA: 1, RulePriority.BAIXA: 2}


class AdvisoryError(Exception):
    """Raised by a text generator that could not produce an answer."""


# ---------------------------------------------------------------------------
# Text generation
# ---------------------------------------------------------------------------

class TextGenerator(Protocol):
    async def generate(
        self, prompt: str, system_instruction: str, output_schema: dict[str, Any]
    ) -> str: ...


class GeminiTextGenerator:
    """Gemini ``generateContent`` client in JSON output mode.

    Args:
        settings: Model, endpoint and timeout.
        api_key: Explicit key; read from ``settings.api_key_env`` when omitted.
        transport: Optional httpx transport (tests pass a ``MockTransport``).
    """

    def __init__(
        self,
        settings: Optional[AdvisorySettings] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or AdvisorySettings()
        self.api_key = api_key if api_key is not None else os.environ.get(self.settings.api_key_env, "")
        self._transport = transport

    async def generate(
        self, prompt: str, system_instruction: str, output_schema: dict[str, Any]
    ) -> str:
        if not self.api_key:
            raise AdvisoryError(
                f"No API key configured (set {self.settings.api_key_env})."
            )

        request_body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "generationConfig": {
                "temperature": self.settings.temperature,
                "responseMimeType": "application/json",
                "responseSchema": output_schema,
            },
        }

        async with httpx.AsyncClient(
            timeout=self.settings.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(
                f"{self.settings.base_url}/models/{self.settings.model}:generateContent",
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=request_body,
            )
            response.raise_for_status()
            data = response.json()

        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AdvisoryError("Gemini response carries no text candidate.") from exc


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------

def active_rules(rules: Iterable[AIRule]) -> list[AIRule]:
    """Active rules, ALTA first; ties keep their input order."""
    return sorted(
        (r for r in rules if r.is_active),
        key=lambda r: _PRIORITY_ORDER[r.priority],
    )


def _document_summary(request: AuditRequest) -> str:
    parts = [
        f"{doc.name} ({len(doc.files)} arquivo(s): {', '.join(f.name for f in doc.files)})"
        for doc in request.documents
        if doc.files
    ]
    return "; ".join(parts)


def build_prompt(request: AuditRequest, rules: Iterable[AIRule]) -> str:
    """Assemble the analysis prompt for one protocol."""
    items = ", ".join(
        f"{i.procedure.code} - {i.procedure.description} (Qtd: {i.quantity_requested})"
        for i in request.items
    )
    rules_text = "\n".join(
        f"- [PRIORIDADE {r.priority.value}]: {r.title}. {r.description}"
        for r in active_rules(rules)
    )
    return (
        "Analise a seguinte solicitação de auditoria médica:\n"
        "\n"
        "DADOS DO PROTOCOLO:\n"
        f"- Beneficiário: {request.beneficiary.name}\n"
        f"- CID-10: {request.cid10}\n"
        f'- Resumo Clínico: "{request.clinical_summary}"\n'
        f"- Itens Solicitados: {items}\n"
        f"- Evidências Documentais: [{_document_summary(request) or NO_DOCUMENTS_ALERT}]\n"
        "\n"
        "[REGRAS INTELIGENTES DO MASTER ADMIN - OBRIGATÓRIO SEGUIR]:\n"
        f"{rules_text or NO_RULES_TEXT}\n"
        "\n"
        "DIRETRIZES DE ANÁLISE:\n"
        "1. ANALISE OS DOCUMENTOS: Verifique se os arquivos (Laudo, Biópsia, TCLE) "
        "sugerem evidências para o CID informado.\n"
        "2. CONSIDERE AS REGRAS ACIMA: As Regras Inteligentes do Master Admin têm "
        "soberania sobre o julgamento geral da IA.\n"
        "3. INSUFICIÊNCIA DOC: Se faltar documento essencial e a regra exigir, "
        "recomende REJECT ou PARTIAL.\n"
        "4. APOIO À DECISÃO: Explique como as regras e anexos corroboram ou não a indicação.\n"
        "\n"
        "Forneça a resposta exclusivamente em JSON estruturado conforme o esquema solicitado."
    )


def parse_decision(text: str) -> AIDecisionSupport:
    """Validate a generator answer.

    Raises:
        AdvisoryError: If the text is empty or not a JSON object.
        pydantic.ValidationError: If a field violates the decision schema.
    """
    if not text or not text.strip():
        raise AdvisoryError("Empty answer from the text generator.")
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise AdvisoryError("Generator answer is not a JSON object.")
    if "regulatoryReferences" in payload:
        payload["regulatory_references"] = payload.pop("regulatoryReferences")
    return AIDecisionSupport.model_validate(payload)


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class AdvisoryOracle:
    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator

    async def analyze(self, request: AuditRequest, rules: Iterable[AIRule] = ()) -> AIDecisionSupport:
        """Recommendation for ``request``; ``CONTINGENCY_DECISION`` on any failure."""
        prompt = build_prompt(request, rules)
        try:
            text = await self.generator.generate(prompt, SYSTEM_INSTRUCTION, DECISION_SCHEMA)
            decision = parse_decision(text)
        except Exception as exc:
            logger.warning(
                "Advisory analysis failed for request %s, using contingency: %s",
                request.id,
                exc,
            )
            return CONTINGENCY_DECISION.model_copy(deep=True)
        logger.info(
            "Advisory analysis for request %s: %s (%.2f)",
            request.id,
            decision.recommendation.value,
            decision.confidence,
        )
        return decision
