"""
Workflow settings -- per-tenant configuration for MedAudit.

Each gestora (managing tenant) configures how its protocols are handled:
which specialty queues generalist auditors may hand work off to, which
dossier slots a new protocol starts with when no stored template exists,
and how the advisory oracle is reached.

Settings are validated pydantic objects.  They may be registered in memory
through ``SettingsRegistry`` or loaded from a YAML file with
``load_settings_from_yaml``.
"""

from __future__ import annotations

import copy
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from medaudit.models import GENERAL_QUEUE, WorkflowDocument


# ---------------------------------------------------------------------------
# Dossier templates
# ---------------------------------------------------------------------------

class DocumentSlotTemplate(BaseModel):
    """A named dossier slot a new protocol starts with."""

    name: str = Field(..., min_length=1)
    required: bool = True

    def to_document(self, index: int) -> WorkflowDocument:
        return WorkflowDocument(id=f"doc-{index}", name=self.name, required=self.required)


DEFAULT_DOCUMENT_SLOTS: list[DocumentSlotTemplate] = [
    DocumentSlotTemplate(name="LAUDO MÉDICO / RELATÓRIO"),
    DocumentSlotTemplate(name="EXAMES COMPLEMENTARES"),
    DocumentSlotTemplate(name="ORÇAMENTO DE MATERIAIS / OPME"),
    DocumentSlotTemplate(name="JUSTIFICATIVA TÉCNICA"),
    DocumentSlotTemplate(name="TERMO DE CONSENTIMENTO (TCLE)"),
]
"""Fallback dossier used when a tenant has no stored document template."""


DEFAULT_SPECIALTIES: list[str] = [
    "ORTOPEDIA",
    "COLUNA",
    "NEUROCIRURGIA",
    "GENETICA",
    "ENDOVASCULAR",
    "CARDIOLOGIA",
    "ONCOLOGIA",
]


# ---------------------------------------------------------------------------
# Advisory oracle settings
# ---------------------------------------------------------------------------

class AdvisorySettings(BaseModel):
    """How the external text-generation service is reached."""

    model: str = Field(default="gemini-3-pro-preview", min_length=1)
    base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    api_key_env: str = Field(
        default="GEMINI_API_KEY",
        description="Environment variable holding the API key.",
    )
    timeout_seconds: float = Field(default=60.0, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)


# ---------------------------------------------------------------------------
# Workflow settings
# ---------------------------------------------------------------------------

class WorkflowSettings(BaseModel):
    """Complete workflow configuration for one tenant."""

    tenant_id: str = Field(
        ...,
        min_length=1,
        description="Isolation key; settings are looked up by tenant id.",
    )
    specialties: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SPECIALTIES),
        description="Named specialty queues a generalist may forward work to.",
    )
    document_slots: list[DocumentSlotTemplate] = Field(
        default_factory=lambda: [s.model_copy() for s in DEFAULT_DOCUMENT_SLOTS],
    )
    advisory: AdvisorySettings = Field(default_factory=AdvisorySettings)

    @field_validator("specialties")
    @classmethod
    def normalize_specialties(cls, v: list[str]) -> list[str]:
        cleaned = [s.strip().upper() for s in v if s.strip()]
        if not cleaned:
            raise ValueError("At least one specialty queue must be configured.")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError(f"Duplicate specialties in {cleaned}")
        if GENERAL_QUEUE in cleaned:
            raise ValueError(f"'{GENERAL_QUEUE}' is the general queue, not a specialty.")
        return cleaned

    def is_known_specialty(self, specialty: str) -> bool:
        return specialty.strip().upper() in self.specialties

    def default_documents(self) -> list[WorkflowDocument]:
        return [slot.to_document(i) for i, slot in enumerate(self.document_slots, start=1)]


DEFAULT_SETTINGS = WorkflowSettings(tenant_id="default")
"""Built-in settings used when a tenant registered nothing."""


# ---------------------------------------------------------------------------
# Settings registry (multi-tenant)
# ---------------------------------------------------------------------------

class SettingsRegistry:
    """In-memory multi-tenant settings registry keyed by ``tenant_id``.

    Stored settings are deep-copied on the way in and on the way out so a
    caller cannot mutate another tenant's configuration.
    """

    def __init__(self) -> None:
        self._settings: dict[str, WorkflowSettings] = {}

    def register(self, settings: WorkflowSettings) -> None:
        """Register settings for a new tenant.

        Raises:
            ValueError: If ``tenant_id`` is already registered.
        """
        if settings.tenant_id in self._settings:
            raise ValueError(
                f"Settings for tenant '{settings.tenant_id}' already registered. "
                "Use update() to modify them."
            )
        self._settings[settings.tenant_id] = copy.deepcopy(settings)

    def get(self, tenant_id: str) -> WorkflowSettings:
        """Return a copy of the tenant's settings.

        Raises:
            KeyError: If nothing is registered for ``tenant_id``.
        """
        if tenant_id not in self._settings:
            raise KeyError(f"No settings registered for tenant '{tenant_id}'")
        return copy.deepcopy(self._settings[tenant_id])

    def get_or_default(self, *tenant_ids: str | None) -> WorkflowSettings:
        """First registered settings among ``tenant_ids``, else the defaults.

        Operators usually inherit the settings of their gestora, so callers
        pass the operator id followed by its parent id.
        """
        for tenant_id in tenant_ids:
            if tenant_id and tenant_id in self._settings:
                return copy.deepcopy(self._settings[tenant_id])
        return copy.deepcopy(DEFAULT_SETTINGS)

    def update(self, settings: WorkflowSettings) -> None:
        if settings.tenant_id not in self._settings:
            raise KeyError(
                f"Cannot update: no settings registered for tenant '{settings.tenant_id}'"
            )
        self._settings[settings.tenant_id] = copy.deepcopy(settings)

    def list_tenants(self) -> list[str]:
        return sorted(self._settings.keys())

    def __len__(self) -> int:
        return len(self._settings)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._settings


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> list[WorkflowSettings]:
    """Load tenant settings from a YAML file.

    Expected structure::

        settings:
          - tenant_id: "gestora_alfa"
            specialties: ["ORTOPEDIA", "CARDIOLOGIA"]
            document_slots:
              - name: "LAUDO MÉDICO"
                required: true
            advisory:
              timeout_seconds: 30

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any entry fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "settings" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'settings' key with a list of tenant settings."
        )

    entries = raw["settings"]
    if not isinstance(entries, list):
        raise ValueError("'settings' must be a list of tenant settings.")

    loaded: list[WorkflowSettings] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Settings entry at index {idx} must be a mapping.")
        loaded.append(WorkflowSettings.model_validate(entry))

    return loaded
