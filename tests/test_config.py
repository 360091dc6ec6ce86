"""
Tests for medaudit.config -- per-tenant workflow settings.

Covers: default settings, specialty normalization and rejection, dossier
slot templates, registry isolation and inheritance, and YAML loading.
"""

from pathlib import Path

import pytest
import yaml

from medaudit.config import (
    DEFAULT_DOCUMENT_SLOTS,
    DEFAULT_SETTINGS,
    DEFAULT_SPECIALTIES,
    AdvisorySettings,
    DocumentSlotTemplate,
    SettingsRegistry,
    WorkflowSettings,
    load_settings_from_yaml,
)
from medaudit.models import GENERAL_QUEUE


# ---------------------------------------------------------------------------
# 1. Defaults
# ---------------------------------------------------------------------------

class TestDefaultSettings:
    def test_default_settings_cover_builtin_specialties(self):
        assert DEFAULT_SETTINGS.tenant_id == "default"
        assert DEFAULT_SETTINGS.specialties == DEFAULT_SPECIALTIES
        assert "NEUROCIRURGIA" in DEFAULT_SETTINGS.specialties
        assert GENERAL_QUEUE not in DEFAULT_SETTINGS.specialties

    def test_default_dossier_has_five_slots(self):
        docs = DEFAULT_SETTINGS.default_documents()
        assert len(docs) == 5
        assert [d.id for d in docs] == ["doc-1", "doc-2", "doc-3", "doc-4", "doc-5"]
        assert all(not d.files for d in docs)
        assert docs[0].name == DEFAULT_DOCUMENT_SLOTS[0].name

    def test_default_advisory_settings(self):
        advisory = AdvisorySettings()
        assert advisory.model == "gemini-3-pro-preview"
        assert advisory.api_key_env == "GEMINI_API_KEY"
        assert advisory.timeout_seconds > 0


# ---------------------------------------------------------------------------
# 2. Specialty validation
# ---------------------------------------------------------------------------

class TestSpecialties:
    def test_specialties_normalized_to_upper_case(self):
        settings = WorkflowSettings(tenant_id="t1", specialties=[" ortopedia ", "Cardiologia"])
        assert settings.specialties == ["ORTOPEDIA", "CARDIOLOGIA"]
        assert settings.is_known_specialty("cardiologia")
        assert not settings.is_known_specialty("ONCOLOGIA")

    def test_empty_specialty_list_rejected(self):
        with pytest.raises(Exception):
            WorkflowSettings(tenant_id="t1", specialties=[])

    def test_duplicate_specialties_rejected(self):
        with pytest.raises(Exception):
            WorkflowSettings(tenant_id="t1", specialties=["ORTOPEDIA", "ortopedia"])

    def test_general_queue_is_not_a_specialty(self):
        with pytest.raises(Exception):
            WorkflowSettings(tenant_id="t1", specialties=["ORTOPEDIA", "GERAL"])

    def test_empty_tenant_id_rejected(self):
        with pytest.raises(Exception):
            WorkflowSettings(tenant_id="")

    def test_blank_slot_name_rejected(self):
        with pytest.raises(Exception):
            DocumentSlotTemplate(name="")


# ---------------------------------------------------------------------------
# 3. Settings registry -- multi-tenant isolation
# ---------------------------------------------------------------------------

class TestSettingsRegistry:
    def test_register_and_retrieve(self):
        registry = SettingsRegistry()
        registry.register(WorkflowSettings(tenant_id="gestora_a", specialties=["ORTOPEDIA"]))
        assert registry.get("gestora_a").specialties == ["ORTOPEDIA"]
        assert "gestora_a" in registry
        assert len(registry) == 1

    def test_duplicate_registration_rejected(self):
        registry = SettingsRegistry()
        settings = WorkflowSettings(tenant_id="gestora_a")
        registry.register(settings)
        with pytest.raises(ValueError, match="already registered"):
            registry.register(settings)

    def test_get_unknown_tenant_raises_key_error(self):
        with pytest.raises(KeyError):
            SettingsRegistry().get("nonexistent")

    def test_update_existing_settings(self):
        registry = SettingsRegistry()
        registry.register(WorkflowSettings(tenant_id="gestora_a"))
        registry.update(WorkflowSettings(tenant_id="gestora_a", specialties=["COLUNA"]))
        assert registry.get("gestora_a").specialties == ["COLUNA"]

    def test_update_unknown_tenant_raises_key_error(self):
        with pytest.raises(KeyError):
            SettingsRegistry().update(WorkflowSettings(tenant_id="ghost"))

    def test_get_or_default_falls_back_to_parent_then_defaults(self):
        registry = SettingsRegistry()
        registry.register(WorkflowSettings(tenant_id="gestora_a", specialties=["ONCOLOGIA"]))
        assert registry.get_or_default("op_1", "gestora_a").specialties == ["ONCOLOGIA"]
        assert registry.get_or_default("op_1", None).tenant_id == "default"
        assert registry.get_or_default().specialties == DEFAULT_SPECIALTIES

    def test_list_tenants_sorted(self):
        registry = SettingsRegistry()
        for tid in ["charlie", "alpha", "bravo"]:
            registry.register(WorkflowSettings(tenant_id=tid))
        assert registry.list_tenants() == ["alpha", "bravo", "charlie"]

    def test_registry_returns_deep_copies(self):
        registry = SettingsRegistry()
        registry.register(WorkflowSettings(tenant_id="gestora_a"))

        retrieved = registry.get("gestora_a")
        retrieved.specialties.append("MUTATED")

        assert "MUTATED" not in registry.get("gestora_a").specialties


# ---------------------------------------------------------------------------
# 4. YAML loading
# ---------------------------------------------------------------------------

class TestYAMLLoader:
    def _write_yaml(self, settings_data: list[dict], tmp_dir: Path) -> Path:
        path = tmp_dir / "settings.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump({"settings": settings_data}, f, allow_unicode=True)
        return path

    def test_load_valid_yaml(self, tmp_path):
        data = [
            {
                "tenant_id": "gestora_yaml",
                "specialties": ["ortopedia", "coluna"],
                "document_slots": [{"name": "LAUDO MÉDICO", "required": True}],
                "advisory": {"timeout_seconds": 15},
            }
        ]
        settings = load_settings_from_yaml(self._write_yaml(data, tmp_path))
        assert len(settings) == 1
        assert settings[0].specialties == ["ORTOPEDIA", "COLUNA"]
        assert settings[0].document_slots[0].name == "LAUDO MÉDICO"
        assert settings[0].advisory.timeout_seconds == 15

    def test_load_multiple_entries(self, tmp_path):
        data = [{"tenant_id": f"gestora_{i}"} for i in range(3)]
        assert len(load_settings_from_yaml(self._write_yaml(data, tmp_path))) == 3

    def test_load_nonexistent_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_settings_from_yaml("/nonexistent/path.yaml")

    def test_load_invalid_structure_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        with open(path, "w") as f:
            yaml.dump({"not_settings": []}, f)
        with pytest.raises(ValueError, match="top-level 'settings' key"):
            load_settings_from_yaml(path)

    def test_invalid_entry_rejected(self, tmp_path):
        path = self._write_yaml([{"tenant_id": "x", "specialties": ["GERAL"]}], tmp_path)
        with pytest.raises(Exception):
            load_settings_from_yaml(path)

    def test_load_bundled_example_settings(self):
        sample_path = Path(__file__).parent.parent / "examples" / "workflow_settings.yaml"
        if sample_path.exists():
            settings = load_settings_from_yaml(sample_path)
            assert settings[0].tenant_id == "gestora_alfa"
            assert "NEUROCIRURGIA" in settings[0].specialties
