"""
Unit tests for schema validation and repair.

Tests libs/gateway/validation/schema_validator.py
"""

import pytest
from pydantic import BaseModel, Field

from libs.core.exceptions import LLMError
from libs.gateway.validation import AuditReport, ResearchReport, SchemaValidator, TokenPack
from libs.gateway.validation.schema_validator import classify_severity, field_completeness, format_path


class RangedSettings(BaseModel):
    ratio: float = Field(gt=0, le=0.5)
    opacity: float = Field(ge=0.9, lt=1)
    weight: float = Field(gt=0)


@pytest.fixture
def validator(fake_clock):
    """Validator without a gateway (deterministic repair only)."""
    return SchemaValidator(clock=fake_clock)


class TestValidation:
    """Test plain validation outcomes."""

    @pytest.mark.asyncio
    async def test_valid_pack(self, validator, valid_token_pack):
        result = await validator.validate_token_pack(valid_token_pack)

        assert result.valid
        assert not result.repaired
        assert result.confidence == 100.0
        assert result.data["mappingHints"]["cssVariables"]["example"] == "--color-primary: #3b82f6;"

    @pytest.mark.asyncio
    async def test_repair_disabled(self, validator, valid_token_pack):
        valid_token_pack["metadata"]["version"] = "v2"

        result = await validator.validate_with_repair(valid_token_pack, TokenPack, allow_repair=False)

        assert not result.valid
        assert result.confidence == 0.0
        assert result.data["metadata"]["version"] == "v2"
        assert result.error_messages[0].startswith("metadata.version:")
        assert result.errors[0].code == "string_pattern_mismatch"

    @pytest.mark.asyncio
    async def test_input_is_not_mutated(self, validator, valid_token_pack):
        valid_token_pack["metadata"]["version"] = "v2"

        await validator.validate_token_pack(valid_token_pack)

        assert valid_token_pack["metadata"]["version"] == "v2"


class TestDeterministicRepair:
    """Test the repair strategies."""

    @pytest.mark.asyncio
    async def test_common_violations_converge(self, validator, valid_token_pack):
        valid_token_pack["metadata"]["version"] = "v2"
        valid_token_pack["metadata"]["confidence"] = 150
        valid_token_pack["tokens"]["colors"][0]["value"] = "#F00"
        valid_token_pack["tokens"]["colors"][0]["semantic"] = "brand"
        valid_token_pack["tokens"]["spacing"][0]["value"] = "16"
        del valid_token_pack["guidelines"]

        result = await validator.validate_token_pack(valid_token_pack)

        assert result.valid
        assert result.repaired
        assert result.repair_attempts == 1
        assert result.confidence == 85.0
        data = result.data
        assert data["metadata"]["version"] == "2.0.0"
        assert data["metadata"]["confidence"] == 100
        assert data["tokens"]["colors"][0]["value"] == "#ff0000"
        assert data["tokens"]["colors"][0]["semantic"] == "primary"
        assert data["tokens"]["spacing"][0]["value"] == "16px"
        assert data["guidelines"]["usage"] == ["Use design tokens consistently across components"]

    @pytest.mark.asyncio
    async def test_unparseable_number_gets_default(self, validator, valid_token_pack):
        valid_token_pack["tokens"]["colors"][0]["usage"] = "many"

        result = await validator.validate_token_pack(valid_token_pack)

        assert result.valid
        assert result.data["tokens"]["colors"][0]["usage"] == 1

    @pytest.mark.asyncio
    async def test_flat_token_list_is_regrouped(self, validator, valid_token_pack):
        tokens = valid_token_pack["tokens"]
        valid_token_pack["tokens"] = tokens["colors"] + tokens["typography"] + tokens["spacing"]

        result = await validator.validate_token_pack(valid_token_pack)

        assert result.valid
        assert result.data["tokens"]["colors"][0]["value"] == "#3b82f6"
        assert result.data["tokens"]["spacing"][0]["value"] == "16px"

    @pytest.mark.asyncio
    async def test_short_summary_is_padded(self, validator):
        audit = validator.create_emergency_fallback("audit")
        audit["overall"]["summary"] = "Looks ok"

        result = await validator.validate_audit(audit)

        assert result.valid
        assert result.data["overall"]["summary"].startswith("Looks ok: ")

    @pytest.mark.asyncio
    async def test_exclusive_minimum_stays_under_maximum(self, validator):
        result = await validator.validate_with_repair({"ratio": 0, "opacity": 0.95, "weight": 2}, RangedSettings)

        assert result.valid
        assert result.data["ratio"] == 0.25

    @pytest.mark.asyncio
    async def test_exclusive_maximum_stays_over_minimum(self, validator):
        result = await validator.validate_with_repair({"ratio": 0.3, "opacity": 1, "weight": 2}, RangedSettings)

        assert result.valid
        assert result.data["opacity"] == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_exclusive_minimum_without_maximum(self, validator):
        result = await validator.validate_with_repair({"ratio": 0.3, "opacity": 0.95, "weight": 0}, RangedSettings)

        assert result.valid
        assert result.data["weight"] == 1


class TestModelRepair:
    """Test the gateway-assisted repair step."""

    @pytest.mark.asyncio
    async def test_model_repair_after_deterministic_passes(self, mock_gateway, recipes, make_response, valid_token_pack):
        mock_gateway.request.return_value = make_response(valid_token_pack)
        validator = SchemaValidator(gateway=mock_gateway, recipes=recipes)
        broken = {"metadata": "nothing useful"}

        result = await validator.validate_with_repair(broken, TokenPack, max_attempts=0)

        assert result.valid
        assert result.ai_repaired
        assert result.repair_attempts == 1
        kwargs = mock_gateway.request.await_args.kwargs
        assert kwargs["operation"] == "repair"
        assert kwargs["model"] == "gpt-5-mini"
        assert kwargs["cacheable"] is False
        assert "VIOLATIONS:" in kwargs["prompt"]
        assert validator.stats()["ai_repairs"] == 1

    @pytest.mark.asyncio
    async def test_model_repair_failure_is_reported_invalid(self, mock_gateway, recipes):
        mock_gateway.request.side_effect = LLMError("upstream unavailable", status=503)
        validator = SchemaValidator(gateway=mock_gateway, recipes=recipes)

        result = await validator.validate_with_repair({"metadata": "x"}, TokenPack, max_attempts=0)

        assert not result.valid
        assert not result.ai_repaired

    @pytest.mark.asyncio
    async def test_ai_repair_guardrail(self, mock_gateway, recipes):
        validator = SchemaValidator(gateway=mock_gateway, recipes=recipes)
        validator.update_guardrails(ai_repair_enabled=False)

        result = await validator.validate_with_repair({"metadata": "x"}, TokenPack, max_attempts=0)

        assert not result.valid
        mock_gateway.request.assert_not_awaited()


class TestFallbacksAndMigrations:
    """Test emergency payloads and versioned migrations."""

    @pytest.mark.parametrize(
        "operation,schema",
        [("organize-pack", TokenPack), ("audit", AuditReport), ("research", ResearchReport)],
    )
    def test_emergency_fallback_is_schema_valid(self, validator, operation, schema):
        model, violations = validator.check(validator.create_emergency_fallback(operation), schema)

        assert model is not None
        assert violations == []

    def test_emergency_fallback_url(self, validator):
        pack = validator.create_emergency_fallback("organize-pack", url="https://acme.com")
        assert pack["metadata"]["url"] == "https://acme.com"
        assert pack["metadata"]["name"] == "Fallback Design Tokens"

        pack = validator.create_emergency_fallback("organize-pack", url="not a url")
        assert pack["metadata"]["url"] == "https://example.com"

    def test_unknown_operation(self, validator):
        assert validator.create_emergency_fallback("translate") == {
            "error": "No fallback available",
            "operation": "translate",
        }

    @pytest.mark.asyncio
    async def test_migrations_up_to_2_0_0(self, validator, valid_token_pack):
        del valid_token_pack["quality"]
        valid_token_pack["framework"] = ["tailwind"]

        result = await validator.validate_with_versioning(valid_token_pack, TokenPack, "2.0.0")

        assert result.valid
        assert not result.repaired
        assert result.data["quality"]["score"] == 75
        assert result.data["mappingHints"]["framework"] == {"detected": ["tailwind"]}
        assert "framework" not in result.data

    @pytest.mark.asyncio
    async def test_old_version_skips_migrations(self, validator, valid_token_pack):
        del valid_token_pack["quality"]

        result = await validator.validate_with_versioning(valid_token_pack, TokenPack, "1.0.0")

        assert result.valid
        assert result.repaired
        assert result.data["quality"]["score"] == 50


class TestBookkeeping:
    """Test stats, guardrails and helpers."""

    @pytest.mark.asyncio
    async def test_stats(self, validator, valid_token_pack):
        await validator.validate_token_pack(valid_token_pack)
        await validator.validate_with_repair({"metadata": 1}, TokenPack, allow_repair=False)

        stats = validator.stats()

        assert stats["total_validations"] == 2
        assert stats["valid"] == 1
        assert stats["failed"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["common_errors"]

    def test_update_guardrails_ignores_unknown(self, validator):
        guardrails = validator.update_guardrails(max_repair_attempts=1, bogus=True)

        assert guardrails.max_repair_attempts == 1
        assert not hasattr(guardrails, "bogus")

    @pytest.mark.parametrize(
        "loc,code,severity",
        [
            ((), "model_type", "critical"),
            (("metadata", "url"), "string_pattern_mismatch", "high"),
            (("tokens", "colors", 0, "usage"), "float_parsing", "high"),
            (("tokens", "colors", 0, "semantic"), "literal_error", "low"),
            (("quality", "score"), "less_than_equal", "medium"),
        ],
    )
    def test_classify_severity(self, loc, code, severity):
        assert classify_severity(loc, code) == severity

    def test_format_path(self):
        assert format_path(("tokens", "colors", 0, "value")) == "tokens.colors[0].value"
        assert format_path(()) == "root"

    def test_field_completeness(self, valid_token_pack):
        assert field_completeness(valid_token_pack, TokenPack) == 1.0
        valid_token_pack["guidelines"] = {}
        assert field_completeness(valid_token_pack, TokenPack) == 0.8
        assert field_completeness("not a dict", TokenPack) == 0.0
