"""Tests for PluginSpec and related models."""

import pytest
from pydantic import ValidationError

from agentforge.errors import SpecValidationError
from agentforge.spec.models import (
    IsolationLevel,
    ParameterSpec,
    PluginKind,
    PluginSpec,
    PromptSpec,
    ResourceSpec,
    TEESpec,
    ToolSpec,
    canonical_package_name,
    check_spec,
    dependency_conflicts,
    pinned_version,
)


def _tool(name: str = "t") -> ToolSpec:
    return ToolSpec(name=name, implementation="return 1")


class TestPluginSpec:
    def test_defaults(self):
        spec = PluginSpec(name="a")

        assert spec.version == "1.0.0"
        assert spec.kind == PluginKind.LLM
        assert spec.embed_interpreter is True
        assert spec.max_iterations == 3
        assert spec.tee.isolation_level == IsolationLevel.PROCESS
        assert spec.tee.network_access is False
        assert spec.tee.filesystem_access is False
        assert spec.tee.limits.memory_mb == 512
        assert len(spec.id) == 36

    def test_ids_are_unique(self):
        assert PluginSpec(name="a").id != PluginSpec(name="a").id

    def test_frozen(self):
        spec = PluginSpec(name="a")
        with pytest.raises(ValidationError):
            spec.name = "b"

    def test_unknown_field_rejected(self):
        with pytest.raises(SpecValidationError) as exc_info:
            PluginSpec.from_dict({"name": "a", "colour": "blue"})
        assert any("colour" in p for p in exc_info.value.problems)

    @pytest.mark.parametrize("version", ["1.0", "v1.0.0", "1.0.0.0", "01.0.0"])
    def test_invalid_version(self, version):
        with pytest.raises(SpecValidationError):
            PluginSpec.from_dict({"name": "a", "version": version})

    @pytest.mark.parametrize("version", ["0.1.0", "2.10.3-beta.1", "1.0.0+build.5"])
    def test_valid_version(self, version):
        assert PluginSpec(name="a", version=version).version == version

    def test_duplicate_tool_names(self):
        with pytest.raises(SpecValidationError) as exc_info:
            PluginSpec.from_dict(
                {
                    "name": "a",
                    "tools": [
                        {"name": "t", "implementation": "return 1"},
                        {"name": "t", "implementation": "return 2"},
                    ],
                }
            )
        assert "duplicate tool name 't'" in str(exc_info.value.problems)

    def test_resource_and_prompt_share_namespace(self):
        with pytest.raises(SpecValidationError, match="problem"):
            PluginSpec.from_dict(
                {
                    "name": "a",
                    "resources": [{"name": "x", "content": "1"}],
                    "prompts": [{"name": "x", "content": "2"}],
                }
            )

    def test_dependency_conflict(self):
        with pytest.raises(SpecValidationError):
            PluginSpec.from_dict({"name": "a", "python_dependencies": ["Requests==2.0", "requests==2.1"]})

    def test_same_pin_twice_is_not_a_conflict(self):
        spec = PluginSpec(name="a", python_dependencies=["requests==2.0", "Requests==2.0"])
        assert len(spec.python_dependencies) == 2

    def test_tools_require_interpreter(self):
        with pytest.raises(SpecValidationError):
            PluginSpec.from_dict({"name": "a", "embed_interpreter": False, "tools": [_tool()]})

    def test_check_spec_catches_constructed_duplicates(self):
        spec = PluginSpec.model_construct(
            name="a", tools=[_tool("x"), _tool("x")], resources=[], prompts=[],
            python_dependencies=[], embed_interpreter=True,
        )
        with pytest.raises(SpecValidationError, match="duplicate tool name"):
            check_spec(spec)

    def test_requirements_merge(self):
        spec = PluginSpec(name="a", python_dependencies=["numpy", "httpx>=0.27"])

        assert spec.requirements(["fastapi", "httpx>=0.27"]) == ["fastapi", "httpx>=0.27", "numpy"]

    def test_build_key(self):
        assert PluginSpec(id="x", name="a", version="2.0.0").build_key == "x@2.0.0"


class TestToolSpec:
    def test_needs_exactly_one_implementation(self):
        with pytest.raises(ValidationError):
            ToolSpec(name="t")
        with pytest.raises(ValidationError):
            ToolSpec(name="t", implementation="return 1", implementation_file="t.py")

    @pytest.mark.parametrize("name", ["1abc", "with-dash", "class", ""])
    def test_name_must_be_identifier(self, name):
        with pytest.raises(ValidationError):
            ToolSpec(name=name, implementation="return 1")

    def test_duplicate_parameters(self):
        with pytest.raises(ValidationError, match="duplicate parameter"):
            ToolSpec(
                name="t",
                parameters=[ParameterSpec(name="a"), ParameterSpec(name="a")],
                implementation="return a",
            )

    def test_file_reference(self):
        assert ToolSpec(name="t", implementation_file="tools/t.py").is_file_reference


class TestParameterSpec:
    def test_required_with_default_rejected(self):
        with pytest.raises(ValidationError, match="cannot have a default"):
            ParameterSpec(name="a", default=3)

    def test_optional_with_default(self):
        assert ParameterSpec(name="a", required=False, default=3).default == 3

    def test_items_only_for_arrays(self):
        with pytest.raises(ValidationError):
            ParameterSpec(name="a", type="string", items=ParameterSpec(name="item"))
        param = ParameterSpec(name="a", type="array", items=ParameterSpec(name="item", type="integer"))
        assert param.items.type == "integer"

    def test_properties_only_for_objects(self):
        with pytest.raises(ValidationError):
            ParameterSpec(name="a", type="integer", properties=[ParameterSpec(name="x")])
        with pytest.raises(ValidationError, match="duplicate property"):
            ParameterSpec(
                name="a", type="object", properties=[ParameterSpec(name="x"), ParameterSpec(name="x")]
            )


class TestResourceSpec:
    def test_text_payload(self):
        assert ResourceSpec(name="r", content="héllo").payload == "héllo".encode()

    def test_base64_payload(self):
        assert ResourceSpec(name="r", type="binary", content="AAEC", encoding="base64").payload == b"\x00\x01\x02"

    def test_invalid_base64(self):
        with pytest.raises(ValidationError, match="base64"):
            ResourceSpec(name="r", content="not base64!", encoding="base64")

    def test_invalid_json(self):
        with pytest.raises(ValidationError, match="JSON"):
            ResourceSpec(name="r", type="json", content="{nope")


class TestPromptSpec:
    def test_variables_must_be_unique_identifiers(self):
        with pytest.raises(ValidationError):
            PromptSpec(name="p", content="x", variables=["a", "a"])
        with pytest.raises(ValidationError):
            PromptSpec(name="p", content="x", variables=["not valid"])


class TestTEESpec:
    def test_limits_bounds(self):
        with pytest.raises(ValidationError):
            TEESpec.model_validate({"limits": {"memory_mb": 8}})
        with pytest.raises(ValidationError):
            TEESpec.model_validate({"limits": {"cpu_cores": 0}})
        with pytest.raises(ValidationError):
            TEESpec.model_validate({"limits": {"timeout_sec": 0}})


class TestRequirementHelpers:
    def test_canonical_name(self):
        assert canonical_package_name("Foo_Bar.baz[extra]>=1.0") == "foo-bar-baz"
        assert canonical_package_name("!!") is None

    def test_pinned_version(self):
        assert pinned_version("foo==1.2.3") == "1.2.3"
        assert pinned_version("foo>=1.0,==1.5") == "1.5"
        assert pinned_version("foo==1.*") is None
        assert pinned_version("foo>=1.0") is None

    def test_conflicts(self):
        assert dependency_conflicts(["a==1", "b==1", "A==2"]) == ["a pinned to both 1 and 2"]
        assert dependency_conflicts(["a==1", "a>=1"]) == []
