import pytest
from pydantic import ValidationError as PydanticValidationError

from dataflow.errors import ValidationError
from dataflow.models import EnhancedDataSourceConfiguration, PlaceholderConfig
from dataflow.placeholders import (
    PlaceholderResolver,
    convert_value,
    generate_http_placeholder_name,
    is_valid_name,
)
from tests.helpers import document, http_item, source


def _config():
    return document(
        "comp-1",
        source(
            "s1",
            http_item(
                "https://api.example.com/{{deviceId}}/metrics?range={{ range }}",
                headers=[{"key": "Authorization", "value": "Bearer {{token}}"}],
            ),
            http_item("https://api.example.com/{{deviceId}}/status"),
        ),
    )


def test_extract_unique_names_in_order():
    resolver = PlaceholderResolver()
    assert resolver.extract("{{a}}-{{ b }}-{{a}}") == ["a", "b"]
    assert resolver.extract("no tokens") == []
    assert resolver.extract(None) == []


def test_occurrences_track_paths():
    occurrences = PlaceholderResolver().find_occurrences(_config())
    paths = [o.path for o in occurrences["deviceId"]]
    assert paths == [
        "dataSources[0].dataItems[0].item.config.url",
        "dataSources[0].dataItems[1].item.config.url",
    ]
    assert occurrences["token"][0].path == "dataSources[0].dataItems[0].item.config.headers[0].value"


def test_every_extracted_token_is_analyzed():
    resolver = PlaceholderResolver()
    config = _config()
    analysis = resolver.analyze_dependencies(config)

    extracted = set()
    for src in config["dataSources"]:
        for entry in src["dataItems"]:
            extracted.update(resolver.extract(entry["item"]["config"]["url"]))
            for header in entry["item"]["config"].get("headers", []):
                extracted.update(resolver.extract(header["value"]))

    assert extracted <= set(analysis.placeholders)
    assert analysis.config_id == "comp-1"
    assert not analysis.has_circular_dependency


def test_analysis_includes_declared_dependencies():
    configs = {
        "token": PlaceholderConfig(name="token", depends_on=["tenant"]),
        "tenant": PlaceholderConfig(name="tenant", value="t1"),
    }
    analysis = PlaceholderResolver().analyze_dependencies(_config(), configs)
    assert "tenant" in analysis.placeholders
    assert analysis.details["token"].dependencies == ["tenant"]
    assert analysis.details["tenant"].dependents == ["token"]


def test_three_node_cycle_is_reported_once():
    result = PlaceholderResolver().detect_circular_dependencies({"a": ["b"], "b": ["c"], "c": ["a"]})
    assert result.has_circular_dependency
    assert len(result.circular_paths) == 1
    assert set(result.circular_paths[0]) == {"a", "b", "c"}
    assert result.circular_paths[0][0] == result.circular_paths[0][-1]


def test_every_cycle_is_reported():
    graph = {"a": ["b", "c"], "b": ["a"], "c": ["d"], "d": ["c"], "e": []}
    result = PlaceholderResolver().detect_circular_dependencies(graph)
    assert sorted(sorted(set(p)) for p in result.circular_paths) == [["a", "b"], ["c", "d"]]
    assert "e" not in result.affected_placeholders


def test_acyclic_graph():
    result = PlaceholderResolver().detect_circular_dependencies({"a": ["b"], "b": ["c"]})
    assert not result.has_circular_dependency
    assert result.circular_paths == []


def test_substitute_leaves_missing_tokens():
    resolver = PlaceholderResolver()
    out = resolver.substitute(_config(), {"deviceId": 42, "range": "1h"})
    url = out["dataSources"][0]["dataItems"][0]["item"]["config"]["url"]
    assert url == "https://api.example.com/42/metrics?range=1h"
    header = out["dataSources"][0]["dataItems"][0]["item"]["config"]["headers"][0]["value"]
    assert header == "Bearer {{token}}"

    with pytest.raises(ValidationError) as info:
        resolver.ensure_resolved(out)
    assert info.value.errors[0]["placeholder"] == "token"


def test_substitute_model_returns_model():
    config = EnhancedDataSourceConfiguration.model_validate(_config())
    out = PlaceholderResolver().substitute(config, {"deviceId": "d1", "range": True, "token": "x"})
    assert isinstance(out, EnhancedDataSourceConfiguration)
    assert out.data_sources[0].data_items[0].item.config.url.endswith("/d1/metrics?range=true")
    assert config.data_sources[0].data_items[0].item.config.url.startswith("https://api.example.com/{{")


def test_validate_reports_problems():
    configs = {
        "deviceId": PlaceholderConfig(name="deviceId", required=True),
        "range": PlaceholderConfig(name="range", value="2h", validation={"enum": ["1h", "24h"]}),
        "limit": PlaceholderConfig(name="limit", value="abc", data_type="number"),
    }
    result = PlaceholderResolver().validate(_config(), configs)

    assert not result.is_valid
    assert result.missing_required == ["deviceId"]
    assert result.undefined == ["token"]
    types = {(e.placeholder, e.type) for e in result.errors}
    assert ("range", "validation_failed") in types
    assert ("limit", "invalid_type") in types
    assert ("token", "missing") in types
    assert [w.placeholder for w in result.warnings] == ["limit"]


def test_validate_reports_cycles():
    configs = {
        "deviceId": PlaceholderConfig(name="deviceId", value="1", depends_on=["range"]),
        "range": PlaceholderConfig(name="range", value="1h", depends_on=["deviceId"]),
        "token": PlaceholderConfig(name="token", value="t"),
    }
    result = PlaceholderResolver().validate(_config(), configs)
    assert [e.type for e in result.errors] == ["circular_dependency"]


def test_validate_passes_with_all_values():
    configs = {
        "deviceId": PlaceholderConfig(name="deviceId", value="7", required=True),
        "range": PlaceholderConfig(name="range", value="1h", validation={"pattern": r"^\d+h$"}),
        "token": PlaceholderConfig(name="token", default_value="secret"),
    }
    assert PlaceholderResolver().validate(_config(), configs).is_valid


def test_resolve_values_precedence():
    configs = {
        "a": PlaceholderConfig(name="a", value="configured", default_value="default"),
        "b": PlaceholderConfig(name="b", default_value="default"),
        "c": PlaceholderConfig(name="c"),
    }
    values = PlaceholderResolver().resolve_values(configs, {"a": "runtime", "c": None})
    assert values == {"a": "runtime", "b": "default"}


def test_convert_value():
    assert convert_value("42", "number") == 42
    assert convert_value("4.5", "number") == 4.5
    assert convert_value("true", "boolean") is True
    assert convert_value("0", "boolean") is False
    assert convert_value('{"a": 1}', "json") == {"a": 1}
    assert convert_value(5, "string") == "5"
    with pytest.raises(ValueError):
        convert_value("maybe", "boolean")
    with pytest.raises(ValueError):
        convert_value("ten", "number")


def test_names():
    assert is_valid_name("deviceId")
    assert not is_valid_name("1abc")
    assert not is_valid_name("has-dash")
    assert generate_http_placeholder_name("X-Api-Key") == "http_X_Api_Key"
    assert generate_http_placeholder_name("page size") == "http_page_size"
    with pytest.raises(ValueError):
        generate_http_placeholder_name("---")


def test_valueless_placeholder_with_undefined_dependency_is_reported():
    configs = {"a": PlaceholderConfig(name="a", depends_on=["ghost"])}
    result = PlaceholderResolver().validate({"url": "/x/{{a}}"}, configs)

    assert not result.is_valid
    assert [issue.message for issue in result.errors] == [
        "Placeholder 'a' depends on undefined placeholder 'ghost'"
    ]


def test_malformed_validation_pattern_is_rejected():
    with pytest.raises(PydanticValidationError):
        PlaceholderConfig.model_validate({"name": "a", "validation": {"pattern": "(["}})
