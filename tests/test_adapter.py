import pytest

from dataflow.adapter import ConfigurationAdapter
from dataflow.errors import StructuralConfigError
from dataflow.models import (
    ConfigVersion,
    DataSourceConfiguration,
    EnhancedDataSourceConfiguration,
    HttpDataItem,
    StaticDataItem,
)

V1_DOCUMENT = {
    "componentId": "comp-1",
    "createdAt": 1700000000000,
    "updatedAt": 1700000005000,
    "dataSources": [
        {
            "sourceId": "metrics",
            "type": "api",
            "dataItems": [
                {
                    "item": {
                        "type": "http",
                        "config": {
                            "url": "https://api.example.com/metrics",
                            "method": "POST",
                            "headers": {"X-Api-Key": "secret", "Accept": "application/json"},
                            "body": {"range": "1h"},
                            "timeout": 5000,
                        },
                    },
                    "processing": {"filterPath": "$.data", "defaultValue": []},
                },
                {
                    "item": {"type": "json", "id": "fixture", "config": {"jsonString": "{\"a\": 1}"}},
                },
            ],
            "mergeStrategy": {"type": "condition", "rule": "largest-dataset"},
            "fieldMapping": {"value": "$.a"},
        },
        {
            "sourceId": "live",
            "dataItems": [
                {"item": {"type": "websocket", "config": {"url": "ws://example.com/live", "reconnectInterval": 3000}}},
                {"item": {"type": "script", "config": {"script": "context['itemId']"}}},
                {"item": {"type": "static", "config": {"data": [1, 2, 3]}}},
            ],
            "mergeStrategy": {"type": "select", "selectedIndex": 2},
        },
    ],
}


def test_detect_version():
    adapter = ConfigurationAdapter()
    assert adapter.detect_version(V1_DOCUMENT) == ConfigVersion.V1
    assert adapter.detect_version({**V1_DOCUMENT, "version": "2.1.0"}) == ConfigVersion.V2
    assert adapter.detect_version({**V1_DOCUMENT, "version": "1.5"}) == ConfigVersion.V1
    assert adapter.detect_version({**V1_DOCUMENT, "version": 2}) == ConfigVersion.V1


def test_upgrade_converts_items():
    upgraded = ConfigurationAdapter().upgrade_v1_to_v2(V1_DOCUMENT)

    assert isinstance(upgraded, EnhancedDataSourceConfiguration)
    assert upgraded.version == "2.0.0"
    assert upgraded.dynamic_params == []
    assert all(upgraded.enhanced_features.model_dump().values())
    assert upgraded.metadata.version_history[0].version == "2.0.0"
    assert upgraded.created_at == V1_DOCUMENT["createdAt"]
    assert upgraded.updated_at == V1_DOCUMENT["updatedAt"]

    http = upgraded.data_sources[0].data_items[0].item
    assert isinstance(http, HttpDataItem)
    assert [(h.key, h.value, h.enabled) for h in http.config.headers] == [
        ("X-Api-Key", "secret", True),
        ("Accept", "application/json", True),
    ]
    assert http.config.headers[0].variable_name == "http_X_Api_Key"
    assert http.config.params == []
    assert http.config.body.content == {"range": "1h"}
    assert http.config.timeout == 5000

    fixture = upgraded.data_sources[0].data_items[1].item
    assert isinstance(fixture, StaticDataItem)
    assert fixture.type == "json"
    assert fixture.id == "fixture"
    assert fixture.config.json_data == "{\"a\": 1}"


def test_round_trip_reproduces_v1_document():
    adapter = ConfigurationAdapter()
    restored = adapter.downgrade_v2_to_v1(adapter.upgrade_v1_to_v2(V1_DOCUMENT))
    assert restored == DataSourceConfiguration.model_validate(V1_DOCUMENT)


def test_downgrade_drops_v2_fields_with_warnings():
    upgraded = ConfigurationAdapter().upgrade_v1_to_v2(V1_DOCUMENT).to_document()
    http_config = upgraded["dataSources"][0]["dataItems"][0]["item"]["config"]
    http_config["headers"].append({"key": "X-Debug", "value": "1", "enabled": False})
    http_config["params"] = [{"key": "page", "value": "1"}]
    http_config["retry"] = {"maxRetries": 2}
    upgraded["placeholderConfigs"] = {"page": {"name": "page", "value": "1"}}
    upgraded["dynamicParams"] = [{"name": "page"}]

    legacy, warnings = ConfigurationAdapter().downgrade_with_warnings(upgraded)

    headers = legacy.data_sources[0].data_items[0].item.config.headers
    assert headers == {"X-Api-Key": "secret", "Accept": "application/json"}
    text = "\n".join(warnings)
    assert "disabled header 'X-Debug'" in text
    assert "query parameter" in text
    assert "retry policy" in text
    assert "placeholder configs: page" in text
    assert "dynamic parameter" in text


def test_adapt_to_version():
    adapter = ConfigurationAdapter()

    up = adapter.adapt_to_version(V1_DOCUMENT, ConfigVersion.V2)
    assert up.success
    assert up.data["version"] == "2.0.0"
    assert up.metadata.source_version == ConfigVersion.V1
    assert up.metadata.target_version == ConfigVersion.V2

    down = adapter.adapt_to_version(up.data, "1.x")
    assert down.success
    assert "version" not in down.data
    assert any("metadata" in w for w in down.warnings)

    same = adapter.adapt_to_version(V1_DOCUMENT, ConfigVersion.V1)
    assert same.success
    assert same.warnings == []


def test_adapt_reports_structural_errors():
    result = ConfigurationAdapter().adapt_to_version({"componentId": "c", "dataSources": [{}]}, ConfigVersion.V2)
    assert not result.success
    assert result.data is None
    assert result.errors


def test_upgrade_rejects_unknown_item_type():
    bad = {"componentId": "c", "dataSources": [{"sourceId": "s", "dataItems": [{"item": {"type": "ftp", "config": {}}}]}]}
    with pytest.raises(StructuralConfigError):
        ConfigurationAdapter().upgrade_v1_to_v2(bad)


def test_batch_and_validate_conversion():
    adapter = ConfigurationAdapter()
    results = adapter.batch_convert([V1_DOCUMENT, {"componentId": ""}], ConfigVersion.V2)
    assert [r.success for r in results] == [True, False]

    report = adapter.validate_conversion(V1_DOCUMENT, results[0].data)
    assert report == {"valid": True, "issues": []}

    broken = {**results[0].data, "dataSources": results[0].data["dataSources"][:1]}
    report = adapter.validate_conversion(V1_DOCUMENT, broken)
    assert not report["valid"]
    assert "dataSources count does not match" in report["issues"]


def test_normalize_accepts_both_generations():
    adapter = ConfigurationAdapter()
    from_v1 = adapter.normalize(V1_DOCUMENT)
    from_v2 = adapter.normalize(from_v1.to_document())
    assert from_v1 == from_v2
