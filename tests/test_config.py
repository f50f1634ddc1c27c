import json
from unittest.mock import MagicMock

from dataflow.config_loader import AppConfig, load_component_documents, load_config
from dataflow.config_store import ConfigurationStore


def test_store_sections_and_listeners(tmp_path):
    store = ConfigurationStore(tmp_path / "nested" / "db.json")
    listener = MagicMock()
    remove = store.add_listener(listener)

    assert store.get_configuration("comp-1") is None
    store.update_configuration("comp-1", "dataSource", {"componentId": "comp-1"})
    store.update_configuration("comp-1", "style", {"color": "red"})

    assert store.get_configuration("comp-1") == {
        "dataSource": {"componentId": "comp-1"},
        "style": {"color": "red"},
    }
    assert store.get_section("comp-1", "style") == {"color": "red"}
    assert store.list_components() == ["comp-1"]
    assert [c.args for c in listener.call_args_list] == [("comp-1", "dataSource"), ("comp-1", "style")]

    remove()
    assert store.delete_configuration("comp-1")
    assert not store.delete_configuration("comp-1")
    assert listener.call_count == 2
    store.close()


def test_store_persists_to_disk(tmp_path):
    path = tmp_path / "db.json"
    store = ConfigurationStore(path)
    store.update_configuration("comp-1", "dataSource", {"a": 1})
    store.close()

    reopened = ConfigurationStore(path)
    assert reopened.get_section("comp-1", "dataSource") == {"a": 1}
    reopened.close()


def test_failing_listener_does_not_block_update(tmp_path):
    store = ConfigurationStore(tmp_path / "db.json")
    store.add_listener(MagicMock(side_effect=RuntimeError("boom")))
    second = MagicMock()
    store.add_listener(second)

    store.update_configuration("comp-1", "dataSource", {})
    second.assert_called_once_with("comp-1", "dataSource")
    store.close()


def test_load_config_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DATAFLOW_ROOT", str(tmp_path))
    config = load_config()
    assert config == AppConfig()
    assert config.http.timeout_ms == 10000
    assert config.server.port == 8400


def test_load_config_from_yaml(tmp_path, monkeypatch):
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "config.yaml").write_text(
        "http:\n  base_url: http://api.local\n  max_retries: 2\nscript:\n  timeout_seconds: 0.5\n"
        "components_dir: components\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("DATAFLOW_ROOT", str(tmp_path))

    config = load_config()
    assert config.http.base_url == "http://api.local"
    assert config.http.max_retries == 2
    assert config.http.retry_delay_ms == 1000
    assert config.script.timeout_seconds == 0.5
    assert config.resolve(tmp_path, config.components_dir) == tmp_path / "components"
    assert config.db_path(tmp_path) == tmp_path / "data" / "configurations.json"


def test_load_component_documents(tmp_path):
    (tmp_path / "a.yaml").write_text("componentId: a\ndataSources: []\n", encoding="utf-8")
    (tmp_path / "b.json").write_text(json.dumps([{"componentId": "b"}, {"componentId": "c"}]), encoding="utf-8")
    (tmp_path / "broken.yml").write_text("componentId: [unclosed\n", encoding="utf-8")
    (tmp_path / "empty.yaml").write_text("", encoding="utf-8")

    documents = load_component_documents(tmp_path)
    assert [d["componentId"] for d in documents] == ["a", "b", "c"]
    assert load_component_documents(tmp_path / "missing") == []
