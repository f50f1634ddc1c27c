import asyncio

import pytest

from dataflow.errors import ProcessingError
from dataflow.models import ProcessingConfig
from dataflow.processor import DataItemProcessor, resolve_path


def test_filter_path_resolves_value():
    processor = DataItemProcessor()
    cfg = ProcessingConfig(filter_path="$.temperature")
    assert asyncio.run(processor.process({"temperature": 25.6}, cfg)) == 25.6


def test_missing_path_falls_back_to_default():
    processor = DataItemProcessor()
    cfg = ProcessingConfig(filter_path="$.temperature", default_value=0)
    assert asyncio.run(processor.process({}, cfg)) == 0


def test_missing_path_without_default_is_none():
    processor = DataItemProcessor()
    assert asyncio.run(processor.process({"a": 1}, ProcessingConfig(filter_path="$.b"))) is None


def test_no_processing_passes_raw_through():
    processor = DataItemProcessor()
    raw = {"a": [1, 2]}
    assert asyncio.run(processor.process(raw, None)) is raw


def test_nested_and_indexed_paths():
    data = {"data": {"items": [{"name": "first"}, {"name": "second"}]}}
    assert resolve_path(data, "$.data.items[1].name") == (True, "second")
    assert resolve_path(data, "$") == (True, data)
    assert resolve_path(None, "$.data") == (False, None)


def test_malformed_path_is_processing_error():
    processor = DataItemProcessor()
    with pytest.raises(ProcessingError):
        asyncio.run(processor.process({"a": 1}, ProcessingConfig(filter_path="$.[[[")))


def test_custom_script_runs_after_filter(script_engine):
    processor = DataItemProcessor(script_engine)
    cfg = ProcessingConfig(filter_path="$.values", custom_script="sum(data)")
    assert asyncio.run(processor.process({"values": [1, 2, 3]}, cfg)) == 6


def test_custom_script_failure_is_processing_error(script_engine):
    processor = DataItemProcessor(script_engine)
    cfg = ProcessingConfig(custom_script="data['missing']")
    with pytest.raises(ProcessingError):
        asyncio.run(processor.process({}, cfg))


def test_validate_filter_path():
    assert DataItemProcessor.validate_filter_path("$.a.b[0]")
    assert DataItemProcessor.validate_filter_path("a.b")
    assert DataItemProcessor.validate_filter_path(None)
    assert not DataItemProcessor.validate_filter_path("$.[[[")
