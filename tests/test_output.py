"""
Tests for output formatting.
"""

import io
import json

import pytest

from restbridge.errors import StructuredError
from restbridge.models import BatchResult
from restbridge.output import Formatter, OutputFormat, csv_value, parse_fields, project


def render(format, items, fields=None, stream=True):
    out = io.StringIO()
    formatter = Formatter(format, writer=out, fields=fields)
    if stream:
        formatter.start_stream()
        for item in items:
            formatter.stream_item(item)
        formatter.end_stream()
    else:
        formatter.write_all(items)
    return out.getvalue()


ITEMS = [{"id": "1", "name": "Inbox", "labels": ["a"]}, {"id": "2", "name": "Sent", "labels": []}]


class TestOutputFormat:
    @pytest.mark.parametrize("value,expected", [
        ("json", OutputFormat.JSON),
        ("JSON-COMPACT", OutputFormat.JSON_COMPACT),
        ("jsoncompact", OutputFormat.JSON_COMPACT),
        ("ndjson", OutputFormat.JSONL),
        ("csv", OutputFormat.CSV),
    ])
    def test_parse(self, value, expected):
        assert OutputFormat.parse(value) is expected

    def test_unknown(self):
        with pytest.raises(ValueError, match="xml"):
            OutputFormat.parse("xml")


class TestStreaming:
    """Streamed listings parse back to the same items."""

    def test_json(self):
        assert json.loads(render(OutputFormat.JSON, ITEMS)) == ITEMS

    def test_json_empty(self):
        assert json.loads(render(OutputFormat.JSON, [])) == []
        assert json.loads(render(OutputFormat.JSON_COMPACT, [])) == []

    def test_json_compact_single_line(self):
        text = render(OutputFormat.JSON_COMPACT, ITEMS)
        assert text.count("\n") == 1
        assert json.loads(text) == ITEMS

    def test_jsonl(self):
        lines = render(OutputFormat.JSONL, ITEMS).splitlines()
        assert [json.loads(line) for line in lines] == ITEMS

    def test_csv(self):
        text = render(OutputFormat.CSV, ITEMS)
        assert text.splitlines() == ["id,name,labels", '1,Inbox,"[""a""]"', "2,Sent,[]"]

    def test_fields_projection(self):
        text = render(OutputFormat.JSONL, ITEMS, fields=["name", "missing"])
        assert json.loads(text.splitlines()[0]) == {"name": "Inbox", "missing": None}

    def test_write_all_matches_stream(self):
        assert json.loads(render(OutputFormat.JSON, ITEMS, stream=False)) == ITEMS


class TestWrite:
    def test_models_serialized(self):
        out = io.StringIO()
        Formatter(OutputFormat.JSON_COMPACT, writer=out).write(BatchResult.from_outcomes([], []))
        assert json.loads(out.getvalue()) == {"status": "success", "results": [], "errors": []}

    def test_structured_error(self):
        out = io.StringIO()
        Formatter(OutputFormat.JSON, writer=out).write(StructuredError.invalid_request("gmail", "bad"))
        data = json.loads(out.getvalue())
        assert data["status"] == "error"
        assert data["domain"] == "gmail"


class TestHelpers:
    def test_parse_fields(self):
        assert parse_fields("id, name,,") == ["id", "name"]
        assert parse_fields("") is None
        assert parse_fields(None) is None

    def test_project_non_dict(self):
        assert project([1, 2], ["id"]) == [1, 2]

    def test_csv_value(self):
        assert csv_value(None) == ""
        assert csv_value("x") == "x"
        assert csv_value(3) == "3"
        assert csv_value({"a": 1}) == '{"a":1}'
