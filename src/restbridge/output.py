"""
Output formatting for command results.

Formats:
    json          pretty-printed JSON (default)
    json-compact  single-line JSON
    jsonl         one JSON document per line (alias: ndjson)
    csv           header row from the first object's keys

Listings are streamed item by item through start_stream/stream_item/
end_stream so large paginated results never sit in memory.
"""

import csv
import json
import sys
from enum import Enum
from typing import Any, Iterable, TextIO

from pydantic import BaseModel


class OutputFormat(str, Enum):
    JSON = "json"
    JSON_COMPACT = "json-compact"
    JSONL = "jsonl"
    CSV = "csv"

    @classmethod
    def parse(cls, value: str) -> "OutputFormat":
        aliases = {"jsoncompact": cls.JSON_COMPACT, "ndjson": cls.JSONL}
        normalized = value.strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(f.value for f in cls)
            raise ValueError(f"Unknown output format '{value}' (expected one of: {valid}, ndjson)") from None


def to_jsonable(item: Any) -> Any:
    """Plain JSON data for models and anything with to_dict()."""
    if hasattr(item, "to_dict"):
        return item.to_dict()
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json", exclude_none=True)
    return item


def project(item: Any, fields: list[str] | None) -> Any:
    """Keep only the named top-level fields of an object."""
    if not fields or not isinstance(item, dict):
        return item
    return {name: item.get(name) for name in fields}


def parse_fields(value: str | None) -> list[str] | None:
    if not value:
        return None
    fields = [f.strip() for f in value.split(",") if f.strip()]
    return fields or None


class Formatter:
    """
    Writes items in the selected format.

    Example:
        formatter = Formatter(OutputFormat.CSV, fields=["id", "name"])
        formatter.start_stream()
        for item in stream:
            formatter.stream_item(item)
        formatter.end_stream()
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.JSON,
        writer: TextIO | None = None,
        fields: list[str] | None = None,
    ):
        self.format = format
        self.writer = writer or sys.stdout
        self.fields = fields
        self._first_item = True
        self._csv_headers: list[str] | None = None
        self._csv = csv.writer(self.writer, lineterminator="\n")

    def _prepare(self, item: Any) -> Any:
        return project(to_jsonable(item), self.fields)

    def _dumps(self, data: Any, pretty: bool = False) -> str:
        if pretty:
            return json.dumps(data, indent=2, ensure_ascii=False)
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False)

    def write(self, item: Any) -> None:
        """Write a single document."""
        data = self._prepare(item)
        if self.format is OutputFormat.CSV:
            self._write_csv_row(data)
        else:
            self.writer.write(self._dumps(data, pretty=self.format is OutputFormat.JSON) + "\n")

    def write_all(self, items: Iterable[Any]) -> None:
        """Write a list as one document (JSON) or one row/line per item."""
        if self.format in (OutputFormat.JSON, OutputFormat.JSON_COMPACT):
            data = [self._prepare(item) for item in items]
            self.writer.write(self._dumps(data, pretty=self.format is OutputFormat.JSON) + "\n")
        else:
            for item in items:
                self.write(item)

    def start_stream(self) -> None:
        self._first_item = True
        if self.format in (OutputFormat.JSON, OutputFormat.JSON_COMPACT):
            self.writer.write("[")

    def stream_item(self, item: Any) -> None:
        data = self._prepare(item)
        if self.format in (OutputFormat.JSON, OutputFormat.JSON_COMPACT):
            if not self._first_item:
                self.writer.write(",")
            self._first_item = False
            if self.format is OutputFormat.JSON:
                indented = "\n".join("  " + line for line in self._dumps(data, pretty=True).splitlines())
                self.writer.write("\n" + indented)
            else:
                self.writer.write(self._dumps(data))
        elif self.format is OutputFormat.JSONL:
            self.writer.write(self._dumps(data) + "\n")
        else:
            self._write_csv_row(data)
        self.writer.flush()

    def end_stream(self) -> None:
        if self.format is OutputFormat.JSON:
            self.writer.write("\n]\n" if not self._first_item else "]\n")
        elif self.format is OutputFormat.JSON_COMPACT:
            self.writer.write("]\n")
        self.writer.flush()

    def _write_csv_row(self, data: Any) -> None:
        if isinstance(data, dict):
            if self._csv_headers is None:
                self._csv_headers = list(data.keys())
                self._csv.writerow(self._csv_headers)
            self._csv.writerow([csv_value(data.get(key)) for key in self._csv_headers])
        elif isinstance(data, list):
            if self._csv_headers is None:
                self._csv_headers = [f"col{i}" for i in range(len(data))]
                self._csv.writerow(self._csv_headers)
            self._csv.writerow([csv_value(v) for v in data])
        else:
            self._csv.writerow([csv_value(data)])


def csv_value(value: Any) -> str:
    """Cell text: strings as-is, null empty, everything else JSON-encoded."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
