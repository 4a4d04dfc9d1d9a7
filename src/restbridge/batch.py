"""
Multipart batch requests.

Packs up to 100 logical calls into a single multipart/mixed POST against a
domain's batch endpoint and unpacks the embedded HTTP responses, correlated
back to the caller's ids by Content-ID.

Wire format in and out:

    [{"id": "a", "method": "GET", "path": "/users/me/messages/1"}, ...]

    {"status": "partial",
     "results": [{"id": "a", "status": 200, "body": {...}}],
     "errors":  [{"id": "b", "status": 404, "message": "Not Found"}]}
"""

import json
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from restbridge.client import RequestExecutor
from restbridge.errors import StructuredError
from restbridge.models import (
    READ_METHODS,
    ApiRequest,
    BatchError,
    BatchRequest,
    BatchResponse,
    BatchResult,
)

logger = structlog.get_logger(__name__)

# Google's limit per batch call
MAX_BATCH_SIZE = 100

MISSING_PART_STATUS = 502
CRLF = "\r\n"


class BatchFormatError(ValueError):
    """Raised when a multipart batch response cannot be parsed."""
    pass


@dataclass
class ResponsePart:
    """One embedded HTTP response from a batch reply."""
    content_id: str | None
    status: int
    reason: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def new_boundary() -> str:
    return f"batch_{uuid.uuid4().hex}"


def resolve_part_path(path: str, base_path: str) -> str:
    """
    Sub-request path as the batch endpoint expects it: absolute from the host.

    Paths relative to the domain base URL ('/users/me/messages/1') get the
    base URL's path prepended ('/gmail/v1/users/me/messages/1'); paths that
    already carry it are left alone.
    """
    if not path.startswith("/"):
        path = "/" + path
    base_path = base_path.rstrip("/")
    if not base_path or path == base_path or path.startswith(base_path + "/"):
        return path
    return base_path + path


def encode_batch(requests: list[BatchRequest], boundary: str) -> str:
    """Build the multipart/mixed body for a batch call."""
    lines: list[str] = []
    for request in requests:
        lines.append(f"--{boundary}")
        lines.append("Content-Type: application/http")
        lines.append(f"Content-ID: <{request.id}>")
        lines.append("")
        lines.append(f"{request.method} {request.path} HTTP/1.1")
        if request.body is not None:
            payload = json.dumps(request.body, separators=(",", ":"))
            lines.append("Content-Type: application/json")
            lines.append(f"Content-Length: {len(payload.encode('utf-8'))}")
            lines.append("")
            lines.append(payload)
        else:
            lines.append("")
        lines.append("")
    lines.append(f"--{boundary}--")
    return CRLF.join(lines) + CRLF


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def extract_boundary(content_type: str | None) -> str | None:
    """Pull the boundary parameter out of a multipart Content-Type header."""
    if not content_type:
        return None
    for param in content_type.split(";"):
        key, sep, value = param.strip().partition("=")
        if sep and key.strip().lower() == "boundary":
            value = value.strip().strip("\"'")
            return value or None
    return None


def _read_headers(lines: list[str], start: int) -> tuple[dict[str, str], int]:
    """Read `Name: value` lines until a blank line. Returns (headers, index after blank)."""
    headers: dict[str, str] = {}
    index = start
    while index < len(lines) and lines[index].strip():
        name, _, value = lines[index].partition(":")
        headers[name.strip().lower()] = value.strip()
        index += 1
    return headers, index + 1


def _parse_content_id(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().strip("<>").strip()
    if cleaned.startswith("response-"):
        cleaned = cleaned[len("response-"):]
    return cleaned or None


def _parse_body(text: str) -> Any:
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def _parse_part(text: str) -> ResponsePart:
    lines = text.split("\n")
    outer_headers, index = _read_headers(lines, 0)

    # Skip blank lines between the part headers and the embedded response
    while index < len(lines) and not lines[index].strip():
        index += 1
    if index >= len(lines):
        raise BatchFormatError("batch part has no embedded HTTP response")

    status_line = lines[index].strip()
    pieces = status_line.split(None, 2)
    if len(pieces) < 2 or not pieces[0].startswith("HTTP/"):
        raise BatchFormatError(f"invalid status line in batch part: {status_line[:80]!r}")
    try:
        status = int(pieces[1])
    except ValueError as e:
        raise BatchFormatError(f"invalid status code in batch part: {pieces[1]!r}") from e

    headers, body_start = _read_headers(lines, index + 1)

    return ResponsePart(
        content_id=_parse_content_id(outer_headers.get("content-id")),
        status=status,
        reason=pieces[2] if len(pieces) == 3 else "",
        headers=headers,
        body=_parse_body("\n".join(lines[body_start:])),
    )


def decode_batch(body: str, boundary: str) -> list[ResponsePart]:
    """
    Split a multipart/mixed batch reply into its embedded responses.

    Raises:
        BatchFormatError: missing closing delimiter or an unparseable part
    """
    delimiter = f"--{boundary}"
    closing = f"{delimiter}--"
    if closing not in body:
        raise BatchFormatError("batch response has no closing delimiter")

    content = body.split(closing, 1)[0].replace(CRLF, "\n")
    segments = content.split(delimiter)

    # segments[0] is the preamble
    parts = []
    for segment in segments[1:]:
        if not segment.strip():
            continue
        parts.append(_parse_part(segment.strip("\n")))
    return parts


def _part_error_message(part: ResponsePart) -> str:
    body = part.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return body.get("error_description") or error
        if body.get("message"):
            return str(body["message"])
    return part.reason or f"HTTP {part.status}"


def correlate(requests: list[BatchRequest], parts: list[ResponsePart]) -> BatchResult:
    """
    Match decoded parts to requests by Content-ID (falling back to position)
    and split them into results and errors, in request order.
    """
    wanted = {request.id for request in requests}
    matched: dict[str, ResponsePart] = {}

    for position, part in enumerate(parts):
        request_id = part.content_id
        if request_id is None and position < len(requests):
            request_id = requests[position].id

        if request_id not in wanted:
            logger.warning("Dropping batch response with unknown id", content_id=request_id)
            continue
        if request_id in matched:
            logger.warning("Dropping duplicate batch response", content_id=request_id)
            continue
        matched[request_id] = part

    results: list[BatchResponse] = []
    errors: list[BatchError] = []
    for request in requests:
        part = matched.get(request.id)
        if part is None:
            errors.append(BatchError(
                id=request.id,
                status=MISSING_PART_STATUS,
                message="missing from batch response",
            ))
        elif 200 <= part.status < 300:
            results.append(BatchResponse(id=request.id, status=part.status, body=part.body))
        else:
            errors.append(BatchError(
                id=request.id,
                status=part.status,
                message=_part_error_message(part),
            ))

    return BatchResult.from_outcomes(results, errors)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class BatchClient:
    """
    Batch front end for one domain's RequestExecutor.

    The outer POST goes through the executor, so it is rate limited as a
    single unit, authenticated, and retried as a whole on transient failure.

    Example:
        batch = BatchClient(registry.client(Domain.GMAIL))
        result = batch.run([
            BatchRequest.get("m1", "/gmail/v1/users/me/messages/1"),
            BatchRequest.get("m2", "/gmail/v1/users/me/messages/2"),
        ])
        print(result.to_dict())
    """

    def __init__(
        self,
        executor: RequestExecutor,
        batch_url: str | None = None,
        max_requests: int = MAX_BATCH_SIZE,
        boundary_factory: Callable[[], str] = new_boundary,
    ):
        self.executor = executor
        self.domain = executor.domain
        self.batch_url = batch_url or executor.profile.batch_url
        self.max_requests = max_requests
        self._boundary_factory = boundary_factory
        self._log = logger.bind(domain=self.domain)

    def _validate(
        self, requests: Iterable[BatchRequest | dict[str, Any]]
    ) -> list[BatchRequest] | StructuredError:
        try:
            validated = [
                r if isinstance(r, BatchRequest) else BatchRequest.model_validate(r)
                for r in requests
            ]
        except ValidationError as e:
            return StructuredError.invalid_request(self.domain, f"Invalid batch request: {e}")

        if len(validated) > self.max_requests:
            return StructuredError.invalid_request(
                self.domain,
                f"Too many requests in batch: {len(validated)} (max: {self.max_requests})",
            )

        counts = Counter(r.id for r in validated)
        duplicates = sorted(request_id for request_id, n in counts.items() if n > 1)
        if duplicates:
            return StructuredError.invalid_request(
                self.domain, f"Duplicate batch request id(s): {', '.join(duplicates)}"
            )

        return validated

    def run(self, requests: Iterable[BatchRequest | dict[str, Any]]) -> BatchResult | StructuredError:
        """
        Execute a batch.

        Returns:
            BatchResult with per-request results/errors, or a StructuredError
            when the batch itself was rejected or the outer call failed
        """
        validated = self._validate(requests)
        if isinstance(validated, StructuredError):
            return validated

        if not validated:
            return BatchResult.from_outcomes([], [])

        if not self.batch_url:
            return StructuredError.invalid_request(
                self.domain, f"Domain '{self.domain}' has no batch endpoint"
            )

        base_path = httpx.URL(self.executor.base_url).path
        validated = [
            r.model_copy(update={"path": resolve_part_path(r.path, base_path)})
            for r in validated
        ]

        boundary = self._boundary_factory()
        self._log.debug("Sending batch", request_count=len(validated), boundary=boundary)

        try:
            content = encode_batch(validated, boundary).encode("utf-8")
        except (TypeError, ValueError) as e:
            return StructuredError.invalid_request(self.domain, f"Invalid batch request: {e}")

        outer = ApiRequest(
            method="POST",
            path=self.batch_url,
            content=content,
            headers={"Content-Type": f"multipart/mixed; boundary={boundary}"},
            cost=1,
            write=any(r.method not in READ_METHODS for r in validated),
        )
        response = self.executor.execute(outer, url=self.batch_url)
        if not response.ok:
            return response

        try:
            response_boundary = extract_boundary(response.header("content-type"))
            if response_boundary is None:
                raise BatchFormatError("batch response has no multipart boundary")
            parts = decode_batch(response.text, response_boundary)
        except BatchFormatError as e:
            self._log.warning("Malformed batch response", error=str(e))
            return StructuredError.invalid_request(self.domain, f"Malformed batch response: {e}")

        result = correlate(validated, parts)
        self._log.info(
            "Batch complete",
            status=result.status,
            results=len(result.results),
            errors=len(result.errors),
        )
        return result
