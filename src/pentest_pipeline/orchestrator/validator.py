"""Tolerant parsing and schema validation for agent-produced JSON documents.

Agents write queue and evidence files by hand, so the text routinely carries
markdown fences, comments, trailing commas, raw newlines inside strings and
missing separators. `parse_tolerant` retries the parse through stages of
increasing aggressiveness and returns a typed result instead of raising.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from pentest_pipeline.orchestrator.models import EvidenceType, Verdict

SEVERITY_LEVELS: tuple[str, ...] = ("Critical", "High", "Medium", "Low")

MAX_BODY_CHARS = 2000
MAX_TEXT_CHARS = 2000
MAX_HEADERS_CHARS = 8000
TRUNCATION_MARKER = "... [truncated]"
HEADERS_TRUNCATED = {"note": "headers truncated; too large"}

COMMON_KEYS: frozenset[str] = frozenset(
    {
        "ID",
        "vulnerability_type",
        "vulnerability_id",
        "severity",
        "verdict",
        "type",
        "description",
        "source",
        "url_path",
        "parameters",
        "recommendation",
    },
)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_PLACEHOLDER = re.compile(r"(?:,\s*)?\$\{\{[^}]+\}\}(?:\s*,)?")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_LEGAL_ESCAPES = frozenset('"\\/bfnrtu')
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
_PUNCTUATION = frozenset("{}[]:,")


@dataclass(slots=True)
class ParseResult:
    ok: bool
    value: Any = None
    error: str | None = None
    stage: str | None = None


@dataclass(slots=True)
class QueueValidation:
    valid: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    vulnerability_count: int = 0


@dataclass(slots=True)
class EvidenceValidation:
    valid: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    truncated_fields: list[str] = field(default_factory=list)
    screenshot_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MergeResult:
    data: dict[str, Any]
    existing_count: int
    incoming_count: int
    new_count: int
    deduplicated_count: int
    final_count: int


# Stage 1: preprocess


def preprocess_json(raw: str) -> str:
    """Strip fences, comments, placeholder tokens and trailing commas."""

    cleaned = raw.strip()
    if "```" in cleaned:
        blocks = _FENCED_BLOCK.findall(cleaned)
        if blocks:
            cleaned = blocks[-1].strip()
    cleaned = _strip_comments(cleaned)
    cleaned = _PLACEHOLDER.sub(_placeholder_replacement, cleaned)
    return _TRAILING_COMMA.sub(r"\1", cleaned)


def _placeholder_replacement(match: re.Match[str]) -> str:
    text = match.group(0)
    if text.startswith(",") and text.endswith(","):
        return ","
    return ""


def _strip_comments(text: str) -> str:
    # Scans outside string literals only, so "http://host" survives.
    out: list[str] = []
    in_string = False
    escaped = False
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            index += 1
            continue
        if char == '"':
            in_string = True
            out.append(char)
            index += 1
            continue
        if text.startswith("//", index):
            newline = text.find("\n", index)
            index = length if newline == -1 else newline
            continue
        if text.startswith("/*", index):
            end = text.find("*/", index + 2)
            index = length if end == -1 else end + 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


# Stage 2: string-safe sanitize


def sanitize_json_strings(text: str) -> str:
    """Escape raw control characters and stray backslashes inside string literals."""

    out: list[str] = []
    in_string = False
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if not in_string:
            out.append(char)
            if char == '"':
                in_string = True
            index += 1
            continue
        if char == "\\":
            following = text[index + 1] if index + 1 < length else ""
            if following and following in _LEGAL_ESCAPES:
                out.append(char + following)
                index += 2
            else:
                out.append("\\\\")
                index += 1
            continue
        if char == '"':
            in_string = False
            out.append(char)
        elif ord(char) < 0x20:
            out.append(_CONTROL_ESCAPES.get(char, f"\\u{ord(char):04x}"))
        else:
            out.append(char)
        index += 1
    return "".join(out)


# Stage 3: structural repair


def repair_json(text: str) -> str:
    """Rebuild the token stream with missing separators and closers restored.

    - a comma is inserted between two adjacent values (objects, arrays,
      strings or literals), including between a value and the next key;
    - a known field name followed by a comma in key position gets a colon;
    - an unterminated string is closed at end of input;
    - unmatched braces and brackets are closed in LIFO order;
    - several top-level values are wrapped into one array.
    """

    tokens = _tokenize(text.strip())
    out: list[str] = []
    stack: list[str] = []
    top_level_values = 0
    skip_index = -1

    for index, (kind, value) in enumerate(tokens):
        if index == skip_index:
            continue
        if kind == "punct" and value in "}]":
            _close_container(out, stack, value)
            continue
        if kind == "punct":
            if value in "{[":
                if _ends_value(out):
                    out.append(",")
                if not stack:
                    top_level_values += 1
                stack.append(value)
            out.append(value)
            continue

        if _ends_value(out):
            out.append(",")
        if not stack:
            top_level_values += 1
        if (
            kind == "string"
            and stack
            and stack[-1] == "{"
            and (not out or out[-1] in "{,")
            and value[1:-1] in COMMON_KEYS
            and index + 1 < len(tokens)
            and tokens[index + 1] == ("punct", ",")
        ):
            out.append(value)
            out.append(":")
            skip_index = index + 1
            continue
        out.append(value)

    while stack:
        _close_container(out, stack, "}" if stack[-1] == "{" else "]")

    repaired = "".join(out)
    if top_level_values > 1:
        return f"[{repaired}]"
    return repaired


def _close_container(out: list[str], stack: list[str], closer: str) -> None:
    opener = "{" if closer == "}" else "["
    if opener not in stack:
        return
    while stack:
        current = stack.pop()
        if out and out[-1] == ",":
            out.pop()
        if out and out[-1] == ":":
            out.append("null")
        out.append("}" if current == "{" else "]")
        if current == opener:
            return


def _ends_value(out: list[str]) -> bool:
    if not out:
        return False
    last = out[-1]
    return last not in _PUNCTUATION or last in "}]"


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        if char in _PUNCTUATION:
            tokens.append(("punct", char))
            index += 1
            continue
        if char == '"':
            end = index + 1
            escaped = False
            while end < length:
                current = text[end]
                if escaped:
                    escaped = False
                elif current == "\\":
                    escaped = True
                elif current == '"':
                    break
                end += 1
            if end >= length:
                body = text[index:]
                if escaped:
                    body += "\\"
                tokens.append(("string", body + '"'))
                break
            tokens.append(("string", text[index : end + 1]))
            index = end + 1
            continue
        end = index
        while end < length and not text[end].isspace() and text[end] not in _PUNCTUATION:
            if text[end] == '"':
                break
            end += 1
        tokens.append(("literal", text[index:end]))
        index = end
    return tokens


# Attempt pipeline


def parse_tolerant(raw: str, *, require_object: bool = True) -> ParseResult:
    """Parse generative-text JSON, returning the first stage that yields a document.

    Stages run raw -> preprocess -> sanitize -> repair(sanitized) -> repair(preprocessed).
    With ``require_object`` only a JSON object is accepted; otherwise an array
    is accepted too. On total failure the error from the last stage is returned.
    """

    if not raw or not raw.strip():
        return ParseResult(ok=False, error="Empty document")

    preprocessed = preprocess_json(raw)
    sanitized = sanitize_json_strings(preprocessed)
    candidates = (
        ("raw", raw),
        ("preprocess", preprocessed),
        ("sanitize", sanitized),
        ("repair", repair_json(sanitized)),
        ("repair_unsanitized", repair_json(preprocessed)),
    )

    last_error = "no parse attempted"
    for stage, text in candidates:
        try:
            value = json.loads(text)
        except json.JSONDecodeError as error:
            last_error = f"{stage}: {error}"
            continue
        if isinstance(value, dict) or (not require_object and isinstance(value, list)):
            return ParseResult(ok=True, value=value, stage=stage)
        last_error = f"{stage}: expected a JSON object, got {type(value).__name__}"
    return ParseResult(ok=False, error=last_error)


# Queue documents


def validate_queue_json(raw: str) -> QueueValidation:
    parsed = parse_tolerant(raw)
    if not parsed.ok:
        return QueueValidation(valid=False, error=f"Invalid JSON: {parsed.error}")
    return validate_queue_document(parsed.value)


def validate_queue_document(data: dict[str, Any]) -> QueueValidation:
    """Check queue structure and normalize severities in place."""

    if "vulnerabilities" not in data:
        return QueueValidation(
            valid=False,
            error="Invalid queue structure: missing 'vulnerabilities' property. "
            'Expected: {"vulnerabilities": [...]}',
        )
    entries = data["vulnerabilities"]
    if not isinstance(entries, list):
        return QueueValidation(
            valid=False,
            error="Invalid queue structure: 'vulnerabilities' must be an array.",
        )

    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            return QueueValidation(
                valid=False,
                error=f"Invalid queue structure: vulnerabilities[{index}] must be an object.",
            )
        severity = entry.get("severity")
        normalized = severity.strip().capitalize() if isinstance(severity, str) else None
        if normalized not in SEVERITY_LEVELS:
            return QueueValidation(
                valid=False,
                error=(
                    f"Invalid queue structure: vulnerabilities[{index}].severity must be one of "
                    f"{', '.join(SEVERITY_LEVELS)} (received: {severity!r})."
                ),
            )
        entry["severity"] = normalized

    return QueueValidation(valid=True, data=data, vulnerability_count=len(entries))


def queue_key(entry: dict[str, Any]) -> str:
    source = re.sub(r"\s+", "", str(entry.get("source") or "").lower())
    vulnerability_type = str(entry.get("vulnerability_type") or "").lower()
    return f"{vulnerability_type}|{source}"


def merge_queues(existing: dict[str, Any] | None, incoming: dict[str, Any] | None) -> MergeResult:
    """Merge two queue documents keeping the first entry seen for each key.

    Existing entries are visited first, so they win over incoming duplicates.
    """

    existing_list = _queue_entries(existing)
    incoming_list = _queue_entries(incoming)
    seen: set[str] = set()
    merged: list[dict[str, Any]] = []

    for entry in existing_list:
        key = queue_key(entry)
        if key not in seen:
            seen.add(key)
            merged.append(entry)

    new_count = 0
    for entry in incoming_list:
        key = queue_key(entry)
        if key not in seen:
            seen.add(key)
            merged.append(entry)
            new_count += 1

    total = len(existing_list) + len(incoming_list)
    return MergeResult(
        data={"vulnerabilities": merged},
        existing_count=len(existing_list),
        incoming_count=len(incoming_list),
        new_count=new_count,
        deduplicated_count=total - len(merged),
        final_count=len(merged),
    )


def _queue_entries(document: dict[str, Any] | None) -> list[dict[str, Any]]:
    if not document:
        return []
    entries = document.get("vulnerabilities")
    if not isinstance(entries, list):
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


# Evidence documents

_VERDICTS = frozenset(verdict.value for verdict in Verdict)
_EVIDENCE_TYPES = frozenset(kind.value for kind in EvidenceType)


def validate_evidence_json(raw: str) -> EvidenceValidation:
    parsed = parse_tolerant(raw)
    if not parsed.ok:
        return EvidenceValidation(valid=False, error=f"Invalid JSON: {parsed.error}")
    return validate_evidence_document(parsed.value)


def validate_evidence_document(data: dict[str, Any]) -> EvidenceValidation:  # noqa: C901, PLR0911
    """Validate evidence structure, truncating oversized fields in place.

    Screenshot paths are collected but not checked on disk here.
    """

    records = data.get("vulnerabilities")
    if not isinstance(records, list):
        return EvidenceValidation(
            valid=False,
            error="Invalid evidence structure: missing 'vulnerabilities' array property.",
        )
    if not records:
        return EvidenceValidation(
            valid=False,
            error="Invalid evidence structure: 'vulnerabilities' must contain at least one entry.",
        )

    truncated: list[str] = []
    screenshots: list[str] = []
    for record_index, record in enumerate(records):
        where = f"vulnerabilities[{record_index}]"
        if not isinstance(record, dict):
            return EvidenceValidation(valid=False, error=f"{where} must be an object.")
        for required in ("vulnerability_id", "evidence", "reproduction_steps"):
            if record.get(required) in (None, ""):
                return EvidenceValidation(
                    valid=False,
                    error=f"Invalid evidence structure at {where}: missing '{required}' property.",
                )
        if not isinstance(record["evidence"], list):
            return EvidenceValidation(
                valid=False,
                error=f"Invalid evidence structure at {where}: 'evidence' must be an array.",
            )
        verdict = record.get("verdict")
        if not isinstance(verdict, str) or verdict not in _VERDICTS:
            return EvidenceValidation(
                valid=False,
                error=(
                    f"Invalid verdict at {where}: {verdict!r}. "
                    f"Valid: {', '.join(choice.value for choice in Verdict)}"
                ),
            )

        for item_index, item in enumerate(record["evidence"]):
            item_where = f"{where}.evidence[{item_index}]"
            error = _check_evidence_item(item, item_where)
            if error is not None:
                return EvidenceValidation(valid=False, error=error)
            truncated.extend(_truncate_evidence_item(item, item_where))
            if item["type"] == EvidenceType.SCREENSHOT.value:
                screenshots.append(str(item["path"]))

    return EvidenceValidation(
        valid=True,
        data=data,
        truncated_fields=truncated,
        screenshot_paths=screenshots,
    )


def _check_evidence_item(item: Any, where: str) -> str | None:
    if not isinstance(item, dict):
        return f"Invalid evidence item at {where}: must be an object."
    if not item.get("type") or not item.get("description"):
        return f"Invalid evidence item at {where}: missing 'type' or 'description'."
    if not isinstance(item["type"], str) or item["type"] not in _EVIDENCE_TYPES:
        return f"Invalid evidence type at {where}: {item['type']!r}."
    if item["type"] == EvidenceType.HTTP_REQUEST_RESPONSE.value and (
        not item.get("request") or not item.get("response")
    ):
        return f"Evidence item at {where} (http_request_response) requires 'request' and 'response'."
    if item["type"] == EvidenceType.SCREENSHOT.value and not isinstance(item.get("path"), str):
        return f"Evidence item at {where} (screenshot) requires 'path' pointing to the image."
    return None


def _truncate_evidence_item(item: dict[str, Any], where: str) -> list[str]:
    truncated: list[str] = []
    for part in ("request", "response"):
        message = item.get(part)
        if not isinstance(message, dict):
            continue
        body = message.get("body")
        if isinstance(body, str) and len(body) > MAX_BODY_CHARS:
            message["body"] = truncate_text(body, MAX_BODY_CHARS)
            truncated.append(f"{where}.{part}.body")
        headers = message.get("headers")
        if headers is not None and len(json.dumps(headers, ensure_ascii=False)) > MAX_HEADERS_CHARS:
            message["headers"] = dict(HEADERS_TRUNCATED)
            truncated.append(f"{where}.{part}.headers")

    description = item.get("description")
    if isinstance(description, str) and len(description) > MAX_TEXT_CHARS:
        item["description"] = truncate_text(description, MAX_TEXT_CHARS)
        truncated.append(f"{where}.description")
    return truncated


def truncate_text(text: str, limit: int) -> str:
    return text[:limit] + TRUNCATION_MARKER
