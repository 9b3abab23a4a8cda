#!/usr/bin/env python3
"""
Spreadsheet → Jira Cloud Bulk Import
====================================
Turns rows from a CSV export, an Excel workbook or a Google Sheets link into
Jira issues, without knowing in advance which fields the target project /
issue type supports.

Pipeline, per row:
  column names    → ColumnMapper        (standard shortcuts + heuristic families,
                                         looked up in the cached SchemaCatalog)
  column mapping  → PermissionValidator (narrowed to the fields the issue type
                                         actually exposes on its create screen)
  row + mapping   → PayloadBuilder      (type-correct create body + the list of
                                         columns it had to skip)
  payload         → POST /rest/api/3/issue (201 = created)

Columns that cannot be mapped, cells that cannot be coerced and fields that
cannot be set on create never fail a row; they are reported as skipped.
Metadata lookups fail open: when Jira cannot describe a project the import
carries on with unvalidated data.

Configuration (environment):
  JIRA_URL, JIRA_USERNAME, JIRA_API_TOKEN   required
  JIRA_PROJECT_KEY                          default "PROJ"
  JIRA_DEFAULT_ISSUE_TYPE                   default "Story"

Usage:
    python sheet_to_jira.py stories.csv --project PROJ
    python sheet_to_jira.py backlog.xlsx
    python sheet_to_jira.py "https://docs.google.com/spreadsheets/d/<id>/edit" --dry-run
"""

import sys
import re
import io
import csv
import os
import json
import math
import base64
import logging
import argparse
import threading
import zipfile
from dataclasses import dataclass, field, replace
from typing import Optional

import requests
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger(__name__)

# ═════════════════════════════════════════════════════════════════════════════
#  CONFIGURATION
# ═════════════════════════════════════════════════════════════════════════════

REQUEST_TIMEOUT = 60

DEFAULT_PROJECT_KEY = "PROJ"
DEFAULT_REQUESTED_ISSUE_TYPE = "Story"

# Used when Jira cannot list a project's issue types
FALLBACK_ISSUE_TYPES = ("Task", "Epic", "Subtask")
# Used when a project lists no issue types at all
LAST_RESORT_ISSUE_TYPE = "Task"

SUMMARY_MAX_LEN = 250

SPRINT_SCHEMA = "com.pyxis.greenhopper.jira:gh-sprint"
MULTI_CHECKBOX_SCHEMA = "com.atlassian.jira.plugin.system.customfieldtypes:multicheckboxes"

VALUE_KINDS = frozenset({"string", "number", "array", "user", "priority"})

# ---------------------------------------------------------------------------
# STANDARD_FIELD_MAP
# Exact (normalized) column name → built-in Jira field id.  These never touch
# the field catalog.
# ---------------------------------------------------------------------------
STANDARD_FIELD_MAP: dict = {
    "title":       "summary",
    "story title": "summary",
    "summary":     "summary",
    "description": "description",
    "desc":        "description",
    "priority":    "priority",
    "pri":         "priority",
    "assignee":    "assignee",
    "assigned to": "assignee",
    "issue type":  "issuetype",
    "issuetype":   "issuetype",
    "type":        "issuetype",
    "labels":      "labels",
    "label":       "labels",
}

# Field ids with a fixed payload shape
STANDARD_FIELD_IDS = frozenset({"summary", "description", "priority", "assignee"})

ACCEPTANCE_CRITERIA_COLUMNS = frozenset({
    "acceptance criteria", "acceptancecriteria", "acceptance_criteria", "criteria", "ac",
})

_QUOTES_RE = re.compile(r'^["\']|["\']$')
_NUMBER_RE = re.compile(r'[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?')
_WORD_SPLIT_RE = re.compile(r'[\s_\-/]+')


@dataclass(frozen=True)
class HeuristicFamily:
    """
    One row of the column-matching table.

    A column belongs to the family when it contains any of `triggers`, or when
    one of its words equals an entry of `words` (short abbreviations such as
    "sp" would otherwise match inside "responders").  The catalog is then
    searched with `search_terms`, in order.
    """
    name:         str
    triggers:     tuple
    search_terms: tuple
    words:        frozenset = frozenset()

    def matches(self, column: str) -> bool:
        if any(t in column for t in self.triggers):
            return True
        return bool(self.words) and bool(self.words & set(_WORD_SPLIT_RE.split(column)))


HEURISTIC_FAMILIES: tuple = (
    HeuristicFamily("story points",
                    ("story point", "story_point", "storypoint", "points", "estimate"),
                    ("story point", "estimate", "points"),
                    frozenset({"sp", "s.p.", "pts"})),
    HeuristicFamily("sprint",      ("sprint",),               ("sprint",)),
    HeuristicFamily("hours",       ("hours",),                ("hours",)),
    HeuristicFamily("flagged",     ("flag", "blocked"),       ("flagged",)),
    HeuristicFamily("fix version", ("version",),              ("fix version", "version")),
    HeuristicFamily("qa cycle",    ("qa cycle", "cycle"),     ("qa cycle", "qa", "cycle"),
                    frozenset({"qa"})),
)


@dataclass
class JiraConfig:
    url:                str = ""
    username:           str = ""
    api_token:          str = ""
    project_key:        str = DEFAULT_PROJECT_KEY
    default_issue_type: str = DEFAULT_REQUESTED_ISSUE_TYPE

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "JiraConfig":
        env = os.environ if environ is None else environ
        return cls(
            url=(env.get("JIRA_URL") or "").strip(),
            username=(env.get("JIRA_USERNAME") or "").strip(),
            api_token=(env.get("JIRA_API_TOKEN") or "").strip(),
            project_key=(env.get("JIRA_PROJECT_KEY") or DEFAULT_PROJECT_KEY).strip(),
            default_issue_type=(env.get("JIRA_DEFAULT_ISSUE_TYPE")
                                or DEFAULT_REQUESTED_ISSUE_TYPE).strip(),
        )

    def missing(self) -> list:
        required = (("JIRA_URL", self.url), ("JIRA_USERNAME", self.username),
                    ("JIRA_API_TOKEN", self.api_token))
        return [name for name, value in required if not (value or "").strip()]

    def require(self) -> None:
        missing = self.missing()
        if missing:
            raise JiraConfigError(
                "Jira is not configured — missing " + ", ".join(missing) + ".")


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class JiraError(Exception):
    """Base class for errors raised while talking to or preparing data for Jira."""


class JiraConfigError(JiraError):
    pass


class JiraAPIError(JiraError):
    def __init__(self, message: str, status_code: Optional[int] = None,
                 detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SchemaFetchError(JiraAPIError):
    """The field listing could not be fetched; nothing was cached."""


class MetadataFetchError(JiraAPIError):
    """Create-metadata for a project could not be fetched or had no such project."""


class RemoteSubmissionError(JiraAPIError):
    """Jira did not answer 201 to an issue-create request."""


class NoIssueTypesError(JiraError):
    pass


class MissingProjectKeyError(JiraError):
    pass


class RowSourceError(Exception):
    pass


@dataclass(frozen=True)
class Resolved:
    """A value plus whether it came from a fallback path instead of Jira."""
    value:    object
    degraded: bool = False
    reason:   str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────────────────────────────────────

def normalize_column(name) -> str:
    return str(name).strip().lower()


def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not value
    return False


def sanitize(value) -> str:
    """Drop one layer of surrounding quotes (spreadsheet artifacts) and trim."""
    return _QUOTES_RE.sub("", str(value).strip()).strip()


def parse_number(value):
    """Return an int/float for numeric cells; ValueError otherwise ("N/A", "", "nan")."""
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = sanitize(value)
        if not _NUMBER_RE.fullmatch(text):
            raise ValueError(f"not a number: {value!r}")
        number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"not a finite number: {value!r}")
    return int(number) if number.is_integer() else number


def split_labels(value) -> list:
    """
    Comma-split, trimmed, empties dropped.  Spaces inside a label become "-"
    as well, since Jira rejects labels containing whitespace.
    """
    if isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        parts = str(value).split(",")
    # Jira labels cannot contain spaces
    return [p.strip().replace(" ", "-") for p in parts if p.strip()]


def _as_list(value) -> list:
    return list(value) if isinstance(value, (list, tuple)) else [str(value)]


def _paragraph(text: str) -> dict:
    return {"type": "paragraph", "content": [{"type": "text", "text": text}]}


def description_adf(text: str) -> dict:
    """Single-paragraph Atlassian Document Format body."""
    return {"version": 1, "type": "doc", "content": [_paragraph(text)]}


def _truncate_summary(text: str) -> str:
    return text[:SUMMARY_MAX_LEN] + ("…" if len(text) > SUMMARY_MAX_LEN else "")


def _error_detail(body) -> Optional[str]:
    """Flatten Jira's {"errorMessages": [...], "errors": {...}} into one line."""
    if not isinstance(body, dict):
        return None
    parts = [str(m) for m in (body.get("errorMessages") or [])]
    errors = body.get("errors") or {}
    if isinstance(errors, dict):
        parts += [f"{k}: {v}" for k, v in errors.items()]
    return "; ".join(parts) or None


def find_issue_type_column(row: dict) -> Optional[str]:
    for column in row:
        norm = normalize_column(column)
        if norm == "type" or "issue type" in norm or "issuetype" in norm:
            return column
    return None


def find_acceptance_criteria_column(row: dict) -> Optional[str]:
    for column in row:
        if normalize_column(column) in ACCEPTANCE_CRITERIA_COLUMNS:
            return column
    return None


def is_project_column(column) -> bool:
    return "project" in normalize_column(column)


# ─────────────────────────────────────────────────────────────────────────────
# Jira REST API v3 client
# ─────────────────────────────────────────────────────────────────────────────

class JiraClient:
    def __init__(self, config: JiraConfig, timeout: int = REQUEST_TIMEOUT) -> None:
        self.base = (config.url or "").rstrip("/") + "/rest/api/3"
        raw = f"{config.username}:{config.api_token}".encode()
        self._auth = "Basic " + base64.b64encode(raw).decode()
        self.timeout = timeout

    def _request(self, method: str, path: str, *,
                 json_body=None, params=None,
                 expected=(200, 201)) -> Optional[dict]:
        url = f"{self.base}/{path.lstrip('/')}"
        headers = {"Authorization": self._auth, "Accept": "application/json"}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        try:
            resp = requests.request(method, url, headers=headers,
                                    json=json_body, params=params, timeout=self.timeout)
        except requests.exceptions.ConnectionError as exc:
            raise JiraAPIError(f"Connection error: {url}") from exc
        except requests.exceptions.Timeout as exc:
            raise JiraAPIError(f"Timeout: {url}") from exc
        except requests.exceptions.RequestException as exc:
            raise JiraAPIError(f"Request to {url} failed: {exc}") from exc
        if resp.status_code == 401:
            raise JiraAPIError("Jira authentication failed (401).", 401)
        if resp.status_code == 403:
            raise JiraAPIError(f"Jira permission denied (403): {method} {path}", 403)
        if resp.status_code == 204 and 204 in expected:
            return None
        if resp.status_code not in expected:
            try:
                body = resp.json()
                msg = json.dumps(body)[:400]
            except ValueError:
                body = None
                msg = resp.text[:400]
            raise JiraAPIError(f"Jira {resp.status_code} {method} {path}: {msg}",
                               resp.status_code, _error_detail(body))
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            # The request itself succeeded; only the body is unreadable
            logger.warning("Jira %s %s returned %d with a non-JSON body",
                           method, path, resp.status_code)
            return None

    def get_myself(self) -> dict:
        return self._request("GET", "/myself")

    def get_fields(self) -> list:
        return self._request("GET", "/field") or []

    def get_create_meta(self, project_key: str) -> dict:
        return self._request("GET", "/issue/createmeta",
                             params={"projectKeys": project_key,
                                     "expand": "projects.issuetypes.fields"}) or {}

    def create_issue(self, payload: dict) -> dict:
        """POST a full create body ({"fields": {...}}); only 201 counts as created."""
        return self._request("POST", "/issue", json_body=payload, expected=(201,)) or {}


# ─────────────────────────────────────────────────────────────────────────────
# Schema catalog  (field definitions, fetched once per process)
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValueType:
    kind:           str = "unknown"
    custom_subtype: Optional[str] = None


@dataclass(frozen=True)
class FieldDefinition:
    id:           str
    display_name: str
    is_custom:    bool = False
    value_type:   ValueType = ValueType()

    @classmethod
    def from_api(cls, raw: dict) -> "FieldDefinition":
        schema = raw.get("schema") or {}
        kind = schema.get("type")
        return cls(
            id=raw["id"],
            display_name=raw.get("name") or raw["id"],
            is_custom=bool(raw.get("custom")),
            value_type=ValueType(kind if kind in VALUE_KINDS else "unknown",
                                 schema.get("custom")),
        )


class SchemaCatalog:
    """
    Field definitions keyed by id and by lower-cased display name.

    Populated on first use; concurrent first callers share a single fetch.
    A failed fetch caches nothing, so the next call retries.  Only `reset()`
    empties the catalog.
    """

    def __init__(self, client: JiraClient) -> None:
        self._client = client
        self._lock = threading.Lock()
        self._fields: Optional[tuple] = None
        self._by_id: dict = {}
        self._by_name: dict = {}

    @property
    def loaded(self) -> bool:
        return self._fields is not None

    def discover_fields(self) -> list:
        fields = self._fields
        if fields is None:
            with self._lock:
                if self._fields is None:
                    self._populate()
                fields = self._fields
        return list(fields)

    def _populate(self) -> None:
        try:
            raw_fields = self._client.get_fields()
            fields = tuple(FieldDefinition.from_api(f) for f in raw_fields if f.get("id"))
        except Exception as exc:
            raise SchemaFetchError(f"Failed to discover Jira fields: {exc}",
                                   getattr(exc, "status_code", None),
                                   getattr(exc, "detail", None)) from exc
        by_id: dict = {}
        by_name: dict = {}
        for fd in fields:
            by_id.setdefault(fd.id, fd)
            # Jira allows duplicate display names; the first listed wins
            by_name.setdefault(fd.display_name.lower(), fd)
        self._by_id, self._by_name = by_id, by_name
        self._fields = fields
        logger.debug("Field catalog loaded: %d field(s)", len(fields))

    def reset(self) -> None:
        with self._lock:
            self._fields = None
            self._by_id = {}
            self._by_name = {}

    def by_id(self, field_id: str) -> Optional[FieldDefinition]:
        return self._by_id.get(field_id)

    def by_name(self, name: str) -> Optional[FieldDefinition]:
        return self._by_name.get(normalize_column(name))

    def lookup(self, key: str) -> Optional[FieldDefinition]:
        """Exact id first, then case-insensitive display name."""
        return self.by_id(str(key).strip()) or self.by_name(key)

    def find_by_terms(self, terms) -> Optional[FieldDefinition]:
        """First field (in listing order) whose name contains the earliest matching term."""
        fields = self._fields or ()
        for term in terms:
            term = term.lower()
            for fd in fields:
                if term in fd.display_name.lower():
                    return fd
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Issue-type resolver  (create-metadata, cached per project)
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IssueTypeInfo:
    name:                str
    available_field_ids: frozenset = frozenset()


class IssueTypeResolver:
    def __init__(self, client: JiraClient,
                 fallback_types=FALLBACK_ISSUE_TYPES) -> None:
        self._client = client
        self._fallback = tuple(fallback_types)
        self._cache: dict = {}
        self._locks: dict = {}
        self._guard = threading.Lock()

    def _project_lock(self, project_key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(project_key, threading.Lock())

    def issue_types(self, project_key: str) -> list:
        """
        IssueTypeInfo list for the project, fetched once and cached.
        Raises MetadataFetchError (nothing cached) when Jira cannot answer.
        """
        cached = self._cache.get(project_key)
        if cached is None:
            with self._project_lock(project_key):
                cached = self._cache.get(project_key)
                if cached is None:
                    cached = self._fetch(project_key)
                    self._cache[project_key] = cached
        return list(cached)

    def _fetch(self, project_key: str) -> tuple:
        try:
            data = self._client.get_create_meta(project_key) or {}
        except Exception as exc:
            raise MetadataFetchError(
                f"Failed to load create metadata for {project_key}: {exc}",
                getattr(exc, "status_code", None), getattr(exc, "detail", None)) from exc
        project = next((p for p in data.get("projects") or []
                        if p.get("key") == project_key), None)
        if project is None:
            raise MetadataFetchError(f"Project {project_key} not found or not accessible")
        types = tuple(
            IssueTypeInfo(name=it.get("name", ""),
                          available_field_ids=frozenset((it.get("fields") or {}).keys()))
            for it in project.get("issuetypes") or []
        )
        logger.debug("Create metadata for %s: %s", project_key, [t.name for t in types])
        return types

    def resolve_issue_types(self, project_key: str) -> Resolved:
        try:
            return Resolved([t.name for t in self.issue_types(project_key)])
        except MetadataFetchError as exc:
            logger.warning("Issue types for %s unavailable, assuming %s: %s",
                           project_key, ", ".join(self._fallback), exc)
            return Resolved(list(self._fallback), degraded=True, reason=str(exc))

    def get_available_issue_types(self, project_key: str) -> list:
        return self.resolve_issue_types(project_key).value

    def get_field_availability(self, project_key: str, issue_type: str) -> Optional[frozenset]:
        """Field ids on the issue type's create screen; None if the type is unknown."""
        for info in self.issue_types(project_key):
            if info.name == issue_type:
                return info.available_field_ids
        return None

    def reset(self, project_key: Optional[str] = None) -> None:
        with self._guard:
            if project_key is None:
                self._cache.clear()
            else:
                self._cache.pop(project_key, None)


# ─────────────────────────────────────────────────────────────────────────────
# Column mapper
# ─────────────────────────────────────────────────────────────────────────────

class ColumnMapper:
    def __init__(self, catalog: SchemaCatalog,
                 families=HEURISTIC_FAMILIES, shortcuts: Optional[dict] = None) -> None:
        self._catalog = catalog
        self._families = tuple(families)
        self._shortcuts = STANDARD_FIELD_MAP if shortcuts is None else shortcuts

    def map_columns(self, column_names) -> dict:
        """Every column gets exactly one entry: a field id, or None when unmappable."""
        self._catalog.discover_fields()
        return {column: self.map_column(column) for column in column_names}

    def map_column(self, column) -> Optional[str]:
        normalized = normalize_column(column)
        if normalized in self._shortcuts:
            return self._shortcuts[normalized]

        # First family whose trigger fires gets to search the catalog
        family = next((f for f in self._families if f.matches(normalized)), None)
        if family is not None:
            found = self._catalog.find_by_terms(family.search_terms)
            if found is not None:
                return found.id

        found = self._catalog.lookup(str(column).strip()) or self._catalog.lookup(normalized)
        return found.id if found is not None else None

    @staticmethod
    def unmapped_columns(mapping: dict) -> list:
        return [column for column, field_id in mapping.items() if field_id is None]


# ─────────────────────────────────────────────────────────────────────────────
# Permission validator
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ValidationResult:
    mapping:    dict
    issue_type: Optional[str] = None
    degraded:   bool = False
    reason:     str = ""


class PermissionValidator:
    def __init__(self, resolver: IssueTypeResolver) -> None:
        self._resolver = resolver

    def check(self, mapping: dict, project_key: str,
              issue_type: str = DEFAULT_REQUESTED_ISSUE_TYPE) -> ValidationResult:
        """
        Drop (→ None) mapped fields the issue type cannot set on create.

        An unavailable issue type is replaced by the project's first one; a
        project without issue types raises NoIssueTypesError.  If Jira cannot
        describe the project at all, the mapping is returned untouched.
        """
        try:
            types = self._resolver.issue_types(project_key)
        except MetadataFetchError as exc:
            logger.warning("Field permissions for %s not checked: %s", project_key, exc)
            return ValidationResult(mapping, None, degraded=True, reason=str(exc))

        target = next((t for t in types if t.name == issue_type), None)
        degraded, reason = False, ""
        if target is None:
            if not types:
                raise NoIssueTypesError(f"No valid issue types found for project {project_key}")
            target = types[0]
            degraded = True
            reason = (f"issue type {issue_type!r} not available in {project_key}, "
                      f"validated against {target.name!r}")
            logger.info(reason)

        validated = {
            column: (field_id if field_id is not None
                     and field_id in target.available_field_ids else None)
            for column, field_id in mapping.items()
        }
        return ValidationResult(validated, target.name, degraded, reason)

    def validate(self, mapping: dict, project_key: str,
                 issue_type: str = DEFAULT_REQUESTED_ISSUE_TYPE) -> dict:
        return self.check(mapping, project_key, issue_type).mapping


# ─────────────────────────────────────────────────────────────────────────────
# Payload builder
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class BuildResult:
    payload:        dict
    skipped_fields: list = field(default_factory=list)


def unsupported_reason(definition: FieldDefinition) -> Optional[str]:
    """Fields whose options/versions would need another lookup are never sent."""
    if definition.id == "fixVersions":
        return "fix versions are not set on create"
    if definition.value_type.custom_subtype == MULTI_CHECKBOX_SCHEMA:
        return "checkbox options are not set on create"
    return None


def serialize_field_value(definition: FieldDefinition, raw):
    """Coerce a cell to the JSON shape Jira expects for this field.  Raises ValueError."""
    value = sanitize(raw) if isinstance(raw, str) else raw
    kind = definition.value_type.kind

    if definition.id == "labels":
        return split_labels(value)
    if kind == "number":
        return parse_number(value)
    if kind == "string":
        return str(value).strip()
    if kind == "array" and definition.value_type.custom_subtype == SPRINT_SCHEMA:
        # Sprint names/ids always go out as strings, even from numeric cells
        return [sanitize(v) for v in _as_list(value)]
    if kind == "array":
        return _as_list(value)
    if kind == "priority":
        return {"name": str(value)}
    if kind == "user":
        return {"emailAddress": str(value)}
    return str(value)


class PayloadBuilder:
    def __init__(self, catalog: SchemaCatalog, resolver: IssueTypeResolver) -> None:
        self._catalog = catalog
        self._resolver = resolver

    def build(self, row: dict, mapping: dict, project_key: str,
              issue_type: Optional[str] = None) -> BuildResult:
        """
        `issue_type` is the type the mapping was validated against; it becomes
        the default when the project offers it, otherwise the project's first
        available type does.
        """
        if not project_key or not str(project_key).strip():
            raise MissingProjectKeyError("Project key is required")
        project_key = str(project_key).strip()
        skipped: list = []

        available = self._resolver.get_available_issue_types(project_key)
        if issue_type and issue_type in available:
            default_type = issue_type
        else:
            default_type = available[0] if available else LAST_RESORT_ISSUE_TYPE
        if not available:
            skipped.append(f"Warning: No issue types found for project {project_key}, "
                           f"using fallback: {default_type}")

        fields: dict = {
            "project":   {"key": project_key},
            "issuetype": {"name": default_type},
        }

        type_column = find_issue_type_column(row)
        if type_column is not None and not is_blank(row.get(type_column)):
            requested = sanitize(row[type_column])
            if requested in available:
                fields["issuetype"] = {"name": requested}
            else:
                skipped.append(f"{type_column} (invalid type: {requested}, using: {default_type})")

        self._catalog.discover_fields()
        for column, field_id in self._columns_to_set(row, mapping):
            value = row.get(column)
            if field_id is None or is_blank(value):
                continue
            # The caller's project key is authoritative, never the sheet's
            if is_project_column(column) or field_id == "issuetype" or column == type_column:
                continue
            try:
                reason = self._set_field(fields, field_id, value)
            except Exception as exc:
                logger.debug("Column %r → %s rejected: %s", column, field_id, exc)
                skipped.append(column)
                continue
            if reason:
                skipped.append(f"{column} ({reason})")

        ac_column = find_acceptance_criteria_column(row)
        if ac_column is not None and not is_blank(row.get(ac_column)) and "description" in fields:
            text_node = fields["description"]["content"][0]["content"][0]
            text_node["text"] = (f"{text_node['text']}\n\nAcceptance Criteria:\n"
                                 f"{sanitize(row[ac_column])}")

        return BuildResult({"fields": fields}, skipped)

    def _columns_to_set(self, row: dict, mapping: dict) -> list:
        """
        Mapping entries first, then row columns the mapping does not know but
        whose name is a standard alias (e.g. a normalizer's "title").
        """
        pairs = list(mapping.items())
        targeted = {fid for col, fid in pairs
                    if fid is not None and not is_blank(row.get(col))}
        for column in row:
            if column in mapping:
                continue
            field_id = STANDARD_FIELD_MAP.get(normalize_column(column))
            if field_id and field_id not in targeted:
                pairs.append((column, field_id))
                targeted.add(field_id)
        return pairs

    def _set_field(self, fields: dict, field_id: str, value) -> Optional[str]:
        """Write one field into `fields`; return a reason string if it was skipped."""
        if field_id in STANDARD_FIELD_IDS:
            text = sanitize(value)
            if field_id == "summary":
                fields["summary"] = _truncate_summary(text)
            elif field_id == "description":
                fields["description"] = description_adf(text)
            elif field_id == "priority":
                fields["priority"] = {"name": text}
            elif field_id == "assignee":
                fields["assignee"] = {"emailAddress": text}
            return None

        if field_id == "labels":
            labels = split_labels(sanitize(value) if isinstance(value, str) else value)
            if not labels:
                return "no labels"
            fields["labels"] = labels
            return None

        definition = self._catalog.by_id(field_id)
        if definition is None:
            return f"unknown field {field_id}"
        reason = unsupported_reason(definition)
        if reason:
            return reason
        fields[definition.id] = serialize_field_value(definition, value)
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Row importer
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class RowOutcome:
    success:        bool
    error:          Optional[str] = None
    issue_key:      Optional[str] = None
    skipped_fields: list = field(default_factory=list)


class RowImporter:
    """
    Maps, validates, builds and submits one row at a time.  Owns the field
    catalog and the per-project issue-type cache, so reuse one instance for a
    whole batch.  Safe to call from several threads.
    """

    def __init__(self, config: JiraConfig, client: Optional[JiraClient] = None,
                 catalog: Optional[SchemaCatalog] = None,
                 resolver: Optional[IssueTypeResolver] = None) -> None:
        self.config = config
        self.client = client or JiraClient(config)
        self.catalog = catalog or SchemaCatalog(self.client)
        self.resolver = resolver or IssueTypeResolver(self.client)
        self.mapper = ColumnMapper(self.catalog)
        self.validator = PermissionValidator(self.resolver)
        self.builder = PayloadBuilder(self.catalog, self.resolver)

    def preview_row(self, row: dict) -> BuildResult:
        """Everything import_row does except the POST."""
        project_key = self.config.project_key
        mapping = self.mapper.map_columns(list(row.keys()))

        type_column = find_issue_type_column(row)
        requested = self.config.default_issue_type
        if type_column is not None and not is_blank(row.get(type_column)):
            requested = sanitize(row[type_column])

        validation = self.validator.check(mapping, project_key, requested)
        logger.debug("Row field mapping (%s): %s", validation.issue_type, validation.mapping)
        unmapped = ColumnMapper.unmapped_columns(validation.mapping)
        if unmapped:
            logger.debug("Unavailable columns (will be skipped): %s", unmapped)

        # Send the same issue type the mapping was narrowed for
        result = self.builder.build(row, validation.mapping, project_key,
                                    issue_type=validation.issue_type)
        if result.skipped_fields:
            logger.info("Skipped fields for this row: %s", ", ".join(result.skipped_fields))
        return result

    def submit(self, payload: dict) -> dict:
        try:
            return self.client.create_issue(payload)
        except JiraAPIError as exc:
            raise RemoteSubmissionError(str(exc), exc.status_code, exc.detail) from exc

    def import_row(self, row: dict) -> RowOutcome:
        """
        Create one issue.  Only a missing configuration raises; every other
        problem comes back as RowOutcome(success=False, error=...).
        """
        self.config.require()
        skipped: list = []
        try:
            result = self.preview_row(row)
            skipped = result.skipped_fields
            created = self.submit(result.payload)
        except Exception as exc:
            error = getattr(exc, "detail", None) or str(exc)
            logger.warning("Row import failed: %s", error)
            return RowOutcome(False, error=error, skipped_fields=skipped)
        return RowOutcome(True, issue_key=(created or {}).get("key"), skipped_fields=skipped)


# ─────────────────────────────────────────────────────────────────────────────
# Batch import
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ImportSummary:
    created: int = 0
    failed:  int = 0
    errors:  list = field(default_factory=list)   # [{"row": n, "reason": str}]


def validate_row(row: dict) -> Optional[str]:
    """Reason the row cannot become an issue, or None."""
    def _has(*needles) -> bool:
        return any(any(n in normalize_column(col) for n in needles) and not is_blank(val)
                   for col, val in row.items())
    if not _has("title", "summary"):
        return "Missing Title/Summary"
    if not _has("description", "desc"):
        return "Missing Description"
    return None


def import_rows(importer: RowImporter, rows: list, progress=None) -> ImportSummary:
    """
    Import every row, continuing past failures.  Row numbers are sheet rows
    (header = 1).  `progress(row_num, outcome)` is called after each row.
    """
    summary = ImportSummary()
    for idx, row in enumerate(rows):
        row_num = idx + 2
        reason = validate_row(row)
        if reason:
            outcome = RowOutcome(False, error=reason)
        else:
            outcome = importer.import_row(row)
        if outcome.success:
            summary.created += 1
        else:
            summary.failed += 1
            summary.errors.append({"row": row_num, "reason": outcome.error or "Unknown error"})
        if progress is not None:
            progress(row_num, outcome)
    return summary


# ─────────────────────────────────────────────────────────────────────────────
# Row sources  (CSV text / Excel workbook / Google Sheets link)
# ─────────────────────────────────────────────────────────────────────────────

_SHEET_ID_RE = re.compile(r'/d/([\w-]+)')
_SHEET_GID_RE = re.compile(r'[#?&]gid=(\d+)')


def read_csv_rows(text: str) -> list:
    """Header row → keys; values trimmed; fully blank rows dropped."""
    rows = []
    for raw in csv.DictReader(io.StringIO(text)):
        row = {}
        for key, value in raw.items():
            if key is None:
                continue   # cells beyond the header
            row[key.strip()] = (value or "").strip()
        if any(row.values()):
            rows.append(row)
    return rows


def google_sheet_csv_url(link: str) -> str:
    if "/export?format=csv" in link:
        return link
    m = _SHEET_ID_RE.search(link)
    if not m:
        raise ValueError("Invalid Google Sheet link")
    url = f"https://docs.google.com/spreadsheets/d/{m.group(1)}/export?format=csv"
    gid = _SHEET_GID_RE.search(link)
    if gid:
        url += f"&gid={gid.group(1)}"
    return url


def fetch_google_sheet_rows(link: str, timeout: int = REQUEST_TIMEOUT) -> list:
    url = google_sheet_csv_url(link)
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise RowSourceError(f"Failed to fetch Google Sheet CSV: {exc}") from exc
    if not resp.ok:
        raise RowSourceError(f"Failed to fetch Google Sheet CSV ({resp.status_code})")
    resp.encoding = resp.encoding or "utf-8"
    return read_csv_rows(resp.text)


EXCEL_SUFFIXES = (".xlsx", ".xlsm")


def _xlsx_cell(value):
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    # Excel stores every number as a float: 5.0 -> 5
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def read_xlsx_rows(path: str) -> list:
    """
    First worksheet only.  The header row gives the keys; empty cells come
    back as "" and numeric cells keep their numeric value.
    """
    wb = load_workbook(filename=path, read_only=True, data_only=True)
    try:
        if not wb.worksheets:
            return []
        rows_iter = wb.worksheets[0].iter_rows(values_only=True)
        header = next(rows_iter, None)
        if header is None:
            return []
        keys = [str(h).strip() if h is not None else None for h in header]
        rows = []
        for values in rows_iter:
            row = {}
            for i, key in enumerate(keys):
                if not key:
                    continue   # untitled column
                row[key] = _xlsx_cell(values[i] if i < len(values) else None)
            if any(v != "" for v in row.values()):
                rows.append(row)
        return rows
    finally:
        wb.close()


def load_rows(source: str) -> list:
    if source.startswith(("http://", "https://")):
        return fetch_google_sheet_rows(source)
    if source.lower().endswith(EXCEL_SUFFIXES):
        try:
            return read_xlsx_rows(source)
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
            raise RowSourceError(f"Cannot read workbook {source}: {exc}") from exc
    try:
        with open(source, encoding="utf-8-sig", newline="") as fh:
            return read_csv_rows(fh.read())
    except OSError as exc:
        raise RowSourceError(f"Cannot read {source}: {exc}") from exc


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create Jira issues from a CSV/Excel file or Google Sheet")
    p.add_argument("source", help="CSV or .xlsx file path, or Google Sheets link")
    p.add_argument("--project", help="Jira project key (overrides JIRA_PROJECT_KEY)")
    p.add_argument("--dry-run", action="store_true",
                   help="Map and build payloads without creating issues")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return p.parse_args(argv)


def _print_outcome(row_num: int, outcome: RowOutcome) -> None:
    if outcome.success:
        print(f"  OK    row {row_num:<4}  →  {outcome.issue_key or '?'}")
    else:
        print(f"  FAIL  row {row_num:<4}  ({outcome.error})")
    if outcome.skipped_fields:
        print(f"        skipped: {', '.join(outcome.skipped_fields)}")


def _dry_run(importer: RowImporter, rows: list) -> int:
    failed = 0
    for idx, row in enumerate(rows):
        row_num = idx + 2
        reason = validate_row(row)
        if reason:
            print(f"  SKIP  row {row_num:<4}  ({reason})")
            failed += 1
            continue
        try:
            result = importer.preview_row(row)
        except Exception as exc:
            print(f"  FAIL  row {row_num:<4}  ({exc})")
            failed += 1
            continue
        print(f"  ROW   {row_num}")
        print(json.dumps(result.payload, indent=2, ensure_ascii=False))
        if result.skipped_fields:
            print(f"        skipped: {', '.join(result.skipped_fields)}")
    return 1 if failed else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    config = JiraConfig.from_env()
    if args.project:
        config = replace(config, project_key=args.project.strip())
    try:
        config.require()
    except JiraConfigError as exc:
        print(f"Error: {exc}")
        return 2

    try:
        rows = load_rows(args.source)
    except (RowSourceError, ValueError) as exc:
        print(f"Error: {exc}")
        return 2
    print(f"  {len(rows)} row(s) read from {args.source}  →  project {config.project_key}")
    if not rows:
        return 0

    importer = RowImporter(config)
    try:
        me = importer.client.get_myself() or {}
    except JiraAPIError as exc:
        print(f"Error: cannot connect to Jira: {exc}")
        return 2
    logger.debug("Authenticated as %s", me.get("emailAddress") or me.get("displayName"))

    if args.dry_run:
        return _dry_run(importer, rows)

    summary = import_rows(importer, rows, progress=_print_outcome)
    print(f"\n  Created: {summary.created}  Failed: {summary.failed}")
    for err in summary.errors:
        print(f"    row {err['row']}: {err['reason']}")
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
