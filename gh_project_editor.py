#!/usr/bin/env python3
# gh_project_editor: edit GitHub Projects (v2) item fields from the terminal
#
# Hotkeys (browse)
#   j/k, arrows   move between items
#   h/l, arrows   move between fields
#   i / Enter     edit the selected cell
#   p             switch project (Enter load, Esc cancel)
#   a             add a draft item (Enter create, Esc cancel)
#   r             reload the active project now
#   q             quit
#
# Hotkeys (editing; Enter saves, Esc cancels)
#   text/number   type, Backspace/Delete, Left/Right, Home/End
#   single select j/k or arrows
#   date          h/l day, j/k week, J/K or >/< month, L/H year, t today
#
# Config highlights (YAML, all keys optional)
#   owner: octo-org          # whose projects to list (default: token owner)
#   owner_type: org          # "user" or "org"
#   refresh_interval: 60     # seconds between background reloads
#   iteration_editing: true  # allow editing iteration fields
#   style: {"value.date": "#ffaf00"}
#
# Environment
# - GITHUB_TOKEN (scopes: project, read:org), or TOKEN/GITHUB_TOKEN in .env

from __future__ import annotations

import argparse
import asyncio
import calendar
import datetime as dt
import json
import logging
import os
import queue
import string
import sys
import threading
import unicodedata
from dataclasses import dataclass, field as dc_field, replace
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth


LOGGER_NAME = 'gh_project_editor'
logger = logging.getLogger(LOGGER_NAME)

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.gh_project_editor.yaml")
DEFAULT_STATE_PATH = os.path.expanduser("~/.gh_project_editor.ui.json")
DEFAULT_LOG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'gh_project_editor.log')
DEFAULT_TOKEN_FILE = "./access_token"


# -----------------------------
# Config models
# -----------------------------
@dataclass
class Config:
    owner: str = ""                # login whose projects are listed; empty => token owner
    owner_type: str = "user"       # "user" or "org"
    refresh_interval: float = 60.0
    state_path: str = DEFAULT_STATE_PATH
    log_path: str = DEFAULT_LOG_PATH
    iteration_editing: bool = False
    style: Dict[str, str] = dc_field(default_factory=dict)


def load_config(path: Optional[str]) -> Config:
    """Read the YAML config at ``path``; a missing path yields the defaults."""
    if not path:
        return Config()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping")
    cfg = Config()
    owner = raw.get("owner") or raw.get("user") or ""
    if not isinstance(owner, str):
        raise ValueError(f"Config: 'owner' must be a login, got {owner!r}")
    cfg.owner = owner.strip()
    owner_type = str(raw.get("owner_type") or "user").strip().lower()
    if owner_type not in ("user", "org"):
        raise ValueError(f"Config: 'owner_type' must be 'user' or 'org', got {owner_type!r}")
    cfg.owner_type = owner_type
    if raw.get("refresh_interval") is not None:
        try:
            cfg.refresh_interval = float(raw["refresh_interval"])
        except (TypeError, ValueError):
            raise ValueError(f"Config: bad refresh_interval {raw['refresh_interval']!r}")
        if cfg.refresh_interval <= 0:
            raise ValueError("Config: refresh_interval must be positive")
    if raw.get("state_path"):
        cfg.state_path = os.path.expanduser(str(raw["state_path"]))
    if raw.get("log_path"):
        cfg.log_path = os.path.expanduser(str(raw["log_path"]))
    cfg.iteration_editing = bool(raw.get("iteration_editing", False))
    style = raw.get("style") or {}
    if not isinstance(style, dict):
        raise ValueError("Config: 'style' must be a mapping of class name to style string")
    cfg.style = {str(k): str(v) for k, v in style.items()}
    return cfg


# -----------------------------
# Field value model
# -----------------------------
KIND_TEXT = "TEXT"
KIND_NUMBER = "NUMBER"
KIND_DATE = "DATE"
KIND_TITLE = "TITLE"
KIND_SINGLE_SELECT = "SINGLE_SELECT"
KIND_ITERATION = "ITERATION"

EDITABLE_KINDS = frozenset({KIND_DATE, KIND_NUMBER, KIND_TEXT, KIND_TITLE, KIND_SINGLE_SELECT})

ITEM_ISSUE = "ISSUE"
ITEM_PULL_REQUEST = "PULL_REQUEST"
ITEM_DRAFT_ISSUE = "DRAFT_ISSUE"
ITEM_REDACTED = "REDACTED"

_CONTENT_TYPES = {
    "Issue": ITEM_ISSUE,
    "PullRequest": ITEM_PULL_REQUEST,
    "DraftIssue": ITEM_DRAFT_ISSUE,
}

EPOCH_DATE = "1970-01-01"


@dataclass(frozen=True)
class Option:
    id: str
    name: str
    color: str = ""


@dataclass(frozen=True)
class Iteration:
    id: str
    title: str
    start_date: str = ""
    duration: int = 0


@dataclass
class Field:
    id: str
    name: str
    kind: str


@dataclass
class SingleSelectField(Field):
    options: List[Option] = dc_field(default_factory=list)


@dataclass
class IterationField(Field):
    iterations: List[Iteration] = dc_field(default_factory=list)


@dataclass
class TextValue:
    text: str
    field: Field


@dataclass
class DateValue:
    date: str          # YYYY-MM-DD
    field: Field


@dataclass
class SingleSelectValue:
    name: str
    field: Field
    option_id: str = ""


@dataclass
class NumberValue:
    value: float
    field: Field


@dataclass
class IterationValue:
    duration: int
    title: str
    field: Field
    iteration_id: str = ""
    start_date: str = ""


@dataclass
class EmptyValue:
    payload: object = None


FieldValue = Union[TextValue, DateValue, SingleSelectValue, NumberValue, IterationValue, EmptyValue]


@dataclass
class Item:
    id: str
    type: str
    values: Dict[str, FieldValue] = dc_field(default_factory=dict)
    content_id: str = ""
    url: str = ""

    def title(self) -> str:
        for value in self.values.values():
            if isinstance(value, TextValue) and value.field.kind == KIND_TITLE:
                return value.text
        return ""


@dataclass(frozen=True)
class Project:
    id: str
    title: str
    number: int = 0
    url: str = ""


@dataclass(frozen=True)
class User:
    login: str


@dataclass
class Snapshot:
    """Everything the editor shows for one project, as of the last reload."""
    user: User
    projects: List[Project]
    project_index: int
    items: List[Item]
    fields: List[Field]

    @property
    def project(self) -> Optional[Project]:
        if 0 <= self.project_index < len(self.projects):
            return self.projects[self.project_index]
        return None

    def get_field_at(self, item_index: int, field_index: int) -> FieldValue:
        return get_from_field(self.items[item_index], self.fields[field_index].name)

    def set_field_at(self, item_index: int, field_index: int, value: FieldValue) -> None:
        """Store ``value`` for one field of one item; the only in-place edit of item data."""
        self.items[item_index].values[self.fields[field_index].name] = value


def parse_field(node: object) -> Optional[Field]:
    """Build a Field from a GraphQL field node; None when the node has no id/name."""
    if not isinstance(node, dict):
        return None
    field_id = node.get("id") or ""
    name = node.get("name") or ""
    if not (field_id and name):
        return None
    kind = str(node.get("dataType") or "").upper()
    if kind == KIND_SINGLE_SELECT or "options" in node:
        options = [
            Option(id=opt["id"], name=opt.get("name") or "", color=opt.get("color") or "")
            for opt in node.get("options") or []
            if isinstance(opt, dict) and opt.get("id")
        ]
        return SingleSelectField(id=field_id, name=name, kind=kind or KIND_SINGLE_SELECT, options=options)
    if kind == KIND_ITERATION or "configuration" in node:
        iterations: List[Iteration] = []
        for it in ((node.get("configuration") or {}).get("iterations") or []):
            if not isinstance(it, dict) or not it.get("id"):
                continue
            try:
                duration = int(it.get("duration") or 0)
            except (TypeError, ValueError):
                duration = 0
            iterations.append(Iteration(
                id=it["id"],
                title=it.get("title") or "",
                start_date=it.get("startDate") or "",
                duration=duration,
            ))
        return IterationField(id=field_id, name=name, kind=kind or KIND_ITERATION, iterations=iterations)
    return Field(id=field_id, name=name, kind=kind)


def classify(field: Optional[Field], raw: object) -> FieldValue:
    """Turn a raw field-value payload into the FieldValue its field kind calls for.

    Total: a payload that does not have the shape the kind expects, or a
    kind this editor does not model, becomes ``EmptyValue(raw)``.
    """
    if field is None or not isinstance(raw, dict):
        return EmptyValue(raw)
    kind = field.kind
    if kind in (KIND_TEXT, KIND_TITLE):
        text = raw.get("text")
        if isinstance(text, str):
            return TextValue(text=text, field=field)
    elif kind == KIND_DATE:
        date = raw.get("date")
        if isinstance(date, str) and date:
            return DateValue(date=date[:10], field=field)
    elif kind == KIND_SINGLE_SELECT:
        name = raw.get("name")
        if isinstance(name, str):
            return SingleSelectValue(name=name, field=field, option_id=raw.get("optionId") or "")
    elif kind == KIND_NUMBER:
        number = raw.get("number")
        if isinstance(number, (int, float)) and not isinstance(number, bool):
            return NumberValue(value=number, field=field)
    elif kind == KIND_ITERATION:
        title = raw.get("title")
        if isinstance(title, str):
            try:
                duration = int(raw.get("duration") or 0)
            except (TypeError, ValueError):
                duration = 0
            return IterationValue(
                duration=duration,
                title=title,
                field=field,
                iteration_id=raw.get("iterationId") or "",
                start_date=raw.get("startDate") or "",
            )
    return EmptyValue(raw)


def format_number(number: float) -> str:
    if isinstance(number, float) and number.is_integer():
        return str(int(number))
    return str(number)


def value_display(value: FieldValue) -> str:
    if isinstance(value, TextValue):
        return value.text
    if isinstance(value, DateValue):
        return value.date
    if isinstance(value, SingleSelectValue):
        return value.name
    if isinstance(value, NumberValue):
        return format_number(value.value)
    if isinstance(value, IterationValue):
        return value.title
    if isinstance(value, EmptyValue):
        return ""
    raise TypeError(f"Unknown field value {value!r}")


def _option_named(field: Field, name: str) -> Optional[Option]:
    # First match wins when option names repeat.
    if isinstance(field, SingleSelectField):
        for opt in field.options:
            if opt.name == name:
                return opt
    return None


def value_style(value: FieldValue) -> str:
    """Style class for a value, e.g. ``value.select.green``."""
    if isinstance(value, TextValue):
        return "value.title" if value.field.kind == KIND_TITLE else "value.text"
    if isinstance(value, DateValue):
        return "value.date"
    if isinstance(value, SingleSelectValue):
        opt = _option_named(value.field, value.name)
        if opt is not None and opt.color:
            return f"value.select.{opt.color.lower()}"
        return "value.select"
    if isinstance(value, NumberValue):
        return "value.number"
    if isinstance(value, IterationValue):
        return "value.iteration"
    if isinstance(value, EmptyValue):
        return "value.empty"
    raise TypeError(f"Unknown field value {value!r}")


def value_kind(value: FieldValue) -> str:
    if isinstance(value, (TextValue, DateValue, SingleSelectValue, NumberValue, IterationValue)):
        return value.field.kind
    if isinstance(value, EmptyValue):
        return ""
    raise TypeError(f"Unknown field value {value!r}")


def get_from_field(item: Item, field_name: str) -> FieldValue:
    """Value stored under ``field_name``, or ``EmptyValue(None)`` when the item has none."""
    value = item.values.get(field_name)
    if value is None:
        return EmptyValue(None)
    return value


def default_value(field: Field) -> FieldValue:
    """Placeholder value used when editing starts on an empty cell."""
    kind = field.kind
    if kind == KIND_DATE:
        return DateValue(date=EPOCH_DATE, field=field)
    if kind == KIND_NUMBER:
        return NumberValue(value=0, field=field)
    if kind in (KIND_TEXT, KIND_TITLE):
        return TextValue(text="", field=field)
    if kind == KIND_SINGLE_SELECT:
        if isinstance(field, SingleSelectField) and field.options:
            opt = field.options[0]
            return SingleSelectValue(name=opt.name, field=field, option_id=opt.id)
        return EmptyValue(None)
    if kind == KIND_ITERATION:
        if isinstance(field, IterationField) and field.iterations:
            it = field.iterations[0]
            return IterationValue(
                duration=it.duration, title=it.title, field=field,
                iteration_id=it.id, start_date=it.start_date,
            )
        return EmptyValue(None)
    return EmptyValue(None)


def parse_item(node: object) -> Optional[Item]:
    if not isinstance(node, dict) or not node.get("id"):
        return None
    content = node.get("content") or {}
    item_type = str(node.get("type") or "").upper()
    if not item_type:
        item_type = _CONTENT_TYPES.get(content.get("__typename") or "", ITEM_REDACTED)
    values: Dict[str, FieldValue] = {}
    for raw in (node.get("fieldValues") or {}).get("nodes") or []:
        if not isinstance(raw, dict):
            continue
        field = parse_field(raw.get("field"))
        if field is None:
            continue
        value = classify(field, raw)
        if isinstance(value, EmptyValue):
            continue
        if field.name in values:
            logger.warning("Item %s has two values named %r; keeping the first", node.get("id"), field.name)
            continue
        values[field.name] = value
    return Item(
        id=node["id"],
        type=item_type,
        values=values,
        content_id=content.get("id") or "",
        url=content.get("url") or "",
    )


def bind_fields(items: List[Item], fields: List[Field]) -> None:
    """Point every stored value at the project's Field of the same name."""
    by_name = {f.name: f for f in fields}
    for item in items:
        for name, value in list(item.values.items()):
            schema = by_name.get(name)
            if schema is None or isinstance(value, EmptyValue) or value.field is schema:
                continue
            item.values[name] = replace(value, field=schema)


# -----------------------------
# Errors
# -----------------------------
class EditorError(RuntimeError):
    """A failure the editor reports to the user instead of crashing."""


class NotLoadedError(EditorError):
    pass


class NotEditableError(EditorError):
    pass


class FieldParseError(EditorError):
    pass


class RemoteError(EditorError):
    pass


class NoCredentialError(EditorError):
    pass


# -----------------------------
# GitHub GraphQL
# -----------------------------
GRAPHQL_URL = "https://api.github.com/graphql"
REST_USER_URL = "https://api.github.com/user"

GQL_LIST_USER_PROJECTS = """query($login:String!, $after:String) {
  user(login:$login){
    projectsV2(first:50, after:$after, orderBy:{field:UPDATED_AT,direction:DESC}) {
      pageInfo{ hasNextPage endCursor }
      nodes { id number title url closed }
    }
  }
}
"""
GQL_LIST_ORG_PROJECTS = """query($login:String!, $after:String) {
  organization(login:$login){
    projectsV2(first:50, after:$after, orderBy:{field:UPDATED_AT,direction:DESC}) {
      pageInfo{ hasNextPage endCursor }
      nodes { id number title url closed }
    }
  }
}
"""

GQL_PROJECT_FIELDS = """query($id:ID!){
  node(id:$id){
    ... on ProjectV2{
      fields(first:100){
        nodes{
          ... on ProjectV2FieldCommon { id name dataType }
          ... on ProjectV2SingleSelectField { options { id name color } }
          ... on ProjectV2IterationField {
            configuration { iterations { id title startDate duration } }
          }
        }
      }
    }
  }
}
"""

# Selection shared by the item scan and the draft-creation mutation.
ITEM_SELECTION = """
          id
          type
          content{
            __typename
            ... on DraftIssue { id title }
            ... on Issue { id title url }
            ... on PullRequest { id title url }
          }
          fieldValues(first:50){
            nodes{
              __typename
              ... on ProjectV2ItemFieldTextValue {
                text
                field { ... on ProjectV2FieldCommon { id name dataType } }
              }
              ... on ProjectV2ItemFieldNumberValue {
                number
                field { ... on ProjectV2FieldCommon { id name dataType } }
              }
              ... on ProjectV2ItemFieldDateValue {
                date
                field { ... on ProjectV2FieldCommon { id name dataType } }
              }
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                optionId
                field {
                  ... on ProjectV2FieldCommon { id name dataType }
                  ... on ProjectV2SingleSelectField { options { id name color } }
                }
              }
              ... on ProjectV2ItemFieldIterationValue {
                title
                startDate
                duration
                iterationId
                field {
                  ... on ProjectV2FieldCommon { id name dataType }
                  ... on ProjectV2IterationField {
                    configuration { iterations { id title startDate duration } }
                  }
                }
              }
            }
          }
"""

GQL_PROJECT_ITEMS = """query($id:ID!, $after:String){
  node(id:$id){
    ... on ProjectV2{
      items(first:100, after:$after){
        pageInfo{ hasNextPage endCursor }
        nodes{""" + ITEM_SELECTION + """        }
      }
    }
  }
}
"""

GQL_MUTATION_SET_TEXT = """mutation($projectId:ID!, $itemId:ID!, $fieldId:ID!, $text:String!) {
  updateProjectV2ItemFieldValue(
    input:{projectId:$projectId, itemId:$itemId, fieldId:$fieldId, value:{text:$text}}
  ){
    projectV2Item{ id }
  }
}
"""

GQL_MUTATION_SET_NUMBER = """mutation($projectId:ID!, $itemId:ID!, $fieldId:ID!, $number:Float!) {
  updateProjectV2ItemFieldValue(
    input:{projectId:$projectId, itemId:$itemId, fieldId:$fieldId, value:{number:$number}}
  ){
    projectV2Item{ id }
  }
}
"""

GQL_MUTATION_SET_DATE = """mutation($projectId:ID!, $itemId:ID!, $fieldId:ID!, $date:Date!) {
  updateProjectV2ItemFieldValue(
    input:{projectId:$projectId, itemId:$itemId, fieldId:$fieldId, value:{date:$date}}
  ){
    projectV2Item{ id }
  }
}
"""

GQL_MUTATION_SET_OPTION = """mutation($projectId:ID!, $itemId:ID!, $fieldId:ID!, $optionId:String!) {
  updateProjectV2ItemFieldValue(
    input:{projectId:$projectId, itemId:$itemId, fieldId:$fieldId, value:{singleSelectOptionId:$optionId}}
  ){
    projectV2Item{ id }
  }
}
"""

GQL_MUTATION_SET_ITERATION = """mutation($projectId:ID!, $itemId:ID!, $fieldId:ID!, $iterationId:String!) {
  updateProjectV2ItemFieldValue(
    input:{projectId:$projectId, itemId:$itemId, fieldId:$fieldId, value:{iterationId:$iterationId}}
  ){
    projectV2Item{ id }
  }
}
"""

GQL_MUTATION_SET_DRAFT_TITLE = """mutation($draftIssueId:ID!, $title:String!) {
  updateProjectV2DraftIssue(input:{draftIssueId:$draftIssueId, title:$title}){
    draftIssue{ id }
  }
}
"""

GQL_MUTATION_CREATE_DRAFT = """mutation($projectId:ID!, $title:String!, $body:String) {
  addProjectV2DraftIssue(input:{projectId:$projectId, title:$title, body:$body}){
    projectItem{""" + ITEM_SELECTION + """    }
  }
}
"""


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Accept"] = "application/vnd.github+json"
    s.headers["User-Agent"] = "gh-project-editor"
    return s


def _require_token(token: Optional[str]) -> str:
    if not token:
        raise NoCredentialError("GITHUB_TOKEN required; no active session")
    return token


def _json_object(resp: requests.Response) -> Dict:
    try:
        payload = resp.json()
    except ValueError as exc:
        raise RemoteError("GitHub returned a non-JSON response") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise RemoteError(f"Unexpected GitHub response: {type(payload).__name__}")
    return payload


def _graphql(session: requests.Session, query: str, variables: Dict[str, object]) -> Dict:
    """POST a GraphQL document and return its ``data``; any failure raises RemoteError."""
    try:
        resp = session.post(GRAPHQL_URL, json={"query": query, "variables": variables}, timeout=60)
    except requests.exceptions.RequestException as exc:
        logger.warning("GraphQL request failed: %s", exc)
        raise RemoteError(f"Network error: {exc}") from exc
    if resp.status_code >= 300:
        logger.warning("GraphQL HTTP %s: %s", resp.status_code, resp.text[:200])
        raise RemoteError(f"GitHub API error ({resp.status_code}): {resp.text[:200]}")
    payload = _json_object(resp)
    errs = payload.get("errors") or []
    if errs:
        logger.error("GraphQL errors: %s", errs)
        raise RemoteError("; ".join(
            e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errs
        ))
    return payload.get("data") or {}


def fetch_user(token: Optional[str]) -> User:
    session = _session(_require_token(token))
    try:
        resp = session.get(REST_USER_URL, headers={"X-GitHub-Api-Version": "2022-11-28"}, timeout=30)
    except requests.exceptions.RequestException as exc:
        raise RemoteError(f"Network error: {exc}") from exc
    if resp.status_code >= 300:
        raise RemoteError(f"User lookup failed ({resp.status_code}): {resp.text[:200]}")
    login = _json_object(resp).get("login") or ""
    if not login:
        raise RemoteError("User lookup returned no login")
    return User(login=login)


def fetch_projects(token: Optional[str], login: str, owner_type: str = "user") -> List[Project]:
    """Open Projects v2 owned by ``login``, most recently updated first."""
    session = _session(_require_token(token))
    if owner_type == "org":
        query, owner_key = GQL_LIST_ORG_PROJECTS, "organization"
    else:
        query, owner_key = GQL_LIST_USER_PROJECTS, "user"
    projects: List[Project] = []
    after: Optional[str] = None
    while True:
        data = _graphql(session, query, {"login": login, "after": after})
        conn = ((data.get(owner_key) or {}).get("projectsV2")) or {}
        for n in conn.get("nodes") or []:
            if not isinstance(n, dict) or n.get("closed") or not n.get("id"):
                continue
            try:
                number = int(n.get("number") or 0)
            except (TypeError, ValueError):
                number = 0
            projects.append(Project(id=n["id"], title=n.get("title") or "", number=number, url=n.get("url") or ""))
        page = conn.get("pageInfo") or {}
        if page.get("hasNextPage") and page.get("endCursor"):
            after = page.get("endCursor")
        else:
            break
    return projects


def fetch_fields(token: Optional[str], project_id: str) -> List[Field]:
    session = _session(_require_token(token))
    data = _graphql(session, GQL_PROJECT_FIELDS, {"id": project_id})
    nodes = (((data.get("node") or {}).get("fields") or {}).get("nodes")) or []
    fields: List[Field] = []
    for node in nodes:
        fld = parse_field(node)
        if fld is not None:
            fields.append(fld)
    return fields


def fetch_items(token: Optional[str], project_id: str) -> List[Item]:
    session = _session(_require_token(token))
    items: List[Item] = []
    after: Optional[str] = None
    while True:
        data = _graphql(session, GQL_PROJECT_ITEMS, {"id": project_id, "after": after})
        conn = ((data.get("node") or {}).get("items")) or {}
        for node in conn.get("nodes") or []:
            item = parse_item(node)
            if item is not None:
                items.append(item)
        page = conn.get("pageInfo") or {}
        if page.get("hasNextPage") and page.get("endCursor"):
            after = page.get("endCursor")
        else:
            break
    return items


def _update_field(token: Optional[str], query: str, project_id: str, item_id: str, field_id: str,
                  extra: Dict[str, object], label: str) -> None:
    if not (project_id and item_id and field_id):
        raise RemoteError(f"{label} update missing required identifiers")
    session = _session(_require_token(token))
    variables: Dict[str, object] = {"projectId": project_id, "itemId": item_id, "fieldId": field_id}
    variables.update(extra)
    logger.info("Updating %s of item %s", label, item_id)
    _graphql(session, query, variables)


def set_item_text(token: Optional[str], project_id: str, item_id: str, field_id: str, text: str) -> None:
    _update_field(token, GQL_MUTATION_SET_TEXT, project_id, item_id, field_id, {"text": text}, "text")


def set_item_number(token: Optional[str], project_id: str, item_id: str, field_id: str, number: float) -> None:
    _update_field(token, GQL_MUTATION_SET_NUMBER, project_id, item_id, field_id, {"number": number}, "number")


def set_item_date(token: Optional[str], project_id: str, item_id: str, field_id: str, date_val: str) -> None:
    _update_field(token, GQL_MUTATION_SET_DATE, project_id, item_id, field_id, {"date": date_val}, "date")


def set_item_option(token: Optional[str], project_id: str, item_id: str, field_id: str, option_id: str) -> None:
    _update_field(token, GQL_MUTATION_SET_OPTION, project_id, item_id, field_id, {"optionId": option_id}, "option")


def set_item_iteration(token: Optional[str], project_id: str, item_id: str, field_id: str, iteration_id: str) -> None:
    _update_field(token, GQL_MUTATION_SET_ITERATION, project_id, item_id, field_id,
                  {"iterationId": iteration_id}, "iteration")


def set_draft_title(token: Optional[str], draft_issue_id: str, title: str) -> None:
    if not draft_issue_id:
        raise RemoteError("Draft title update missing draft issue id")
    session = _session(_require_token(token))
    logger.info("Renaming draft issue %s", draft_issue_id)
    _graphql(session, GQL_MUTATION_SET_DRAFT_TITLE, {"draftIssueId": draft_issue_id, "title": title})


def create_project_draft(token: Optional[str], project_id: str, title: str, body: str = "") -> Item:
    session = _session(_require_token(token))
    if not (project_id and title.strip()):
        raise RemoteError("Project ID and title are required to create a draft item")
    variables = {"projectId": project_id, "title": title.strip(), "body": body or ""}
    data = _graphql(session, GQL_MUTATION_CREATE_DRAFT, variables)
    node = (data.get("addProjectV2DraftIssue") or {}).get("projectItem") or {}
    item = parse_item(node)
    if item is None:
        raise RemoteError("Create draft succeeded but returned no item")
    return item


def fetch_snapshot(token: Optional[str], project_index: int = 0, project_id: Optional[str] = None,
                   owner: str = "", owner_type: str = "user") -> Snapshot:
    """Full reload: user, project list, and fields/items of the selected project.

    ``project_id`` wins over ``project_index`` when it is still in the list.
    """
    user = fetch_user(token)
    projects = fetch_projects(token, owner or user.login, owner_type if owner else "user")
    index = max(0, min(project_index, len(projects) - 1)) if projects else 0
    if project_id:
        for idx, proj in enumerate(projects):
            if proj.id == project_id:
                index = idx
                break
    fields: List[Field] = []
    items: List[Item] = []
    if projects:
        fields = fetch_fields(token, projects[index].id)
        items = fetch_items(token, projects[index].id)
        bind_fields(items, fields)
    logger.info("Loaded %d items x %d fields for %r", len(items), len(fields),
                projects[index].title if projects else None)
    return Snapshot(user=user, projects=projects, project_index=index, items=items, fields=fields)


# -----------------------------
# Edit buffers
# -----------------------------
def _wrap(index: int, delta: int, count: int) -> int:
    if count <= 0:
        return 0
    return (index + delta) % count


@dataclass
class TextBuffer:
    content: str = ""
    cursor: int = -1
    numeric: bool = False

    def __post_init__(self) -> None:
        if self.cursor < 0 or self.cursor > len(self.content):
            self.cursor = len(self.content)

    def insert(self, ch: str) -> bool:
        if self.numeric and ch not in string.digits:
            return False
        self.content = self.content[:self.cursor] + ch + self.content[self.cursor:]
        self.cursor += len(ch)
        return True

    def backspace(self) -> None:
        if self.cursor == 0:
            return
        self.content = self.content[:self.cursor - 1] + self.content[self.cursor:]
        self.cursor -= 1

    def delete(self) -> None:
        if self.cursor >= len(self.content):
            return
        self.content = self.content[:self.cursor] + self.content[self.cursor + 1:]

    def left(self) -> None:
        if self.cursor > 0:
            self.cursor -= 1

    def right(self) -> None:
        if self.cursor < len(self.content):
            self.cursor += 1

    def home(self) -> None:
        self.cursor = 0

    def end(self) -> None:
        self.cursor = len(self.content)


@dataclass
class SingleSelectBuffer:
    options: List[Option]
    selected_index: int = 0

    def next(self) -> None:
        self.selected_index = _wrap(self.selected_index, 1, len(self.options))

    def previous(self) -> None:
        self.selected_index = _wrap(self.selected_index, -1, len(self.options))

    def selected(self) -> Optional[Option]:
        if 0 <= self.selected_index < len(self.options):
            return self.options[self.selected_index]
        return None


@dataclass
class IterationBuffer:
    iterations: List[Iteration]
    selected_index: int = 0

    def next(self) -> None:
        self.selected_index = _wrap(self.selected_index, 1, len(self.iterations))

    def previous(self) -> None:
        self.selected_index = _wrap(self.selected_index, -1, len(self.iterations))

    def selected(self) -> Optional[Iteration]:
        if 0 <= self.selected_index < len(self.iterations):
            return self.iterations[self.selected_index]
        return None


def shift_month(day: dt.date, months: int) -> dt.date:
    """Move by whole months, clamping to the last day of a shorter month."""
    month = day.month - 1 + months
    year = day.year + month // 12
    month = month % 12 + 1
    if not (dt.MINYEAR <= year <= dt.MAXYEAR):
        raise OverflowError("date out of range")
    return dt.date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


@dataclass
class DateBuffer:
    date: dt.date

    def shift_days(self, days: int) -> None:
        try:
            self.date = self.date + dt.timedelta(days=days)
        except OverflowError:
            pass

    def shift_months(self, months: int) -> None:
        try:
            self.date = shift_month(self.date, months)
        except OverflowError:
            pass

    def shift_years(self, years: int) -> None:
        self.shift_months(12 * years)

    def today(self) -> None:
        self.date = dt.date.today()


EditBuffer = Union[TextBuffer, SingleSelectBuffer, DateBuffer, IterationBuffer]


def build_buffer(field: Field, value: FieldValue) -> EditBuffer:
    """Fresh buffer for ``field`` seeded from the stored ``value``."""
    current = value_display(value)
    kind = field.kind
    if kind in (KIND_TEXT, KIND_TITLE):
        return TextBuffer(content=current)
    if kind == KIND_NUMBER:
        return TextBuffer(content=current, numeric=True)
    if kind == KIND_DATE:
        try:
            day = dt.date.fromisoformat(current[:10])
        except ValueError:
            day = dt.date.today()
        return DateBuffer(date=day)
    if kind == KIND_SINGLE_SELECT:
        options = list(field.options) if isinstance(field, SingleSelectField) else []
        # Stored name missing from the option list (stale options) selects the first option.
        index = next((i for i, opt in enumerate(options) if opt.name == current), 0)
        return SingleSelectBuffer(options=options, selected_index=index)
    if kind == KIND_ITERATION:
        iterations = list(field.iterations) if isinstance(field, IterationField) else []
        index = next((i for i, it in enumerate(iterations) if it.title == current), 0)
        return IterationBuffer(iterations=iterations, selected_index=index)
    raise NotEditableError(f"{field.name} ({kind or 'unknown'}) fields can't be edited here")


def buffer_display(buffer: Optional[EditBuffer]) -> str:
    if buffer is None:
        return ""
    if isinstance(buffer, TextBuffer):
        return buffer.content
    if isinstance(buffer, DateBuffer):
        return buffer.date.isoformat()
    if isinstance(buffer, SingleSelectBuffer):
        opt = buffer.selected()
        return opt.name if opt else ""
    if isinstance(buffer, IterationBuffer):
        it = buffer.selected()
        return it.title if it else ""
    raise TypeError(f"Unknown edit buffer {buffer!r}")


# -----------------------------
# Cursor
# -----------------------------
@dataclass
class Cursor:
    item: int = 0
    field: int = 0

    def move_item(self, delta: int, count: int) -> None:
        self.item = _wrap(self.item, delta, count)

    def move_field(self, delta: int, count: int) -> None:
        self.field = _wrap(self.field, delta, count)

    def clamp(self, item_count: int, field_count: int) -> None:
        self.item = max(0, min(self.item, item_count - 1))
        self.field = max(0, min(self.field, field_count - 1))


# -----------------------------
# Remote synchronization
# -----------------------------
def parse_number(text: str) -> float:
    raw = (text or "").strip()
    try:
        number = float(raw)
    except ValueError:
        raise FieldParseError(f"'{raw}' is not a number") from None
    if number != number or number in (float("inf"), float("-inf")):
        raise FieldParseError(f"'{raw}' is not a finite number")
    return number


def value_from_buffer(field: Field, buffer: EditBuffer) -> FieldValue:
    """The FieldValue a buffer stands for once committed."""
    kind = field.kind
    if isinstance(buffer, TextBuffer):
        if kind == KIND_NUMBER:
            return NumberValue(value=parse_number(buffer.content), field=field)
        if kind in (KIND_TEXT, KIND_TITLE):
            return TextValue(text=buffer.content, field=field)
    elif isinstance(buffer, DateBuffer) and kind == KIND_DATE:
        return DateValue(date=buffer.date.strftime("%Y-%m-%d"), field=field)
    elif isinstance(buffer, SingleSelectBuffer) and kind == KIND_SINGLE_SELECT:
        opt = buffer.selected()
        if opt is None:
            raise NotEditableError(f"{field.name} has no options")
        return SingleSelectValue(name=opt.name, field=field, option_id=opt.id)
    elif isinstance(buffer, IterationBuffer) and kind == KIND_ITERATION:
        it = buffer.selected()
        if it is None:
            raise NotEditableError(f"{field.name} has no iterations")
        return IterationValue(
            duration=it.duration, title=it.title, field=field,
            iteration_id=it.id, start_date=it.start_date,
        )
    raise NotEditableError(f"Buffer does not match {field.name} ({kind})")


def commit_buffer(token: Optional[str], project_id: str, item: Item, field: Field, buffer: EditBuffer) -> FieldValue:
    """Send the buffer's value to GitHub and return the value to store locally.

    Raises before anything is sent when there is no credential or the buffer
    does not parse; raises RemoteError when GitHub rejects the mutation.
    """
    _require_token(token)
    value = value_from_buffer(field, buffer)
    if isinstance(value, TextValue) and field.kind == KIND_TITLE:
        if item.type != ITEM_DRAFT_ISSUE or not item.content_id:
            raise NotEditableError("Only draft item titles can be edited")
        set_draft_title(token, item.content_id, value.text)
    elif isinstance(value, TextValue):
        set_item_text(token, project_id, item.id, field.id, value.text)
    elif isinstance(value, NumberValue):
        set_item_number(token, project_id, item.id, field.id, value.value)
    elif isinstance(value, DateValue):
        set_item_date(token, project_id, item.id, field.id, value.date)
    elif isinstance(value, SingleSelectValue):
        set_item_option(token, project_id, item.id, field.id, value.option_id)
    elif isinstance(value, IterationValue):
        set_item_iteration(token, project_id, item.id, field.id, value.iteration_id)
    else:
        raise NotEditableError(f"{field.name} can't be saved")
    return value


# -----------------------------
# Background refresh
# -----------------------------
@dataclass
class RefreshResult:
    project_index: int            # the target that was requested
    project_id: Optional[str]
    snapshot: Optional[Snapshot] = None
    error: str = ""
    forced: bool = False
    generation: int = 0           # write generation current when the fetch started


SnapshotFetcher = Callable[[int, Optional[str]], Snapshot]


class BackgroundRefresher:
    """Rebuilds the snapshot on one worker thread and hands it to the UI loop.

    Results travel through a single-slot queue; an undelivered result is
    replaced by a newer one. Periodic failures are logged and dropped;
    failures of a forced reload are delivered so the UI can report them.
    """

    def __init__(self, fetch: SnapshotFetcher, interval: float = 60.0):
        self._fetch = fetch
        self.interval = interval
        self._channel: "queue.Queue[RefreshResult]" = queue.Queue(maxsize=1)
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._target: Tuple[int, Optional[str]] = (0, None)
        self._forced = False
        self._generation = 0
        self._thread: Optional[threading.Thread] = None

    def bump_generation(self) -> int:
        """Mark a local write; results of fetches already under way become stale."""
        with self._lock:
            self._generation += 1
            return self._generation

    def set_target(self, project_index: int, project_id: Optional[str]) -> None:
        with self._lock:
            self._target = (project_index, project_id)

    def request(self, project_index: int, project_id: Optional[str], forced: bool = False) -> None:
        with self._lock:
            self._target = (project_index, project_id)
            self._forced = self._forced or forced
        self._wake.set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="gh-project-refresh", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._wake.wait(self.interval)
            self._wake.clear()

    def run_once(self) -> Optional[RefreshResult]:
        with self._lock:
            project_index, project_id = self._target
            forced = self._forced
            self._forced = False
            generation = self._generation
        try:
            snapshot = self._fetch(project_index, project_id)
        except Exception as exc:
            if not forced:
                logger.warning("Background refresh failed: %s", exc)
                return None
            logger.exception("Reload failed")
            result = RefreshResult(project_index, project_id, error=str(exc), forced=True, generation=generation)
        else:
            result = RefreshResult(project_index, project_id, snapshot=snapshot, forced=forced,
                                   generation=generation)
        self._publish(result)
        return result

    def _publish(self, result: RefreshResult) -> None:
        try:
            self._channel.put_nowait(result)
        except queue.Full:
            try:
                self._channel.get_nowait()
            except queue.Empty:
                pass
            self._channel.put_nowait(result)

    def poll(self) -> Optional[RefreshResult]:
        try:
            return self._channel.get_nowait()
        except queue.Empty:
            return None


# -----------------------------
# UI state persistence & credentials
# -----------------------------
def load_ui_state(path: str) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_ui_state(path: str, data: dict) -> None:
    try:
        d = os.path.dirname(path)
        if d and not os.path.isdir(d):
            os.makedirs(d, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
    except OSError:
        logger.warning("Unable to write UI state to %s", path, exc_info=True)


def load_dotenv_token(search_dirs: Optional[List[str]] = None) -> Optional[str]:
    """Load TOKEN or GITHUB_TOKEN from a .env file (current dir or script dir) if present."""
    candidates = search_dirs or [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "GITHUB_TOKEN") and v:
                        return v
        except OSError:
            continue
    return None


def load_token_file(path: Optional[str]) -> Optional[str]:
    """Read a saved credential: JSON with a ``token`` key, or the bare token."""
    if not path or not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read().strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(data, dict):
        token = data.get("token") or data.get("access_token")
        return str(token) if token else None
    return None


def resolve_token(token_file: Optional[str] = DEFAULT_TOKEN_FILE) -> Optional[str]:
    return os.environ.get("GITHUB_TOKEN") or load_dotenv_token() or load_token_file(token_file)


# -----------------------------
# Edit session
# -----------------------------
MODE_BROWSE = 'browse'
MODE_EDITING = 'editing'
MODE_SWITCHING = 'switching-project'
MODE_ADDING = 'adding-item'
MODE_LOADING = 'loading-project'
MODE_ERROR = 'error'

# Refresh deliveries wait while one of these is open.
DEFERRED_MODES = frozenset({MODE_EDITING, MODE_ADDING, MODE_SWITCHING})


class EditorState:
    """Everything the key handlers and the renderer share.

    The snapshot is read and mutated only from the UI loop; the refresher
    hands over whole new snapshots through its queue.
    """

    def __init__(self, token: Optional[str], config: Optional[Config] = None,
                 snapshot: Optional[Snapshot] = None, refresher: Optional[BackgroundRefresher] = None,
                 project_index: int = 0, project_id: Optional[str] = None):
        self.token = token
        self.config = config or Config()
        self.snapshot = snapshot
        self.refresher = refresher
        self.cursor = Cursor()
        self.buffer: Optional[EditBuffer] = None
        self.mode = MODE_BROWSE if snapshot is not None else MODE_LOADING
        self.error = ""
        self.status_line = ""
        self.project_index = snapshot.project_index if snapshot is not None else project_index
        self.project_id = project_id
        if snapshot is not None and snapshot.project is not None:
            self.project_id = snapshot.project.id
        self.project_choice = self.project_index
        self.add_buffer = TextBuffer()
        self.exit_requested = False
        self._edit_target: Optional[Tuple[int, int]] = None
        self.write_generation = 0

    # -- accessors -------------------------------------------------------
    @property
    def editable_kinds(self) -> frozenset:
        if self.config.iteration_editing:
            return EDITABLE_KINDS | {KIND_ITERATION}
        return EDITABLE_KINDS

    def require_snapshot(self) -> Snapshot:
        if self.snapshot is None:
            raise NotLoadedError("Project not loaded yet")
        return self.snapshot

    def current_item(self) -> Optional[Item]:
        snap = self.snapshot
        if snap is None or not snap.items:
            return None
        return snap.items[self.cursor.item]

    def current_field(self) -> Optional[Field]:
        snap = self.snapshot
        if snap is None or not snap.fields:
            return None
        return snap.fields[self.cursor.field]

    def fail(self, message: str) -> None:
        self.mode = MODE_ERROR
        self.error = message
        self.status_line = message

    def dismiss_error(self) -> None:
        self.mode = MODE_BROWSE
        self.error = ""

    # -- editing ---------------------------------------------------------
    def check_editable(self, item: Item, field: Field) -> None:
        if item.type == ITEM_REDACTED:
            raise NotEditableError("Redacted items can't be edited")
        if field.kind == KIND_ITERATION and not self.config.iteration_editing:
            raise NotEditableError(f"{field.name} is an iteration field (read-only)")
        if field.kind not in self.editable_kinds:
            raise NotEditableError(f"{field.name} ({field.kind or 'unknown'}) fields can't be edited here")
        if field.kind == KIND_TITLE and item.type in (ITEM_ISSUE, ITEM_PULL_REQUEST):
            raise NotEditableError("Issue and pull request titles are managed on GitHub")

    def begin_editing(self) -> EditBuffer:
        """Open an edit buffer on the selected cell.

        Not a read: when the cell is empty, the field's default value is
        stored into the item first, so the buffer always edits a real value.
        Raises NotLoadedError/NotEditableError without touching the snapshot.
        """
        snap = self.require_snapshot()
        if not snap.items or not snap.fields:
            raise NotEditableError("Nothing to edit")
        item_index, field_index = self.cursor.item, self.cursor.field
        item = snap.items[item_index]
        field = snap.fields[field_index]
        self.check_editable(item, field)
        value = get_from_field(item, field.name)
        if isinstance(value, EmptyValue):
            value = default_value(field)
            if isinstance(value, EmptyValue):
                raise NotEditableError(f"{field.name} has no options to choose from")
            snap.set_field_at(item_index, field_index, value)
        self.buffer = build_buffer(field, value)
        self._edit_target = (item_index, field_index)
        self.mode = MODE_EDITING
        self.status_line = f"Editing {field.name}"
        return self.buffer

    def start_edit(self) -> None:
        try:
            self.begin_editing()
        except EditorError as exc:
            self.fail(str(exc))

    def cancel_edit(self) -> None:
        self.buffer = None
        self._edit_target = None
        self.mode = MODE_BROWSE
        self.status_line = "Edit cancelled"

    def commit_edit(self) -> bool:
        """Push the buffer to GitHub; store the value locally only on success."""
        snap = self.snapshot
        buffer, target = self.buffer, self._edit_target
        self.buffer = None
        self._edit_target = None
        if snap is None or buffer is None or target is None:
            self.mode = MODE_BROWSE
            return False
        item_index, field_index = target
        item = snap.items[item_index]
        field = snap.fields[field_index]
        project = snap.project
        try:
            value = commit_buffer(self.token, project.id if project else "", item, field, buffer)
        except EditorError as exc:
            logger.warning("Saving %s on %s failed: %s", field.name, item.id, exc)
            self.fail(f"{field.name} update failed: {exc}")
            return False
        snap.set_field_at(item_index, field_index, value)
        self.note_local_write()
        logger.info("Saved %s on %s", field.name, item.id)
        self.mode = MODE_BROWSE
        self.status_line = f"{field.name} set to {value_display(value) or '(empty)'}"
        return True

    # -- projects --------------------------------------------------------
    def open_project_switch(self) -> None:
        snap = self.snapshot
        if snap is None or not snap.projects:
            self.status_line = "No projects to switch to"
            return
        self.project_choice = snap.project_index
        self.mode = MODE_SWITCHING

    def cycle_project_choice(self, delta: int) -> None:
        if self.snapshot is None:
            return
        self.project_choice = _wrap(self.project_choice, delta, len(self.snapshot.projects))

    def confirm_project_switch(self) -> None:
        snap = self.require_snapshot()
        project = snap.projects[self.project_choice]
        self.project_index = self.project_choice
        self.project_id = project.id
        state = load_ui_state(self.config.state_path)
        state.update({'project_id': project.id, 'project_index': self.project_index})
        save_ui_state(self.config.state_path, state)
        self.cursor = Cursor()
        self.reload(f"Loading {project.title}…")

    def reload(self, message: str = "Reloading…") -> None:
        self.mode = MODE_LOADING
        self.status_line = message
        if self.refresher is not None:
            self.refresher.request(self.project_index, self.project_id, forced=True)

    # -- draft items -----------------------------------------------------
    def open_add_item(self) -> None:
        snap = self.snapshot
        if snap is None or snap.project is None:
            self.status_line = "No project selected"
            return
        self.add_buffer = TextBuffer()
        self.mode = MODE_ADDING

    def confirm_add_item(self) -> bool:
        title = self.add_buffer.content.strip()
        if not title:
            self.status_line = "Title required"
            return False
        snap = self.require_snapshot()
        project = snap.project
        if project is None:
            self.fail("No project selected")
            return False
        try:
            item = create_project_draft(self.token, project.id, title)
        except EditorError as exc:
            logger.warning("Create draft failed: %s", exc)
            self.fail(f"Create failed: {exc}")
            return False
        bind_fields([item], snap.fields)
        snap.items.append(item)
        self.note_local_write()
        self.cursor.item = len(snap.items) - 1
        self.add_buffer = TextBuffer()
        self.mode = MODE_BROWSE
        self.status_line = f"Created draft '{title}'"
        if self.refresher is not None:
            self.refresher.request(self.project_index, self.project_id)
        return True

    # -- refresh delivery ------------------------------------------------
    def note_local_write(self) -> None:
        if self.refresher is not None:
            self.write_generation = self.refresher.bump_generation()

    def drain_refresh(self) -> bool:
        """Apply a waiting refresh result, if any; True when the view changed."""
        if self.refresher is None or self.mode in DEFERRED_MODES:
            return False
        result = self.refresher.poll()
        if result is None:
            return False
        return self.apply_refresh(result)

    def apply_refresh(self, result: RefreshResult) -> bool:
        if (result.project_index, result.project_id) != (self.project_index, self.project_id):
            logger.info("Discarding refresh for project %s/%s; active is %s/%s",
                        result.project_index, result.project_id, self.project_index, self.project_id)
            return False
        if result.snapshot is None:
            if result.error and self.mode == MODE_LOADING:
                self.fail(f"Reload failed: {result.error}")
                return True
            return False
        if result.generation < self.write_generation:
            logger.info("Discarding refresh fetched before the last local write (%d < %d)",
                        result.generation, self.write_generation)
            return False
        snap = result.snapshot
        self.snapshot = snap
        self.project_index = snap.project_index
        self.project_id = snap.project.id if snap.project is not None else None
        if self.refresher is not None:
            self.refresher.set_target(self.project_index, self.project_id)
        self.cursor.clamp(len(snap.items), len(snap.fields))
        if self.mode == MODE_LOADING:
            self.mode = MODE_BROWSE
            title = snap.project.title if snap.project is not None else "(no projects)"
            self.status_line = f"Loaded {title}"
        return True


# -----------------------------
# Key dispatch
# -----------------------------
def _is_text_key(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


def _text_keys(key: str, buffer: TextBuffer) -> None:
    if key == 'backspace':
        buffer.backspace()
    elif key == 'delete':
        buffer.delete()
    elif key == 'left':
        buffer.left()
    elif key == 'right':
        buffer.right()
    elif key == 'home':
        buffer.home()
    elif key == 'end':
        buffer.end()
    elif _is_text_key(key):
        buffer.insert(key)


def _date_keys(key: str, buffer: DateBuffer) -> None:
    if key in ('left', 'h'):
        buffer.shift_days(-1)
    elif key in ('right', 'l'):
        buffer.shift_days(1)
    elif key in ('up', 'k'):
        buffer.shift_days(-7)
    elif key in ('down', 'j'):
        buffer.shift_days(7)
    elif key in ('J', '>'):
        buffer.shift_months(1)
    elif key in ('K', '<'):
        buffer.shift_months(-1)
    elif key == 'L':
        buffer.shift_years(1)
    elif key == 'H':
        buffer.shift_years(-1)
    elif key == 't':
        buffer.today()


def _browse_keys(key: str, state: EditorState) -> None:
    if key in ('q', 'c-c'):
        state.exit_requested = True
        return
    if key == 'r':
        state.reload()
        return
    snap = state.snapshot
    if snap is None:
        return
    if key in ('j', 'down'):
        state.cursor.move_item(1, len(snap.items))
    elif key in ('k', 'up'):
        state.cursor.move_item(-1, len(snap.items))
    elif key in ('l', 'right'):
        state.cursor.move_field(1, len(snap.fields))
    elif key in ('h', 'left'):
        state.cursor.move_field(-1, len(snap.fields))
    elif key in ('i', 'enter'):
        state.start_edit()
    elif key == 'p':
        state.open_project_switch()
    elif key == 'a':
        state.open_add_item()


def _editing_keys(key: str, state: EditorState) -> None:
    if key == 'escape':
        state.cancel_edit()
        return
    if key == 'enter':
        state.commit_edit()
        return
    buffer = state.buffer
    if isinstance(buffer, TextBuffer):
        _text_keys(key, buffer)
    elif isinstance(buffer, DateBuffer):
        _date_keys(key, buffer)
    elif isinstance(buffer, (SingleSelectBuffer, IterationBuffer)):
        if key in ('down', 'j'):
            buffer.next()
        elif key in ('up', 'k'):
            buffer.previous()


def _switching_keys(key: str, state: EditorState) -> None:
    if key == 'escape':
        state.mode = MODE_BROWSE
        state.status_line = "Project switch cancelled"
    elif key == 'enter':
        state.confirm_project_switch()
    elif key in ('down', 'j'):
        state.cycle_project_choice(1)
    elif key in ('up', 'k'):
        state.cycle_project_choice(-1)


def _adding_keys(key: str, state: EditorState) -> None:
    if key == 'escape':
        state.add_buffer = TextBuffer()
        state.mode = MODE_BROWSE
        state.status_line = "Add cancelled"
    elif key == 'enter':
        state.confirm_add_item()
    else:
        _text_keys(key, state.add_buffer)


def _loading_keys(key: str, state: EditorState) -> None:
    if key in ('q', 'c-c'):
        state.exit_requested = True
    elif key == 'escape':
        state.mode = MODE_BROWSE
        state.status_line = ""


def _error_keys(key: str, state: EditorState) -> None:
    state.dismiss_error()


_MODE_HANDLERS: Dict[str, Callable[[str, EditorState], None]] = {
    MODE_BROWSE: _browse_keys,
    MODE_EDITING: _editing_keys,
    MODE_SWITCHING: _switching_keys,
    MODE_ADDING: _adding_keys,
    MODE_LOADING: _loading_keys,
    MODE_ERROR: _error_keys,
}


def handle_key(key: str, state: EditorState) -> None:
    """Feed one key press (prompt_toolkit key name or a character) to the editor."""
    handler = _MODE_HANDLERS.get(state.mode, _browse_keys)
    try:
        handler(key, state)
    except EditorError as exc:
        logger.warning("Key %r in %s failed: %s", key, state.mode, exc)
        state.fail(str(exc))


# -----------------------------
# Themes
# -----------------------------
BASE_THEME_STYLE: Dict[str, str] = {
    'title': 'bold #ffd75f',
    'meta': '#87d7ff',
    'table.header': 'bold #ffd75f',
    'table.header.cursor': 'bold reverse #ffd75f',
    'table.marker': 'bold #ff8787',
    'cell.cursor': 'reverse',
    'value.text': '#f0f0f0',
    'value.title': 'bold #ffffff',
    'value.date': '#87afff',
    'value.number': '#d7afff',
    'value.iteration': '#5fd7af',
    'value.empty': '#5f5f5f',
    'value.select': '#d0d0d0',
    'value.select.gray': '#8b949e',
    'value.select.blue': '#58a6ff',
    'value.select.green': '#3fb950',
    'value.select.yellow': '#d29922',
    'value.select.orange': '#db6d28',
    'value.select.red': '#f85149',
    'value.select.pink': '#db61a2',
    'value.select.purple': '#a371f7',
    'editor.label': 'bold #ffd75f',
    'editor.entry': '#ffffff bg:#303030',
    'editor.caret': 'reverse',
    'editor.option': '#d0d0d0',
    'editor.option.cursor': 'bold #ffffff bg:#875f00',
    'editor.hint': '#5fd7af',
    'error': 'bold #ff8787',
    'status': 'bg:#303030 #f0f0f0',
}


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
MIN_COL_WIDTH = 6
MAX_COL_WIDTH = 30
COL_GAP = 2

EDIT_HINTS = {
    'text': "Type to edit • ←/→ move • Enter save • Esc cancel",
    'number': "Digits only • Enter save • Esc cancel",
    'date': "h/l day • j/k week • J/K month • L/H year • t today • Enter save • Esc cancel",
    'select': "j/k choose • Enter save • Esc cancel",
}

MODE_LABELS = {
    MODE_BROWSE: "BROWSE",
    MODE_EDITING: "EDIT",
    MODE_SWITCHING: "PROJECT",
    MODE_ADDING: "ADD",
    MODE_LOADING: "LOADING",
    MODE_ERROR: "ERROR",
}


def _char_width(ch: str) -> int:
    """Return printable cell width for a single character."""
    if unicodedata.combining(ch) or unicodedata.category(ch) == "Cf":
        return 0
    return max(1, get_cwidth(ch))


def _display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def _truncate(s: str, maxlen: int) -> str:
    """Truncate string to a maximum display width, preserving whole glyphs."""
    s = _sanitize_cell_text(s)
    if maxlen <= 0:
        return ""
    if _display_width(s) <= maxlen:
        return s
    ellipsis = "…"
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = _char_width(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + ellipsis


def _pad_display(text: Optional[str], width: int) -> str:
    """Pad/truncate text to an exact display width using spaces."""
    raw = _truncate(_sanitize_cell_text(text), width)
    return raw + " " * max(0, width - _display_width(raw))


def _column_widths(snap: Snapshot) -> List[int]:
    widths: List[int] = []
    for fld in snap.fields:
        w = _display_width(fld.name)
        for item in snap.items:
            w = max(w, _display_width(_sanitize_cell_text(value_display(get_from_field(item, fld.name)))))
        widths.append(max(MIN_COL_WIDTH, min(MAX_COL_WIDTH, w)))
    return widths


def _first_visible_column(widths: List[int], selected: int, max_width: int) -> int:
    """Smallest horizontal scroll offset that keeps the selected column on screen."""
    offset = 0
    while offset < selected and sum(w + COL_GAP for w in widths[offset:selected + 1]) > max_width:
        offset += 1
    return offset


def _editor_fragments(state: EditorState) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = [("", "\n")]
    snap = state.snapshot
    if state.mode == MODE_EDITING and state.buffer is not None:
        fld = state.current_field()
        frags.append(("class:editor.label", f"{fld.name if fld else ''}: "))
        buffer = state.buffer
        if isinstance(buffer, TextBuffer):
            before = buffer.content[:buffer.cursor]
            at = buffer.content[buffer.cursor:buffer.cursor + 1] or " "
            after = buffer.content[buffer.cursor + 1:]
            frags.extend([
                ("class:editor.entry", before),
                ("class:editor.entry class:editor.caret", at),
                ("class:editor.entry", after),
                ("", "\n"),
                ("class:editor.hint", EDIT_HINTS['number' if buffer.numeric else 'text']),
            ])
        elif isinstance(buffer, DateBuffer):
            frags.extend([
                ("class:editor.entry", f"{buffer.date.isoformat()} ({buffer.date.strftime('%A')})"),
                ("", "\n"),
                ("class:editor.hint", EDIT_HINTS['date']),
            ])
        else:
            names = ([opt.name for opt in buffer.options] if isinstance(buffer, SingleSelectBuffer)
                     else [it.title for it in buffer.iterations])
            frags.append(("", "\n"))
            for idx, name in enumerate(names):
                style = "class:editor.option.cursor" if idx == buffer.selected_index else "class:editor.option"
                frags.append((style, f"  {name}  "))
                frags.append(("", "\n"))
            frags.append(("class:editor.hint", EDIT_HINTS['select']))
    elif state.mode == MODE_SWITCHING and snap is not None:
        frags.append(("class:editor.label", "Switch project:"))
        frags.append(("", "\n"))
        for idx, proj in enumerate(snap.projects):
            style = "class:editor.option.cursor" if idx == state.project_choice else "class:editor.option"
            frags.append((style, f"  #{proj.number} {proj.title}  "))
            frags.append(("", "\n"))
        frags.append(("class:editor.hint", "j/k choose • Enter load • Esc cancel"))
    elif state.mode == MODE_ADDING:
        buf = state.add_buffer
        frags.extend([
            ("class:editor.label", "New draft item: "),
            ("class:editor.entry", buf.content[:buf.cursor]),
            ("class:editor.entry class:editor.caret", buf.content[buf.cursor:buf.cursor + 1] or " "),
            ("class:editor.entry", buf.content[buf.cursor + 1:]),
            ("", "\n"),
            ("class:editor.hint", "Enter create • Esc cancel"),
        ])
    elif state.mode == MODE_ERROR:
        frags.extend([
            ("class:error", state.error),
            ("", "\n"),
            ("class:editor.hint", "Press any key to continue"),
        ])
    return frags


def build_grid_fragments(state: EditorState, width: int = 120) -> List[Tuple[str, str]]:
    """Return a list of (style, text) tuples for FormattedTextControl."""
    snap = state.snapshot
    if snap is None:
        frags: List[Tuple[str, str]] = [
            ("class:title", "Loading project…" if state.mode == MODE_LOADING else "Nothing loaded."),
            ("", " Press "), ("bold", "r"), ("", " to reload."),
        ]
        frags.extend(_editor_fragments(state))
        return frags
    project = snap.project
    frags = [
        ("class:title", project.title if project else "(no projects)"),
        ("class:meta", f"  @{snap.user.login}  {len(snap.items)} items"),
        ("", "\n\n"),
    ]
    if not snap.fields:
        frags.append(("", "This project has no fields."))
        frags.extend(_editor_fragments(state))
        return frags
    widths = _column_widths(snap)
    offset = _first_visible_column(widths, state.cursor.field, max(MIN_COL_WIDTH, width - 2))
    frags.append(("", "  "))
    for j in range(offset, len(snap.fields)):
        style = "class:table.header.cursor" if j == state.cursor.field else "class:table.header"
        frags.append((style, _pad_display(snap.fields[j].name, widths[j])))
        frags.append(("", " " * COL_GAP))
    frags.append(("", "\n"))
    for i, item in enumerate(snap.items):
        frags.append(("class:table.marker", "> " if i == state.cursor.item else "  "))
        for j in range(offset, len(snap.fields)):
            value = get_from_field(item, snap.fields[j].name)
            text = value_display(value)
            style = f"class:{value_style(value)}"
            if i == state.cursor.item and j == state.cursor.field:
                style += " class:cell.cursor"
                if state.mode == MODE_EDITING:
                    text = buffer_display(state.buffer)
            frags.append((style, _pad_display(text, widths[j])))
            frags.append(("", " " * COL_GAP))
        frags.append(("", "\n"))
    if not snap.items:
        frags.append(("", "No items. Press "))
        frags.append(("bold", "a"))
        frags.append(("", " to add a draft."))
    frags.extend(_editor_fragments(state))
    return frags


def build_status_bar(state: EditorState) -> str:
    mode = MODE_LABELS.get(state.mode, state.mode.upper())
    base = f" {mode}"
    snap = state.snapshot
    if snap is not None and snap.items:
        fld = state.current_field()
        base += f"  item {state.cursor.item + 1}/{len(snap.items)}"
        if fld is not None:
            base += f"  {fld.name}"
    if state.status_line:
        base += "  " + state.status_line
    return base


# -----------------------------
# Application
# -----------------------------
TICK_SECONDS = 0.25

# Named keys forwarded to handle_key; everything else arrives through Keys.Any.
NAMED_KEYS = ('enter', 'escape', 'up', 'down', 'left', 'right', 'backspace', 'delete', 'home', 'end')


def setup_logging(log_path: str, log_level: str = 'ERROR') -> logging.Logger:
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(log_level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


def _terminal_width() -> int:
    try:
        from prompt_toolkit.application.current import get_app
        return get_app().output.get_size().columns
    except Exception:
        return 120


def run_ui(state: EditorState) -> None:
    """Full-screen grid editor; blocks until the user quits."""
    style_map = dict(BASE_THEME_STYLE)
    style_map.update(state.config.style)
    style = Style.from_dict(style_map)

    grid_control = FormattedTextControl(text=lambda: build_grid_fragments(state, _terminal_width()))
    status_control = FormattedTextControl(text=lambda: [("class:status", build_status_bar(state))])
    root = HSplit([
        Window(content=grid_control, wrap_lines=False, always_hide_cursor=True),
        Window(height=1, content=status_control, style="class:status"),
    ])

    kb = KeyBindings()

    def _dispatch(event, key: str) -> None:
        handle_key(key, state)
        if state.exit_requested:
            event.app.exit()
        else:
            event.app.invalidate()

    def _bind(name: str) -> None:
        @kb.add(name, eager=True)
        def _(event):
            _dispatch(event, name)

    for name in NAMED_KEYS:
        _bind(name)

    @kb.add('c-c')
    def _(event):
        _dispatch(event, 'c-c')

    @kb.add(Keys.Any)
    def _(event):
        _dispatch(event, event.data)

    app = Application(layout=Layout(root), key_bindings=kb, full_screen=True, style=style)

    # Ticker: pull refresh results into the UI loop.
    async def _ticker():
        while True:
            await asyncio.sleep(TICK_SECONDS)
            try:
                if state.drain_refresh():
                    app.invalidate()
            except Exception:
                logger.exception("Applying refresh failed")

    app.create_background_task(_ticker())
    if state.refresher is not None:
        state.refresher.start()
    try:
        app.run()
    finally:
        if state.refresher is not None:
            state.refresher.stop()


def print_summary(snap: Snapshot, out=None) -> None:
    out = out or sys.stdout
    project = snap.project
    print(f"User: {snap.user.login}", file=out)
    print(f"Projects: {', '.join(p.title for p in snap.projects) or '(none)'}", file=out)
    if project is None:
        return
    print(f"Active: #{project.number} {project.title} ({len(snap.items)} items)", file=out)
    print("Fields: " + ", ".join(f"{f.name} [{f.kind or '?'}]" for f in snap.fields), file=out)
    for item in snap.items:
        cells = [f"{f.name}={value_display(get_from_field(item, f.name))}"
                 for f in snap.fields if f.kind != KIND_TITLE and f.name in item.values]
        print(f"  - [{item.type}] {item.title() or '(untitled)'}" + (f"  {'; '.join(cells)}" if cells else ""), file=out)


# -----------------------------
# CLI
# -----------------------------
def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Edit GitHub Projects (v2) fields in the terminal")
    ap.add_argument("--config", help=f"Path to YAML config (default {DEFAULT_CONFIG_PATH} if present)")
    ap.add_argument("--token-file", default=DEFAULT_TOKEN_FILE, help="Saved credential (JSON with 'token' or bare token)")
    ap.add_argument("--project", type=int, help="Open the project at this index (overrides the saved choice)")
    ap.add_argument("--no-ui", action="store_true", help="Print a summary of the active project and exit")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    args = ap.parse_args(argv)

    config_path = args.config or (DEFAULT_CONFIG_PATH if os.path.isfile(DEFAULT_CONFIG_PATH) else None)
    try:
        cfg = load_config(config_path)
    except (OSError, ValueError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(cfg.log_path, args.log_level)

    token = resolve_token(args.token_file)
    if not token:
        print("GITHUB_TOKEN is not set (env, .env, or --token-file).", file=sys.stderr)
        sys.exit(1)

    saved = load_ui_state(cfg.state_path)
    if args.project is not None:
        project_index, project_id = max(0, args.project), None
    else:
        try:
            project_index = int(saved.get('project_index') or 0)
        except (TypeError, ValueError):
            project_index = 0
        project_id = saved.get('project_id') or None

    def fetch(index: int, pid: Optional[str]) -> Snapshot:
        return fetch_snapshot(token, index, pid, owner=cfg.owner, owner_type=cfg.owner_type)

    if args.no_ui:
        try:
            snap = fetch(project_index, project_id)
        except EditorError as e:
            print(f"Load failed: {e}", file=sys.stderr)
            sys.exit(2)
        print_summary(snap)
        return

    refresher = BackgroundRefresher(fetch, interval=cfg.refresh_interval)
    state = EditorState(token, cfg, refresher=refresher, project_index=project_index, project_id=project_id)
    state.reload("Loading…")
    run_ui(state)


if __name__ == "__main__":
    main()
