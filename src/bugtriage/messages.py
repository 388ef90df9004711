"""
Exception Message Filtering

Two jobs, both run before anything is persisted:

- Templating: reduce a message to a form shared by every occurrence of the
  same bug ("Duplicate entry '[STRING]' for key '[STRING]'"). Placeholders
  always look like "[ALL CAPS IN BRACKETS]".
- PII redaction: strip e-mail addresses, phone numbers and card/account
  numbers from occurrence messages and request data.

Templates come from a YAML file keyed by exception class name.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Pattern, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "data" / "message_templates.yml"

# Generic placeholders applied when no template matches, in order
GENERIC_REPLACEMENTS: List[Tuple[Pattern, str]] = [
    (re.compile(r"#<([^\s]+) (\w+: .+?(, )?)+>"), r"#<\1 [ATTRIBUTES]>"),  # #<Project id: 1, foo: bar>
    (re.compile(r"#<([^\s]+) .+?>"), r"#<\1 [DESCRIPTION]>"),  # #<Net::HTTP www.apple.com:80 open=true>
    (re.compile(r"#<(.+?):0x[0-9a-f]+>"), r"#<\1:[ADDRESS]>"),  # #<Object:0x007fedfa0aa920>
    (re.compile(r"<(\w[\w.]*) object at 0x[0-9a-fA-F]+>"), r"<\1 object at [ADDRESS]>"),
    (re.compile(r"\b[0-9a-f]{40}\b"), "[SHA1]"),
    (re.compile(r"\b\d+\.\d+\.\d+\.\d+\b"), "[IPv4]"),
    (re.compile(r"\b-?\d+(\.\d+)?\b"), "[NUMBER]"),  # 42.24 or 42 or -42
]

EMAIL_PATTERN = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,4}\b", re.IGNORECASE)
PHONE_PATTERN = re.compile(
    r"\b(?:(?:\+?1\s*(?:[.-]\s*)?)?(?:\(\s*([2-9]1[02-9]|[2-9][02-8]1|[2-9][02-8][02-9])\s*\)"
    r"|([2-9]1[02-9]|[2-9][02-8]1|[2-9][02-8][02-9]))\s*(?:[.-]\s*)?)?"
    r"([2-9]1[02-9]|[2-9][02-9]1|[2-9][02-9]{2})\s*(?:[.-]\s*)?([0-9]{4})"
    r"(?:\s*(?:#|x\.?|ext\.?|extension)\s*(\d+))?\b"
)
ACCOUNT_NUMBER_PATTERN = re.compile(r"\b[0-9][0-9\-]{6,}[0-9]\b")

# Occurrence request data filtered for PII
PII_SCALAR_FIELDS = ("query", "path", "fragment")
PII_MAP_FIELDS = ("session", "headers", "flash", "params", "cookies", "ivars")

# Keys of structured (inspected) values that describe the value rather than hold it
STRUCTURE_KEYS = frozenset({"language", "class_name"})

TemplateEntry = Union[str, List[str]]


class MessageTemplateMatcher:
    """Matches exception messages against per-class templates.

    Example:
        matcher = MessageTemplateMatcher.from_yaml()
        matcher.sanitized_message("Mysql::Error", "Duplicate entry 'a@b.c' for key 'email': UPDATE ...")
        # -> "Duplicate entry '[STRING]' for key '[STRING]'"
    """

    def __init__(self, templates: Optional[Dict[str, Any]] = None):
        self._templates: Dict[str, List[TemplateEntry]] = {}
        for class_name, entries in (templates or {}).items():
            if isinstance(entries, str):
                entries = [entries]
            self._templates[class_name] = list(entries or [])
        self._compiled: Dict[str, Pattern] = {}

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> "MessageTemplateMatcher":
        template_path = Path(path) if path else DEFAULT_TEMPLATES_PATH
        with open(template_path, encoding="utf-8") as f:
            templates = yaml.safe_load(f) or {}
        logger.debug(f"[Messages] Loaded templates for {len(templates)} exception classes from {template_path}")
        return cls(templates)

    def matched_substring(self, class_name: str, message: str) -> str:
        """
        Return only the error portion of a message, or the message unchanged.

        For "Duplicate entry 'foo@example.com' for key 'index_users_on_email':
        UPDATE `users` SET ..." this returns "Duplicate entry 'foo@example.com'
        for key 'index_users_on_email'", dropping the query and whatever PII it
        carried.
        """
        for pattern, _ in self._iter_templates(class_name):
            match = pattern.search(message)
            if match:
                return match.group(0)
        return message

    def sanitized_message(self, class_name: str, message: str) -> Optional[str]:
        """Return the template replacement for a matching message, or None."""
        for pattern, replacement in self._iter_templates(class_name):
            if pattern.search(message):
                return replacement
        return None

    def _iter_templates(self, class_name: str, seen: Optional[set] = None) -> Iterator[Tuple[Pattern, str]]:
        seen = seen if seen is not None else set()
        if class_name in seen:
            return
        seen.add(class_name)

        for entry in self._templates.get(class_name, []):
            if isinstance(entry, str):
                # Reference to another class's templates
                yield from self._iter_templates(entry, seen)
            elif isinstance(entry, (list, tuple)) and len(entry) == 2:
                yield self._pattern(entry[0]), entry[1]

    def _pattern(self, source: str) -> Pattern:
        if source not in self._compiled:
            self._compiled[source] = re.compile(source)
        return self._compiled[source]


def filter_message(matcher: MessageTemplateMatcher, class_name: str, message: str) -> str:
    """Reduce a message to the template its bug is filed under."""
    template = matcher.sanitized_message(class_name, message)
    if template is not None:
        return template

    for pattern, replacement in GENERIC_REPLACEMENTS:
        message = pattern.sub(replacement, message)
    return message


def truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def filter_pii_string(value: str) -> str:
    value = EMAIL_PATTERN.sub("[EMAIL?]", value)
    value = PHONE_PATTERN.sub("[PHONE?]", value)
    return ACCOUNT_NUMBER_PATTERN.sub("[CC/BANK?]", value)


def filter_pii_param(param: Any) -> Any:
    """Filter a request parameter, either a plain string or an inspected-value map."""
    if isinstance(param, str):
        return filter_pii_string(param)
    if isinstance(param, dict):
        return {
            key: filter_pii_string(value) if isinstance(value, str) and key not in STRUCTURE_KEYS else value
            for key, value in param.items()
        }
    return param


def redact_occurrence(occurrence, class_name: str, matcher: MessageTemplateMatcher) -> None:
    """Strip PII from an unsaved occurrence's message, request data and parent exceptions."""
    occurrence.message = filter_pii_string(matcher.matched_substring(class_name, occurrence.message))

    extra = dict(occurrence.extra or {})
    for field in PII_SCALAR_FIELDS:
        if isinstance(extra.get(field), str):
            extra[field] = filter_pii_string(extra[field])
    for field in PII_MAP_FIELDS:
        if isinstance(extra.get(field), dict):
            extra[field] = {name: filter_pii_param(value) for name, value in extra[field].items()}
    occurrence.extra = extra

    if occurrence.parent_exceptions:
        parents = []
        for parent in occurrence.parent_exceptions:
            parent = dict(parent)
            if isinstance(parent.get("message"), str):
                parent["message"] = filter_pii_string(
                    matcher.matched_substring(parent.get("class_name", ""), parent["message"])
                )
            if isinstance(parent.get("ivars"), dict):
                parent["ivars"] = {name: filter_pii_param(value) for name, value in parent["ivars"].items()}
            parents.append(parent)
        occurrence.parent_exceptions = parents
