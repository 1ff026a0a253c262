from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any, Mapping

from notifyrelay.domain.notifications import NotificationEvent, NotificationTemplate


_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}\}")
_ANY_PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_PATH_RE = re.compile(r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*")
_MISSING = object()

# Applied in order; earlier patterns take the most specific secrets first.
_SENSITIVE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "[REDACTED_JWT]"),
    (re.compile(r"AKIA[0-9A-Z]{16}"), "[REDACTED_AWS_KEY]"),
    (re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"password[\"\s:=]+[^\s\"]+", re.IGNORECASE), "password=[REDACTED]"),
    (re.compile(r"api[_-]?key[\"\s:=]+[^\s\"]+", re.IGNORECASE), "api_key=[REDACTED]"),
    (re.compile(r"secret[_-]?key[\"\s:=]+[^\s\"]+", re.IGNORECASE), "secret_key=[REDACTED]"),
    (re.compile(r"\b[A-Za-z0-9]{40,}\b"), "[REDACTED_TOKEN]"),
)


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    body: str


def _lookup(values: Mapping[str, Any], path: str) -> Any:
    current: Any = values
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _format_value(value: Any) -> str:
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set, frozenset)):
        return ", ".join(_format_value(item) for item in value)
    if isinstance(value, Mapping):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _substitute(values: Mapping[str, Any], match: re.Match[str]) -> str:
    path = match.group(1).strip()
    if not _PATH_RE.fullmatch(path):
        return ""
    return _format_value(_lookup(values, path))


def render_text(template: str, values: Mapping[str, Any]) -> str:
    # Every {{...}} span renders, unresolved or malformed ones as empty text; never raises.
    return _ANY_PLACEHOLDER_RE.sub(lambda match: _substitute(values, match), template)


def filter_sensitive_data(content: str) -> str:
    if not content:
        return ""
    filtered = content
    for pattern, replacement in _SENSITIVE_PATTERNS:
        filtered = pattern.sub(replacement, filtered)
    return filtered


def render_values(event: NotificationEvent) -> dict[str, Any]:
    # Event fields are available alongside context; context wins on collisions.
    base: dict[str, Any] = {
        "eventId": event.event_id,
        "eventType": event.event_type,
        "userId": event.user_id,
        "projectId": event.project_id,
        "timestamp": event.created_at.isoformat(),
    }
    base.update(event.context)
    return base


def render_template(
    template: NotificationTemplate,
    values: Mapping[str, Any],
    *,
    redact: bool = True,
) -> RenderedContent:
    subject = render_text(template.subject_template, values)
    body = render_text(template.body_template, values)
    if redact:
        subject = filter_sensitive_data(subject)
        body = filter_sensitive_data(body)
    return RenderedContent(subject=subject, body=body)


def validate_template(template: NotificationTemplate) -> list[str]:
    # Return problems instead of raising so seeding can report every issue at once.
    problems: list[str] = []
    if not template.body_template.strip():
        problems.append("body_template is required")
    for field_name, text in (("subject_template", template.subject_template), ("body_template", template.body_template)):
        if text.count("{{") != text.count("}}"):
            problems.append(f"{field_name} has unbalanced braces")
        leftover = _PLACEHOLDER_RE.sub("", text)
        if "{{" in leftover:
            problems.append(f"{field_name} has an invalid placeholder")
    return problems
