"""HTML email templates, one per mail job kind.

``render_email`` is the single entry point used by the worker and by the
enqueue boundary. Unknown kinds fall through to a generic system message so
every stored job can be rendered. Bodies are Jinja2 templates with
autoescaping; subjects are plain text and built here.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

from jinja2 import DictLoader, Environment, select_autoescape
from markupsafe import Markup

from mailqueue.schemas.mail import RenderedEmail
from mailqueue.schemas.payloads import (
    MailJobKind,
    MailPayload,
    ManualPayload,
    MonthlyDigestPayload,
    OnboardingNoticePayload,
    ProbationPayload,
    parse_kind,
    parse_payload,
)
from mailqueue.templates.html_text import html_to_text

PLACEHOLDER = "-"
UNKNOWN_DAYS = "?"
NO_RECORDS = "No records"
FALLBACK_SUBJECT = "System message"

HR_CHECKLIST = (
    "Prepare the employee evaluation",
    "Decide whether the employment continues",
    "Update the records in the HR system",
)

_MACROS = """\
{% macro field_rows(rows) %}
{% for label, value in rows %}
<p><strong>{{ label }}:</strong> {{ value|placeholder }}</p>
{% endfor %}
{% endmacro %}

{% macro footer() %}
<hr>
<p><small>Generated automatically by the HR onboarding and offboarding system.</small></p>
{% endmacro %}

{% macro digest_table(items, date_header) %}
{% if items %}
<table>
<thead><tr><th>Name</th><th>Position</th><th>Department</th><th>{{ date_header }}</th></tr></thead>
<tbody>
{% for item in items %}
<tr><td>{{ item.name|placeholder }}</td><td>{{ item.position|placeholder }}</td><td>{{ item.department|placeholder }}</td><td>{{ item.date|dateformat }}</td></tr>
{% endfor %}
</tbody>
</table>
{% else %}
<p class="empty">{{ NO_RECORDS }}</p>
{% endif %}
{% endmacro %}
"""

_ONBOARDING_NOTICE = """\
{% from "_macros.html" import field_rows, footer %}
<h2>Employee onboarding notice</h2>
{{ field_rows([("Name", p.employee_name), ("Position", p.position), ("Department", p.department)]) }}
{% if p.content and p.content.strip() %}
<div><h3>Additional information</h3><p>{{ p.content|multiline }}</p></div>
{% endif %}
{{ footer() }}
"""

_PROBATION_WARNING = """\
{% from "_macros.html" import field_rows %}
<h2>Notice: probation period ending</h2>
{{ field_rows([("Employee", p.employee_name), ("Position", p.position), ("Department", p.department)]) }}
<p><strong>Probation period ends in:</strong> {{ p.days_remaining|days }}</p>
<p><strong>End date:</strong> {{ p.probation_end_date|dateformat }}</p>
<hr>
<p><strong>Actions required:</strong></p>
<ul>
{% for action in HR_CHECKLIST %}
<li>{{ action }}</li>
{% endfor %}
</ul>
"""

_PROBATION_REMINDER = """\
<h2>Your probation period</h2>
<p>Dear {{ p.employee_name|placeholder("colleague") }},</p>
<p>we would like to let you know that your probation period in the position
<strong>{{ p.position|placeholder }}</strong> ends in <strong>{{ p.days_remaining|days }}</strong>.</p>
<p><strong>Probation period end date:</strong> {{ p.probation_end_date|dateformat }}</p>
<p>If you have any questions, please contact your manager or the HR department.</p>
<hr>
<p>Kind regards,<br>HR department</p>
"""

_MONTHLY_DIGEST = """\
{% from "_macros.html" import digest_table, footer %}
<h2>Monthly summary{% if group %} ({{ group }}){% endif %}</h2>
<p><strong>Period:</strong> {{ period }}</p>
<h3>Arrivals ({{ p.onboardings|length }})</h3>
{{ digest_table(p.onboardings, "Start date") }}
<h3>Departures ({{ p.offboardings|length }})</h3>
{{ digest_table(p.offboardings, "End date") }}
{% if p.allow_resend_for_already_sent %}
<p><em>Note: some of these records were sent before and are included again on request.</em></p>
{% endif %}
{{ footer() }}
"""

_MANUAL = """\
{% from "_macros.html" import field_rows %}
{% if content %}
{{ content }}
{% else %}
<h2>Manual message</h2>
{{ field_rows([("Employee", p.employee_name), ("Position", p.position), ("Department", p.department)]) }}
{% endif %}
"""

_FALLBACK = """\
{% if content %}
{{ content }}
{% else %}
<pre>{{ dumped }}</pre>
{% endif %}
"""


def _placeholder(value: Any, default: str = PLACEHOLDER) -> str:
    if value is None:
        return default
    return str(value).strip() or default


def _multiline(text: str) -> Markup:
    return Markup("<br>").join(text.strip().splitlines())


def format_date(value: str | None) -> str:
    """Render an ISO date or datetime as dd.mm.yyyy; unparseable input is echoed."""
    if not value or not value.strip():
        return PLACEHOLDER
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    return parsed.strftime("%d.%m.%Y")


def days_label(days: int | None) -> str:
    if days is None:
        return f"{UNKNOWN_DAYS} days"
    return f"{days} day" if abs(days) == 1 else f"{days} days"


_env = Environment(
    loader=DictLoader({
        "_macros.html": _MACROS,
        "onboarding_notice.html": _ONBOARDING_NOTICE,
        "probation_warning.html": _PROBATION_WARNING,
        "probation_reminder.html": _PROBATION_REMINDER,
        "monthly_digest.html": _MONTHLY_DIGEST,
        "manual.html": _MANUAL,
        "fallback.html": _FALLBACK,
    }),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.filters.update(placeholder=_placeholder, multiline=_multiline, dateformat=format_date, days=days_label)
_env.globals.update(NO_RECORDS=NO_RECORDS, HR_CHECKLIST=HR_CHECKLIST)


def _render(template: str, **context: Any) -> str:
    return _env.get_template(template).render(**context)


def _plain(value: Any) -> str:
    """Single-line text for subjects."""
    return " ".join(str(value or "").split())


def _with_name(label: str, name: Any) -> str:
    name = _plain(name)
    return f"{label} - {name}" if name else label


def _subject(payload: MailPayload, default: str) -> str:
    return _plain(payload.subject) or _plain(default) or FALLBACK_SUBJECT


def build_onboarding_notice(payload: OnboardingNoticePayload) -> tuple[str, str]:
    subject = _subject(payload, _with_name("Onboarding notice", payload.employee_name))
    return subject, _render("onboarding_notice.html", p=payload)


def build_probation_warning(payload: ProbationPayload) -> tuple[str, str]:
    """Message to HR: a probation period is about to end."""
    default_subject = _with_name(
        f"Probation period ends in {days_label(payload.days_remaining)}", payload.employee_name
    )
    return _subject(payload, default_subject), _render("probation_warning.html", p=payload)


def build_probation_reminder(payload: ProbationPayload) -> tuple[str, str]:
    """Message to the employee about their own probation period."""
    subject = _subject(payload, f"Your probation period ends in {days_label(payload.days_remaining)}")
    return subject, _render("probation_reminder.html", p=payload)


def build_monthly_digest(payload: MonthlyDigestPayload) -> tuple[str, str]:
    period = f"{_plain(payload.month)}/{_plain(payload.year)}"
    group = _plain(payload.group).lower()
    body = _render(
        "monthly_digest.html",
        p=payload,
        period=period,
        group=group if group in {"planned", "actual"} else None,
    )
    return _subject(payload, f"Monthly summary {period}"), body


def build_manual(payload: ManualPayload) -> tuple[str, str]:
    subject = _subject(payload, _with_name("Manual message", payload.employee_name))
    content = None
    if payload.content and payload.content.strip():
        # Operator-authored HTML, sent as written.
        content = Markup(payload.content)
    return subject, _render("manual.html", p=payload, content=content)


def build_fallback(payload: Any) -> tuple[str, str]:
    """System message for unknown kinds: the payload as readable JSON."""
    subject = FALLBACK_SUBJECT
    content = None
    if isinstance(payload, dict):
        subject = _plain(payload.get("subject")) or FALLBACK_SUBJECT
        if isinstance(payload.get("content"), str) and payload["content"].strip():
            content = Markup(payload["content"])
    dumped = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False, default=str)
    return subject, _render("fallback.html", content=content, dumped=dumped)


_BUILDERS: dict[MailJobKind, Callable[[Any], tuple[str, str]]] = {
    MailJobKind.ONBOARDING_NOTICE: build_onboarding_notice,
    MailJobKind.PROBATION_WARNING: build_probation_warning,
    MailJobKind.PROBATION_REMINDER: build_probation_reminder,
    MailJobKind.MONTHLY_DIGEST: build_monthly_digest,
    MailJobKind.MANUAL: build_manual,
}


def render_email(kind: str | None, payload: Any) -> RenderedEmail:
    """Render subject, HTML and plain-text bodies for a job.

    Raises :class:`pydantic.ValidationError` only when a known kind carries a
    field of the wrong type; missing fields render as placeholders.
    """
    known = parse_kind(kind)
    if known is None:
        subject, body = build_fallback(payload)
        supplied_text = payload.get("text") if isinstance(payload, dict) else None
    else:
        parsed = parse_payload(known, payload)
        subject, body = _BUILDERS[known](parsed)
        supplied_text = parsed.text

    body = body.strip()
    if isinstance(supplied_text, str) and supplied_text.strip():
        text = supplied_text.strip()
    else:
        text = html_to_text(body)
    return RenderedEmail(subject=subject, html=body, text=text)
