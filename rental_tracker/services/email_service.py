"""Email templates, SMTP delivery and the per-day email log."""

from __future__ import annotations

import html
import json
import logging
import os
import smtplib
from dataclasses import dataclass
from datetime import date, datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any


logger = logging.getLogger("rental_tracker.email")

DEFAULT_SUBJECT_PREFIX = "[IT Equipment]"
DEFAULT_SMTP_PORT = 465
SYSTEM_SIGNATURE = "IT Equipment Rental Tracker\nThis message was sent automatically."

TEMPLATE_ALIASES = {
    "rentalRequest": "rental_request",
    "rentalApproved": "rental_approved",
    "rentalRejected": "rental_rejected",
    "returnReminder": "return_reminder",
    "overdueReminder": "overdue",
}


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool
    host: str
    port: int
    secure: bool
    user: str
    password: str
    from_addr: str
    subject_prefix: str
    log_dir: Path


def _smtp_port() -> int:
    raw = (os.environ.get("SMTP_PORT") or "").strip()
    if not raw:
        return DEFAULT_SMTP_PORT
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid SMTP_PORT %r, using %s", raw, DEFAULT_SMTP_PORT)
        return DEFAULT_SMTP_PORT


def load_email_config() -> EmailConfig:
    port = _smtp_port()
    return EmailConfig(
        enabled=_env_flag("EMAIL_ENABLED"),
        host=(os.environ.get("SMTP_HOST") or "localhost").strip(),
        port=port,
        secure=port == 465 or _env_flag("SMTP_SECURE"),
        user=(os.environ.get("SMTP_USER") or "").strip(),
        password=os.environ.get("SMTP_PASSWORD") or "",
        from_addr=(os.environ.get("EMAIL_FROM") or "noreply@localhost").strip(),
        subject_prefix=(os.environ.get("EMAIL_SUBJECT_PREFIX") or DEFAULT_SUBJECT_PREFIX).strip(),
        log_dir=Path(os.environ.get("EMAIL_LOG_DIR") or Path.cwd() / "logs"),
    )


def get_email_config_summary(config: EmailConfig | None = None) -> dict:
    config = config or load_email_config()
    return {
        "enabled": config.enabled,
        "host": config.host,
        "port": str(config.port),
        "from": config.from_addr,
        "userConfigured": bool(config.user),
        "passwordConfigured": bool(config.password),
    }


# Templates


def _format_date(value: date | datetime | str | None) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _html_rows(rows: list[tuple[str, str]]) -> str:
    return "\n".join(
        f'<tr><td style="padding: 6px 0; font-weight: bold; width: 140px;">{html.escape(label)}</td>'
        f'<td style="padding: 6px 0;">{html.escape(value)}</td></tr>'
        for label, value in rows
    )


def _wrap(title: str, intro: str, rows: list[tuple[str, str]], closing: str) -> str:
    signature = html.escape(SYSTEM_SIGNATURE).replace("\n", "<br>")
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>{html.escape(title)}</h2>"
        f"<p>{html.escape(intro)}</p>"
        f'<table style="width: 100%; border-collapse: collapse;">{_html_rows(rows)}</table>'
        f"<p>{html.escape(closing)}</p>"
        '<hr style="border: none; border-top: 1px solid #eee;">'
        f'<p style="font-size: 12px; color: #666;">{signature}</p>'
        "</div>"
    )


def _text(intro: str, rows: list[tuple[str, str]], closing: str) -> str:
    lines = [intro, ""]
    lines.extend(f"- {label}: {value}" for label, value in rows)
    lines.extend(["", closing, "", "--", SYSTEM_SIGNATURE])
    return "\n".join(lines)


def _build(prefix: str, subject: str, title: str, intro: str, rows: list[tuple[str, str]], closing: str) -> dict:
    return {
        "subject": f"{prefix} {subject}".strip(),
        "text": _text(intro, rows, closing),
        "html": _wrap(title, intro, rows, closing),
    }


def _rental_request(prefix: str, user_name: str, item_name: str, expected_return_date=None, **_: Any) -> dict:
    rows = [("Item", item_name), ("Expected return", _format_date(expected_return_date)), ("Requested by", user_name)]
    return _build(
        prefix,
        f"Rental approval requested - {item_name}",
        "Rental approval requested",
        f"{user_name} has requested to rent {item_name}.",
        rows,
        "Please sign in to the IT equipment system to approve or reject the request.",
    )


def _rental_approved(prefix: str, user_name: str, item_name: str, expected_return_date=None, **_: Any) -> dict:
    rows = [("Item", item_name), ("Expected return", _format_date(expected_return_date))]
    return _build(
        prefix,
        f"Rental approved - {item_name}",
        "Rental approved",
        f"{user_name}, your rental request for {item_name} has been approved.",
        rows,
        "Please handle the equipment with care and return it by the expected return date.",
    )


def _rental_rejected(prefix: str, user_name: str, item_name: str, reason: str | None = None, **_: Any) -> dict:
    rows = [("Item", item_name)]
    if reason:
        rows.append(("Reason", reason))
    return _build(
        prefix,
        f"Rental rejected - {item_name}",
        "Rental rejected",
        f"{user_name}, your rental request for {item_name} has been rejected.",
        rows,
        "Contact an administrator if you have any questions.",
    )


def _return_reminder(prefix: str, user_name: str, item_name: str, expected_return_date=None, days_left: int = 0, **_: Any) -> dict:
    rows = [
        ("Item", item_name),
        ("Expected return", _format_date(expected_return_date)),
        ("Days left", str(days_left)),
    ]
    return _build(
        prefix,
        f"Return reminder - {item_name} ({days_left} days left)",
        "Return reminder",
        f"{user_name}, {item_name} is due back in {days_left} day(s).",
        rows,
        "Please return the equipment by the expected return date.",
    )


def _overdue(prefix: str, user_name: str, item_name: str, expected_return_date=None, days_overdue: int = 0, **_: Any) -> dict:
    rows = [
        ("Item", item_name),
        ("Expected return", _format_date(expected_return_date)),
        ("Days overdue", str(days_overdue)),
    ]
    return _build(
        prefix,
        f"Overdue return - {item_name} ({days_overdue} days overdue)",
        "Overdue return",
        f"{user_name}, the return of {item_name} is {days_overdue} day(s) overdue.",
        rows,
        "Please return the equipment immediately.",
    )


TEMPLATES = {
    "rental_request": _rental_request,
    "rental_approved": _rental_approved,
    "rental_rejected": _rental_rejected,
    "return_reminder": _return_reminder,
    "overdue": _overdue,
}


def normalize_template_kind(kind: str) -> str:
    key = (kind or "").strip()
    key = TEMPLATE_ALIASES.get(key, key)
    if key not in TEMPLATES:
        raise ValueError(f"Unknown email template: {kind}")
    return key


def render_template(kind: str, *, subject_prefix: str | None = None, **context: Any) -> dict:
    """Render one notification kind to ``{"subject", "text", "html"}``.

    ``context`` takes ``user_name``, ``item_name`` and, depending on the
    kind, ``expected_return_date``, ``reason``, ``days_left`` or
    ``days_overdue``.
    """
    template = TEMPLATES[normalize_template_kind(kind)]
    prefix = subject_prefix if subject_prefix is not None else load_email_config().subject_prefix
    context.setdefault("user_name", "")
    context.setdefault("item_name", "")
    return template(prefix, **context)


# Delivery and log


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _log_path(log_dir: Path, log_date: date) -> Path:
    return log_dir / f"emails_{log_date.isoformat()}.json"


def _append_email_log(config: EmailConfig, entry: dict) -> None:
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        path = _log_path(config.log_dir, _now_utc().date())
        with path.open("a", encoding="utf-8") as output:
            output.write(json.dumps(entry, ensure_ascii=False) + "\n")
    except OSError as exc:
        logger.error("Failed to write email log: %s", exc)


def _build_message(config: EmailConfig, to: str, subject: str, text: str | None, html_body: str | None, from_addr: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["From"] = from_addr
    msg["To"] = to
    msg["Subject"] = subject
    if text:
        msg.attach(MIMEText(text, "plain", "utf-8"))
    if html_body:
        msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


def _deliver(config: EmailConfig, msg: MIMEMultipart, to: str) -> None:
    if not config.password:
        raise RuntimeError("SMTP password not configured")
    if config.secure:
        with smtplib.SMTP_SSL(config.host, config.port, timeout=30) as server:
            if config.user:
                server.login(config.user, config.password)
            server.send_message(msg, to_addrs=[to])
        return
    with smtplib.SMTP(config.host, config.port, timeout=30) as server:
        server.starttls()
        if config.user:
            server.login(config.user, config.password)
        server.send_message(msg, to_addrs=[to])


def send_email(
    to: str,
    subject: str,
    text: str | None = None,
    html: str | None = None,
    from_addr: str | None = None,
    config: EmailConfig | None = None,
) -> bool:
    """Send one email, or only log it when sending is disabled.

    Every attempt is appended to the day's email log. Returns False when
    delivery failed; failures are never raised.
    """
    config = config or load_email_config()
    sender = from_addr or config.from_addr
    entry: dict[str, Any] = {
        "timestamp": _now_utc().isoformat(),
        "to": to,
        "from": sender,
        "subject": subject,
        "text": text,
        "html": html,
        "sent": False,
    }

    if not config.enabled:
        logger.info("[DRY RUN] Email would be sent to %s: %s", to, subject)
        _append_email_log(config, entry)
        return True

    try:
        _deliver(config, _build_message(config, to, subject, text, html, sender), to)
    except (smtplib.SMTPException, OSError, RuntimeError) as exc:
        entry["error"] = str(exc) or exc.__class__.__name__
        _append_email_log(config, entry)
        logger.error("Failed to send email to %s: %s", to, entry["error"])
        return False

    entry["sent"] = True
    _append_email_log(config, entry)
    logger.info("Email sent successfully to %s", to)
    return True


def get_email_logs(log_date: date | None = None, config: EmailConfig | None = None) -> list[dict]:
    config = config or load_email_config()
    path = _log_path(config.log_dir, log_date or _now_utc().date())
    if not path.exists():
        return []
    entries: list[dict] = []
    try:
        raw_lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        logger.error("Failed to read email log %s: %s", path, exc)
        return []
    for line in raw_lines:
        if not line.strip():
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            entries.append(parsed)
    return entries
