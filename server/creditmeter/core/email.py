from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from email.utils import formataddr, parseaddr

import requests
from markupsafe import escape

from server.creditmeter.core.config import Settings

_ACCENT = "#1f4e79"
_INK = "#14212b"
_MUTED = "#5f6b72"
_PAGE = "#eef2f5"

_SENDER_NAME = "Credit Meter"


def _link(settings: Settings, path: str) -> str:
    origin = (settings.public_origin or "").strip().rstrip("/")
    return f"{origin}/{path.lstrip('/')}" if origin else path


def format_money(amount_cents: int, currency: str) -> str:
    cents = int(amount_cents)
    label = (currency or "usd").upper()
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    amount = f"{whole:,}.{frac:02d}"
    return f"{sign}${amount}" if label == "USD" else f"{sign}{amount} {label}"


def _sender(raw: str) -> str:
    _name, address = parseaddr((raw or "").strip())
    return formataddr((_SENDER_NAME, address)) if address else ""


def _day(ts: dt.datetime) -> str:
    ts = ts if ts.tzinfo else ts.replace(tzinfo=dt.UTC)
    return f"{ts:%b} {ts.day}, {ts.year}"


def _render(*, heading: str, rows: list[tuple[str, str]], intro: str, footer: str, action: tuple[str, str]) -> str:
    cells = "".join(
        f'<tr><td style="padding:4px 12px 4px 0; color:{_MUTED};">{label}</td>'
        f'<td style="padding:4px 0; font-weight:600;">{value}</td></tr>'
        for label, value in rows
    )
    action_label, action_url = action
    return (
        "<!doctype html>"
        f'<html lang="en"><head><meta charset="utf-8" /><title>{heading}</title></head>'
        f'<body style="margin:0; padding:32px 16px; background:{_PAGE}; font-family:Arial, sans-serif; color:{_INK};">'
        '<div style="max-width:560px; margin:0 auto; background:#ffffff; border-radius:12px; padding:28px;">'
        f'<div style="font-size:13px; font-weight:600; color:{_ACCENT}; text-transform:uppercase;">{_SENDER_NAME}</div>'
        f'<h1 style="margin:8px 0 16px; font-size:22px;">{heading}</h1>'
        f'<p style="margin:0 0 16px; line-height:1.6;">{intro}</p>'
        f'<table role="presentation" cellspacing="0" cellpadding="0">{cells}</table>'
        f'<p style="margin:20px 0 0;"><a href="{action_url}" style="color:{_ACCENT};">{action_label}</a></p>'
        f'<p style="margin:24px 0 0; font-size:12px; color:{_MUTED};">{footer}</p>'
        "</div></body></html>"
    )


@dataclass
class MailgunClient:
    api_key: str
    domain: str
    sender: str
    base_url: str
    timeout_seconds: float

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.domain and _sender(self.sender))

    def send_message(self, *, to_email: str, subject: str, text: str, html: str | None = None) -> None:
        if not self.configured:
            raise ValueError("Mailgun settings are missing.")
        payload = {"from": _sender(self.sender), "to": to_email, "subject": subject, "text": text}
        if html:
            payload["html"] = html
        resp = requests.post(
            f"{self.base_url.rstrip('/')}/{self.domain}/messages",
            auth=("api", self.api_key),
            data=payload,
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()


def mailgun_client(settings: Settings) -> MailgunClient:
    return MailgunClient(
        api_key=settings.mailgun_api_key,
        domain=settings.mailgun_domain,
        sender=settings.mailgun_sender,
        base_url=settings.mailgun_base_url,
        timeout_seconds=settings.api_timeout_seconds,
    )


def send_overage_email(
    settings: Settings,
    *,
    to_email: str,
    workspace_name: str,
    usage: int,
    limit: int,
    overage_units: int,
    amount_cents: int,
    currency: str,
    period_start: dt.datetime,
    period_end: dt.datetime,
) -> None:
    charge = format_money(amount_cents, currency)
    period = f"{_day(period_start)} to {_day(period_end)}"
    name = workspace_name or "your workspace"
    usage_url = _link(settings, "/billing/usage")

    text = (
        f"{name} used {usage:,} credits between {period}.\n"
        f"The plan includes {limit:,} credits, so {overage_units:,} credits were billed as overage.\n\n"
        f"Overage charge: {charge}\n\n"
        f"Usage details: {usage_url}"
    )
    html = _render(
        heading="Plan limit exceeded",
        intro=f"{escape(name)} used <strong>{usage:,}</strong> credits between {period}.",
        rows=[
            ("Plan limit", f"{limit:,} credits"),
            ("Overage", f"{overage_units:,} credits"),
            ("Charge", charge),
        ],
        action=("View usage", str(escape(usage_url))),
        footer="The charge appears on your next invoice.",
    )
    mailgun_client(settings).send_message(
        to_email=to_email,
        subject=f"Overage charge of {charge} for {name}",
        text=text,
        html=html,
    )
