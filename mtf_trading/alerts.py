# mtf_trading/alerts.py
"""
Notification Service

Sends templated trading notifications:
- Entry signals (confirmed ENTRY only, never WATCHLIST)
- Exits (RSI reversal, stop loss, trailing stop)
- Trailing-level raises
- Critical alerts (monitor degraded, trading halted)

Messages are rendered from jinja2 templates in mtf_trading/templates and
delivered over Gmail SMTP. Notifications go out once per confirmed event,
after the scan or monitoring pass, never from inside a retry loop.
"""

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader

from . import config
from .models import EntrySignalResult, ExitSignal, SignalType
from .utils import (
    format_currency,
    format_datetime_for_display,
    format_percentage,
    get_ist_now,
    log_audit_event,
)

logger = logging.getLogger(__name__)


def clean_recipient(raw: Optional[str]) -> Optional[str]:
    """Strip quotes/whitespace and take the first of a comma or semicolon list."""
    if not raw:
        return None
    recipient = raw.strip().strip('"').strip("'").strip()
    for separator in (',', ';'):
        if separator in recipient:
            recipient = recipient.split(separator)[0].strip()
    if '@' not in recipient or ' ' in recipient:
        logger.error(f"Invalid recipient email format: '{recipient}'")
        return None
    return recipient


def smtp_transport(recipient: str, subject: str, body: str) -> None:
    """Deliver one plain-text message through Gmail SMTP."""
    if not config.GMAIL_USER or not config.GMAIL_APP_PASSWORD:
        raise RuntimeError("GMAIL_USER / GMAIL_APP_PASSWORD not configured")

    msg = MIMEText(body, 'plain', 'utf-8')
    msg['Subject'] = subject
    msg['From'] = config.GMAIL_USER
    msg['To'] = recipient

    with smtplib.SMTP_SSL('smtp.gmail.com', 465) as server:
        server.login(config.GMAIL_USER, config.GMAIL_APP_PASSWORD)
        server.sendmail(config.GMAIL_USER, recipient, msg.as_string())


class NotificationService:
    """
    Renders and sends trading notifications.

    Usage:
        notifier = NotificationService()
        notifier.send_exit_notifications(summary['exit_signals'])
    """

    def __init__(
        self,
        recipients: Optional[List[str]] = None,
        transport: Callable[[str, str, str], None] = smtp_transport,
        template_dir: str = config.TEMPLATE_DIR,
        enabled: bool = config.ALERTS_ENABLED
    ):
        if recipients is None:
            default = clean_recipient(config.RECIPIENT_EMAIL)
            recipients = [default] if default else []
        self.recipients = recipients
        self.transport = transport
        self.enabled = enabled

        self.env = Environment(loader=FileSystemLoader(template_dir))
        self.env.filters['rupees'] = format_currency
        self.env.filters['pct'] = format_percentage

    def render(self, template_name: str, **context: Any) -> str:
        tmpl = self.env.get_template(template_name)
        return tmpl.render(date=format_datetime_for_display(get_ist_now()), **context)

    def send(self, recipient: str, message: str, subject: str = 'MTF Trading Alert') -> bool:
        """
        Send one message to one recipient.

        Returns:
            True if delivered; failures are logged and audited, not raised
        """
        if not self.enabled:
            logger.info(f"Alerts disabled - not sending: {subject}")
            return False

        try:
            self.transport(recipient, subject, message)
        except (smtplib.SMTPException, OSError, RuntimeError) as e:
            logger.error(f"❌ Failed to send alert '{subject}' to {recipient}: {e}")
            log_audit_event('ALERT_FAILED', {
                'subject': subject,
                'recipient': recipient,
                'error': str(e)
            }, outcome='ERROR')
            return False

        log_audit_event('ALERT_SENT', {'subject': subject, 'recipient': recipient})
        logger.info(f"✅ Alert sent: {subject}")
        return True

    def broadcast(self, message: str, subject: str, recipients: Optional[List[str]] = None) -> int:
        """Send to every recipient; returns the number delivered."""
        targets = recipients if recipients is not None else self.recipients
        if not targets:
            logger.warning(f"⚠️ No recipients configured for: {subject}")
            return 0
        return sum(1 for recipient in targets if self.send(recipient, message, subject))

    # =========================================================================
    # Trading notifications
    # =========================================================================

    def send_entry_notifications(
        self,
        signals: List[EntrySignalResult],
        recipients: Optional[List[str]] = None,
        orders: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> int:
        """One message per confirmed ENTRY signal."""
        sent = 0
        for signal in signals:
            if signal.signal != SignalType.ENTRY:
                continue
            message = self.render(
                'entry_signal.txt',
                signal=signal,
                order=(orders or {}).get(signal.symbol)
            )
            subject = f"🎯 MTF Entry: {signal.symbol} @ {format_currency(signal.current_price)}"
            sent += self.broadcast(message, subject, recipients)
        return sent

    def send_exit_notifications(
        self,
        exit_signals: List[ExitSignal],
        recipients: Optional[List[str]] = None
    ) -> int:
        sent = 0
        for exit_signal in exit_signals:
            message = self.render('exit_signal.txt', exit=exit_signal)
            subject = (
                f"🚨 MTF Exit: {exit_signal.symbol} "
                f"{exit_signal.exit_type.value} ({format_percentage(exit_signal.pnl_percentage)})"
            )
            sent += self.broadcast(message, subject, recipients)
        return sent

    def send_trailing_level_notifications(
        self,
        notifications: List[Dict[str, Any]],
        recipients: Optional[List[str]] = None
    ) -> int:
        sent = 0
        for notification in notifications:
            message = self.render('trailing_level.txt', n=notification)
            subject = f"📈 {notification['symbol']} Level {notification['new_level']} - profit locked"
            sent += self.broadcast(message, subject, recipients)
        return sent

    def send_critical_alert(self, title: str, details: str) -> int:
        """Unformatted critical alert (degraded monitor, trading halted)."""
        message = f"🚨 {title}\n\n{details}\n\n{format_datetime_for_display(get_ist_now())}"
        return self.broadcast(message, f"🚨 CRITICAL: {title}")


def create_notification_service(recipients: Optional[List[str]] = None) -> NotificationService:
    """Create a notification service for the configured recipients."""
    return NotificationService(recipients=recipients)
