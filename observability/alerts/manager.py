"""
Alert Manager
=============

Raises alerts for replication problems that need a human: opened circuits
and tables stopped by configuration errors.

Supports:
- Severity levels
- Alert deduplication within a time window
- Slack notifications (incoming webhook)
"""

import hashlib
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class AlertManager:
    """
    Keeps recent alerts in memory, logs every alert and forwards it to Slack
    when a webhook is configured. Notification failures never propagate.
    """

    # Alert severity levels
    SEVERITY_LEVELS = {
        "info": 0,
        "warning": 1,
        "error": 2,
        "critical": 3
    }

    ALERT_TYPES = [
        "circuit_open",
        "configuration_error",
        "pipeline_failure",
        "system_error"
    ]

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        dedup_window_minutes: int = 60,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Alert Manager.

        Args:
            slack_webhook_url: Slack incoming webhook URL
            dedup_window_minutes: Window for alert deduplication
            session: HTTP session used for notifications
        """
        self.slack_webhook_url = slack_webhook_url
        self.dedup_window_minutes = dedup_window_minutes
        self.session = session or requests.Session()

        self._alerts: List[Dict] = []
        self._last_seen: Dict[str, datetime] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _generate_dedup_key(
        self,
        alert_type: str,
        source: str,
        title: str
    ) -> str:
        """Generate deduplication key for an alert."""
        key_string = f"{alert_type}:{source}:{title}"
        return hashlib.sha256(key_string.encode()).hexdigest()[:32]

    def _is_duplicate(self, dedup_key: str, now: datetime) -> bool:
        last = self._last_seen.get(dedup_key)
        return last is not None and now - last < timedelta(minutes=self.dedup_window_minutes)

    # =========================================
    # ALERT CREATION
    # =========================================

    def send_alert(
        self,
        severity: str,
        title: str,
        message: str,
        alert_type: str = "system_error",
        source: str = "replication",
        metadata: Optional[Dict] = None,
        notify: bool = True,
        dedup: bool = True
    ) -> Optional[int]:
        """
        Create and send an alert.

        Args:
            severity: info, warning, error, critical
            title: Alert title
            message: Alert message/description
            alert_type: Type of alert
            source: Table key or component raising the alert
            metadata: Additional context
            notify: Whether to send notifications
            dedup: Whether to check for duplicates

        Returns:
            Alert ID if created, None if deduplicated
        """
        severity = severity.lower()
        if severity not in self.SEVERITY_LEVELS:
            severity = "warning"

        dedup_key = self._generate_dedup_key(alert_type, source, title)
        now = datetime.now(timezone.utc)

        with self._lock:
            if dedup and self._is_duplicate(dedup_key, now):
                logger.debug(f"Alert deduplicated: {title}")
                return None

            alert_id = self._next_id
            self._next_id += 1
            self._last_seen[dedup_key] = now
            self._alerts.append({
                "alert_id": alert_id,
                "alert_type": alert_type,
                "severity": severity,
                "source": source,
                "title": title,
                "message": message,
                "metadata": dict(metadata or {}, dedup_key=dedup_key),
                "created_at": now.isoformat(),
            })

        logger.warning(f"Alert created [{severity.upper()}]: {title} ({source})")

        if notify and self.slack_webhook_url:
            self._send_slack_notification(severity, title, message, alert_type, source, alert_id)

        return alert_id

    def get_alerts(self, source: Optional[str] = None) -> List[Dict]:
        """Alerts raised so far, optionally for one source."""
        with self._lock:
            return [dict(a) for a in self._alerts if source is None or a["source"] == source]

    # =========================================
    # NOTIFICATION CHANNELS
    # =========================================

    def _send_slack_notification(
        self,
        severity: str,
        title: str,
        message: str,
        alert_type: str,
        source: str,
        alert_id: int
    ):
        """Send notification to Slack."""
        colors = {
            "info": "#36a64f",
            "warning": "#ffcc00",
            "error": "#ff6600",
            "critical": "#ff0000"
        }

        emojis = {
            "info": ":information_source:",
            "warning": ":warning:",
            "error": ":x:",
            "critical": ":rotating_light:"
        }

        payload = {
            "attachments": [{
                "color": colors.get(severity, "#808080"),
                "blocks": [
                    {
                        "type": "header",
                        "text": {
                            "type": "plain_text",
                            "text": f"{emojis.get(severity, '')} [{severity.upper()}] {title}"
                        }
                    },
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": message
                        }
                    },
                    {
                        "type": "context",
                        "elements": [
                            {
                                "type": "mrkdwn",
                                "text": f"*Source:* {source} | *Type:* {alert_type} | *ID:* {alert_id}"
                            }
                        ]
                    }
                ]
            }]
        }

        try:
            response = self.session.post(
                self.slack_webhook_url,
                json=payload,
                timeout=10
            )
            if response.status_code == 200:
                logger.debug("Slack notification sent")
            else:
                logger.warning(f"Slack notification failed: {response.status_code}")
        except requests.RequestException as e:
            logger.error(f"Slack notification error: {e}")
