"""Message formatters for release alert notifications.

Provides formatters for:
- Generic webhooks (JSON payload)
- Log/plain text delivery
"""

from typing import Any, Dict

from catalog_monitor.db.models import Alert, AlertType, DetectedRelease


def format_alert_payload(alert: Alert, release: DetectedRelease) -> Dict[str, Any]:
    """
    Build the JSON payload describing an alert and its release.

    Args:
        alert: Alert being delivered
        release: Detected release the alert is about

    Returns:
        Payload dict (action URLs are attached by the notifier)
    """
    return {
        "alert_id": alert.id,
        "alert_type": alert.alert_type,
        "creator_id": release.creator_id,
        "release": {
            "id": release.id,
            "provider_id": release.provider_id,
            "external_release_id": release.external_release_id,
            "title": release.title,
            "release_type": release.release_type,
            "release_date": release.release_date.isoformat() if release.release_date else None,
            "artwork_ref": release.artwork_ref,
            "track_count": release.track_count,
            "upc": release.upc,
            "first_detected_at": release.first_detected_at.isoformat() + "Z",
            "was_removed": release.was_removed,
        },
    }


def format_text(payload: Dict[str, Any], action_urls: Dict[str, str]) -> str:
    """Format a payload as a short plain text message."""
    release = payload["release"]
    if payload.get("alert_type") == AlertType.REMINDER:
        heading = "Reminder: unconfirmed release"
    else:
        heading = "New release detected"

    lines = [
        f"{heading} on {release['provider_id']}: {release['title']}",
    ]
    if release.get("release_date"):
        lines.append(f"Release date: {release['release_date']}")
    if release.get("release_type"):
        lines.append(f"Type: {release['release_type']}")
    for action, url in sorted(action_urls.items()):
        lines.append(f"{action.capitalize()}: {url}")
    return "\n".join(lines)
