import logging
from typing import Optional

import requests

from pg_transfer.ImportJob import ImportJob, TransferOutcome

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)

def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    # Keep a small suffix to show truncation
    return text[: limit - 20] + "\n… (truncated)"

def send_alert(message: str, webhook_url: str, username: Optional[str] = "Data Transfer Alert") -> bool:
    """
    Post a message to a Discord-compatible webhook. Never raises: alerting must not
    take the scheduler down. Discord answers 204 (or 200 with '?wait=true').
    """
    if not webhook_url:
        log.debug("No alert webhook configured, skipping alert.")
        return False

    payload = {"content": _truncate_for_discord(message), "username": username}
    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.error("Exception while sending alert: %s", e, exc_info=True)
        return False

    if response.status_code in (200, 204):
        log.info("Alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send alert: status=%s body=%s", response.status_code, response.text)
    return False

def format_failure(job: ImportJob, outcome: TransferOutcome) -> str:
    header = f"❗️ **Import failed**: `{job.name}` (id {job.import_id}) → `{job.to_table}`"
    if not outcome.foreign_keys_restored:
        header = f"🚨 **Foreign keys NOT restored** on `{job.to_table}`\n" + header
    lines = [
        header,
        f"- Rows committed before failure: {outcome.rows_transferred}",
        f"- Elapsed: {outcome.duration}s",
    ]
    if outcome.error is not None:
        lines.append(f"- Error: {type(outcome.error).__name__}: {outcome.error}")
    return "\n".join(lines)
