import logging
import os
from typing import Any, Dict, Optional

import requests

from pg_partialcopy.errors import PartialCopyError

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # max characters in a webhook message "content"
TRUNCATION_MARK = "\n… (truncated)"
WEBHOOK_ENV = "PG_PARTIALCOPY_DISCORD_WEBHOOK"
# 200 with ?wait=true, 204 otherwise
DISCORD_OK = (200, 204)

def _fit_message(text: str, limit: int = DISCORD_LIMIT) -> str:
    """Cut ``text`` at a line boundary when possible so that it fits in one message."""
    if len(text) <= limit:
        return text
    head = text[: limit - len(TRUNCATION_MARK)]
    if "\n" in head:
        head = head[: head.rindex("\n")]
    return head + TRUNCATION_MARK

def format_failure(err: BaseException, config_name: str = "") -> str:
    """Human-readable alert body for a failed run."""
    where = f" `{config_name}`" if config_name else ""
    lines = [f"❗️ **Partial copy failed**{where}", f"- Error: {err}"]
    if isinstance(err, PartialCopyError):
        if err.phase:
            lines.append(f"- Phase: {err.phase}")
        if err.constraints_missing:
            lines.append("- Foreign keys NOT restored; recreate them with:")
            lines.extend(f"  `{cmd}`" for cmd in err.pending_constraints)
    return "\n".join(lines)

def send_discord_alert(message: str, webhook_url: Optional[str] = None,
                       username: Optional[str] = "Partial Copy Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Post ``message`` to a Discord webhook, taken from ``webhook_url`` or the
    PG_PARTIALCOPY_DISCORD_WEBHOOK environment variable. Returns whether
    Discord accepted it. Delivery problems are logged and never raised.
    """
    url = webhook_url or os.environ.get(WEBHOOK_ENV, "")
    if not url:
        log.warning("Discord alert skipped: neither webhook_url nor %s is set", WEBHOOK_ENV)
        return False

    payload: Dict[str, Any] = {"content": _fit_message(message), "username": username}
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(url, json=payload, timeout=10)
    except requests.RequestException:
        log.warning("Discord alert could not be delivered", exc_info=True)
        return False

    if response.status_code not in DISCORD_OK:
        log.error("Discord rejected alert: status=%s body=%s", response.status_code, response.text)
        return False
    log.info("Discord alert delivered (status %s)", response.status_code)
    return True
