"""
Shared constants for courier.

Values used by more than one module (store adapters, listener, transports).
"""

# ── Change-notification channel ─────────────────────────────────────────────────
DEFAULT_NOTIFY_CHANNEL = "new_outgoing_message"

# ── Network address servers ─────────────────────────────────────────────────────
GROUP_SERVER = "g.us"
TELEGRAM_SERVER = "telegram"

# ── Message history ─────────────────────────────────────────────────────────────
SENT_MESSAGE_TYPE = "text"
