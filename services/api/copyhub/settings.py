import os


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got: {raw!r}")


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
QUEUE_NAME = os.getenv("QUEUE_NAME", "exec")

# account is considered offline once its last heartbeat is older than this
HEARTBEAT_TIMEOUT_SECONDS = _int("HEARTBEAT_TIMEOUT_SECONDS", 30)

COMMAND_TTL_HOURS = _int("COMMAND_TTL_HOURS", 24)
POLL_DEFAULT_LIMIT = _int("POLL_DEFAULT_LIMIT", 10)
POLL_MAX_LIMIT = _int("POLL_MAX_LIMIT", 50)

SIGNAL_STALE_SECONDS = _int("SIGNAL_STALE_SECONDS", 120)
SIGNAL_MAX_ATTEMPTS = _int("SIGNAL_MAX_ATTEMPTS", 3)
RECONCILE_INTERVAL_SECONDS = _int("RECONCILE_INTERVAL_SECONDS", 60)

# an open master trade missing from a heartbeat is only treated as closed
# once its ledger row is older than this (heartbeats can trail order events)
SNAPSHOT_CLOSE_GRACE_SECONDS = _int("SNAPSHOT_CLOSE_GRACE_SECONDS", 15)
