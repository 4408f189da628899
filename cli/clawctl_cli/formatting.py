from __future__ import annotations

from datetime import datetime, timezone


def format_list_timestamp(value: datetime | str | None) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return text
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def token_preview(token: str | None, length: int = 8) -> str:
    if not token:
        return "-"
    if len(token) <= length:
        return token
    return f"{token[:length]}..."


def ssh_tunnel_hint(ip: str, *, user: str, port: int, key_path: str, app_port: int) -> str:
    parts = ["ssh", "-N", "-L", f"{app_port}:127.0.0.1:{app_port}", "-i", key_path]
    if port != 22:
        parts += ["-p", str(port)]
    parts.append(f"{user}@{ip}")
    return " ".join(parts)
