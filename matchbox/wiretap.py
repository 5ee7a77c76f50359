"""
Wiretap: listen in on the sync traffic.

Two parts:
  1. WireLog: writes structured JSONL entries for every sync event
     (snapshots coming in, sends going out, failures)
  2. live_tap(): reads the JSONL and renders a color-coded live view

The wire log is separate from the debug log. It's a clean, structured record
of what crossed the line between this device and the backend.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_INBOUND = "\033[96m"   # cyan
C_OUTBOUND = "\033[93m"  # yellow
C_ERROR = "\033[91m"     # red
C_EVENT = "\033[95m"     # magenta
C_TIME = "\033[90m"      # gray
C_BORDER = "\033[90m"    # gray

DIRECTION_COLORS = {
    "inbound": C_INBOUND,
    "outbound": C_OUTBOUND,
    "error": C_ERROR,
}

DIRECTION_ICONS = {
    "inbound": "◀",
    "outbound": "▶",
    "error": "✗",
}

MAX_CONTENT = 500


class WireLog:
    """
    Structured JSONL logger for sync traffic.
    Each line is one event.

    Format:
        {"ts": "...", "dir": "inbound|outbound|error", "event": "...",
         "conv": "...", "msg": "...", "count": 3, "len": 12, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        direction: str,
        event: str,
        conversation_id: str,
        message_id: str = "",
        content: str = "",
        count: int = 0,
    ):
        """Write a wire log entry. Never raises: the tap must not break sync."""
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "event": event,
            "conv": conversation_id,
            "len": len(content),
        }
        if message_id:
            entry["msg"] = message_id
        if count:
            entry["count"] = count
        if content:
            if len(content) <= MAX_CONTENT:
                entry["content"] = content
            else:
                entry["content"] = content[:MAX_CONTENT] + f" [... {len(content) - MAX_CONTENT} chars truncated]"

        try:
            self._ensure_open()
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Wire log write failed (%s): %s", self.log_path, e)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        dt = datetime.fromisoformat(ts)
        time_str = dt.strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    direction = entry.get("dir", "?")
    event = entry.get("event", "")
    conv = entry.get("conv", "")
    msg = entry.get("msg", "")
    count = entry.get("count")
    content = entry.get("content", "")

    color = DIRECTION_COLORS.get(direction, C_RESET)
    icon = DIRECTION_ICONS.get(direction, "?")

    header = f"  {C_TIME}{time_str}{C_RESET} {color}{C_BOLD}{icon} {direction.upper()}{C_RESET}"
    if event:
        header += f"  {C_EVENT}[{event}]{C_RESET}"
    if conv:
        header += f"  {C_DIM}conv:{conv}{C_RESET}"
    if msg:
        header += f"  {C_DIM}msg:{msg}{C_RESET}"
    if count is not None:
        header += f"  {C_DIM}({count} messages){C_RESET}"

    lines = [header]
    if content:
        for cline in content.split("\n")[:10]:
            lines.append(f"      {cline}")
    return "\n".join(lines)


def _matches(entry: dict, conversation_filter: str | None, direction_filter: str | None) -> bool:
    if conversation_filter and entry.get("conv") != conversation_filter:
        return False
    if direction_filter and entry.get("dir") != direction_filter:
        return False
    return True


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    conversation_filter: str | None = None,
    direction_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        conversation_filter: Only show entries for this conversation.
        direction_filter: Only show inbound / outbound / error entries.
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from matchbox.config import get_config
        cfg = get_config()
        log_path = cfg.get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)

    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Enable wiretap in config.yaml and sync something first.")
        return

    if not raw:
        print(f"  ♥  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    with open(wire_path) as f:
        all_lines = f.readlines()

    start = max(0, len(all_lines) - last_n)
    for line in all_lines[start:]:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if _matches(entry, conversation_filter, direction_filter):
            print(_format_entry(entry, raw=raw))

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to stop]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if _matches(entry, conversation_filter, direction_filter):
                    print(_format_entry(entry, raw=raw))
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
