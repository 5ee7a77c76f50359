#!/usr/bin/env python3
"""
Matchbox CLI: poke at the local-first chat cache from a terminal.

Every command has a nickname and a standard alias:

    NICKNAME        STANDARD        WHAT IT DOES
    --------        --------        ----------------------------------
    peek            show, cat       Print cached messages for a conversation
    inbox           ls              List cached conversations
    dump            export          Export the whole cache to JSON
    wipe            clear           Clear one conversation's cache, or all of it
    send            post            Send one message through a session
    ring            ping, status    Check the backend gateway is reachable
    tap             log, tail       Live wiretap: watch sync traffic
    flash           info, config    Show config and cache at a glance
    tone            banner          Print the banner
"""

import argparse
import asyncio
import json

from matchbox import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════╗
    ║                                              ║
    ║   ███╗   ███╗ █████╗ ████████╗ ██████╗██╗  ██╗║
    ║   ████╗ ████║██╔══██╗╚══██╔══╝██╔════╝██║  ██║║
    ║   ██╔████╔██║███████║   ██║   ██║     ███████║║
    ║   ██║╚██╔╝██║██╔══██║   ██║   ██║     ██╔══██║║
    ║   ██║ ╚═╝ ██║██║  ██║   ██║   ╚██████╗██║  ██║║
    ║   ╚═╝     ╚═╝╚═╝  ╚═╝   ╚═╝    ╚═════╝╚═╝  ╚═╝║
    ║                  B  O  X                     ║
    ║                                              ║
    ║   Strike first, sync later.          v""" + __version__ + r"""  ║
    ║                                              ║
    ╚══════════════════════════════════════════════╝
"""

STATUS_ICONS = {
    "sending": "…",
    "uploading": "↑",
    "sent": "✓",
    "delivered": "✓✓",
    "read": "✓✓",
    "failed": "✗",
}


def _open_cache(cfg: dict):
    from matchbox.storage import LocalCache, make_backend

    cache_cfg = cfg["cache"]
    return LocalCache(make_backend(cache_cfg["backend"], path=cache_cfg["path"]))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_peek(args):
    """Print cached messages for one conversation."""
    from matchbox.config import get_config

    cache = _open_cache(get_config())
    messages = cache.load(args.conversation)
    if not messages:
        print(f"  ✗  Nothing cached for {args.conversation}")
        return

    shown = messages[-args.last:] if args.last else messages
    if args.raw:
        print(json.dumps([m.to_dict() for m in shown], indent=2, ensure_ascii=False))
        return

    print(f"  ♥  {args.conversation}: {len(messages)} cached, showing {len(shown)}")
    print("  " + "─" * 56)
    for m in shown:
        icon = STATUS_ICONS.get(m.status.value, "?")
        body = m.text if m.type.value == "text" else f"[{m.type.value}] {m.media_url or m.local_uri or ''}"
        print(f"  {m.timestamp[:19]}  {m.sender:>12}  {icon:<2} {body}")


def cmd_inbox(args):
    """List cached conversations."""
    from matchbox.config import get_config

    cache = _open_cache(get_config())
    conversations = cache.load_conversations()
    cached_ids = set(cache.conversation_ids())

    if not conversations and not cached_ids:
        print("  Inbox cache is empty.")
        return

    for conv in conversations:
        unread = f"  ({conv.unread_count} unread)" if conv.unread_count else ""
        marker = "●" if conv.id in cached_ids else "○"
        print(f"  {marker} {conv.user.name or conv.id}{unread}")
        print(f"      {conv.last_message.timestamp[:19]}  {conv.last_message.text[:60]}")

    orphans = sorted(cached_ids - {c.id for c in conversations})
    if orphans:
        print()
        print("  Cached messages without an inbox entry:")
        for cid in orphans:
            print(f"  ● {cid}")


def cmd_dump(args):
    """Export every cached conversation to JSON."""
    from matchbox.config import get_config

    cache = _open_cache(get_config())
    data = {
        "conversations": [c.to_dict() for c in cache.load_conversations()],
        "messages": {
            cid: [m.to_dict() for m in cache.load(cid)]
            for cid in cache.conversation_ids()
        },
    }
    indent = 2 if args.pretty else None
    with open(args.output, "w") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)

    print(f"  📦 Dumped {len(data['messages'])} conversations to {args.output}")


def cmd_wipe(args):
    """Clear cached messages."""
    from matchbox.config import get_config

    cache = _open_cache(get_config())
    if args.conversation:
        cache.clear(args.conversation)
        print(f"  ✓  Cleared cache for {args.conversation}")
        return

    if not args.yes:
        answer = input("  Clear ALL cached conversations? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("  Aborted.")
            return
    count = len(cache.conversation_ids())
    cache.clear()
    cache.clear_conversations()
    print(f"  ✓  Cleared {count} cached conversations")


def cmd_send(args):
    """Send one text message through a full session."""
    from matchbox.config import get_config, setup_logging
    from matchbox.gateway import GatewayError
    from matchbox.session import ChatSession

    cfg = get_config()
    setup_logging(cfg)
    text = " ".join(args.text)

    async def _run():
        async with ChatSession.from_config(args.user, cfg) as session:
            return await session.send_text(args.conversation, text)

    try:
        sent = asyncio.run(_run())
    except GatewayError as e:
        print(f"  ✗  Not sent: {e}")
        return
    if sent is None:
        print("  ?  Sent, but the conversation was cleared before confirmation")
    else:
        print(f"  ✓  Sent as {sent.id}")


def cmd_ring(args):
    """Check the gateway is reachable."""
    from matchbox.config import get_config
    from matchbox.gateway import make_gateway

    cfg = get_config()
    try:
        gateway = make_gateway(cfg["gateway"])
    except ValueError as e:
        print(f"  ✗  {e}")
        return

    if asyncio.run(gateway.health_check()):
        print(f"  ♥  Ring ring... {gateway!r} is UP")
    else:
        print(f"  ✗  No answer from {gateway!r}")


def cmd_tap(args):
    """Live wiretap: watch sync traffic."""
    from matchbox.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        conversation_filter=args.conversation,
        direction_filter=args.dir,
        raw=args.raw,
    )


def cmd_flash(args):
    """Show config and cache at a glance."""
    from matchbox.config import get_config
    from matchbox.sync.offline import OfflineQueue

    cfg = get_config()
    gw = cfg["gateway"]

    print(BANNER)
    print("  Configuration")
    print(f"  ├─ Cache:     {cfg['cache']['backend']} ({cfg['cache']['path']})")
    print(f"  ├─ Gateway:   {gw['type']} {gw.get('url') or ''}".rstrip())
    print(f"  ├─ Polling:   every {gw.get('poll_interval')}s")
    print(f"  ├─ Typing:    throttle {cfg['typing']['throttle_seconds']}s, "
          f"stale after {cfg['typing']['stale_after_seconds']}s")
    print(f"  ├─ Queue:     {'on' if cfg['offline_queue']['enabled'] else 'off'}")
    print(f"  └─ Wiretap:   {'on' if cfg['wiretap']['enabled'] else 'off'} ({cfg['wiretap']['path']})")

    try:
        cache = _open_cache(cfg)
        ids = cache.conversation_ids()
        total = sum(len(cache.load(cid)) for cid in ids)
        queued = len(OfflineQueue(cache.backend))
        print()
        print("  Cache")
        print(f"  ├─ Conversations: {len(ids)}")
        print(f"  ├─ Messages:      {total}")
        print(f"  └─ Queued:        {queued}")
    except Exception as e:
        print(f"\n  ✗  Cache unavailable: {e}")


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (nickname + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="matchbox",
        description="Matchbox: local-first conversation sync.",
        epilog=(
            "Each command has a nickname and standard aliases.\n"
            "Example: 'matchbox peek C1' and 'matchbox show C1' do the same thing.\n"
            "Run 'matchbox <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"matchbox {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_peek(p):
        p.add_argument("conversation", help="Conversation id")
        p.add_argument("--last", "-n", type=int, default=0, help="Only the last N messages")
        p.add_argument("--raw", action="store_true", help="Print JSON instead of a transcript")

    _add_command(sub, ["peek", "show", "cat"],
                 "Print cached messages for a conversation", cmd_peek, setup_peek)

    _add_command(sub, ["inbox", "ls", "conversations"],
                 "List cached conversations", cmd_inbox)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="matchbox_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"],
                 "Export the cache to JSON", cmd_dump, setup_dump)

    def setup_wipe(p):
        p.add_argument("conversation", nargs="?", default=None, help="Conversation id (omit for all)")
        p.add_argument("--yes", "-y", action="store_true", help="Don't ask before clearing everything")

    _add_command(sub, ["wipe", "clear"],
                 "Clear cached messages", cmd_wipe, setup_wipe)

    def setup_send(p):
        p.add_argument("conversation", help="Conversation id")
        p.add_argument("text", nargs="+", help="Message text")
        p.add_argument("--user", "-u", required=True, help="Sender user id")

    _add_command(sub, ["send", "post"],
                 "Send one message through a session", cmd_send, setup_send)

    _add_command(sub, ["ring", "ping", "status"],
                 "Check the backend gateway is reachable", cmd_ring)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--conversation", "-c", default=None, help="Only this conversation")
        p.add_argument("--dir", "-d", choices=["inbound", "outbound", "error"], default=None,
                       help="Filter by direction")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"],
                 "Live wiretap: watch sync traffic", cmd_tap, setup_tap)

    _add_command(sub, ["flash", "info", "config"],
                 "Show config and cache at a glance", cmd_flash)

    _add_command(sub, ["tone", "banner"],
                 "Print the banner", cmd_tone)

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
