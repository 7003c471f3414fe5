import argparse
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from localmolt.errors import ForumError
from localmolt.forum_config import ForumConfig
from localmolt.forum_service import ForumService


console = Console()


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _preview(text: str | None, width: int = 80) -> str:
    flat = " ".join((text or "").split())
    return flat if len(flat) <= width else f"{flat[: width - 3]}..."


def show_feed(service: ForumService, args):
    result = service.compute_feed(args.agent, since=args.since, limit=args.limit)
    table = Table(title=f"Feed for {result.agent_id}", show_lines=True)
    table.add_column("Score", justify="right", width=6)
    table.add_column("Reason", width=22)
    table.add_column("Post", width=16)
    table.add_column("Author", width=16)
    table.add_column("Content", overflow="fold")
    for item in result.feed:
        table.add_row(
            str(item.priority_score),
            item.reason,
            item.post.id,
            item.post.agent_id,
            _preview(item.post.title or item.post.content),
        )
    console.print(table)
    meta = result.meta
    console.print(
        f"[dim]{result.total_items} items | watchlist={meta['watchlist_count']} "
        f"unresponded={meta['unresponded_mentions']} unread={meta['unread_notifications']}[/dim]"
    )


def show_threads(service: ForumService, args):
    threads = service.list_threads(args.submolt, sort=args.sort, limit=args.limit)
    table = Table(title="Threads")
    table.add_column("Thread", width=22)
    table.add_column("Submolt", width=14)
    table.add_column("Status", width=9)
    table.add_column("Replies", justify="right", width=7)
    table.add_column("Agents", justify="right", width=6)
    table.add_column("Last activity", width=26)
    table.add_column("Title", overflow="fold")
    for thread in threads:
        status = f"{thread.status}*" if thread.pinned else thread.status
        table.add_row(
            thread.id,
            thread.submolt_id or "",
            status,
            str(thread.reply_count),
            str(thread.participant_count),
            thread.last_activity,
            _preview(thread.title),
        )
    console.print(table)


def show_mentions(service: ForumService, args):
    mentions = service.list_mentions(args.agent, responded=None if args.all else False, limit=args.limit)
    table = Table(title=f"Mentions of {args.agent}")
    table.add_column("Mention", width=16)
    table.add_column("Post", width=16)
    table.add_column("From", width=16)
    table.add_column("Responded", width=9)
    table.add_column("Created", width=26)
    for mention in mentions:
        table.add_row(
            mention.id,
            mention.post_id,
            mention.mentioning_agent_id or "",
            "yes" if mention.responded else "[red]no[/red]",
            mention.created_at,
        )
    console.print(table)


def show_notifications(service: ForumService, args):
    items = service.list_notifications(args.agent, unread_only=args.unread, limit=args.limit)
    table = Table(title=f"Notifications for {args.agent}")
    table.add_column("Type", width=9)
    table.add_column("From", width=16)
    table.add_column("Post", width=16)
    table.add_column("Message", overflow="fold")
    for item in items:
        style = "" if item.read else "bold"
        table.add_row(item.type, item.source_agent_id or "", item.post_id or "", item.message or "", style=style)
    console.print(table)
    if args.mark_read:
        marked = service.mark_read(args.agent)
        console.print(f"[green]Marked {marked} notifications as read.[/green]")


def run_recount(service: ForumService, args):
    counts = service.recount_all(args.agent)
    console.print(f"[green]Recounted {counts['posts']} posts and {counts['threads']} threads.[/green]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="localmolt", description="LocalMolt agent forum")
    parser.add_argument("--db", help="SQLite database path (default: LOCALMOLT_DB_PATH)")
    parser.add_argument("--log-level", help="Logging level (default: LOCALMOLT_LOG_LEVEL or INFO)")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    feed = commands.add_parser("feed", help="Show an agent's ranked feed")
    feed.add_argument("agent")
    feed.add_argument("--since")
    feed.add_argument("--limit", type=int)
    feed.set_defaults(handler=show_feed)

    threads = commands.add_parser("threads", help="List threads")
    threads.add_argument("--submolt")
    threads.add_argument("--sort", default="activity", choices=["activity", "created", "replies", "top", "hot"])
    threads.add_argument("--limit", type=int, default=30)
    threads.set_defaults(handler=show_threads)

    mentions = commands.add_parser("mentions", help="List an agent's mention obligations")
    mentions.add_argument("agent")
    mentions.add_argument("--all", action="store_true", help="Include responded mentions")
    mentions.add_argument("--limit", type=int, default=50)
    mentions.set_defaults(handler=show_mentions)

    notifications = commands.add_parser("notifications", help="Show an agent's inbox")
    notifications.add_argument("agent")
    notifications.add_argument("--unread", action="store_true")
    notifications.add_argument("--mark-read", action="store_true")
    notifications.add_argument("--limit", type=int, default=50)
    notifications.set_defaults(handler=show_notifications)

    recount = commands.add_parser("recount", help="Rebuild vote and thread counters from the ledgers")
    recount.add_argument("agent", help="Agent id performing the recount")
    recount.set_defaults(handler=run_recount)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = ForumConfig.from_env()
    if args.db:
        config.db_path = args.db
    if args.log_level:
        config.log_level = args.log_level.upper()
    _configure_logging(config.log_level)

    if args.command == "serve":
        from localmolt.forum_online import run_api

        if args.host:
            config.host = args.host
        if args.port:
            config.port = args.port
        run_api(config)
        return 0

    service = ForumService(config)
    try:
        args.handler(service, args)
    except ForumError as exc:
        console.print(f"[red]{exc.kind}:[/red] {exc.message}")
        return 1
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
