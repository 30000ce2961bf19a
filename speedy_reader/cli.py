"""Command-line interface for the speedy_reader application."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

from .config import parse_app_config, parse_env_config
from .errors import ReaderError
from .models import Article, ArticleFilter, JobStatus, StartResult
from .presentation import Reader
from .runner import PeriodicRefresh, build_reader

logger = logging.getLogger(__name__)

JOB_TIMEOUT_SECONDS = 300


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Cache RSS/Atom feeds locally, summarize and bookmark articles."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Subscribe to a feed or a page advertising one.")
    add.add_argument("url")
    add.add_argument("--title", default=None)

    imp = commands.add_parser("import", help="Import subscriptions from OPML.")
    imp.add_argument("path", nargs="?", default=None)

    exp = commands.add_parser("export", help="Export subscriptions to OPML.")
    exp.add_argument("path")

    commands.add_parser("refresh", help="Fetch every feed once.")
    commands.add_parser("watch", help="Refresh feeds on the configured interval.")
    commands.add_parser("purge", help="Remove articles past the retention horizon.")

    list_cmd = commands.add_parser("list", help="List articles.")
    list_cmd.add_argument(
        "--filter",
        choices=[item.value for item in ArticleFilter],
        default=ArticleFilter.UNREAD.value,
    )

    for name, help_text in (
        ("show", "Show one article."),
        ("read", "Mark an article read."),
        ("unread", "Mark an article unread."),
        ("star", "Toggle the starred flag."),
        ("delete", "Delete an article permanently."),
        ("fetch", "Fetch the full article text."),
    ):
        cmd = commands.add_parser(name, help=help_text)
        cmd.add_argument("fingerprint")

    summarize = commands.add_parser("summarize", help="Summarize an article.")
    summarize.add_argument("fingerprint")
    summarize.add_argument("--regenerate", action="store_true")

    bookmark = commands.add_parser("bookmark", help="Save an article to Raindrop.io.")
    bookmark.add_argument("fingerprint")
    bookmark.add_argument("--tags", default=None, help="Comma separated tags.")

    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Initialise logging according to options."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        if log_path.parent and not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logger.debug(
            "Logger initialised with level %s and file output to %s",
            level_name.upper(),
            log_path,
        )
    else:
        logger.debug(
            "Logger initialised with console output at level %s", level_name.upper()
        )


def format_article(article: Article) -> str:
    flags = ("*" if article.is_starred else " ") + (" " if article.is_read else "N")
    published = article.published.strftime("%Y-%m-%d %H:%M") if article.published else "-" * 16
    source = article.feed_title or article.feed_url
    return f"{article.fingerprint} {flags} {published} [{source}] {article.title}"


def _show(reader: Reader, fingerprint: str) -> int:
    article = reader.article(fingerprint)
    if article is None:
        print(f"No such article: {fingerprint}")
        return 1
    print(format_article(article))
    print(article.link)
    if article.bookmark_id:
        print(f"Bookmarked (id {article.bookmark_id})")
    print(f"Summary: {article.summary_state.value}")
    if article.summary:
        print(article.summary)
    elif article.summary_error:
        print(f"Last error: {article.summary_error}")
    if article.text:
        print()
        print(article.text)
    return 0


def _run_job(reader: Reader, fingerprint: str, result: StartResult) -> int:
    if result == StartResult.ARTICLE_DELETED:
        print(f"No such article: {fingerprint}")
        return 1
    if result == StartResult.ALREADY_RUNNING:
        print("A job of this kind is already running for that article.")
        return 1
    if not reader.jobs.wait(timeout=JOB_TIMEOUT_SECONDS):
        print("Timed out waiting for the job to finish.")
        return 1

    exit_code = 0
    for outcome in reader.poll():
        print(f"{outcome.kind.value}: {outcome.status.value}" + (
            f" ({outcome.detail})" if outcome.detail else ""
        ))
        if outcome.status == JobStatus.FAILED:
            exit_code = 1
    return exit_code


def run_command(reader: Reader, args, app_config) -> int:
    command = args.command

    if command == "add":
        feed = reader.add_feed(args.url, title=args.title)
        print(f"Subscribed to {feed.title} ({feed.url})")
    elif command == "import":
        path = args.path or app_config.feeds_file
        if not path:
            raise ValueError("No OPML path given and no <feeds> in config.")
        print(f"Imported {reader.import_feeds(path)} feeds")
    elif command == "export":
        print(f"Exported {reader.export_feeds(args.path)} feeds")
    elif command == "refresh":
        report = reader.refresh()
        print(
            f"{report.inserted} new, {report.updated} updated, "
            f"{report.suppressed} suppressed"
        )
        for failed in report.failed_feeds:
            print(f"Failed: {failed.feed_url}: {failed.error}")
    elif command == "watch":
        interval = app_config.reader.refresh_interval_minutes * 60
        scheduler = PeriodicRefresh(reader, interval)
        scheduler.start()
        try:
            scheduler.wait()
        except KeyboardInterrupt:
            logger.info("Stopping scheduled refresh.")
        finally:
            scheduler.stop()
    elif command == "purge":
        print(f"Purged {reader.purge()} articles")
    elif command == "list":
        for article in reader.articles(ArticleFilter(args.filter)):
            print(format_article(article))
    elif command == "show":
        return _show(reader, args.fingerprint)
    elif command == "read":
        reader.mark_read(args.fingerprint)
    elif command == "unread":
        reader.mark_unread(args.fingerprint)
    elif command == "star":
        starred = reader.toggle_starred(args.fingerprint)
        if starred is None:
            print(f"No such article: {args.fingerprint}")
            return 1
        print("Starred" if starred else "Unstarred")
    elif command == "delete":
        reader.delete(args.fingerprint)
    elif command == "fetch":
        return _run_job(reader, args.fingerprint, reader.fetch_content(args.fingerprint))
    elif command == "summarize":
        result = reader.summarize(args.fingerprint, regenerate=args.regenerate)
        code = _run_job(reader, args.fingerprint, result)
        article = reader.article(args.fingerprint)
        if article is not None and article.summary:
            print(article.summary)
        return code
    elif command == "bookmark":
        return _run_job(
            reader, args.fingerprint, reader.bookmark(args.fingerprint, tags=args.tags)
        )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    reader = None
    try:
        app_config = parse_app_config(args.config)

        if app_config.env_file:
            env_vars = parse_env_config(app_config.env_file)
            os.environ.update(env_vars)

        # CLI overrides config
        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file
        configure_logging(log_level, log_file)

        reader = build_reader(app_config)
        return run_command(reader, args, app_config)
    except ValueError as exc:
        parser.error(str(exc))
    except (ReaderError, RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1
    finally:
        if reader is not None:
            reader.close()
