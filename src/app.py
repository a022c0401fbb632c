"""Application entry point for the telewake bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from telethon import events
import settings
from adapters.anthropic_executor import AnthropicTurnExecutor
from adapters.sqlite_history import SQLiteHistoryStore
from adapters.telegram_mapper import build_inbound
from adapters.telegram_transport import TelegramTransport
from adapters.topic_log import TopicLogStore
from client import bot_token, build_client
from core.config import ModelConfig, SchedulerConfig
from core.dispatcher import TopicDispatcher
from core.event_scheduler import EventScheduler
from core.models import PeriodicEvent, TopicRunState
from core.runner import TopicRunExecutor
from core.topic_keys import TopicIdentity
from core.topic_registry import TopicRegistry
from core.triggers import (
    ScheduleError,
    TriggerValidationError,
    describe_next_fire,
    is_trigger_filename,
    parse_trigger,
    resolve_schedule,
)

NAME = "TELEWAKE"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/telewake.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _scheduler_config() -> SchedulerConfig:
    limit = settings.BUSY_RETRY_LIMIT
    return SchedulerConfig(
        debounce_seconds=settings.DEBOUNCE_MS / 1000,
        busy_retry_seconds=settings.BUSY_RETRY_SECONDS,
        busy_retry_limit=int(limit) if limit is not None else None,
    )


def _build_executor() -> AnthropicTurnExecutor:
    load_dotenv()
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY is required for the turn executor")
    return AnthropicTurnExecutor(
        api_key=api_key,
        config=ModelConfig(
            name=settings.MODEL_NAME,
            base_url=settings.MODEL_BASE_URL,
            max_tokens=settings.MODEL_MAX_TOKENS,
            input_cost_per_mtok=settings.MODEL_INPUT_COST,
            output_cost_per_mtok=settings.MODEL_OUTPUT_COST,
        ),
    )


def _report_disconnect(future: "asyncio.Future[None]") -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logging.getLogger(__name__).error("Telegram disconnect failed: %s", exc)


def _request_shutdown(scheduler: EventScheduler, client, pending: set[asyncio.Future[None]]) -> None:
    """Stop intake and timers, then disconnect once; turns in flight finish on their own."""

    scheduler.stop()
    if pending:
        return
    future = asyncio.ensure_future(client.disconnect())
    pending.add(future)
    future.add_done_callback(_report_disconnect)


async def _serve() -> None:
    logger = logging.getLogger(__name__)

    history_store = SQLiteHistoryStore(settings.DB_PATH)
    history_store.init_db()
    log_store = TopicLogStore(settings.WORKSPACE_DIR)
    executor = _build_executor()

    def _make_runner(identity: TopicIdentity, state: TopicRunState) -> TopicRunExecutor:
        return TopicRunExecutor(
            identity=identity,
            state=state,
            history=history_store.for_topic(identity),
            log_store=log_store,
            executor=executor,
            workspace_dir=settings.WORKSPACE_DIR,
        )

    client = build_client()
    try:
        await client.start(bot_token=bot_token())
    except Exception as exc:
        # Nothing works without the transport; this is the one fatal error.
        logger.error("Telegram connection failed: %s", exc)
        raise SystemExit(1) from exc

    registry = TopicRegistry(_make_runner)
    dispatcher = TopicDispatcher(
        registry=registry,
        transport=TelegramTransport(client),
        log_store=log_store,
        trigger_word=settings.TRIGGER_WORD,
    )
    scheduler = EventScheduler(settings.EVENTS_DIR, dispatcher, _scheduler_config())

    # Each update runs in its own task, so a slow turn in one topic never
    # holds up another topic.
    @client.on(events.NewMessage(incoming=True))
    async def handler(event) -> None:
        try:
            sender = await event.get_sender()
            await dispatcher.handle_message(build_inbound(event.message, sender))
        except Exception:
            logger.exception("Error while processing message")

    await scheduler.start()

    loop = asyncio.get_running_loop()
    disconnecting: set[asyncio.Future[None]] = set()

    def _shutdown(signame: str) -> None:
        logger.info("%s received, shutting down...", signame)
        _request_shutdown(scheduler, client, disconnecting)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig.name)
        except NotImplementedError:
            pass

    logger.info("Bridge is running. Listening for messages...")
    try:
        await client.run_until_disconnected()
    finally:
        scheduler.stop()
        if disconnecting:
            await asyncio.gather(*disconnecting, return_exceptions=True)


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting telewake")
    logger.info("Workspace: %s", settings.WORKSPACE_DIR)
    logger.info("Trigger: %s", settings.TRIGGER_WORD or "(respond to every message)")
    os.makedirs(settings.WORKSPACE_DIR, exist_ok=True)

    asyncio.run(_serve())


def _list_events() -> None:
    events_dir = settings.EVENTS_DIR
    console = Console()
    if not os.path.isdir(events_dir):
        console.print(f"No events directory at {events_dir}")
        return

    filenames = sorted(name for name in os.listdir(events_dir) if is_trigger_filename(name))
    if not filenames:
        console.print("No trigger files are queued.")
        return

    now = datetime.now(timezone.utc)
    table = Table(title=f"Trigger files in {events_dir}")
    for column in ("File", "Type", "Topic", "Schedule", "Next fire", "Status"):
        table.add_column(column)

    for filename in filenames:
        path = os.path.join(events_dir, filename)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                event = parse_trigger(handle.read(), filename)
        except (OSError, TriggerValidationError) as exc:
            table.add_row(filename, "-", "-", "-", "-", f"invalid: {exc}")
            continue

        status = "ok"
        next_fire = describe_next_fire(event, now)
        next_label = next_fire.isoformat() if next_fire else "now"
        if isinstance(event, PeriodicEvent):
            try:
                resolve_schedule(event)
            except ScheduleError as exc:
                status = f"invalid: {exc}"
                next_label = "-"
        table.add_row(
            filename,
            event.type_name,
            f"{event.channel}/{event.subtopic}",
            event.schedule_label or "-",
            next_label,
            status,
        )

    console.print(table)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="telewake")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bridge")
    subparsers.add_parser("events", help="List queued trigger files and when they fire next")

    args = parser.parse_args(argv)
    if args.command == "events":
        _list_events()
        return
    _run()


if __name__ == "__main__":
    main()
