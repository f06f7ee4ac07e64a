"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .app import GuildArchiverApp
from .errors import CrawlError
from .export import export_archive
from .store import ArchiveStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Archive the message history of a Discord guild")
    parser.add_argument("--db-path", default="archive.db", help="Путь к файлу архива")
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")
    commands = parser.add_subparsers(dest="command", required=True)

    crawl = commands.add_parser("crawl", help="Выгрузить или докачать историю сообщений")
    crawl.add_argument(
        "--token",
        help="Токен Discord. Можно передать через DISCORD_TOKEN или BOT_TOKEN",
    )
    crawl.add_argument("--user-token", action="store_true", help="Токен пользователя, а не бота")
    crawl.add_argument("--guild-id", help="ID гильдии. Можно передать через GUILD_ID")
    crawl.add_argument(
        "--channel",
        action="append",
        default=[],
        help="ID канала для выгрузки (можно повторять); по умолчанию все каналы гильдии",
    )
    crawl.add_argument("--concurrency", type=int, help="Число одновременно выгружаемых каналов")
    crawl.add_argument("--page-size", type=int, help="Размер страницы (1-100)")
    crawl.add_argument("--max-attempts", type=int, help="Попыток на одну страницу")
    crawl.add_argument(
        "--refresh-complete",
        action="store_true",
        default=None,
        help="Догружать новые сообщения в уже выгруженных каналах",
    )

    commands.add_parser("status", help="Показать прогресс по каналам")

    export = commands.add_parser("export", help="Сохранить архив в JSON")
    export.add_argument("--output", default="export", help="Каталог для файлов")

    setting = commands.add_parser("set", help="Сохранить настройку в архиве")
    setting.add_argument("key")
    setting.add_argument("value")
    return parser


def _crawl(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    token = args.token or os.getenv("DISCORD_TOKEN") or os.getenv("BOT_TOKEN")
    if not token:
        parser.error("Нужно передать --token или переменную окружения DISCORD_TOKEN")
    guild_id = args.guild_id or os.getenv("GUILD_ID")
    if not guild_id and not args.channel:
        parser.error("Нужно передать --guild-id, GUILD_ID или хотя бы один --channel")

    overrides: dict[str, Any] = {}
    if args.concurrency is not None:
        overrides["concurrency"] = max(1, args.concurrency)
    if args.page_size is not None:
        overrides["page_size"] = max(1, min(args.page_size, 100))
    if args.max_attempts is not None:
        overrides["max_attempts"] = max(1, args.max_attempts)
    if args.refresh_complete is not None:
        overrides["refresh_complete"] = args.refresh_complete

    app = GuildArchiverApp(
        db_path=Path(args.db_path),
        token=token,
        guild_id=guild_id,
        user_token=args.user_token,
        overrides=overrides,
    )
    try:
        result = asyncio.run(app.run(args.channel or None))
    finally:
        app.close()
    return result.exit_code


def _status(args: argparse.Namespace) -> int:
    store = ArchiveStore(Path(args.db_path))
    try:
        for progress in store.list_progress():
            state = "готово" if progress.complete else f"продолжить с {progress.resume_point or '-'}"
            print(
                f"{progress.channel_id}\t{store.count_messages(progress.channel_id)}\t{state}"
            )
    finally:
        store.close()
    return 0


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "crawl":
            code = _crawl(args, parser)
        elif args.command == "status":
            code = _status(args)
        elif args.command == "export":
            store = ArchiveStore(Path(args.db_path))
            try:
                written = export_archive(store, Path(args.output))
            finally:
                store.close()
            logging.getLogger(__name__).info("Сохранено файлов: %d", len(written))
            code = 0
        else:
            store = ArchiveStore(Path(args.db_path))
            try:
                store.set_setting(args.key, args.value)
            finally:
                store.close()
            code = 0
    except CrawlError as exc:
        logging.getLogger(__name__).error("Выгрузка прервана: %s", exc)
        code = 1
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Остановка по запросу пользователя")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
