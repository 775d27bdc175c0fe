"""
Command line entry point.

  python -m chat_retention serve                      run scheduled jobs until interrupted
  python -m chat_retention init-db                    create tables
  python -m chat_retention preview CHATBOT --days N   show what cleanup would anonymize
  python -m chat_retention cleanup CHATBOT --days N   anonymize one tenant now
  python -m chat_retention cleanup-all                anonymize every enabled tenant now
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime

from chat_retention.config import config_from_env, configure_logging, load_config
from chat_retention.constants import validate_retention_days
from chat_retention.db import dispose_engine, get_session_factory, init_db, set_database_url
from chat_retention.errors import ChatRetentionError
from chat_retention.gdpr import execute_gdpr_cleanup, preview_gdpr_cleanup, run_gdpr_cleanup_all
from chat_retention.service import BackgroundServices


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=_json_default, ensure_ascii=False))


def _days(value: str) -> int:
    try:
        return validate_retention_days(int(value))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat_retention", description="GDPR retention for chatbot conversations")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="Run GDPR cleanup schedule and Freshdesk queue poller")
    sub.add_parser("init-db", help="Create tables")
    for name in ("preview", "cleanup"):
        p = sub.add_parser(name)
        p.add_argument("chatbot_id")
        p.add_argument("--days", type=_days, required=True, help="Retention days (1-3650)")
    sub.add_parser("cleanup-all", help="Run cleanup for every enabled tenant")
    return parser


async def _serve(services: BackgroundServices) -> None:
    services.start()
    try:
        await asyncio.Event().wait()
    finally:
        services.stop()


async def _run(args: argparse.Namespace) -> int:
    config = load_config(config_from_env())
    configure_logging(config.log_level)
    set_database_url(config.database_url)
    factory = get_session_factory()
    try:
        if args.command == "serve":
            await _serve(BackgroundServices(config, session_factory=factory))
        elif args.command == "init-db":
            await init_db()
        elif args.command == "preview":
            async with factory() as session:
                preview = await preview_gdpr_cleanup(session, args.chatbot_id, args.days)
            _print(preview.as_dict())
        elif args.command == "cleanup":
            result = await execute_gdpr_cleanup(factory, args.chatbot_id, args.days)
            _print(result.as_dict())
        elif args.command == "cleanup-all":
            outcomes = await run_gdpr_cleanup_all(factory)
            _print([o.as_dict() for o in outcomes])
            if any(not o.success for o in outcomes):
                return 1
    finally:
        await dispose_engine()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except (ChatRetentionError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
