#!/usr/bin/env python3
from __future__ import annotations
import argparse
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from catalog_sync.core.config import ConfigurationError, settings
from catalog_sync.core.logging import configure_logging
from catalog_sync.integrations.shopify.errors import ShopifyError
from catalog_sync.orchestration.bulk_sync.jsonl_builder import BatchFileError
from catalog_sync.orchestration.context import Context, build_context, inline_tasks_enabled
from catalog_sync.utils.serialization import to_jsonable


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


'''
命令行入口（pyproject 里注册为 catalog-sync）
    catalog-sync sync --limit=50 --active --collections
    catalog-sync bulk-sync --batch=10000 [--dry-run | --status] [--collections]
    catalog-sync reconcile [--jsonl=bulk-sync-batch-1.jsonl] [--results=<file|url>]
    catalog-sync push-tags [--limit=N]
    catalog-sync queue status
    catalog-sync queue reset-errors
退出码：0 正常（含 completed_with_errors），1 致命错误（配置缺失 / 未处理异常）
'''
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="catalog-sync", description="Project artwork assets into a Shopify catalog.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Per-item synchronous projection (REST)")
    p.add_argument("--limit", type=int, default=None, help="Max assets to consider (default SYNC_DEFAULT_LIMIT)")
    p.add_argument("--active", action="store_true", help="Publish as ACTIVE (default DRAFT)")
    p.add_argument("--collections", action="store_true", help="Ensure smart + artist collections afterwards")

    p = sub.add_parser("bulk-sync", help="Four-stage bulk pipeline")
    p.add_argument("--batch", type=int, default=None, help="Assets per batch (default BULK_BATCH_SIZE)")
    p.add_argument("--dry-run", action="store_true", help="Only write the JSONL of the first batch")
    p.add_argument("--status", action="store_true", help="Print the current bulk operation and exit")
    p.add_argument("--collections", action="store_true", help="Ensure smart + artist collections afterwards")

    p = sub.add_parser("reconcile", help="Re-run result processing for the last bulk operation")
    p.add_argument("--jsonl", default=None, help="Saved bulk-sync-batch-<n>.jsonl used for drift recovery")
    p.add_argument("--results", default=None, help="Result JSONL file or URL (default: current operation)")

    p = sub.add_parser("push-tags", help="Re-push tags of synced products; clears stale ids on 404")
    p.add_argument("--limit", type=int, default=None)

    q = sub.add_parser("queue", help="Queue maintenance")
    qsub = q.add_subparsers(dest="queue_command", required=True)
    qsub.add_parser("status", help="Pending/synced/error counts and today's variant usage")
    qsub.add_parser("reset-errors", help="Flip error rows back to pending")

    return ap


def _print(payload: Any) -> None:
    print(json.dumps(to_jsonable(payload), ensure_ascii=False, indent=2))


# ---------- 子命令 ----------

def _celery():
    # 投递前必须先加载 broker 配置，shared_task 才会绑到这个 app
    from catalog_sync.core.celery_app import celery_app
    return celery_app


def cmd_sync(args: argparse.Namespace, make_ctx: Callable[..., Context]) -> int:
    from catalog_sync.orchestration.product_sync import sync_task

    if not inline_tasks_enabled():
        settings.require_remote()
        settings.require_store()
        _celery()
        res = sync_task.run_sync_task.delay(limit=args.limit, active=args.active, collections=args.collections)
        _print({"task_id": res.id})
        return EXIT_OK

    ctx = make_ctx()
    report = sync_task.run_product_sync(ctx, limit=args.limit, active=args.active, collections=args.collections)
    _print(report)
    return EXIT_OK


def cmd_bulk_sync(args: argparse.Namespace, make_ctx: Callable[..., Context]) -> int:
    from catalog_sync.orchestration.bulk_sync import bulk_sync_task

    if args.status:
        ctx = make_ctx()
        _print({"current_bulk_operation": bulk_sync_task.bulk_status(ctx)})
        return EXIT_OK

    if not inline_tasks_enabled() and not args.dry_run:
        settings.require_remote()
        settings.require_store()
        _celery()
        res = bulk_sync_task.run_bulk_sync_task.delay(batch_size=args.batch, collections=args.collections)
        _print({"task_id": res.id})
        return EXIT_OK

    # dry-run 只做 Stage A，不需要 Shopify 凭证
    ctx = make_ctx(need_remote=not args.dry_run)
    report = bulk_sync_task.run_bulk_sync(
        ctx, batch_size=args.batch, dry_run=args.dry_run, collections=args.collections,
    )
    _print(report)
    return EXIT_OK


def cmd_reconcile(args: argparse.Namespace, make_ctx: Callable[..., Context]) -> int:
    from catalog_sync.orchestration.bulk_sync import bulk_sync_task

    # 本地结果文件 + 本地 JSONL 时不需要连 Shopify
    local_only = bool(args.results) and not args.results.startswith(("http://", "https://"))
    ctx = make_ctx(need_remote=not local_only)
    run_id, report = bulk_sync_task.reconcile_last(ctx, jsonl=args.jsonl, results=args.results)
    _print({"run_id": run_id, **report.as_meta()})
    return EXIT_OK


def cmd_push_tags(args: argparse.Namespace, make_ctx: Callable[..., Context]) -> int:
    from catalog_sync.orchestration.tag_push import push_tags

    ctx = make_ctx()
    _print(push_tags(ctx, limit=args.limit))
    return EXIT_OK


def cmd_queue(args: argparse.Namespace, make_ctx: Callable[..., Context]) -> int:
    ctx = make_ctx(need_remote=False)
    if args.queue_command == "reset-errors":
        n = ctx.store.reset_errors()
        logger.info("queue.reset_errors count=%s", n)
        _print({"reset": n})
        return EXIT_OK

    counts = queue_status(ctx)
    _print(counts)
    return EXIT_OK


def queue_status(ctx: Context) -> Dict[str, int]:
    counts = ctx.store.queue_counts(ctx.clock.today_start())
    counts["daily_limit"] = ctx.daily_limit
    counts["remaining_today"] = max(0, ctx.daily_limit - counts.get("variants_today", 0))
    return counts


COMMANDS = {
    "sync": cmd_sync,
    "bulk-sync": cmd_bulk_sync,
    "reconcile": cmd_reconcile,
    "push-tags": cmd_push_tags,
    "queue": cmd_queue,
}


def main(argv: Optional[List[str]] = None, make_ctx: Optional[Callable[..., Context]] = None) -> int:
    configure_logging(settings.LOG_LEVEL, stream=sys.stderr)
    args = build_parser().parse_args(argv)
    factory = make_ctx or build_context
    try:
        return COMMANDS[args.command](args, factory)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FATAL
    except (ShopifyError, BatchFileError) as e:
        logger.error("cli.fatal command=%s err=%s", args.command, e)
        return EXIT_FATAL
    except Exception:
        logger.exception("cli.fatal command=%s", args.command)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
