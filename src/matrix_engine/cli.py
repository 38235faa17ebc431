"""Matrix engine command line interface.

Provides operational tools for:
- Schema creation
- Running the queue processor (once, or as a worker loop)
- Queue inspection and parked-event recovery
- Run lock reset after a crashed run
- Withdrawal retries

Usage:
    python -m matrix_engine init-db
    python -m matrix_engine run-batch --max-events 24
    python -m matrix_engine worker --interval 120
    python -m matrix_engine requeue-parked --plan-level 2
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Callable, Coroutine

from matrix_engine.config import Settings, get_settings
from matrix_engine.database import create_schema, dispose_db, init_db
from matrix_engine.dispatch import SandboxDispatcher, WithdrawalDispatcher
from matrix_engine.plans import ConfigStore
from matrix_engine.services import (
    DisbursementService,
    EnrollmentQueue,
    ProcessorRunLock,
    QueueProcessor,
)

logger = logging.getLogger(__name__)


class MatrixCli:
    """Matrix engine Command Line Interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m matrix_engine",
            description="Matrix placement and payout engine",
        )
        parser.add_argument(
            "--sandbox-dispatcher",
            action="store_true",
            help="Send withdrawals through the in-memory sandbox dispatcher",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        run_batch = subparsers.add_parser(
            "run-batch",
            help="Process one batch of due enrollment events",
        )
        run_batch.add_argument(
            "--max-events",
            type=int,
            help="Maximum events to process (default: $BATCH_SIZE)",
        )

        worker = subparsers.add_parser(
            "worker",
            help="Run batches in a loop",
        )
        worker.add_argument(
            "--interval",
            type=float,
            help="Seconds between runs (default: $RUN_INTERVAL_SECONDS)",
        )

        subparsers.add_parser("pending", help="Show the number of due events")

        subparsers.add_parser(
            "reset-lock",
            help="Clear the run lock left by a crashed run",
        )

        requeue = subparsers.add_parser(
            "requeue-parked",
            help="Return parked events to the queue",
        )
        requeue.add_argument(
            "--plan-level",
            type=int,
            help="Only requeue events for this plan level",
        )

        subparsers.add_parser(
            "retry-withdrawals",
            help="Re-send failed and pending withdrawals",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        logging.basicConfig(
            level=self.settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        handlers: dict[str, Callable[[argparse.Namespace], Coroutine[Any, Any, int]]] = {
            "init-db": self._cmd_init_db,
            "run-batch": self._cmd_run_batch,
            "worker": self._cmd_worker,
            "pending": self._cmd_pending,
            "reset-lock": self._cmd_reset_lock,
            "requeue-parked": self._cmd_requeue_parked,
            "retry-withdrawals": self._cmd_retry_withdrawals,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1
        try:
            return asyncio.run(self._run_handler(handler, parsed))
        except KeyboardInterrupt:
            print("Interrupted.", file=sys.stderr)
            return 130

    async def _run_handler(
        self,
        handler: Callable[[argparse.Namespace], Coroutine[Any, Any, int]],
        args: argparse.Namespace,
    ) -> int:
        try:
            return await handler(args)
        finally:
            await dispose_db()

    def _dispatcher(self, args: argparse.Namespace) -> WithdrawalDispatcher | None:
        if args.sandbox_dispatcher:
            logger.warning("Using sandbox dispatcher, no funds will be sent")
            return SandboxDispatcher()
        return None

    def _processor(self, args: argparse.Namespace) -> QueueProcessor:
        _, factory = init_db(self.settings.database_url)
        store = ConfigStore.from_file(self.settings.plans_file)
        for issue in store.validate():
            logger.warning("Plan configuration: %s", issue)
        return QueueProcessor(
            factory,
            store,
            self.settings.engine,
            dispatcher=self._dispatcher(args),
        )

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        engine, _ = init_db(self.settings.database_url)
        await create_schema(engine)
        print(f"Schema ready at {engine.url.render_as_string(hide_password=True)}")
        return 0

    async def _cmd_run_batch(self, args: argparse.Namespace) -> int:
        """Process one batch."""
        report = await self._processor(args).run_batch(args.max_events)
        if report.skipped:
            print("Another run is active; skipped.")
            return 0

        print(f"Processed: {report.processed}")
        print(f"Failed:    {report.failed}")
        print(f"Parked:    {report.parked}")
        print(f"Disbursed: {report.disbursed}")
        for error in report.errors:
            print(f"  - {error}")
        return 0 if report.failed == 0 else 2

    async def _cmd_worker(self, args: argparse.Namespace) -> int:
        """Run batches until interrupted."""
        interval = args.interval or self.settings.run_interval_seconds
        print(f"Worker started, running every {interval}s (Ctrl-C to stop)")
        await self._processor(args).run_forever(interval)
        return 0

    async def _cmd_pending(self, args: argparse.Namespace) -> int:
        """Show due event count."""
        count = await self._processor(args).pending_count()
        print(f"Pending events due: {count}")
        return 0

    async def _cmd_reset_lock(self, args: argparse.Namespace) -> int:
        """Clear a stale run lock."""
        _, factory = init_db(self.settings.database_url)
        async with factory() as session:
            released = await ProcessorRunLock(session).force_release()
            await session.commit()
        print("Run lock cleared." if released else "Run lock was not held.")
        return 0

    async def _cmd_requeue_parked(self, args: argparse.Namespace) -> int:
        """Requeue parked events."""
        _, factory = init_db(self.settings.database_url)
        async with factory() as session:
            count = await EnrollmentQueue(session).requeue_parked(args.plan_level)
            await session.commit()
        print(f"Requeued {count} parked events.")
        return 0

    async def _cmd_retry_withdrawals(self, args: argparse.Namespace) -> int:
        """Re-dispatch failed withdrawals."""
        dispatcher = self._dispatcher(args)
        if dispatcher is None:
            print("No dispatcher configured (use --sandbox-dispatcher).", file=sys.stderr)
            return 1
        _, factory = init_db(self.settings.database_url)
        service = DisbursementService(factory, dispatcher, self.settings.engine)
        outcomes = await service.retry_failed()
        sent = sum(1 for outcome in outcomes if outcome.sent)
        print(f"Sent {sent} of {len(outcomes)} withdrawals.")
        return 0 if sent == len(outcomes) else 2


def main() -> int:
    """CLI entry point."""
    cli = MatrixCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
