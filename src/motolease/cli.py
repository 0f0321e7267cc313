"""Operational command line interface.

Provides tools for:
- Reprocessing one gateway payment out of band
- Running the lease-to-own completion sweep
- Decoding an external reference token
- Creating the database schema (development)

Usage:
    python -m motolease.cli reprocess 1234567890
    python -m motolease.cli sweep-lease-to-own
    python -m motolease.cli decode cuota:abc:contrato:def
    python -m motolease.cli create-schema
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Coroutine
from dataclasses import asdict
from typing import Any, Callable

from motolease.config import Settings, get_settings
from motolease.database import SessionFactory, dispose_db, init_db, session_scope
from motolease.events.accounting import AccountingEventService
from motolease.gateway import PaymentGateway, build_gateway
from motolease.models import Base
from motolease.payments.reconciler import PaymentReconciler
from motolease.payments.references import UnrecognizedReference, decode, flow_kind_for
from motolease.services.lease_to_own import LeaseToOwnService

logger = logging.getLogger(__name__)


class MotoleaseCli:
    """Operational command line interface."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: SessionFactory | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.gateway = gateway
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m motolease.cli",
            description="Leasing payment operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # reprocess command
        reprocess = subparsers.add_parser(
            "reprocess",
            help="Re-run reconciliation for one gateway payment",
        )
        reprocess.add_argument(
            "external_id",
            help="Gateway payment id",
        )

        # sweep-lease-to-own command
        sweep = subparsers.add_parser(
            "sweep-lease-to-own",
            help="Transfer ownership for fully paid lease-to-own contracts",
        )
        sweep.add_argument(
            "--actor",
            default=None,
            help="Actor recorded on the changes (default: SYSTEM_ACTOR)",
        )

        # decode command
        decode_cmd = subparsers.add_parser(
            "decode",
            help="Decode an external reference token",
        )
        decode_cmd.add_argument(
            "token",
            help="Reference token, e.g. contrato:<id>",
        )

        # create-schema command
        subparsers.add_parser(
            "create-schema",
            help="Create all tables (development databases only)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "reprocess": self._cmd_reprocess,
            "sweep-lease-to-own": self._cmd_sweep,
            "decode": self._cmd_decode,
            "create-schema": self._cmd_create_schema,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_decode(self, args: argparse.Namespace) -> int:
        """Decode a reference token."""
        reference = decode(args.token)
        print(f"Reference: {type(reference).__name__}")
        print(f"  Flow kind: {flow_kind_for(reference).value}")
        for key, value in asdict(reference).items():
            print(f"  {key}: {value}")
        return 1 if isinstance(reference, UnrecognizedReference) else 0

    def _cmd_reprocess(self, args: argparse.Namespace) -> int:
        """Reprocess one payment."""
        return self._run(self.reprocess(args.external_id))

    def _cmd_sweep(self, args: argparse.Namespace) -> int:
        """Run the lease-to-own sweep."""
        return self._run(self.sweep(args.actor or self.settings.system_actor))

    def _cmd_create_schema(self, args: argparse.Namespace) -> int:
        """Create database tables."""
        return self._run(self.create_schema())

    def _run(self, coro: Coroutine[Any, Any, int]) -> int:
        return asyncio.run(self._managed(coro))

    async def _managed(self, coro: Coroutine[Any, Any, int]) -> int:
        try:
            return await coro
        finally:
            if self.session_factory is None:
                await dispose_db()

    def _factory(self) -> SessionFactory:
        if self.session_factory is not None:
            return self.session_factory
        _, factory = init_db()
        return factory

    async def reprocess(self, external_id: str) -> int:
        """Reprocess one payment and print the outcome."""
        gateway = self.gateway or build_gateway(self.settings)
        try:
            reconciler = PaymentReconciler.build(
                self._factory(), gateway, actor=self.settings.system_actor
            )
            result = await reconciler.process_payment(external_id)
        finally:
            if self.gateway is None:
                await gateway.aclose()

        print(f"Payment {result.external_payment_id}: {result.outcome.value}")
        if result.status is not None:
            print(f"  Status: {result.status.value}")
        if result.entity_id:
            print(f"  Entity: {result.entity_type} {result.entity_id}")
        if result.detail:
            print(f"  Detail: {result.detail}")
        for report in result.effects:
            mark = "ok" if report.succeeded else f"FAILED ({report.error})"
            print(f"  Effect {report.name}: {mark}")
        return 1 if result.effects_failed else 0

    async def sweep(self, actor: str) -> int:
        """Run the sweep and print the transferred contracts."""
        service = LeaseToOwnService(AccountingEventService())
        async with session_scope(self._factory()) as session:
            transferred = await service.sweep(session, actor)

        print(f"Lease-to-own sweep: {len(transferred)} contract(s) transferred")
        for contract_id in transferred:
            print(f"  - {contract_id}")
        return 0

    async def create_schema(self) -> int:
        factory = self._factory()
        async with factory() as session:
            connection = await session.connection()
            await connection.run_sync(Base.metadata.create_all)
            await session.commit()
        print("Schema created.")
        return 0


def main() -> int:
    """CLI entry point."""
    logging.basicConfig(level=get_settings().log_level)
    cli = MotoleaseCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
