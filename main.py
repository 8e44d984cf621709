#!/usr/bin/env python3
"""
============================================================================
Detention Adjudicator
Command Line Entry Point
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Decimal Integrity: All charges are decimal.Decimal end to end
Traceability: The batch job_id is the correlation_id of every run log line

COMMANDS:
    run    Adjudicate a list of orders, approvals answered in the terminal
           (or skipped with --approval-mode skip)
    serve  Same run, with approvals and pause/resume/cancel served over
           HTTP (uvicorn) instead of the terminal

SIGNALS:
    SIGINT / SIGTERM cancel the run at the next chunk boundary. The
    checkpoint is kept so the run can be resumed with --resume.

USAGE:
    python main.py run orders.txt --rules rules.json --csv report.csv
    python main.py run orders.txt --rules rules.json --resume
    python main.py serve orders.txt --rules rules.json --port 8090

============================================================================
"""

from typing import List, Optional, Tuple
import argparse
import asyncio
import logging
import re
import signal
import sys

from dotenv import load_dotenv

from app.clients.http_clients import HttpOrderClient, HttpTimestampClient, HttpTokenSource
from app.database.checkpoint_store import CheckpointStore
from app.database.session import create_detention_engine
from app.logic.batch_orchestrator import BatchOrchestrator, BatchSummary
from app.logic.circuit_breaker import CircuitBreakerRegistry
from app.logic.order_processor import OrderProcessor
from app.transport.credential_manager import CredentialManager
from app.transport.errors import DetentionError
from app.transport.request_deduplicator import RequestDeduplicator
from services.approval_console import ApprovalConsole, auto_skip_notifier
from services.approval_gate import ApprovalGate
from services.billing_rules import BillingRulesRepository, BillingRulesValidationError
from services.detention_config import (
    DetentionConfig,
    DetentionConfigurationError,
    get_detention_config,
)

logger = logging.getLogger("DETENTION")

VERSION = "1.0.0"


# =============================================================================
# Input
# =============================================================================

def read_order_ids(path: str) -> List[str]:
    """Identifiers separated by newlines, commas or whitespace; '#' starts a comment."""
    ids: List[str] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.split("#", 1)[0]
            ids.extend(token for token in re.split(r"[,\s]+", line) if token)
    return ids


# =============================================================================
# Wiring
# =============================================================================

class Components:
    """Everything one run needs, built from configuration."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        gate: ApprovalGate,
        closables: List[object]
    ) -> None:
        self.orchestrator = orchestrator
        self.gate = gate
        self._closables = closables

    async def aclose(self) -> None:
        for client in self._closables:
            await client.aclose()


def build_components(config: DetentionConfig, rules: BillingRulesRepository) -> Components:
    token_source = HttpTokenSource(config.auth_url, timeout=config.http_timeout_seconds)
    credentials = CredentialManager(
        token_source,
        lifetime_seconds=config.token_lifetime_seconds,
        refresh_margin_seconds=config.token_refresh_margin_seconds,
    )
    orders = HttpOrderClient(
        config.order_api_url, credentials=credentials, timeout=config.http_timeout_seconds
    )
    timestamps = HttpTimestampClient(
        config.timestamp_api_url, credentials=credentials, timeout=config.http_timeout_seconds
    )

    processor = OrderProcessor(
        orders=orders,
        timestamps=timestamps,
        mutations=orders,
        rules=rules,
        breakers=CircuitBreakerRegistry(
            failure_threshold=config.cb_failure_threshold,
            success_threshold=config.cb_success_threshold,
            cooldown_seconds=config.cb_cooldown_seconds,
        ),
        credentials=credentials,
        retry_policy=config.retry_policy(),
        deduplicator=RequestDeduplicator(),
        late_threshold_minutes=config.late_threshold_minutes,
    )

    gate = ApprovalGate(timeout_seconds=config.approval_timeout_seconds)
    store = CheckpointStore(
        engine=create_detention_engine(config.database_url),
        max_age_hours=config.checkpoint_max_age_hours,
    )
    orchestrator = BatchOrchestrator(
        processor,
        approval_gate=gate,
        credentials=credentials,
        checkpoint_store=store,
        chunk_size=config.chunk_size,
        parallel_group_size=config.parallel_group_size,
        chunk_cooldown_seconds=config.chunk_cooldown_seconds,
        session_max_orders=config.session_max_orders,
    )
    return Components(orchestrator, gate, [orders, timestamps, token_source])


# =============================================================================
# Commands
# =============================================================================

def _install_cancel_handlers(orchestrator: BatchOrchestrator) -> None:
    loop = asyncio.get_running_loop()

    def handle(signum: int) -> None:
        logger.warning(f"Received signal {signum} - cancelling at next chunk boundary")
        orchestrator.cancel()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle, signum)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(signum, lambda s, _frame: handle(s))


async def _run_batch(components: Components, order_ids: List[str], resume: bool) -> BatchSummary:
    orchestrator = components.orchestrator
    checkpoint = orchestrator.load_resumable_checkpoint() if resume else None
    if resume and checkpoint is None:
        logger.info("No resumable checkpoint found - starting a fresh run")
    if checkpoint is not None and not order_ids:
        order_ids = checkpoint.order_ids
    return await orchestrator.start(order_ids, resume_from=checkpoint)


async def run_command(
    args: argparse.Namespace,
    config: DetentionConfig,
    rules: BillingRulesRepository,
    order_ids: List[str]
) -> BatchSummary:
    components = build_components(config, rules)
    if args.approval_mode == "skip":
        components.gate.set_notifier(auto_skip_notifier(components.gate))
    else:
        components.gate.set_notifier(ApprovalConsole(components.gate))

    _install_cancel_handlers(components.orchestrator)
    try:
        return await _run_batch(components, order_ids, args.resume)
    finally:
        await components.aclose()


async def serve_command(
    args: argparse.Namespace,
    config: DetentionConfig,
    rules: BillingRulesRepository,
    order_ids: List[str]
) -> BatchSummary:
    import uvicorn

    from app.main import create_app

    components = build_components(config, rules)
    app = create_app(components.orchestrator, components.gate)
    server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, log_level="info"))

    async def batch_then_stop() -> BatchSummary:
        try:
            return await _run_batch(components, order_ids, args.resume)
        finally:
            if not args.keep_serving:
                server.should_exit = True

    try:
        summary, _ = await asyncio.gather(batch_then_stop(), server.serve())
        return summary
    finally:
        await components.aclose()


# =============================================================================
# Main
# =============================================================================

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Detention Adjudicator - batch detention charge adjudication"
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("ids_file", nargs="?", help="File of order identifiers")
        p.add_argument("--rules", required=True, help="Billing rules JSON file (list of rows)")
        p.add_argument("--resume", action="store_true", help="Resume from the stored checkpoint")
        p.add_argument("--csv", dest="csv_path", help="Write the report as CSV to this path")
        p.add_argument("--text", dest="text_path", help="Write the report as text to this path")

    run = sub.add_parser("run", help="Run a batch with terminal approvals")
    common(run)
    run.add_argument(
        "--approval-mode",
        choices=("prompt", "skip"),
        default="prompt",
        help="prompt: ask in the terminal; skip: resolve every approval as SKIP",
    )

    serve = sub.add_parser("serve", help="Run a batch with the HTTP operator API")
    common(serve)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8090)
    serve.add_argument(
        "--keep-serving",
        action="store_true",
        help="Keep the API up after the batch finishes",
    )
    return parser


def _load_inputs(args: argparse.Namespace) -> Tuple[DetentionConfig, BillingRulesRepository, List[str]]:
    config = get_detention_config()
    rules = BillingRulesRepository.from_json_file(args.rules)
    order_ids = read_order_ids(args.ids_file) if args.ids_file else []
    return config, rules, order_ids


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        config, rules, order_ids = _load_inputs(args)
    except (DetentionConfigurationError, BillingRulesValidationError, OSError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        return 2

    if not order_ids and not args.resume:
        logger.error("No order identifiers given (pass ids_file or --resume)")
        return 2

    command = run_command if args.command == "run" else serve_command
    try:
        summary = asyncio.run(command(args, config, rules, order_ids))
    except DetentionError as e:
        logger.error(f"Run rejected: {e}")
        return 1

    report = summary.report
    if report is not None:
        if args.csv_path:
            report.write_csv(args.csv_path)
        if args.text_path:
            report.write_text(args.text_path)
        print(report.to_text())

    logger.info(f"Run {summary.job_id} finished: {summary.to_dict()}")
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
