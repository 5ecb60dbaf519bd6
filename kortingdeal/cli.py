import argparse
import logging
import sys
import uuid

from kortingdeal.models import SyncRun
from kortingdeal.services.jobs import execute_run
from kortingdeal.services.product_store import seed_categories
from kortingdeal.services.sync_runs import RunAlreadyActive, cleanup_stale_runs, create_run, ensure_no_active_run
from kortingdeal.services.variant_linker import link_variants
from kortingdeal.session_factory import session_factory
from kortingdeal.settings import SELECTION_POLICIES, settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("kortingdeal.cli")


def run_sync_command(args) -> int:
    with session_factory() as session:
        cleanup_stale_runs(session, settings.sync_stale_minutes)
        try:
            ensure_no_active_run(session)
        except RunAlreadyActive as e:
            logger.error(f"[CLI] {e}")
            return 1
        run = create_run(session, kind=args.kind, selection_policy=args.policy or settings.feed_selection_policy)
        session.commit()
        logger.info(f"[CLI] Starting feed sync run {run.id}")
        run = execute_run(session, run, time_budget_seconds=args.time_budget)
        logger.info(f"[CLI] Run {run.id} finished with status {run.status} ({run.stage_message})")
        return 0 if run.status in ("completed", "started") else 1


def resume_sync_command(args) -> int:
    with session_factory() as session:
        run = session.get(SyncRun, uuid.UUID(args.run_id))
        if run is None:
            logger.error(f"[CLI] Sync run not found: {args.run_id}")
            return 1
        if run.status != "started":
            logger.error(f"[CLI] Sync run {run.id} is already {run.status}")
            return 1
        logger.info(f"[CLI] Resuming run {run.id} at chunk {(run.state or {}).get('next_chunk_index', 0)}")
        run = execute_run(session, run, time_budget_seconds=args.time_budget)
        logger.info(f"[CLI] Run {run.id} finished with status {run.status} ({run.stage_message})")
        return 0 if run.status in ("completed", "started") else 1


def link_variants_command(args) -> int:
    with session_factory() as session:
        linked = link_variants(session)
        session.commit()
    logger.info(f"[CLI] Linked {linked} variants")
    return 0


def seed_categories_command(args) -> int:
    with session_factory() as session:
        created = seed_categories(session)
        session.commit()
    logger.info(f"[CLI] Seeded {created} categories")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="KortingDeal feed operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("run-sync", help="Run the Awin feed sync")
    sync_parser.add_argument("--kind", choices=["manual", "scheduled"], default="manual")
    sync_parser.add_argument("--policy", choices=list(SELECTION_POLICIES), default=None)
    sync_parser.add_argument("--time-budget", type=float, default=None, help="Seconds before pausing a full pass at a chunk boundary")

    resume_parser = subparsers.add_parser("resume-sync", help="Continue a paused or interrupted full-pass run")
    resume_parser.add_argument("run_id")
    resume_parser.add_argument("--time-budget", type=float, default=None)

    subparsers.add_parser("link-variants", help="Link size variants to their parent product")
    subparsers.add_parser("seed-categories", help="Create the fixed category taxonomy")

    args = parser.parse_args(argv)

    commands = {
        "run-sync": run_sync_command,
        "resume-sync": resume_sync_command,
        "link-variants": link_variants_command,
        "seed-categories": seed_categories_command,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
