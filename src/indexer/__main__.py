"""
Command line entry point.

    python -m src.indexer run             one full pipeline invocation
    python -m src.indexer status          print the published cursor
    python -m src.indexer reset --to N    move the cursor back to N
"""
import argparse
import json
import sys

from src.indexer.errors import IndexerError
from src.services.connection_pool import close_connection_pool
from src.utils.logger import logger


def _cmd_run(args) -> int:
    from src.indexer.pipeline import build_pipeline
    from src.utils.startup_validation import validate_or_exit

    validate_or_exit("indexer")
    pipeline = build_pipeline()
    try:
        summary = pipeline.run_once()
    except IndexerError as e:
        logger.error("Indexer run failed: %s", e, exc_info=True)
        return 1
    finally:
        if pipeline.push_queue is not None:
            pipeline.push_queue.drain(timeout=args.drain_timeout)
            pipeline.push_queue.close()
        if pipeline.metadata_source is not None:
            pipeline.metadata_source.close()

    print(json.dumps({
        "cursor": summary.cursor_after,
        "latest": summary.latest_block,
        "events": summary.events_applied,
        "newSurveys": summary.new_surveys,
        "skippedBatches": summary.skipped_batches,
        "funded": summary.funded,
    }, indent=2))
    return 0


def _open_store():
    from src.config import common_settings as settings
    from src.services.kv_store import create_store

    return create_store(settings.STORE_BACKEND, settings.OUTPUT_DIR)


def _cmd_status(args) -> int:
    from src.indexer.publisher import STATE_KEY

    state = _open_store().read(STATE_KEY, {})
    print(json.dumps(state, indent=2))
    return 0


def _cmd_reset(args) -> int:
    from src.indexer.publisher import SnapshotPublisher, STATE_KEY, DOMAIN_KEY, load_entity_store

    if args.to < 0:
        logger.error("reset: block height must be non-negative")
        return 2
    kv = _open_store()
    store = load_entity_store(kv).with_changes(last_block=args.to)
    state = kv.read(STATE_KEY, {})
    publisher = SnapshotPublisher(
        kv,
        domain_descriptor=kv.read(DOMAIN_KEY, {}),
        factory_addresses=state.get("factories") or (),
        chain_id=state.get("chainId"),
    )
    publisher.publish(store)
    logger.info("Cursor reset to block %d", args.to)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m src.indexer", description="Survey log indexer")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Scan, enrich and publish once")
    run_parser.add_argument("--drain-timeout", type=float, default=30.0,
                            help="Seconds to wait for downstream pushes before exiting")
    run_parser.set_defaults(func=_cmd_run)

    status_parser = subparsers.add_parser("status", help="Print the published state descriptor")
    status_parser.set_defaults(func=_cmd_status)

    reset_parser = subparsers.add_parser("reset", help="Move the cursor to a given height")
    reset_parser.add_argument("--to", type=int, required=True, help="New cursor height")
    reset_parser.set_defaults(func=_cmd_reset)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    finally:
        close_connection_pool()


if __name__ == "__main__":
    sys.exit(main())
