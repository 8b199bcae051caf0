"""
Ingestion worker entry point.

    market-rank-worker                      poll the reference universe forever
    market-rank-worker --once AAPL MSFT     one batch for the given symbols
    market-rank-worker --requeue-dlq        retry every eligible DLQ job
"""

import argparse
import sys

from prometheus_client import start_http_server

from live_monitor.market_rank_monitor.core.collector.ingestion_worker import IngestionWorker
from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.exceptions import ConfigurationError, UpstreamAuthError
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore
from live_monitor.market_rank_monitor.core.utils.logger import setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Market rank ingestion worker")
    parser.add_argument("symbols", nargs="*", help="Symbols for --once (default: reference universe)")
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")
    parser.add_argument("--requeue-dlq", action="store_true", help="Retry eligible DLQ jobs and exit")
    parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    parser.add_argument("--no-log-file", action="store_true", help="Log to console only")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logger = setup_logger("live_monitor.market_rank_monitor", log_to_file=not args.no_log_file)

    settings = Settings.from_env()
    worker = IngestionWorker(RedisStore.from_settings(settings), settings)

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Metrics on :{args.metrics_port}")

    try:
        if args.requeue_dlq:
            result = worker.dlq.requeue_all()
            logger.info(f"DLQ requeue: {result}")
        elif args.once:
            report = worker.ingest_batch(args.symbols or worker.reference.universe())
            logger.info(f"Report: {len(report.succeeded)} ok, {len(report.failed)} failed")
        else:
            worker.run_forever()
    except (ConfigurationError, UpstreamAuthError) as e:
        logger.error(f"Worker stopped: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
