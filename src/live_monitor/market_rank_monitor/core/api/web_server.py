"""
Operator and health HTTP surface for the market rank monitor.
Read-only rank queries plus health, freshness and DLQ administration.
"""

import logging
from datetime import datetime
from functools import wraps
from typing import Tuple

from flask import Flask, jsonify, request

from live_monitor.market_rank_monitor.core.clock.session_clock import STORAGE_SESSIONS, SessionClock
from live_monitor.market_rank_monitor.core.collector.ingestion_worker import IngestionWorker
from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.exceptions import DLQJobNotFoundError, StoreUnavailableError
from live_monitor.market_rank_monitor.core.monitoring.health_check import UNHEALTHY, HealthCheck
from live_monitor.market_rank_monitor.core.monitoring.freshness import FreshnessTracker
from live_monitor.market_rank_monitor.core.storage.keys import RANK_FIELDS
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

MAX_PAGE = 500


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


class RankWebServer:
    """Flask app wiring the rank index and monitoring components to HTTP."""

    def __init__(
        self,
        store: RedisStore = None,
        settings: Settings = None,
        clock: SessionClock = None,
        worker: IngestionWorker = None,
        host="localhost",
        port=5000,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store or RedisStore.from_settings(self.settings)
        self.clock = clock or SessionClock()
        self.worker = worker or IngestionWorker(self.store, self.settings, self.clock)

        self.rank_index = self.worker.rank_index
        self.dlq = self.worker.dlq
        self.health = self.worker.health
        self.freshness = FreshnessTracker(self.store, self.settings, self.clock)
        self.health_check = HealthCheck(
            self.store,
            self.settings,
            health=self.health,
            dlq=self.dlq,
            freshness=self.freshness,
            lock=self.worker.lock,
            universe_loader=self.worker.reference.universe,
        )

        self.host = host
        self.port = port
        self.app = Flask(__name__)
        self._setup_routes()

    def _require_admin(self, view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            expected = self.settings.admin_api_key
            if expected and request.headers.get("Authorization") != f"Bearer {expected}":
                return jsonify({"error": "unauthorized"}), 401
            return view(*args, **kwargs)

        return wrapper

    def default_view(self, instant: datetime = None) -> Tuple[str, str]:
        """
        Date and session a rank request without explicit ones reads.

        On weekends and holidays that is the after-hours book of the last
        trading day, not an empty book for today.
        """
        if not self.clock.is_trading_day(instant):
            return self.clock.last_trading_day(instant), "after"
        return self.clock.date_key(instant), self.clock.storage_session(self.clock.detect_session(instant), instant)

    def _setup_routes(self):
        app = self.app
        admin = self._require_admin

        # ------------------------------ health -------------------------------
        @app.route("/api/health")
        def health():
            report = self.health_check.report()
            return jsonify(report), 503 if report["status"] == UNHEALTHY else 200

        @app.route("/api/health/worker")
        def health_worker():
            try:
                statuses = self.health.all_statuses()
                worker = self.health_check.worker_check()
                bulk = self.health_check.bulk_check()
            except StoreUnavailableError as e:
                return jsonify({"error": str(e)}), 503
            return jsonify(
                {
                    "worker": worker,
                    "bulk": bulk,
                    "operations": {op: s.model_dump(mode="json") for op, s in statuses.items()},
                }
            )

        @app.route("/api/metrics/freshness")
        def freshness():
            try:
                metrics = self.freshness.metrics(self.worker.reference.universe())
            except StoreUnavailableError as e:
                return jsonify({"error": str(e)}), 503
            return jsonify({**metrics.model_dump(mode="json"), "alert": self.freshness.should_alert(metrics)})

        # ------------------------------- DLQ ---------------------------------
        @app.route("/api/admin/dlq", methods=["GET"])
        @admin
        def dlq_list():
            if request.args.get("stats") == "true":
                return jsonify(self.dlq.stats())
            jobs = self.dlq.list(request.args.get("type"), limit=_int_arg("limit", 100))
            return jsonify({"jobs": [j.model_dump(mode="json") for j in jobs], "count": len(jobs)})

        @app.route("/api/admin/dlq", methods=["POST"])
        @admin
        def dlq_requeue():
            body = request.get_json(silent=True) or {}
            if body.get("requeueAll"):
                return jsonify(self.dlq.requeue_all())
            job_id = body.get("jobId")
            if not job_id:
                return jsonify({"error": "jobId or requeueAll required"}), 400
            try:
                success = self.dlq.requeue_one(job_id)
            except DLQJobNotFoundError as e:
                return jsonify({"error": str(e)}), 404
            return jsonify({"jobId": job_id, "success": success})

        @app.route("/api/admin/dlq", methods=["DELETE"])
        @admin
        def dlq_purge():
            return jsonify({"purged": self.dlq.purge()})

        # ------------------------------ ranks --------------------------------
        @app.route("/api/rank/<field>")
        def rank(field):
            if field not in RANK_FIELDS:
                return jsonify({"error": f"unknown field {field}"}), 400

            default_date, default_session = self.default_view()
            date = request.args.get("date") or default_date
            session = request.args.get("session") or default_session
            order = request.args.get("order", "desc")
            if session not in STORAGE_SESSIONS or order not in ("asc", "desc"):
                return jsonify({"error": "invalid session or order"}), 400
            offset = max(_int_arg("offset", 0), 0)
            limit = min(max(_int_arg("limit", 100), 0), MAX_PAGE)

            result = {"date": date, "session": session, "field": field, "order": order, "total": 0, "items": []}
            try:
                version = self.rank_index.version(date, session, field)
                etag = f'"{date}:{session}:{field}:{version}"'
                if request.headers.get("If-None-Match") == etag:
                    return "", 304

                symbols = self.rank_index.ranked_range(date, session, field, order, offset, limit)
                records = self.rank_index.many_last(date, session, symbols)
                result["total"] = self.rank_index.count(date, session, field)
            except StoreUnavailableError as e:
                logger.warning(f"Rank read served empty, store unavailable: {e}")
                return jsonify({**result, "degraded": True})

            result["items"] = [
                {"rank": offset + i + 1, "symbol": s, **records[s].model_dump()}
                for i, s in enumerate(symbols)
                if s in records
            ]
            response = jsonify(result)
            response.headers["ETag"] = etag
            return response

    def run(self, debug=False):
        logger.info(f"Starting market rank server on {self.host}:{self.port}")
        self.app.run(host=self.host, port=self.port, debug=debug)


def main():
    """Main entry point"""
    import argparse

    from live_monitor.market_rank_monitor.core.utils.logger import setup_logger

    parser = argparse.ArgumentParser(description="Market rank operator server")
    parser.add_argument("--host", default="localhost", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5000, help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    args = parser.parse_args()

    setup_logger("live_monitor.market_rank_monitor")
    RankWebServer(host=args.host, port=args.port).run(debug=args.debug)


if __name__ == "__main__":
    main()
