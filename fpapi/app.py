#!/usr/bin/env python3
"""
Fingerprint Correlator Flask API
================================

Thin HTTP boundary over the correlation buffer and identity pipeline.

Features:
- Sensor ingest endpoints (edge, tls, dns, webrtc, tcp)
- Collect endpoint with optional wait for late network chunks
- Snapshot lookup, session history, search, stats and comparison
- Chunk buffer diagnostics
"""

import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from loguru import logger

from fpcore.exceptions import BackendUnavailable, InvalidArgument, NotFound
from fpcore.fingerprinting import header_order_and_hash

INGEST_KINDS = ("edge", "tls", "dns", "webrtc", "tcp")
DEFAULT_MAX_PAYLOAD_BYTES = 2 * 1024 * 1024
SNAPSHOT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{6,64}$")

GeoLookup = Callable[[str], Optional[Dict[str, Any]]]


def create_app(config: dict, service=None, ingestor=None, store=None,
               geo_lookup: Optional[GeoLookup] = None,
               rdap_lookup: Optional[GeoLookup] = None) -> Flask:
    """
    Create and configure Flask application.

    Args:
        config: Application configuration dict
        service: FingerprintService instance
        ingestor: ChunkIngestor instance
        store: CorrelationStore instance
        geo_lookup: Optional ip -> geo dict enrichment
        rdap_lookup: Optional ip -> rdap dict enrichment

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)

    # Configuration
    api_config = config.get("api", {})
    app.config["DEBUG"] = config.get("general", {}).get("debug", False)
    app.config["JSON_SORT_KEYS"] = False

    # Enable CORS
    CORS(app, origins=api_config.get("cors_origins", "*"), supports_credentials=True)

    app.service = service
    app.ingestor = ingestor
    app.store = store
    app.geo_lookup = geo_lookup
    app.rdap_lookup = rdap_lookup
    app.config_data = config

    register_error_handlers(app)
    register_routes(app)

    logger.info("Flask app created successfully")
    return app


def register_error_handlers(app: Flask):
    """Map domain errors to JSON responses."""

    @app.errorhandler(InvalidArgument)
    def handle_invalid(e):
        return jsonify({"success": False, "error": e.message}), 400

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({"success": False, "error": e.message}), 404

    @app.errorhandler(BackendUnavailable)
    def handle_backend(e):
        logger.error(f"Backend unavailable ({e.operation}): {e.message}")
        return jsonify({"success": False, "error": "storage backend unavailable"}), 503

    @app.errorhandler(404)
    def handle_404(e):
        return jsonify({"success": False, "error": "Not found", "path": request.path}), 404


def client_ip(app: Flask) -> str:
    """Client IP, honouring X-Forwarded-For when behind a proxy."""
    if app.config_data.get("api", {}).get("trust_proxy", True):
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.remote_addr or "local"


def resolve_correlation_id(body: Dict[str, Any]) -> Optional[str]:
    """Correlation id from the body, the X-FC-Corr header or the fc_corr cookie."""
    meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
    corr_id = (
        body.get("corrId")
        or body.get("sid")
        or body.get("sessionId")
        or meta.get("sessionId")
        or request.headers.get("X-FC-Corr")
        or request.cookies.get("fc_corr")
    )
    return str(corr_id) if corr_id else None


def _not_initialized():
    return jsonify({"success": False, "error": "Not initialized"}), 503


def register_routes(app: Flask):
    """Register all REST API routes."""

    # =========================================================================
    # API Routes - Status
    # =========================================================================

    @app.route("/health")
    def health_check():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "service": "fp-correlator",
            "env": app.config_data.get("general", {}).get("environment", "dev"),
            "ts": int(time.time() * 1000)
        })

    @app.route("/api/version")
    def get_version():
        if not app.service:
            return _not_initialized()
        return jsonify({"success": True, "data": app.service.version_info()})

    @app.route("/api/echo")
    def echo():
        """Header order fingerprint of this request."""
        headers = header_order_and_hash(list(request.headers.items()))
        return jsonify({
            "success": True,
            "data": {
                "http_version": request.environ.get("SERVER_PROTOCOL"),
                "header_order_hash": headers["hash"],
                "header_order": headers["order"],
                "header_sample": headers["sample"],
                "query": request.args.to_dict()
            }
        })

    # =========================================================================
    # API Routes - Ingest
    # =========================================================================

    @app.route("/api/<kind>/ingest", methods=["POST"])
    def ingest(kind: str):
        """Buffer one sensor chunk."""
        if kind not in INGEST_KINDS:
            return jsonify({"success": False, "error": f"Unknown ingest kind: {kind}"}), 404
        if not app.ingestor:
            return _not_initialized()

        limits = app.config_data.get("ingest", {}).get("max_payload_bytes", {})
        max_bytes = limits.get(kind, DEFAULT_MAX_PAYLOAD_BYTES)
        if request.content_length and request.content_length > max_bytes:
            logger.warning(f"[INGEST] {kind} payload too large ({request.content_length} bytes)")
            return jsonify({"success": False, "error": "payload too large"}), 413

        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"success": False, "error": "JSON object expected"}), 400

        corr_id = resolve_correlation_id(body)
        if corr_id:
            body["corrId"] = corr_id
        logger.debug(f"[INGEST] kind={kind} sid={corr_id or '-'} keys={sorted(body.keys())}")

        result = app.ingestor.ingest(kind, body)
        return jsonify({"success": True, "data": result})

    # =========================================================================
    # API Routes - Fingerprints
    # =========================================================================

    @app.route("/api/fp/collect", methods=["POST"])
    def collect():
        """Assemble and save a snapshot from the collector payload."""
        if not app.service:
            return _not_initialized()

        body = request.get_json(silent=True)
        payload = body.get("payload", body) if isinstance(body, dict) else None
        if not isinstance(payload, dict):
            return jsonify({"success": False, "error": "payload required"}), 400

        collect_config = app.config_data.get("collect", {})
        wait_raw = request.args.get("waitFor") or collect_config.get("wait_for") or ""
        if isinstance(wait_raw, (list, tuple)):
            wait_for = [str(k).strip() for k in wait_raw if str(k).strip()]
        else:
            wait_for = [k.strip() for k in str(wait_raw).split(",") if k.strip()]
        timeout_ms = request.args.get("timeoutMs", collect_config.get("timeout_ms", 8000), type=int)

        ip = client_ip(app)
        headers_srv = header_order_and_hash(list(request.headers.items()))
        geo_srv = app.geo_lookup(ip) if app.geo_lookup else None
        rdap = app.rdap_lookup(ip) if app.rdap_lookup else None

        result = app.service.submit(
            ip=ip,
            ua=request.headers.get("User-Agent"),
            origin=request.headers.get("Origin"),
            payload=payload,
            correlation_id=resolve_correlation_id(payload),
            headers_srv=headers_srv if headers_srv["order"] else None,
            geo_srv=geo_srv or None,
            rdap=rdap or None,
            wait_for=wait_for,
            wait_timeout_ms=timeout_ms
        )

        snapshot = result.snapshot
        return jsonify({
            "success": True,
            "data": {
                "id": snapshot.id,
                "content_hash": snapshot.content_hash,
                "stable_id": snapshot.stable_id,
                "created_at": snapshot.created_at,
                "network_found": result.network_found,
                "waited": result.readiness.to_dict() if result.readiness else None
            }
        })

    @app.route("/api/fp/compare")
    def compare():
        """Compare two snapshots (?a=&b=)."""
        if not app.service:
            return _not_initialized()

        id_a = request.args.get("a")
        id_b = request.args.get("b")
        if not id_a or not id_b:
            return jsonify({"success": False, "error": "a and b required"}), 400

        result = app.service.compare(id_a, id_b)
        return jsonify({"success": True, "data": result.to_dict()})

    @app.route("/api/fp/search")
    def search():
        if not app.service:
            return _not_initialized()

        result = app.service.search(
            from_ts=request.args.get("from"),
            to_ts=request.args.get("to"),
            band=request.args.get("band"),
            ua=request.args.get("ua"),
            page=request.args.get("page"),
            limit=request.args.get("limit", 50, type=int)
        )
        return jsonify({"success": True, "data": result})

    @app.route("/api/fp/session/<sid>")
    def get_session(sid: str):
        if not app.service:
            return _not_initialized()

        result = app.service.session(sid)
        if not result:
            return jsonify({"success": False, "error": "Session not found"}), 404
        return jsonify({"success": True, "data": result})

    @app.route("/api/fp/stats")
    def get_stats():
        if not app.service:
            return _not_initialized()
        return jsonify({"success": True, "data": app.service.stats()})

    @app.route("/api/fp/debug/chunks/<sid>")
    def debug_chunks(sid: str):
        """Lease read of the chunks buffered for a correlation id."""
        if not app.store:
            return _not_initialized()
        parts = app.store.get_chunks(sid)
        return jsonify({"success": True, "data": {"corr_id": sid, "parts": parts}})

    @app.route("/api/fp/debug/stats")
    def debug_stats():
        if not app.store:
            return _not_initialized()
        return jsonify({
            "success": True,
            "data": app.store.debug_stats(),
            "timestamp": datetime.now().isoformat()
        })

    @app.route("/api/fp/<snapshot_id>")
    def get_fingerprint(snapshot_id: str):
        """Full snapshot by id."""
        if not app.service:
            return _not_initialized()
        if not SNAPSHOT_ID_RE.match(snapshot_id):
            return jsonify({"success": False, "error": "Snapshot not found"}), 404

        snapshot = app.service.get(snapshot_id)
        if not snapshot:
            return jsonify({"success": False, "error": "Snapshot not found"}), 404
        return jsonify({"success": True, "data": snapshot.to_dict()})
