"""Monitor Service HTTP handler - message intake and guardian alert endpoints.

Ingest adapters POST normalized messages to /messages; classification runs
asynchronously on the engine's workers. Guardians read their alerts, follow
new ones live over server-sent events, move alerts through their states and
manage their own filters and monitoring settings.

No raw child or guardian identifiers in logs - use hash_pii().
"""
import json
import logging
import os
import uuid

from flask import Flask, Response, jsonify, request, stream_with_context

from guardian.shared.database import NotFoundError
from guardian.shared.models import Filter, MatchMode, Message, MonitoringSettings, Severity
from guardian.shared.utils import configure_pii_salt, hash_pii
from .engine import EngineConfig, GuardianEngine
from .pipeline import PipelineBackpressureError

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt from environment
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

# Workers are started by the __main__ block (or the process runner)
engine = GuardianEngine.from_config(EngineConfig.from_env())

MAX_ALERT_LIMIT = 100
SSE_HEARTBEAT_SECONDS = 15.0


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _internal_error(event: str, error: Exception):
    logger.error(
        event,
        extra={"error": str(error), "error_type": type(error).__name__}
    )
    return _error("Internal server error", 500)


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint, with degraded-path counters."""
    return jsonify({
        "status": "healthy",
        "service": "monitor-service",
        "rules_version": engine.classifier.rules.version,
        "engine": engine.status(),
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies the alert store is reachable.

    Returns:
        200 if ready, 503 if not
    """
    if engine is None or not engine.is_ready():
        return jsonify({"status": "not_ready", "reason": "store_unavailable"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/messages", methods=["POST"])
def submit_message():
    """Accept a message for classification.

    Request Body:
        {
            "message_id": "msg_123",
            "child_id": "child_456",
            "app": "WhatsApp",
            "sender": "Alex",
            "text": "message text",
            "received_at": "2025-06-01T12:00:00Z" (optional)
        }

    Response:
        202 {"status": "accepted", "message_id": ...}
        400 on a malformed body, 503 with Retry-After when the queue is full
    """
    try:
        data = request.get_json(silent=True)
        if not data or not isinstance(data, dict):
            logger.warning("MESSAGE_REQUEST_INVALID", extra={"reason": "empty_body"})
            return _error("Request body required", 400)

        try:
            message = Message.from_dict(data)
        except ValueError as e:
            logger.warning("MESSAGE_REQUEST_INVALID", extra={"reason": str(e)})
            return _error(str(e), 400)

        try:
            engine.submit_message(message)
        except PipelineBackpressureError as e:
            response = jsonify({"error": "Intake queue full, retry later"})
            response.status_code = 503
            response.headers["Retry-After"] = str(max(1, int(e.retry_after_seconds)))
            return response

        logger.info(
            "MESSAGE_ACCEPTED",
            extra={
                "message_id": message.message_id,
                "child_id_hash": hash_pii(message.child_id),
                "app": message.app,
                "message_length": len(message.text),
            }
        )
        return jsonify({"status": "accepted", "message_id": message.message_id}), 202

    except Exception as e:
        return _internal_error("MESSAGE_SUBMIT_ERROR", e)


@app.route("/guardians/<guardian_id>/alerts", methods=["GET"])
def recent_alerts(guardian_id: str):
    """Recent alerts for a guardian, newest first (?limit=, default 20)."""
    limit = request.args.get("limit", 20, type=int)
    if limit is None or not 1 <= limit <= MAX_ALERT_LIMIT:
        return _error(f"limit must be between 1 and {MAX_ALERT_LIMIT}", 400)

    try:
        alerts = engine.recent_alerts(guardian_id, limit)
    except Exception as e:
        return _internal_error("RECENT_ALERTS_ERROR", e)

    return jsonify({
        "guardian_id": guardian_id,
        "alerts": [alert.to_dict() for alert in alerts],
        "count": len(alerts),
    }), 200


@app.route("/guardians/<guardian_id>/alerts/stream", methods=["GET"])
def stream_alerts(guardian_id: str):
    """Live server-sent event stream of the guardian's new alerts."""
    subscription = engine.subscribe_alerts(guardian_id)
    response = Response(
        stream_with_context(event_stream(subscription)),
        mimetype="text/event-stream",
    )
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    response.call_on_close(subscription.close)
    return response


def event_stream(subscription, heartbeat_seconds: float = SSE_HEARTBEAT_SECONDS):
    """Format a subscription as server-sent events.

    Emits a comment line when idle so proxies keep the connection open.
    """
    try:
        yield f": subscribed {subscription.subscription_id}\n\n"
        while not subscription.closed:
            alert = subscription.get(timeout=heartbeat_seconds)
            if alert is None:
                yield ": keepalive\n\n"
                continue
            yield f"id: {alert.alert_id}\nevent: alert\ndata: {json.dumps(alert.to_dict())}\n\n"
    finally:
        subscription.close()


@app.route("/guardians/<guardian_id>/alerts/unread-count", methods=["GET"])
def unread_count(guardian_id: str):
    try:
        count = engine.unread_count(guardian_id)
    except Exception as e:
        return _internal_error("UNREAD_COUNT_ERROR", e)
    return jsonify({"guardian_id": guardian_id, "unread_count": count}), 200


@app.route("/guardians/<guardian_id>/alerts/stats", methods=["GET"])
def alert_stats(guardian_id: str):
    try:
        stats = engine.alert_stats(guardian_id)
    except Exception as e:
        return _internal_error("ALERT_STATS_ERROR", e)
    return jsonify(stats), 200


@app.route("/guardians/<guardian_id>/alerts/digest", methods=["POST"])
def summary_digest(guardian_id: str):
    try:
        digest = engine.summary_digest(guardian_id)
    except Exception as e:
        return _internal_error("SUMMARY_DIGEST_ERROR", e)
    return jsonify(digest), 200


@app.route("/children/<child_id>/orphaned-alerts", methods=["GET"])
def orphaned_alerts(child_id: str):
    """Alerts raised before any guardian was linked to the child."""
    try:
        alerts = engine.orphaned_alerts(child_id)
    except Exception as e:
        return _internal_error("ORPHANED_ALERTS_ERROR", e)
    return jsonify({
        "child_id": child_id,
        "alerts": [alert.to_dict() for alert in alerts],
        "count": len(alerts),
    }), 200


@app.route("/alerts/<alert_id>/read", methods=["POST"])
def mark_read(alert_id: str):
    try:
        alert = engine.mark_alert_read(alert_id)
    except NotFoundError:
        return _error("Alert not found", 404)
    except Exception as e:
        return _internal_error("ALERT_READ_ERROR", e)
    return jsonify(alert.to_dict()), 200


@app.route("/alerts/<alert_id>/acknowledge", methods=["POST"])
def acknowledge(alert_id: str):
    try:
        alert = engine.acknowledge_alert(alert_id)
    except NotFoundError:
        return _error("Alert not found", 404)
    except Exception as e:
        return _internal_error("ALERT_ACKNOWLEDGE_ERROR", e)
    return jsonify(alert.to_dict()), 200


@app.route("/guardians/<guardian_id>/filters", methods=["GET"])
def list_filters(guardian_id: str):
    try:
        filters = engine.list_filters(guardian_id)
    except Exception as e:
        return _internal_error("FILTER_LIST_ERROR", e)
    return jsonify({
        "guardian_id": guardian_id,
        "filters": [f.to_dict() for f in filters],
    }), 200


@app.route("/guardians/<guardian_id>/filters", methods=["POST"])
def upsert_filter(guardian_id: str):
    """Create or replace a custom filter.

    Request Body:
        {
            "filter_id": "flt_123" (optional, generated when absent),
            "match_text": "roblox",
            "match_mode": "exact" | "similar" | "contextual",
            "severity": "low" | "medium" | "high" | "critical",
            "active": true
        }
    """
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return _error("Request body required", 400)

    try:
        custom_filter = Filter(
            filter_id=str(data.get("filter_id") or f"flt_{uuid.uuid4().hex[:12]}"),
            guardian_id=guardian_id,
            match_text=str(data.get("match_text") or ""),
            match_mode=MatchMode(str(data.get("match_mode", "exact")).lower()),
            severity=Severity.parse(data.get("severity", "medium")),
            active=bool(data.get("active", True)),
        )
    except ValueError as e:
        logger.warning(
            "FILTER_REQUEST_INVALID",
            extra={"guardian_id_hash": hash_pii(guardian_id), "reason": str(e)}
        )
        return _error(str(e), 400)

    try:
        saved = engine.upsert_filter(custom_filter)
    except Exception as e:
        return _internal_error("FILTER_UPSERT_ERROR", e)
    return jsonify(saved.to_dict()), 201


@app.route("/filters/<filter_id>", methods=["DELETE"])
def delete_filter(filter_id: str):
    try:
        deleted = engine.delete_filter(filter_id)
    except Exception as e:
        return _internal_error("FILTER_DELETE_ERROR", e)
    if not deleted:
        return _error("Filter not found", 404)
    return jsonify({"filter_id": filter_id, "deleted": True}), 200


@app.route("/guardians/<guardian_id>/settings", methods=["GET"])
def get_settings(guardian_id: str):
    try:
        settings = engine.get_monitoring_settings(guardian_id)
    except Exception as e:
        return _internal_error("SETTINGS_READ_ERROR", e)
    return jsonify(settings.to_dict()), 200


@app.route("/guardians/<guardian_id>/settings", methods=["PUT"])
def update_settings(guardian_id: str):
    """Replace the guardian's monitoring settings.

    Request Body (omitted keys take defaults):
        {
            "monitoring_enabled": true,
            "custom_filters_enabled": true,
            "context_analysis_enabled": true,
            "severity_thresholds": {"high": 0.7},
            "monitored_apps": ["WhatsApp", "Discord"] | null
        }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("Request body required", 400)

    try:
        settings = MonitoringSettings.from_dict(guardian_id, data)
    except (TypeError, ValueError) as e:
        logger.warning(
            "SETTINGS_REQUEST_INVALID",
            extra={"guardian_id_hash": hash_pii(guardian_id), "reason": str(e)}
        )
        return _error(str(e), 400)

    try:
        saved = engine.update_monitoring_settings(settings)
    except Exception as e:
        return _internal_error("SETTINGS_UPDATE_ERROR", e)
    return jsonify(saved.to_dict()), 200

if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    engine.start()
    port = int(os.getenv("PORT", "8000"))
    try:
        app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
    finally:
        engine.stop()
