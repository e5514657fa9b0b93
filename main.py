from flask import Flask, request, jsonify
from flask_cors import CORS
from functools import wraps
from payout_engine import (
    AdjustmentService, EngineConfig, FnFSettlementService, InMemoryStore, OutputBuilder, PayoutRunService,
    PayoutValidationError, RunStateError,
)
from payout_engine.models import to_date
from payout_engine.output import to_money
import json
import os
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for all routes
CORS(app)

config = EngineConfig.from_env()
output = OutputBuilder()


def load_store(engine_config: EngineConfig) -> InMemoryStore:
    """Seed the in-memory store from PAYOUT_DATA_FILE when one is configured."""
    if not engine_config.data_file:
        return InMemoryStore()
    with open(engine_config.data_file) as f:
        data = json.load(f)
    logger.info(f"Loaded payout data from {engine_config.data_file}")
    return InMemoryStore.from_dict(data)


def configure(new_store: InMemoryStore, engine_config: EngineConfig | None = None) -> None:
    """(Re)bind the services the routes use to a store."""
    global store, run_service, adjustment_service, settlement_service
    engine_config = engine_config or config
    store = new_store
    run_service = PayoutRunService(store, engine_config)
    adjustment_service = AdjustmentService(store, engine_config)
    settlement_service = FnFSettlementService(store, engine_config, run_service)


configure(load_store(config))


def handle_errors(view):
    """Map engine exceptions to JSON error responses."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        try:
            return view(*args, **kwargs)

        except RunStateError as e:
            logger.error(f"State conflict: {str(e)}")
            body = output.validation_error(e)
            body["status"] = "conflict"
            return jsonify(body), 409

        except PayoutValidationError as e:
            # Validation errors from engine
            logger.error(f"Validation error: {str(e)}")
            return jsonify(output.validation_error(e)), 400

        except (ValueError, KeyError, TypeError) as e:
            # Malformed request bodies
            logger.error(f"Validation error: {str(e)}")
            return jsonify({
                "error": f"Validation error: {str(e)}",
                "status": "validation_failed"
            }), 400

        except LookupError as e:
            logger.error(f"Not found: {str(e)}")
            return jsonify({
                "error": str(e),
                "status": "not_found"
            }), 404

        except Exception as e:
            # Unexpected errors
            logger.error(f"Processing error: {str(e)}", exc_info=True)
            return jsonify({
                "error": "An unexpected error occurred during processing",
                "status": "failed"
            }), 500

    return wrapper


def get_body() -> dict:
    body = request.get_json(force=True, silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


@app.route("/api", methods=["GET"])
def api_info():
    """API information endpoint"""
    return jsonify({
        "status": "ok",
        "message": "Payout Calculation Engine API",
        "version": "1.0",
        "environment": config.environment,
        "endpoints": {
            "health": "/health [GET]",
            "validate_run": "/runs/validate [POST]",
            "create_run": "/runs [POST]",
            "get_run": "/runs/<run_id> [GET]",
            "delete_run": "/runs/<run_id> [DELETE]",
            "calculate_run": "/runs/<run_id>/calculate [POST]",
            "transition_run_status": "/runs/<run_id>/status [POST]",
            "run_payouts": "/runs/<run_id>/payouts [GET]",
            "year_end_release": "/year_end_release [POST]",
            "create_adjustment": "/adjustments [POST]",
            "review_adjustment": "/adjustments/<adjustment_id>/review [POST]",
            "apply_adjustment": "/adjustments/<adjustment_id>/apply [POST]",
            "create_settlement": "/settlements [POST]",
            "calculate_tranche1": "/settlements/<settlement_id>/tranche1 [POST]",
            "calculate_tranche2": "/settlements/<settlement_id>/tranche2 [POST]"
        }
    }), 200


@app.route("/health", methods=["GET"])
def health():
    """Health check for monitoring"""
    return jsonify({"status": "healthy"}), 200


# =============================================================================
# PAYOUT RUNS
# =============================================================================


@app.route("/runs/validate", methods=["POST"])
@handle_errors
def validate_run():
    """Report every blocking error and warning for a month without calculating."""
    body = get_body()
    report = run_service.validate_run_prerequisites(body["month_year"])
    return jsonify(output.validation_report(report)), 200


@app.route("/runs", methods=["POST"])
@handle_errors
def create_run():
    body = get_body()
    run = run_service.create_run(body["month_year"], body.get("notes"))
    return jsonify(output.run(run)), 201


@app.route("/runs/<run_id>", methods=["GET"])
@handle_errors
def get_run(run_id):
    return jsonify(output.run(store.get_run(run_id))), 200


@app.route("/runs/<run_id>", methods=["DELETE"])
@handle_errors
def delete_run(run_id):
    run_service.delete_run(run_id)
    return jsonify({"status": "deleted", "run_id": run_id}), 200


@app.route("/runs/<run_id>/calculate", methods=["POST"])
@handle_errors
def calculate_run(run_id):
    """
    Calculate every paid employee for the run's month
    """
    body = get_body()
    actor_id = body.get("actor_id")
    logger.info(f"Calculating run {run_id} requested by {actor_id}")

    result = run_service.calculate_run(run_id, actor_id)

    logger.info(f"Run {run_id} calculated: {result.total_employees} employees, "
                f"total {to_money(result.total_payout_usd)}")
    return jsonify(output.calculation(result, store.get_run(run_id))), 200


@app.route("/runs/<run_id>/status", methods=["POST"])
@handle_errors
def transition_run_status(run_id):
    body = get_body()
    run = run_service.transition_run_status(run_id, body["status"], body.get("actor_id"))
    return jsonify(output.run(run)), 200


@app.route("/runs/<run_id>/payouts", methods=["GET"])
@handle_errors
def run_payouts(run_id):
    run = store.get_run(run_id)
    return jsonify(output.run_payouts(
        run,
        store.payouts_for_run(run_id),
        store.metric_details_for_run(run_id),
        store.deal_lines_for_run(run_id),
    )), 200


@app.route("/year_end_release", methods=["POST"])
@handle_errors
def year_end_release():
    body = get_body()
    summary = run_service.release_year_end(int(body["fiscal_year"]), body["target_month"], body.get("actor_id"))
    summary["total_released_usd"] = to_money(summary["total_released_usd"])
    return jsonify(summary), 200


# =============================================================================
# ADJUSTMENTS
# =============================================================================


@app.route("/adjustments", methods=["POST"])
@handle_errors
def create_adjustment():
    body = get_body()
    adjustment = adjustment_service.create_adjustment(
        payout_run_id=body["payout_run_id"],
        employee_id=body["employee_id"],
        adjustment_type=body["adjustment_type"],
        adjustment_amount_usd=body["adjustment_amount_usd"],
        reason=body.get("reason", ""),
        requested_by=body.get("requested_by"),
        original_amount_usd=body.get("original_amount_usd"),
        exchange_rate_used=body.get("exchange_rate_used"),
    )
    return jsonify(output.adjustment(adjustment)), 201


@app.route("/adjustments/<adjustment_id>/review", methods=["POST"])
@handle_errors
def review_adjustment(adjustment_id):
    body = get_body()
    approve = body["approve"]
    if not isinstance(approve, bool):
        raise ValueError(f"approve must be true or false, got: {approve}")
    adjustment = adjustment_service.review_adjustment(adjustment_id, approve, body.get("reviewer_id"))
    return jsonify(output.adjustment(adjustment)), 200


@app.route("/adjustments/<adjustment_id>/apply", methods=["POST"])
@handle_errors
def apply_adjustment(adjustment_id):
    body = get_body()
    payout = adjustment_service.apply_adjustment(adjustment_id, body["target_month"], body.get("actor_id"))
    return jsonify({
        "adjustment": output.adjustment(store.get_adjustment(adjustment_id)),
        "payout": output.payout(payout)
    }), 200


# =============================================================================
# FULL & FINAL SETTLEMENTS
# =============================================================================


@app.route("/settlements", methods=["POST"])
@handle_errors
def create_settlement():
    body = get_body()
    settlement = settlement_service.create_settlement(
        body["employee_id"],
        departure_date=body.get("departure_date"),
        collection_grace_days=body.get("collection_grace_days"),
    )
    return jsonify(output.settlement(settlement)), 201


@app.route("/settlements/<settlement_id>/tranche1", methods=["POST"])
@handle_errors
def calculate_tranche1(settlement_id):
    settlement = settlement_service.calculate_tranche1(settlement_id)
    return jsonify(output.settlement(settlement)), 200


@app.route("/settlements/<settlement_id>/tranche2", methods=["POST"])
@handle_errors
def calculate_tranche2(settlement_id):
    body = get_body()
    settlement = settlement_service.calculate_tranche2(settlement_id, as_of=to_date(body.get("as_of")))
    return jsonify(output.settlement(settlement)), 200


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=False)
