"""
AWS Lambda handler for the Payout Calculation Engine API.

This is the production entry point for AWS Lambda deployments.
For local development, use main.py (Flask app) instead.

The Lambda surface is stateless: each /calculate_run request carries the full
dataset and the month to calculate.
"""

import base64
import json
import logging
import os

from payout_engine import EngineConfig, InMemoryStore, OutputBuilder, PayoutRunService, PayoutValidationError

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Environment (dev, staging, prod)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")

# Reused across warm invocations
config = EngineConfig.from_env()
output = OutputBuilder()

# CORS headers for API Gateway
CORS_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}


def lambda_handler(event, context):
    """
    Main Lambda entry point.

    Handles API Gateway events for:
    - GET /health
    - GET /api
    - POST /calculate_run
    - OPTIONS (CORS preflight)
    """
    # Handle CORS preflight
    http_method = event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method", "")
    if http_method == "OPTIONS":
        return {"statusCode": 200, "headers": CORS_HEADERS, "body": ""}

    # Get path (supports both REST API and HTTP API formats)
    path = event.get("path") or event.get("rawPath", "")

    # Route to appropriate handler
    if path == "/health" and http_method == "GET":
        return handle_health()
    elif path == "/calculate_run" and http_method == "POST":
        return handle_calculate_run(event)
    elif path == "/api" and http_method == "GET":
        return handle_api_info()
    else:
        return response(404, {"error": "Not found", "path": path})


def response(status_code: int, body: dict) -> dict:
    return {"statusCode": status_code, "headers": CORS_HEADERS, "body": json.dumps(body)}


def handle_health():
    """Health check endpoint."""
    return response(200, {"status": "healthy", "environment": ENVIRONMENT})


def handle_api_info():
    """API information endpoint."""
    return response(200, {
        "status": "ok",
        "message": "Payout Calculation Engine API",
        "version": "1.0",
        "environment": ENVIRONMENT,
        "runtime": "AWS Lambda",
        "endpoints": {"calculate_run": "/calculate_run [POST]", "health": "/health [GET]"},
    })


def parse_body(event) -> dict | None:
    body = event.get("body", "")
    if not isinstance(body, str):
        return body
    if not body:
        return None
    # Handle base64 encoded body (API Gateway)
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    return json.loads(body)


def handle_calculate_run(event):
    """Validate and calculate one month for the dataset in the request body."""
    try:
        input_data = parse_body(event)
        if not input_data:
            return response(400, {"error": "No input data provided", "status": "failed"})

        month_year = input_data["month_year"]
        dataset = input_data.get("data", input_data)
        logger.info(f"Calculating payouts for {month_year}")

        store = InMemoryStore.from_dict(dataset)
        service = PayoutRunService(store, config)
        report = service.validate_run_prerequisites(month_year)
        if not report.is_valid:
            body = output.validation_report(report)
            body["status"] = "validation_failed"
            return response(400, body)

        run = service.create_run(month_year)
        result = service.calculate_run(run.run_id, input_data.get("actor_id"))

        logger.info(f"Payouts calculated for {month_year}: {result.total_employees} employees")

        body = output.calculation(result, store.get_run(run.run_id))
        body["warnings"] = [issue.to_dict() for issue in report.warnings]
        return response(200, body)

    except json.JSONDecodeError as e:
        logger.error(f"JSON parse error: {str(e)}")
        return response(400, {"error": f"Invalid JSON: {str(e)}", "status": "failed"})

    except PayoutValidationError as e:
        logger.error(f"Validation error: {str(e)}")
        return response(400, output.validation_error(e))

    except (ValueError, KeyError, TypeError) as e:
        # Validation errors from engine (missing fields, invalid types, etc.)
        logger.error(f"Validation error: {str(e)}")
        return response(400, {"error": f"Validation error: {str(e)}", "status": "validation_failed"})

    except Exception as e:
        # Unexpected errors - log details but return generic message to avoid information disclosure
        logger.error(f"Unexpected processing error: {str(e)}", exc_info=True)
        return response(500, {"error": "An unexpected error occurred during processing", "status": "failed"})
