from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from leaddesk.core.context import resolve_client_ip
from leaddesk.core.database import get_db
from leaddesk.intake.errors import IntakeError
from leaddesk.intake.responses import error_envelope, intake_response, preflight_response, success_envelope
from leaddesk.intake.service import IntakeService, LeadQuery
from leaddesk.metrics import observe_intake_result
from leaddesk.middleware.rate_limit import take_intake_budget

logger = logging.getLogger("leaddesk.intake")

router = APIRouter(tags=["intake"])
intake_service = IntakeService()

INTAKE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


async def _read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        raise IntakeError("validation_error", 400, "Invalid JSON body")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise IntakeError("validation_error", 400, "Invalid JSON body") from exc


@router.api_route("/api/leads", methods=INTAKE_METHODS)
async def leads_endpoint(request: Request, db: Session = Depends(get_db)) -> Response:
    method = request.method.upper()
    if method == "OPTIONS":
        return preflight_response()

    try:
        api_key = await run_in_threadpool(
            intake_service.authenticate,
            db,
            request.headers.get("x-api-key"),
            resolve_client_ip(request),
        )
        context = getattr(request.state, "context", None)
        if context is not None:
            context.api_key_id = str(api_key.id)

        allowed, retry_after = take_intake_budget(str(api_key.id))
        if not allowed:
            raise IntakeError("rate_limited", 429, "Rate limit exceeded", headers={"Retry-After": str(retry_after)})

        if method == "GET":
            query = LeadQuery.from_params(request.query_params)
            data = await run_in_threadpool(intake_service.list_leads, db, api_key, query)
        elif method == "POST":
            body = await _read_json_body(request)
            data = await run_in_threadpool(intake_service.submit_lead, db, api_key, body)
        else:
            raise IntakeError("method_not_allowed", 405, "Method not allowed")
    except IntakeError as exc:
        observe_intake_result(method, exc.code)
        if exc.status_code < 500:
            logger.warning("intake.rejected", extra={"method": method, "error_code": exc.code, "status_code": exc.status_code})
        response = intake_response(error_envelope(exc.code, exc.message, exc.details), exc.status_code)
        for name, value in exc.headers.items():
            response.headers[name] = value
        return response
    except Exception as exc:
        observe_intake_result(method, "internal_error")
        logger.exception("intake.failed", extra={"method": method, "error_code": "internal_error", "error": str(exc)})
        return intake_response(error_envelope("internal_error", "Internal server error"), 500)

    observe_intake_result(method, "ok")
    return intake_response(success_envelope(data))
