from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Mapping

from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leaddesk import events
from leaddesk.context import get_correlation_id
from leaddesk.crm.countries import normalize_country
from leaddesk.crm.models import ApiKey, AssignmentRule, Lead, LeadActivity
from leaddesk.intake.errors import IntakeError
from leaddesk.intake.responses import human_date
from leaddesk.metrics import observe_auto_assignment
from leaddesk.otel import get_tracer

logger = logging.getLogger("leaddesk.intake")
tracer = get_tracer("leaddesk.intake")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
REQUIRED_FIELDS = ["firstName", "lastName", "email"]
LEAD_CREATED_EVENT = "leads.lead.created"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO date or datetime string; naive values are taken as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(raw)
        except ValueError:
            return None
        parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _optional_text(value: Any) -> str | None:
    if value is None or value == "" or value == 0:
        return None
    return str(value)


@dataclass
class LeadSubmission:
    first_name: str
    last_name: str
    email: str
    phone: str | None
    country: str | None
    brand: str | None
    funnel: str | None
    desk: str | None
    source_id: str | None
    converted_at: datetime | None

    @classmethod
    def from_body(cls, body: Any) -> "LeadSubmission":
        if not isinstance(body, Mapping):
            raise IntakeError("validation_error", 400, "Invalid JSON body")

        if not all(_optional_text(body.get(name)) for name in REQUIRED_FIELDS):
            raise IntakeError(
                "validation_error",
                400,
                "Missing required fields",
                {"fields": list(REQUIRED_FIELDS)},
            )

        email = str(body["email"])
        if not EMAIL_PATTERN.match(email):
            raise IntakeError(
                "validation_error",
                400,
                "Invalid email format",
                {"field": "email", "value": body["email"]},
            )

        return cls(
            first_name=str(body["firstName"]),
            last_name=str(body["lastName"]),
            email=email,
            phone=_optional_text(body.get("phone")),
            country=_optional_text(body.get("country")),
            brand=_optional_text(body.get("brand")),
            funnel=_optional_text(body.get("funnel")),
            desk=_optional_text(body.get("desk")),
            source_id=_optional_text(body.get("source_id")),
            converted_at=parse_timestamp(body.get("convertedAt")),
        )


@dataclass
class AssignmentDecision:
    agent_id: uuid.UUID
    rule_id: uuid.UUID
    agent_name: str
    source_name: str
    country_code: str

    def describe(self) -> str:
        return (
            f"Automatically assigned to {self.agent_name} based on source "
            f"'{self.source_name}' and country '{self.country_code}'"
        )


class RequestAuthenticator:
    def authenticate(self, session: Session, api_key: str | None, client_ip: str | None) -> ApiKey:
        if not api_key:
            raise IntakeError("missing_api_key", 401, "API key is required")

        key = session.scalar(select(ApiKey).where(ApiKey.api_key == api_key))
        if key is None or not key.is_active:
            raise IntakeError("unauthorized", 401, "Invalid or inactive API key")

        if key.allowed_ips and (client_ip is None or client_ip not in key.allowed_ips):
            raise IntakeError("ip_not_allowed", 403, "IP address not allowed")
        return key


class LeadDeduplicator:
    def check(self, session: Session, submission: LeadSubmission) -> None:
        # Email wins over phone when both collide with different leads.
        if session.scalar(select(Lead.id).where(Lead.email == submission.email).limit(1)) is not None:
            raise IntakeError("duplicate_email", 409, "Lead with this email already exists")
        if submission.phone and (
            session.scalar(select(Lead.id).where(Lead.phone == submission.phone).limit(1)) is not None
        ):
            raise IntakeError("duplicate_phone", 409, "Lead with this phone number already exists")


class AssignmentResolver:
    def resolve(self, session: Session, source_prefix: str, country: str | None) -> AssignmentDecision | None:
        if not country:
            return None

        country_code = normalize_country(country)
        rule = session.scalars(
            select(AssignmentRule)
            .where(
                AssignmentRule.source_name == source_prefix,
                func.upper(AssignmentRule.country_code) == country_code.upper(),
                AssignmentRule.is_active.is_(True),
            )
            .order_by(
                AssignmentRule.priority.desc(),
                AssignmentRule.created_at.asc(),
                AssignmentRule.id.asc(),
            )
            .limit(1)
        ).first()
        if rule is None:
            return None

        agent = rule.assigned_agent
        return AssignmentDecision(
            agent_id=rule.assigned_agent_id,
            rule_id=rule.id,
            agent_name=agent.full_name if agent is not None and agent.full_name else "Unknown Agent",
            source_name=rule.source_name,
            country_code=rule.country_code,
        )


class LeadPersister:
    def persist(
        self,
        session: Session,
        api_key: ApiKey,
        submission: LeadSubmission,
        decision: AssignmentDecision | None,
    ) -> Lead:
        lead = Lead(
            first_name=submission.first_name,
            last_name=submission.last_name,
            email=submission.email,
            phone=submission.phone,
            country=submission.country,
            brand=submission.brand,
            source=api_key.source_prefix,
            funnel=submission.funnel,
            desk=submission.desk,
            status="New",
            source_id=submission.source_id or api_key.source_id,
            api_key_id=api_key.id,
            converted_at=submission.converted_at,
            assigned_to=decision.agent_id if decision is not None else None,
        )
        session.add(lead)
        session.flush()

        if decision is not None:
            session.add(LeadActivity(lead_id=lead.id, type="auto_assignment", description=decision.describe()))

        if submission.converted_at is not None:
            activity = LeadActivity(
                lead_id=lead.id,
                type="conversion",
                description=(
                    f"Lead created with FTD at {iso_utc(submission.converted_at)} "
                    f"via API ({api_key.source_prefix})"
                ),
            )
        else:
            activity = LeadActivity(
                lead_id=lead.id,
                type="creation",
                description=f"Lead created via API ({api_key.source_prefix})",
            )
        session.add(activity)

        api_key.last_used = utcnow()
        session.add(api_key)
        session.commit()
        return lead


@dataclass
class LeadQuery:
    email: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    sort: str | None = None
    limit: int | None = None
    offset: int | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "LeadQuery":
        limit = _parse_int(params.get("limit"))
        # Offset only counts when a limit is given.
        offset = _parse_int(params.get("offset")) if limit is not None else None
        sort = params.get("sort")
        return cls(
            email=params.get("email") or None,
            created_from=parse_timestamp(params.get("from")),
            created_to=parse_timestamp(params.get("to")),
            sort=sort if sort in {"asc", "desc"} else None,
            limit=limit,
            offset=offset,
        )


def _parse_int(value: str | None) -> int | None:
    if not value:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


class IntakeService:
    def __init__(self) -> None:
        self.authenticator = RequestAuthenticator()
        self.deduplicator = LeadDeduplicator()
        self.resolver = AssignmentResolver()
        self.persister = LeadPersister()

    def authenticate(self, session: Session, api_key: str | None, client_ip: str | None) -> ApiKey:
        with tracer.start_as_current_span("intake.authenticate") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            key = self.authenticator.authenticate(session, api_key, client_ip)
            span.set_attribute("api_key_id", str(key.id))
            return key

    def list_leads(self, session: Session, api_key: ApiKey, query: LeadQuery) -> list[dict[str, Any]]:
        stmt: Select[tuple[Lead]] = select(Lead).where(Lead.api_key_id == api_key.id)
        if query.email:
            stmt = stmt.where(Lead.email == query.email)
        if query.created_from is not None:
            stmt = stmt.where(Lead.created_at >= query.created_from)
        if query.created_to is not None:
            stmt = stmt.where(Lead.created_at <= query.created_to)

        if query.sort == "asc":
            stmt = stmt.order_by(Lead.created_at.asc(), Lead.id.asc())
        elif query.sort == "desc":
            stmt = stmt.order_by(Lead.created_at.desc(), Lead.id.desc())
        else:
            stmt = stmt.order_by(Lead.id.asc())

        if query.limit is not None:
            stmt = stmt.limit(query.limit)
            if query.offset:
                stmt = stmt.offset(query.offset)

        try:
            leads = session.scalars(stmt).all()
        except SQLAlchemyError as exc:
            logger.exception("intake.failed", extra={"api_key_id": str(api_key.id), "error": str(exc)})
            raise IntakeError("query_error", 500, "Failed to query leads") from exc

        return [
            {
                "id": lead.id,
                "first_name": lead.first_name,
                "last_name": lead.last_name,
                "email": lead.email,
                "phone": lead.phone,
                "country": lead.country,
                "status": lead.status,
                "has_deposited": lead.has_deposited,
                "converted_at": human_date(lead.converted_at),
                "created_at": human_date(lead.created_at),
            }
            for lead in leads
        ]

    def submit_lead(self, session: Session, api_key: ApiKey, body: Any) -> dict[str, Any]:
        with tracer.start_as_current_span("intake.submit") as span:
            span.set_attribute("api_key_id", str(api_key.id))
            span.set_attribute("correlation_id", get_correlation_id() or "")

            submission = LeadSubmission.from_body(body)

            with tracer.start_as_current_span("intake.deduplicate"):
                self.deduplicator.check(session, submission)

            with tracer.start_as_current_span("intake.resolve_assignment") as resolve_span:
                decision = self.resolver.resolve(session, api_key.source_prefix, submission.country)
                resolve_span.set_attribute("matched", decision is not None)
            observe_auto_assignment(decision is not None)
            if decision is not None:
                logger.info(
                    "intake.rule_matched",
                    extra={
                        "api_key_id": str(api_key.id),
                        "source": decision.source_name,
                        "country_code": decision.country_code,
                        "rule_id": str(decision.rule_id),
                        "assigned_to": str(decision.agent_id),
                    },
                )

            with tracer.start_as_current_span("intake.persist"):
                try:
                    lead = self.persister.persist(session, api_key, submission, decision)
                except SQLAlchemyError as exc:
                    session.rollback()
                    logger.exception("intake.failed", extra={"api_key_id": str(api_key.id), "error": str(exc)})
                    raise IntakeError("internal_error", 500, "Failed to create lead") from exc
            span.set_attribute("lead_id", lead.id)

        logger.info(
            "intake.lead_created",
            extra={
                "api_key_id": str(api_key.id),
                "lead_id": lead.id,
                "source": lead.source,
                "assigned_to": str(lead.assigned_to) if lead.assigned_to else None,
            },
        )
        events.publish(
            events.build_envelope(
                LEAD_CREATED_EVENT,
                {
                    "lead_id": lead.id,
                    "api_key_id": str(api_key.id),
                    "assigned_to": str(lead.assigned_to) if lead.assigned_to else None,
                    "source": lead.source,
                },
            )
        )
        return {
            "id": lead.id,
            "source_id": lead.source_id,
            "created_at": human_date(lead.created_at),
            "converted_at": human_date(lead.converted_at),
        }
