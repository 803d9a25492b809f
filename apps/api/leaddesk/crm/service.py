from __future__ import annotations

import logging
import random
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leaddesk import events
from leaddesk.crm.countries import normalize_country
from leaddesk.crm.hierarchy import DirectoryEntry, Role, UserDirectory, can_view_lead
from leaddesk.crm.models import (
    ApiKey,
    AssignmentRule,
    Deposit,
    Lead,
    LeadActivity,
    LeadAnswer,
    LeadComment,
    LeadNotification,
    LeadQuestion,
    LeadStatus,
    UserProfile,
)
from leaddesk.crm.repositories import LeadRepository
from leaddesk.crm.schemas import (
    AgentDistributionRead,
    AnswerRead,
    AnswersUpdate,
    ApiKeyCreate,
    ApiKeyRead,
    ApiKeyUpdate,
    AssignmentRuleCreate,
    AssignmentRuleRead,
    AssignmentRuleUpdate,
    BulkAssignRequest,
    BulkDeleteRequest,
    BulkDeleteResult,
    BulkStatusRequest,
    BulkUpdateResult,
    CommentCreate,
    CommentRead,
    DepositCreate,
    DepositRead,
    DistributeRequest,
    DistributeResult,
    LeadActivityRead,
    LeadAssignRequest,
    LeadCreate,
    LeadRead,
    LeadStatusUpdate,
    NotificationRead,
    NotificationReadAllResult,
    QuestionCreate,
    QuestionRead,
    QuestionReorderRequest,
    QuestionUpdate,
    RuleResolutionRead,
    StatusColorUpdate,
    StatusCreate,
    StatusRead,
    SubordinatesRead,
    UserCreate,
    UserRead,
    UserUpdate,
)
from leaddesk.intake.service import AssignmentResolver
from leaddesk.metrics import observe_notification_created

logger = logging.getLogger("leaddesk.crm")

LEAD_ASSIGNED_EVENT = "leads.lead.assigned"
API_KEY_ALPHABET = string.ascii_uppercase + string.digits
API_KEY_LENGTH = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_api_key() -> str:
    return "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(API_KEY_LENGTH))


def format_amount(amount: Decimal) -> str:
    normalized = amount.normalize()
    return f"{normalized:f}"


@dataclass
class ActorUser:
    user_id: str
    directory: UserDirectory
    profile: DirectoryEntry | None
    correlation_id: str | None = None

    @property
    def role(self) -> Role | None:
        return self.profile.role if self.profile is not None else None


def _require_profile(actor_user: ActorUser) -> DirectoryEntry:
    if actor_user.profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return actor_user.profile


def _entry_to_read(entry: DirectoryEntry) -> UserRead:
    return UserRead(
        id=entry.id,
        email=entry.email,
        full_name=entry.full_name,
        role=entry.role,
        manager_id=entry.manager_id,
        created_at=entry.created_at,
    )


class UserService:
    def list_assignable(self, actor_user: ActorUser) -> list[UserRead]:
        viewer = _require_profile(actor_user)
        return [_entry_to_read(entry) for entry in actor_user.directory.assignable_users(viewer)]

    def create_user(self, session: Session, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        email = str(dto.email)
        if session.scalar(select(UserProfile.id).where(UserProfile.email == email)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a user with this email already exists")
        if dto.manager_id is not None and dto.manager_id not in actor_user.directory:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="manager not found")

        profile = UserProfile(
            email=email,
            full_name=dto.full_name,
            role=dto.role.value,
            manager_id=dto.manager_id,
        )
        session.add(profile)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a user with this email already exists") from exc

        logger.info("crm.user_created", extra={"user_id": str(profile.id), "actor_user_id": actor_user.user_id})
        return UserRead.model_validate(profile)

    def update_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, dto: UserUpdate) -> UserRead:
        profile = session.get(UserProfile, user_id)
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")

        changes = dto.model_dump(exclude_unset=True)
        if "manager_id" in changes:
            manager_id = changes["manager_id"]
            if manager_id is not None:
                if manager_id not in actor_user.directory:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="manager not found")
                if actor_user.directory.would_create_cycle(profile.id, manager_id):
                    raise HTTPException(
                        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                        detail="manager assignment would create a cycle",
                    )
            profile.manager_id = manager_id
        if changes.get("full_name") is not None:
            profile.full_name = changes["full_name"]
        if changes.get("role") is not None:
            profile.role = Role(changes["role"]).value

        session.add(profile)
        session.commit()
        logger.info("crm.user_updated", extra={"user_id": str(profile.id), "actor_user_id": actor_user.user_id})
        return UserRead.model_validate(profile)

    def subordinates(self, actor_user: ActorUser, user_id: uuid.UUID) -> SubordinatesRead:
        viewer = _require_profile(actor_user)
        if viewer.role is not Role.ADMIN and viewer.id != user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot read another user's subordinates")
        if user_id not in actor_user.directory:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        descendants = sorted(actor_user.directory.descendants(user_id), key=str)
        return SubordinatesRead(user_id=user_id, subordinate_ids=descendants)


class ApiKeyService:
    def list_keys(self, session: Session) -> list[ApiKeyRead]:
        keys = session.scalars(select(ApiKey).order_by(ApiKey.created_at.desc(), ApiKey.name)).all()
        return [ApiKeyRead.model_validate(item) for item in keys]

    def create_key(self, session: Session, actor_user: ActorUser, dto: ApiKeyCreate) -> ApiKeyRead:
        key = ApiKey(
            api_key=generate_api_key(),
            name=dto.name,
            source_prefix=dto.source_prefix,
            source_id=dto.source_id or None,
            allowed_ips=list(dto.allowed_ips or []),
            enable_notifications=dto.enable_notifications,
            is_active=True,
        )
        session.add(key)
        session.commit()
        logger.info(
            "crm.api_key_created",
            extra={"api_key_id": str(key.id), "source": key.source_prefix, "actor_user_id": actor_user.user_id},
        )
        return ApiKeyRead.model_validate(key)

    def update_key(self, session: Session, actor_user: ActorUser, key_id: uuid.UUID, dto: ApiKeyUpdate) -> ApiKeyRead:
        key = session.get(ApiKey, key_id)
        if key is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="api key not found")

        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name must not be blank")
            key.name = name
        if changes.get("is_active") is not None:
            key.is_active = changes["is_active"]
        if changes.get("enable_notifications") is not None:
            key.enable_notifications = changes["enable_notifications"]
        if "allowed_ips" in changes:
            key.allowed_ips = [item.strip() for item in changes["allowed_ips"] or [] if item.strip()]

        session.add(key)
        session.commit()
        logger.info("crm.api_key_updated", extra={"api_key_id": str(key.id), "actor_user_id": actor_user.user_id})
        return ApiKeyRead.model_validate(key)

    def delete_key(self, session: Session, actor_user: ActorUser, key_id: uuid.UUID) -> None:
        key = session.get(ApiKey, key_id)
        if key is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="api key not found")
        session.execute(update(Lead).where(Lead.api_key_id == key.id).values(api_key_id=None))
        session.delete(key)
        session.commit()
        logger.info("crm.api_key_deleted", extra={"api_key_id": str(key_id), "actor_user_id": actor_user.user_id})


class AssignmentRuleService:
    duplicate_message = "A rule with this source, country, and agent already exists"

    def __init__(self) -> None:
        self.resolver = AssignmentResolver()

    def list_rules(self, session: Session) -> list[AssignmentRuleRead]:
        rules = session.scalars(
            select(AssignmentRule).order_by(
                AssignmentRule.source_name,
                AssignmentRule.country_code,
                AssignmentRule.priority.desc(),
                AssignmentRule.created_at,
            )
        ).all()
        return [AssignmentRuleRead.model_validate(rule) for rule in rules]

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AssignmentRuleCreate) -> AssignmentRuleRead:
        if session.get(UserProfile, dto.assigned_agent_id) is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="assigned agent not found")
        if self._find_duplicate(session, dto.source_name, dto.country_code, dto.assigned_agent_id) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=self.duplicate_message)

        rule = AssignmentRule(
            source_name=dto.source_name,
            country_code=dto.country_code,
            assigned_agent_id=dto.assigned_agent_id,
            priority=dto.priority,
            is_active=dto.is_active,
        )
        session.add(rule)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=self.duplicate_message) from exc

        logger.info(
            "crm.rule_created",
            extra={
                "rule_id": str(rule.id),
                "source": rule.source_name,
                "country_code": rule.country_code,
                "actor_user_id": actor_user.user_id,
            },
        )
        return AssignmentRuleRead.model_validate(rule)

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: AssignmentRuleUpdate,
    ) -> AssignmentRuleRead:
        rule = session.get(AssignmentRule, rule_id)
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="assignment rule not found")

        changes = dto.model_dump(exclude_unset=True)
        agent_id = changes.get("assigned_agent_id")
        if agent_id is not None and agent_id != rule.assigned_agent_id:
            if session.get(UserProfile, agent_id) is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="assigned agent not found")
            duplicate = self._find_duplicate(session, rule.source_name, rule.country_code, agent_id)
            if duplicate is not None and duplicate.id != rule.id:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=self.duplicate_message)
            rule.assigned_agent_id = agent_id
        if changes.get("priority") is not None:
            rule.priority = changes["priority"]
        if changes.get("is_active") is not None:
            rule.is_active = changes["is_active"]
        rule.updated_at = utcnow()

        session.add(rule)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=self.duplicate_message) from exc
        logger.info("crm.rule_updated", extra={"rule_id": str(rule.id), "actor_user_id": actor_user.user_id})
        return AssignmentRuleRead.model_validate(rule)

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        rule = session.get(AssignmentRule, rule_id)
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="assignment rule not found")
        session.delete(rule)
        session.commit()
        logger.info("crm.rule_deleted", extra={"rule_id": str(rule_id), "actor_user_id": actor_user.user_id})

    def resolve(self, session: Session, source: str, country: str | None) -> RuleResolutionRead:
        decision = self.resolver.resolve(session, source, country)
        country_code = normalize_country(country) if country else None
        if decision is None:
            return RuleResolutionRead(source=source, country=country, country_code=country_code, matched=False)
        return RuleResolutionRead(
            source=source,
            country=country,
            country_code=country_code,
            matched=True,
            rule_id=decision.rule_id,
            assigned_agent_id=decision.agent_id,
            agent_name=decision.agent_name,
            description=decision.describe(),
        )

    def _find_duplicate(
        self,
        session: Session,
        source_name: str,
        country_code: str,
        agent_id: uuid.UUID,
    ) -> AssignmentRule | None:
        return session.scalar(
            select(AssignmentRule).where(
                AssignmentRule.source_name == source_name,
                AssignmentRule.country_code == country_code,
                AssignmentRule.assigned_agent_id == agent_id,
            )
        )


class LeadService:
    repository = LeadRepository()

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int,
        offset: int,
    ) -> list[LeadRead]:
        viewer = _require_profile(actor_user)
        stmt: Select[tuple[Lead]] = select(Lead).where(Lead.is_converted.is_(bool(filters.get("converted"))))
        stmt = self.repository.apply_scope_query(stmt, actor_user.directory, viewer)

        if filters.get("status"):
            stmt = stmt.where(Lead.status == filters["status"])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    Lead.first_name.ilike(pattern),
                    Lead.last_name.ilike(pattern),
                    Lead.email.ilike(pattern),
                    Lead.phone.ilike(pattern),
                )
            )

        leads = session.scalars(stmt.order_by(Lead.created_at.desc(), Lead.id.desc()).offset(offset).limit(limit)).all()
        return [LeadRead.model_validate(lead) for lead in leads]

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        viewer = _require_profile(actor_user)
        if dto.assigned_to is not None and not actor_user.directory.can_assign_to(viewer, dto.assigned_to):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user is not assignable")

        lead = Lead(
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=str(dto.email),
            phone=dto.phone or None,
            country=dto.country or None,
            brand=dto.brand or None,
            source=dto.source or None,
            funnel=dto.funnel or None,
            desk=dto.desk or None,
            status=dto.status or "New",
            assigned_to=dto.assigned_to,
        )
        session.add(lead)
        session.flush()
        session.add(LeadActivity(lead_id=lead.id, type="creation", description="Lead created manually"))
        session.commit()

        logger.info("crm.lead_created", extra={"lead_id": lead.id, "actor_user_id": actor_user.user_id})
        events.publish(
            events.build_envelope(
                "leads.lead.created",
                {
                    "lead_id": lead.id,
                    "api_key_id": None,
                    "assigned_to": str(lead.assigned_to) if lead.assigned_to else None,
                    "source": lead.source,
                },
                actor=actor_user.user_id,
            )
        )
        return LeadRead.model_validate(lead)

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: int) -> LeadRead:
        return LeadRead.model_validate(self._get_visible_lead(session, actor_user, lead_id))

    def list_activities(self, session: Session, actor_user: ActorUser, lead_id: int) -> list[LeadActivityRead]:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        activities = session.scalars(
            select(LeadActivity)
            .where(LeadActivity.lead_id == lead.id)
            .order_by(LeadActivity.created_at.desc(), LeadActivity.id.desc())
        ).all()
        return [LeadActivityRead.model_validate(item) for item in activities]

    def change_status(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadStatusUpdate) -> LeadRead:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        lead.status = dto.status
        lead.last_activity = utcnow()
        session.add(lead)
        session.add(LeadActivity(lead_id=lead.id, type="status_change", description=f"Status changed to {dto.status}"))
        session.commit()
        logger.info("crm.lead_status_changed", extra={"lead_id": lead.id, "actor_user_id": actor_user.user_id})
        return LeadRead.model_validate(lead)

    def assign(self, session: Session, actor_user: ActorUser, lead_id: int, dto: LeadAssignRequest) -> LeadRead:
        viewer = _require_profile(actor_user)
        lead = self._get_visible_lead(session, actor_user, lead_id)
        target = dto.user_id
        if target is not None and not actor_user.directory.can_assign_to(viewer, target):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user is not assignable")

        previous = lead.assigned_to
        lead.assigned_to = target
        lead.last_activity = utcnow()
        session.add(lead)
        session.add(
            LeadActivity(
                lead_id=lead.id,
                type="assignment",
                description="Lead assigned" if target is not None else "Lead unassigned",
            )
        )
        session.commit()

        logger.info(
            "crm.lead_assigned",
            extra={
                "lead_id": lead.id,
                "assigned_to": str(target) if target else None,
                "actor_user_id": actor_user.user_id,
            },
        )
        if target is not None and target != previous:
            self._publish_assigned(lead, actor_user)
        return LeadRead.model_validate(lead)

    def promote(self, session: Session, actor_user: ActorUser, lead_id: int) -> LeadRead:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        if lead.is_converted:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead is already a client")

        lead.is_converted = True
        lead.converted_at = utcnow()
        lead.status = "Converted"
        lead.last_activity = lead.converted_at
        session.add(lead)
        session.add(LeadActivity(lead_id=lead.id, type="conversion", description="Lead promoted to client"))
        session.commit()
        logger.info("crm.lead_promoted", extra={"lead_id": lead.id, "actor_user_id": actor_user.user_id})
        return LeadRead.model_validate(lead)

    def demote(self, session: Session, actor_user: ActorUser, lead_id: int) -> LeadRead:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        if not lead.is_converted:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead is not a client")

        lead.is_converted = False
        lead.converted_at = None
        lead.status = "New"
        lead.last_activity = utcnow()
        session.add(lead)
        session.add(LeadActivity(lead_id=lead.id, type="demotion", description="Client demoted to lead"))
        session.commit()
        logger.info("crm.lead_demoted", extra={"lead_id": lead.id, "actor_user_id": actor_user.user_id})
        return LeadRead.model_validate(lead)

    def add_deposit(self, session: Session, actor_user: ActorUser, lead_id: int, dto: DepositCreate) -> DepositRead:
        viewer = _require_profile(actor_user)
        if viewer.role is Role.AGENT:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="agents cannot add deposits")
        lead = self._get_visible_lead(session, actor_user, lead_id)

        now = utcnow()
        deposit = Deposit(lead_id=lead.id, amount=dto.amount, created_by=viewer.id, created_at=now)
        session.add(deposit)

        lead.balance = Decimal(lead.balance or 0) + dto.amount
        lead.total_deposits = Decimal(lead.total_deposits or 0) + dto.amount
        lead.status = "Deposited"
        if not lead.has_deposited:
            lead.has_deposited = True
            lead.ftd_date = now
        lead.last_activity = now
        session.add(lead)
        session.add(
            LeadActivity(
                lead_id=lead.id,
                type="deposit",
                description=f"Deposit of €{format_amount(dto.amount)} added",
            )
        )
        session.commit()
        logger.info("crm.deposit_added", extra={"lead_id": lead.id, "actor_user_id": actor_user.user_id})
        return DepositRead.model_validate(deposit)

    def list_deposits(self, session: Session, actor_user: ActorUser, lead_id: int) -> list[DepositRead]:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        deposits = session.scalars(
            select(Deposit).where(Deposit.lead_id == lead.id).order_by(Deposit.created_at.desc(), Deposit.id.desc())
        ).all()
        return [DepositRead.model_validate(item) for item in deposits]

    def distribute(self, session: Session, actor_user: ActorUser, dto: DistributeRequest) -> DistributeResult:
        viewer = _require_profile(actor_user)
        agent_ids = list(dict.fromkeys(dto.agent_ids))
        for agent_id in agent_ids:
            if not actor_user.directory.can_assign_to(viewer, agent_id):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"user {agent_id} is not assignable")

        leads = [self._get_visible_lead(session, actor_user, lead_id) for lead_id in dict.fromkeys(dto.lead_ids)]
        random.shuffle(leads)

        counts = {agent_id: 0 for agent_id in agent_ids}
        changed: list[Lead] = []
        now = utcnow()
        for index, lead in enumerate(leads):
            agent_id = agent_ids[index % len(agent_ids)]
            if lead.assigned_to != agent_id:
                changed.append(lead)
            lead.assigned_to = agent_id
            lead.last_activity = now
            counts[agent_id] += 1
            session.add(lead)
            session.add(
                LeadActivity(
                    lead_id=lead.id,
                    type="assignment",
                    description="Lead randomly assigned via bulk action",
                )
            )
        session.commit()

        logger.info("crm.leads_distributed", extra={"count": len(leads), "actor_user_id": actor_user.user_id})
        for lead in changed:
            self._publish_assigned(lead, actor_user)

        agents: list[AgentDistributionRead] = []
        for agent_id in agent_ids:
            entry = actor_user.directory.get(agent_id)
            agents.append(
                AgentDistributionRead(
                    agent_id=agent_id,
                    full_name=entry.full_name if entry is not None else "Unknown Agent",
                    lead_count=counts[agent_id],
                )
            )
        return DistributeResult(total=len(leads), agents=agents)

    def bulk_status(self, session: Session, actor_user: ActorUser, dto: BulkStatusRequest) -> BulkUpdateResult:
        leads = [self._get_visible_lead(session, actor_user, lead_id) for lead_id in dict.fromkeys(dto.lead_ids)]
        now = utcnow()
        for lead in leads:
            lead.status = dto.status
            lead.last_activity = now
            session.add(lead)
            session.add(
                LeadActivity(
                    lead_id=lead.id,
                    type="status_change",
                    description=f"Status changed to {dto.status} (bulk update)",
                )
            )
        session.commit()
        logger.info("crm.leads_status_changed", extra={"count": len(leads), "actor_user_id": actor_user.user_id})
        return BulkUpdateResult(updated=len(leads))

    def bulk_assign(self, session: Session, actor_user: ActorUser, dto: BulkAssignRequest) -> BulkUpdateResult:
        viewer = _require_profile(actor_user)
        target = dto.user_id
        if target is not None and not actor_user.directory.can_assign_to(viewer, target):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="user is not assignable")

        leads = [self._get_visible_lead(session, actor_user, lead_id) for lead_id in dict.fromkeys(dto.lead_ids)]
        changed = [lead for lead in leads if lead.assigned_to != target]
        now = utcnow()
        for lead in leads:
            lead.assigned_to = target
            lead.last_activity = now
            session.add(lead)
            session.add(
                LeadActivity(
                    lead_id=lead.id,
                    type="assignment",
                    description="Lead assigned (bulk update)" if target is not None else "Lead unassigned (bulk update)",
                )
            )
        session.commit()

        logger.info(
            "crm.leads_assigned",
            extra={
                "count": len(leads),
                "assigned_to": str(target) if target else None,
                "actor_user_id": actor_user.user_id,
            },
        )
        if target is not None:
            for lead in changed:
                self._publish_assigned(lead, actor_user)
        return BulkUpdateResult(updated=len(leads))

    def bulk_delete(self, session: Session, actor_user: ActorUser, dto: BulkDeleteRequest) -> BulkDeleteResult:
        requested = list(dict.fromkeys(dto.lead_ids))
        existing = list(session.scalars(select(Lead.id).where(Lead.id.in_(requested))).all())
        if existing:
            session.execute(delete(LeadNotification).where(LeadNotification.lead_id.in_(existing)))
            session.execute(delete(Deposit).where(Deposit.lead_id.in_(existing)))
            session.execute(delete(LeadComment).where(LeadComment.lead_id.in_(existing)))
            session.execute(delete(LeadAnswer).where(LeadAnswer.lead_id.in_(existing)))
            session.execute(delete(LeadActivity).where(LeadActivity.lead_id.in_(existing)))
            session.execute(delete(Lead).where(Lead.id.in_(existing)))
        session.commit()
        logger.info("crm.leads_deleted", extra={"count": len(existing), "actor_user_id": actor_user.user_id})
        return BulkDeleteResult(deleted=len(existing))

    def list_comments(self, session: Session, actor_user: ActorUser, lead_id: int) -> list[CommentRead]:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        comments = session.scalars(
            select(LeadComment)
            .where(LeadComment.lead_id == lead.id)
            .order_by(LeadComment.created_at.desc(), LeadComment.id.desc())
        ).all()
        return [CommentRead.model_validate(item) for item in comments]

    def add_comment(self, session: Session, actor_user: ActorUser, lead_id: int, dto: CommentCreate) -> CommentRead:
        viewer = _require_profile(actor_user)
        lead = self._get_visible_lead(session, actor_user, lead_id)
        comment = LeadComment(lead_id=lead.id, content=dto.content, created_by=viewer.id)
        session.add(comment)
        session.commit()
        logger.info(
            "crm.comment_added",
            extra={"lead_id": lead.id, "comment_id": comment.id, "actor_user_id": actor_user.user_id},
        )
        return CommentRead.model_validate(comment)

    def delete_comment(self, session: Session, actor_user: ActorUser, lead_id: int, comment_id: int) -> None:
        viewer = _require_profile(actor_user)
        lead = self._get_visible_lead(session, actor_user, lead_id)
        comment = session.get(LeadComment, comment_id)
        if comment is None or comment.lead_id != lead.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="comment not found")
        # Admins delete any comment; everyone else only their own.
        if viewer.role is not Role.ADMIN and comment.created_by != viewer.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot delete this comment")
        session.delete(comment)
        session.commit()
        logger.info(
            "crm.comment_deleted",
            extra={"lead_id": lead.id, "comment_id": comment_id, "actor_user_id": actor_user.user_id},
        )

    def list_answers(self, session: Session, actor_user: ActorUser, lead_id: int) -> list[AnswerRead]:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        questions = session.scalars(
            select(LeadQuestion)
            .where(LeadQuestion.is_active.is_(True))
            .order_by(LeadQuestion.position, LeadQuestion.created_at)
        ).all()
        answers = {
            row.question_id: row.answer
            for row in session.scalars(select(LeadAnswer).where(LeadAnswer.lead_id == lead.id)).all()
        }
        return [
            AnswerRead(question_id=question.id, question=question.question, answer=answers.get(question.id, ""))
            for question in questions
        ]

    def save_answers(self, session: Session, actor_user: ActorUser, lead_id: int, dto: AnswersUpdate) -> list[AnswerRead]:
        lead = self._get_visible_lead(session, actor_user, lead_id)
        question_ids = list(dto.answers)
        active = set(
            session.scalars(
                select(LeadQuestion.id).where(LeadQuestion.id.in_(question_ids), LeadQuestion.is_active.is_(True))
            ).all()
        )
        missing = [str(question_id) for question_id in question_ids if question_id not in active]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown or inactive questions: {', '.join(missing)}",
            )

        existing = {
            row.question_id: row
            for row in session.scalars(
                select(LeadAnswer).where(LeadAnswer.lead_id == lead.id, LeadAnswer.question_id.in_(question_ids))
            ).all()
        }
        for question_id, answer in dto.answers.items():
            row = existing.get(question_id)
            if row is None:
                session.add(LeadAnswer(lead_id=lead.id, question_id=question_id, answer=answer))
            else:
                row.answer = answer
                session.add(row)

        lead.last_activity = utcnow()
        session.add(lead)
        session.add(LeadActivity(lead_id=lead.id, type="questions_updated", description="Lead questions updated"))
        session.commit()
        logger.info("crm.lead_answers_saved", extra={"lead_id": lead.id, "actor_user_id": actor_user.user_id})
        return self.list_answers(session, actor_user, lead_id)

    def _get_visible_lead(self, session: Session, actor_user: ActorUser, lead_id: int) -> Lead:
        viewer = _require_profile(actor_user)
        lead = session.get(Lead, lead_id)
        if lead is None or not can_view_lead(actor_user.directory, viewer, lead):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _publish_assigned(self, lead: Lead, actor_user: ActorUser) -> None:
        events.publish(
            events.build_envelope(
                LEAD_ASSIGNED_EVENT,
                {"lead_id": lead.id, "assigned_to": str(lead.assigned_to) if lead.assigned_to else None},
                actor=actor_user.user_id,
            )
        )


class StatusService:
    def list_statuses(self, session: Session) -> list[StatusRead]:
        rows = session.scalars(select(LeadStatus).order_by(LeadStatus.name)).all()
        return [StatusRead.model_validate(row) for row in rows]

    def create_status(self, session: Session, actor_user: ActorUser, dto: StatusCreate) -> StatusRead:
        if session.scalar(select(LeadStatus.id).where(LeadStatus.name == dto.name)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a status with this name already exists")
        row = LeadStatus(name=dto.name, color=dto.color)
        session.add(row)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="a status with this name already exists") from exc
        logger.info("crm.status_created", extra={"status_id": str(row.id), "actor_user_id": actor_user.user_id})
        return StatusRead.model_validate(row)

    def update_color(
        self,
        session: Session,
        actor_user: ActorUser,
        status_id: uuid.UUID,
        dto: StatusColorUpdate,
    ) -> StatusRead:
        row = session.get(LeadStatus, status_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="status not found")
        row.color = dto.color
        session.add(row)
        session.commit()
        logger.info("crm.status_updated", extra={"status_id": str(row.id), "actor_user_id": actor_user.user_id})
        return StatusRead.model_validate(row)

    def delete_status(self, session: Session, actor_user: ActorUser, status_id: uuid.UUID) -> None:
        row = session.get(LeadStatus, status_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="status not found")
        if row.is_system:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="System statuses cannot be deleted")
        if session.scalar(select(Lead.id).where(Lead.status == row.name).limit(1)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cannot delete status that is in use")
        session.delete(row)
        session.commit()
        logger.info("crm.status_deleted", extra={"status_id": str(status_id), "actor_user_id": actor_user.user_id})


class QuestionService:
    def list_questions(self, session: Session, active_only: bool = False) -> list[QuestionRead]:
        stmt = select(LeadQuestion)
        if active_only:
            stmt = stmt.where(LeadQuestion.is_active.is_(True))
        rows = session.scalars(stmt.order_by(LeadQuestion.position, LeadQuestion.created_at)).all()
        return [QuestionRead.model_validate(row) for row in rows]

    def create_question(self, session: Session, actor_user: ActorUser, dto: QuestionCreate) -> QuestionRead:
        position = session.scalar(select(func.count()).select_from(LeadQuestion)) or 0
        row = LeadQuestion(question=dto.question, position=position, is_active=True)
        session.add(row)
        session.commit()
        logger.info("crm.question_created", extra={"question_id": str(row.id), "actor_user_id": actor_user.user_id})
        return QuestionRead.model_validate(row)

    def update_question(
        self,
        session: Session,
        actor_user: ActorUser,
        question_id: uuid.UUID,
        dto: QuestionUpdate,
    ) -> QuestionRead:
        row = session.get(LeadQuestion, question_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="question not found")
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("question") is not None:
            row.question = changes["question"]
        if changes.get("is_active") is not None:
            row.is_active = changes["is_active"]
        session.add(row)
        session.commit()
        logger.info("crm.question_updated", extra={"question_id": str(row.id), "actor_user_id": actor_user.user_id})
        return QuestionRead.model_validate(row)

    def reorder(self, session: Session, actor_user: ActorUser, dto: QuestionReorderRequest) -> list[QuestionRead]:
        rows = list(session.scalars(select(LeadQuestion).order_by(LeadQuestion.position, LeadQuestion.created_at)).all())
        by_id = {row.id: row for row in rows}
        requested = list(dict.fromkeys(dto.question_ids))
        unknown = [str(question_id) for question_id in requested if question_id not in by_id]
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown questions: {', '.join(unknown)}",
            )

        # Questions left out keep their relative order after the listed ones.
        listed = set(requested)
        ordered = [by_id[question_id] for question_id in requested]
        ordered.extend(row for row in rows if row.id not in listed)
        for position, row in enumerate(ordered):
            row.position = position
            session.add(row)
        session.commit()
        logger.info("crm.questions_reordered", extra={"count": len(ordered), "actor_user_id": actor_user.user_id})
        return [QuestionRead.model_validate(row) for row in ordered]

    def delete_question(self, session: Session, actor_user: ActorUser, question_id: uuid.UUID) -> None:
        row = session.get(LeadQuestion, question_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="question not found")
        session.execute(delete(LeadAnswer).where(LeadAnswer.question_id == row.id))
        session.delete(row)
        session.commit()
        logger.info("crm.question_deleted", extra={"question_id": str(question_id), "actor_user_id": actor_user.user_id})


class NotificationService:
    def list_notifications(self, session: Session, actor_user: ActorUser, unread_only: bool) -> list[NotificationRead]:
        viewer = _require_profile(actor_user)
        stmt = select(LeadNotification).where(LeadNotification.user_id == viewer.id)
        if unread_only:
            stmt = stmt.where(LeadNotification.is_read.is_(False))
        rows = session.scalars(stmt.order_by(LeadNotification.created_at.asc(), LeadNotification.id)).all()
        return [NotificationRead.model_validate(row) for row in rows]

    def mark_read(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        viewer = _require_profile(actor_user)
        row = session.get(LeadNotification, notification_id)
        if row is None or row.user_id != viewer.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        row.is_read = True
        session.add(row)
        session.commit()
        return NotificationRead.model_validate(row)

    def mark_all_read(self, session: Session, actor_user: ActorUser) -> NotificationReadAllResult:
        viewer = _require_profile(actor_user)
        result = session.execute(
            update(LeadNotification)
            .where(LeadNotification.user_id == viewer.id, LeadNotification.is_read.is_(False))
            .values(is_read=True)
        )
        session.commit()
        return NotificationReadAllResult(updated=result.rowcount or 0)

    def notify_lead_created(self, session: Session, payload: dict[str, Any]) -> int:
        lead = self._load_lead(session, payload)
        api_key_id = self._parse_uuid(payload.get("api_key_id"))
        if lead is None or api_key_id is None:
            return 0
        key = session.get(ApiKey, api_key_id)
        if key is None or not key.enable_notifications:
            return 0

        if lead.assigned_to is not None:
            recipients = [lead.assigned_to]
        else:
            recipients = [entry.id for entry in UserDirectory.load(session).admins()]

        message = f"New lead: {lead.first_name} {lead.last_name} ({lead.source or key.source_prefix})"
        return self._write(session, recipients, lead, "new_lead", message)

    def notify_lead_assigned(self, session: Session, payload: dict[str, Any]) -> int:
        lead = self._load_lead(session, payload)
        assignee = self._parse_uuid(payload.get("assigned_to"))
        if lead is None or assignee is None or session.get(UserProfile, assignee) is None:
            return 0
        message = f"Lead {lead.first_name} {lead.last_name} has been assigned to you"
        return self._write(session, [assignee], lead, "lead_assigned", message)

    def _write(
        self,
        session: Session,
        recipients: list[uuid.UUID],
        lead: Lead,
        notification_type: str,
        message: str,
    ) -> int:
        for user_id in recipients:
            session.add(
                LeadNotification(
                    user_id=user_id,
                    lead_id=lead.id,
                    notification_type=notification_type,
                    message=message,
                )
            )
        session.commit()
        observe_notification_created(notification_type, len(recipients))
        return len(recipients)

    def _load_lead(self, session: Session, payload: dict[str, Any]) -> Lead | None:
        lead_id = payload.get("lead_id")
        if not isinstance(lead_id, int):
            return None
        return session.get(Lead, lead_id)

    @staticmethod
    def _parse_uuid(value: Any) -> uuid.UUID | None:
        if not isinstance(value, str) or not value:
            return None
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
