from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from leaddesk.context import get_correlation_id
from leaddesk.core.auth import AuthUser, get_current_user as get_auth_user
from leaddesk.core.database import get_db
from leaddesk.crm.hierarchy import DirectoryEntry, Role, UserDirectory
from leaddesk.crm.schemas import (
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
from leaddesk.crm.service import (
    ActorUser,
    ApiKeyService,
    AssignmentRuleService,
    LeadService,
    NotificationService,
    QuestionService,
    StatusService,
    UserService,
)

users_router = APIRouter(prefix="/api/crm", tags=["crm.users"])
api_keys_router = APIRouter(prefix="/api/crm", tags=["crm.api_keys"])
rules_router = APIRouter(prefix="/api/crm", tags=["crm.assignment_rules"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
notifications_router = APIRouter(prefix="/api/crm", tags=["crm.notifications"])
statuses_router = APIRouter(prefix="/api/crm", tags=["crm.lead_statuses"])
questions_router = APIRouter(prefix="/api/crm", tags=["crm.lead_questions"])
user_service = UserService()
api_key_service = ApiKeyService()
rule_service = AssignmentRuleService()
lead_service = LeadService()
notification_service = NotificationService()
status_service = StatusService()
question_service = QuestionService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    directory = UserDirectory.load(db)

    profile: DirectoryEntry | None = None
    if not auth_user.is_anonymous:
        try:
            profile = directory.get(uuid.UUID(auth_user.sub))
        except ValueError:
            profile = None

    return ActorUser(
        user_id=auth_user.sub,
        directory=directory,
        profile=profile,
        correlation_id=correlation_id,
    )


def require_authenticated(user: ActorUser) -> DirectoryEntry:
    if user.profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return user.profile


def require_role(user: ActorUser, *roles: Role) -> DirectoryEntry:
    profile = require_authenticated(user)
    if profile.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires role: {' or '.join(role.value for role in roles)}",
        )
    return profile


@users_router.get("/users", response_model=list[UserRead])
def list_users(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        require_authenticated(user)
        return user_service.list_assignable(user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return user_service.create_user(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.patch("/users/{user_id}", response_model=UserRead)
def update_user(
    request: Request,
    user_id: uuid.UUID,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return user_service.update_user(db, user, user_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@users_router.get("/users/{user_id}/subordinates", response_model=SubordinatesRead)
def list_subordinates(
    request: Request,
    user_id: uuid.UUID,
    user: ActorUser = Depends(get_current_user),
) -> SubordinatesRead | JSONResponse:
    try:
        require_authenticated(user)
        return user_service.subordinates(user, user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_user_subordinates_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@api_keys_router.get("/api-keys", response_model=list[ApiKeyRead])
def list_api_keys(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ApiKeyRead] | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return api_key_service.list_keys(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_api_key_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@api_keys_router.post("/api-keys", response_model=ApiKeyRead, status_code=status.HTTP_201_CREATED)
def create_api_key(
    request: Request,
    dto: ApiKeyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApiKeyRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return api_key_service.create_key(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_api_key_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@api_keys_router.patch("/api-keys/{key_id}", response_model=ApiKeyRead)
def update_api_key(
    request: Request,
    key_id: uuid.UUID,
    dto: ApiKeyUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApiKeyRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return api_key_service.update_key(db, user, key_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_api_key_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@api_keys_router.delete("/api-keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_api_key(
    request: Request,
    key_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_role(user, Role.ADMIN)
        api_key_service.delete_key(db, user, key_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_api_key_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.get("/assignment-rules", response_model=list[AssignmentRuleRead])
def list_assignment_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AssignmentRuleRead] | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return rule_service.list_rules(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_rule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.get("/assignment-rules/resolve", response_model=RuleResolutionRead)
def resolve_assignment_rule(
    request: Request,
    source: str = Query(min_length=1),
    country: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleResolutionRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return rule_service.resolve(db, source, country)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_rule_resolve_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.post("/assignment-rules", response_model=AssignmentRuleRead, status_code=status.HTTP_201_CREATED)
def create_assignment_rule(
    request: Request,
    dto: AssignmentRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentRuleRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_rule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.patch("/assignment-rules/{rule_id}", response_model=AssignmentRuleRead)
def update_assignment_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AssignmentRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentRuleRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return rule_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_rule_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@rules_router.delete("/assignment-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_assignment_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_role(user, Role.ADMIN)
        rule_service.delete_rule(db, user, rule_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_rule_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    converted: bool = Query(default=False),
    status_filter: str | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_leads(
            db,
            user,
            filters={"converted": converted, "status": status_filter, "q": q},
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/distribute", response_model=DistributeResult)
def distribute_leads(
    request: Request,
    dto: DistributeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DistributeResult | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.distribute(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_distribute_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/bulk-delete", response_model=BulkDeleteResult)
def bulk_delete_leads(
    request: Request,
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkDeleteResult | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return lead_service.bulk_delete(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_bulk_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/activities", response_model=list[LeadActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadActivityRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_activities(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_activities_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/status", response_model=LeadRead)
def change_lead_status(
    request: Request,
    lead_id: int,
    dto: LeadStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.change_status(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_status_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    request: Request,
    lead_id: int,
    dto: LeadAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.assign(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_assign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/promote", response_model=LeadRead)
def promote_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.promote(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_promote_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/demote", response_model=LeadRead)
def demote_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.demote(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_demote_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/deposits", response_model=DepositRead, status_code=status.HTTP_201_CREATED)
def add_deposit(
    request: Request,
    lead_id: int,
    dto: DepositCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DepositRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN, Role.DESK, Role.MANAGER)
        return lead_service.add_deposit(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_deposit_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/deposits", response_model=list[DepositRead])
def list_deposits(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DepositRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_deposits(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_deposit_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_authenticated(user)
        return notification_service.list_notifications(db, user, unread_only=unread)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.post("/notifications/read-all", response_model=NotificationReadAllResult)
def mark_all_notifications_read(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationReadAllResult | JSONResponse:
    try:
        require_authenticated(user)
        return notification_service.mark_all_read(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_read_all_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@notifications_router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NotificationRead | JSONResponse:
    try:
        require_authenticated(user)
        return notification_service.mark_read(db, user, notification_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/bulk-status", response_model=BulkUpdateResult)
def bulk_change_lead_status(
    request: Request,
    dto: BulkStatusRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkUpdateResult | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.bulk_status(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_bulk_status_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/bulk-assign", response_model=BulkUpdateResult)
def bulk_assign_leads(
    request: Request,
    dto: BulkAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkUpdateResult | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.bulk_assign(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_bulk_assign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/comments", response_model=list[CommentRead])
def list_lead_comments(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CommentRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_comments(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_comment_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
def add_lead_comment(
    request: Request,
    lead_id: int,
    dto: CommentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommentRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.add_comment(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_comment_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/leads/{lead_id}/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead_comment(
    request: Request,
    lead_id: int,
    comment_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_authenticated(user)
        lead_service.delete_comment(db, user, lead_id, comment_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_comment_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/answers", response_model=list[AnswerRead])
def list_lead_answers(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AnswerRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_answers(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_answer_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.put("/leads/{lead_id}/answers", response_model=list[AnswerRead])
def save_lead_answers(
    request: Request,
    lead_id: int,
    dto: AnswersUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AnswerRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.save_answers(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_answer_save_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@statuses_router.get("/lead-statuses", response_model=list[StatusRead])
def list_lead_statuses(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StatusRead] | JSONResponse:
    try:
        require_authenticated(user)
        return status_service.list_statuses(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_status_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@statuses_router.post("/lead-statuses", response_model=StatusRead, status_code=status.HTTP_201_CREATED)
def create_lead_status(
    request: Request,
    dto: StatusCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StatusRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return status_service.create_status(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_status_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@statuses_router.patch("/lead-statuses/{status_id}", response_model=StatusRead)
def update_lead_status_color(
    request: Request,
    status_id: uuid.UUID,
    dto: StatusColorUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StatusRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return status_service.update_color(db, user, status_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_status_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@statuses_router.delete("/lead-statuses/{status_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead_status(
    request: Request,
    status_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_role(user, Role.ADMIN)
        status_service.delete_status(db, user, status_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_status_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@questions_router.get("/lead-questions", response_model=list[QuestionRead])
def list_lead_questions(
    request: Request,
    active: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuestionRead] | JSONResponse:
    try:
        require_authenticated(user)
        return question_service.list_questions(db, active_only=active)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_question_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@questions_router.post("/lead-questions", response_model=QuestionRead, status_code=status.HTTP_201_CREATED)
def create_lead_question(
    request: Request,
    dto: QuestionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuestionRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return question_service.create_question(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_question_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@questions_router.post("/lead-questions/reorder", response_model=list[QuestionRead])
def reorder_lead_questions(
    request: Request,
    dto: QuestionReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuestionRead] | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return question_service.reorder(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_question_reorder_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@questions_router.patch("/lead-questions/{question_id}", response_model=QuestionRead)
def update_lead_question(
    request: Request,
    question_id: uuid.UUID,
    dto: QuestionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuestionRead | JSONResponse:
    try:
        require_role(user, Role.ADMIN)
        return question_service.update_question(db, user, question_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_question_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@questions_router.delete("/lead-questions/{question_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead_question(
    request: Request,
    question_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_role(user, Role.ADMIN)
        question_service.delete_question(db, user, question_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_question_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
