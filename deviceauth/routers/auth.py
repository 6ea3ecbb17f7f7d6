from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from deviceauth.audit import client_info, log_audit
from deviceauth.db import get_db
from deviceauth.deps import AuthenticatedUser, require_cli_user, require_session_user, require_user
from deviceauth.errors import ApiError, InvalidOrExpiredCode, RateLimitExceeded, Unauthorized
from deviceauth.models import AuditActorType
from deviceauth.schemas import (
    CliPollRequest,
    CliPollResponse,
    CliStartResponse,
    CliTokenListResponse,
    CliTokenRead,
    CliTokenRenameRequest,
    CliVerifyRequest,
    MeResponse,
    OkResponse,
    RefreshRequest,
)
from deviceauth.services.cli_tokens import list_cli_tokens, rename_cli_token, revoke_cli_token
from deviceauth.services.device_auth import (
    PollStatus,
    approve_device_authorization,
    poll_device_authorization,
    start_device_authorization,
)
from deviceauth.services.session_tokens import SessionTokens, clear_refresh_token, rotate_refresh_token
from deviceauth.services.users import get_user
from deviceauth.settings import get_settings, is_production

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _is_secure_request(request: Request) -> bool:
    forwarded_proto = ""
    if get_settings().trust_forwarded_headers:
        forwarded_proto = (request.headers.get("x-forwarded-proto") or "").strip().lower()
    if forwarded_proto:
        return forwarded_proto.split(",")[0].strip() == "https"
    return request.url.scheme == "https"


def _set_session_cookies(*, response: Response, request: Request, tokens: SessionTokens) -> None:
    settings = get_settings()
    secure = is_production() or _is_secure_request(request)
    samesite = "none" if is_production() else "lax"
    response.set_cookie(
        key=settings.access_cookie_name,
        value=tokens.access_token,
        max_age=tokens.access_expires_in,
        path="/",
        domain=settings.cookie_domain or None,
        samesite=samesite,
        secure=secure,
        httponly=True,
    )
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=tokens.refresh_token,
        max_age=tokens.refresh_expires_in,
        path=settings.refresh_cookie_path,
        domain=settings.cookie_domain or None,
        samesite=samesite,
        secure=secure,
        httponly=True,
    )


def _clear_session_cookies(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(settings.access_cookie_name, path="/", domain=settings.cookie_domain or None)
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=settings.cookie_domain or None,
    )


@router.post("/cli/start", response_model=CliStartResponse)
def cli_start(
    request: Request,
    db: Session = Depends(get_db),
) -> CliStartResponse:
    request.state.actor = "cli"
    client = client_info(request)
    try:
        started = start_device_authorization(db, origin_address=client.ip)
    except RateLimitExceeded:
        log_audit(
            db,
            client,
            actor_type=AuditActorType.CLI,
            actor_id=None,
            action="CLI_LOGIN_RATE_LIMITED",
            success=False,
        )
        raise

    log_audit(
        db,
        client,
        actor_type=AuditActorType.CLI,
        actor_id=None,
        action="CLI_LOGIN_STARTED",
        success=True,
        details={"expires_in": started.expires_in},
    )
    return CliStartResponse(
        device_code=started.device_code,
        user_code=started.user_code,
        verification_url=started.verification_url,
        expires_in=started.expires_in,
        interval=started.interval,
    )


@router.post("/cli/poll", response_model=CliPollResponse, response_model_exclude_none=True)
def cli_poll(
    payload: CliPollRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> CliPollResponse:
    request.state.actor = "cli"
    client = client_info(request)
    result = poll_device_authorization(
        db,
        device_code=payload.device_code.strip(),
        device_name=payload.device_name,
        device_fingerprint=payload.device_fingerprint,
        origin_address=client.ip,
        user_agent=client.user_agent,
    )

    if result.status == PollStatus.OK:
        request.state.actor_id = str(result.user_id)
        log_audit(
            db,
            client,
            actor_type=AuditActorType.CLI,
            actor_id=result.user_id,
            action="CLI_TOKEN_MINTED",
            success=True,
            entity_type="cli_token",
            entity_id=result.cli_token_id,
            details={"device_name": payload.device_name},
        )

    return CliPollResponse(
        status=result.status.value,
        interval=result.interval,
        access_token=result.access_token,
        expires_in=result.expires_in,
    )


@router.post("/cli/verify", response_model=OkResponse)
def cli_verify(
    payload: CliVerifyRequest,
    request: Request,
    principal: AuthenticatedUser = Depends(require_session_user),
    db: Session = Depends(get_db),
) -> OkResponse:
    client = client_info(request)
    try:
        record = approve_device_authorization(db, user_id=principal.user_id, user_code=payload.user_code)
    except InvalidOrExpiredCode:
        log_audit(
            db,
            client,
            actor_type=AuditActorType.USER,
            actor_id=principal.user_id,
            action="CLI_LOGIN_APPROVE_FAIL",
            success=False,
        )
        raise

    log_audit(
        db,
        client,
        actor_type=AuditActorType.USER,
        actor_id=principal.user_id,
        action="CLI_LOGIN_APPROVED",
        success=True,
        entity_type="cli_device_authorization",
        entity_id=record.id,
    )
    return OkResponse(ok=True)


@router.get("/cli/tokens", response_model=CliTokenListResponse)
def cli_tokens(
    principal: AuthenticatedUser = Depends(require_session_user),
    db: Session = Depends(get_db),
) -> CliTokenListResponse:
    tokens = list_cli_tokens(db, user_id=principal.user_id)
    return CliTokenListResponse(tokens=[CliTokenRead.model_validate(token) for token in tokens])


@router.post("/cli/tokens/{token_id}/revoke", response_model=OkResponse)
def cli_token_revoke(
    token_id: int,
    request: Request,
    principal: AuthenticatedUser = Depends(require_session_user),
    db: Session = Depends(get_db),
) -> OkResponse:
    token = revoke_cli_token(db, user_id=principal.user_id, token_id=token_id)
    log_audit(
        db,
        client_info(request),
        actor_type=AuditActorType.USER,
        actor_id=principal.user_id,
        action="CLI_TOKEN_REVOKED",
        success=True,
        entity_type="cli_token",
        entity_id=token.id,
    )
    return OkResponse(ok=True)


@router.patch("/cli/tokens/{token_id}", response_model=OkResponse)
def cli_token_rename(
    token_id: int,
    payload: CliTokenRenameRequest,
    request: Request,
    principal: AuthenticatedUser = Depends(require_session_user),
    db: Session = Depends(get_db),
) -> OkResponse:
    token = rename_cli_token(db, user_id=principal.user_id, token_id=token_id, name=payload.name)
    log_audit(
        db,
        client_info(request),
        actor_type=AuditActorType.USER,
        actor_id=principal.user_id,
        action="CLI_TOKEN_RENAMED",
        success=True,
        entity_type="cli_token",
        entity_id=token.id,
        details={"label": token.label},
    )
    return OkResponse(ok=True)


@router.post("/refresh", response_model=OkResponse)
def refresh_session(
    request: Request,
    response: Response,
    payload: RefreshRequest | None = None,
    db: Session = Depends(get_db),
) -> OkResponse:
    raw_token = (payload.refresh_token if payload else None) or request.cookies.get(
        get_settings().refresh_cookie_name
    )
    if not raw_token:
        raise Unauthorized("Missing refresh token.")

    client = client_info(request)
    try:
        tokens = rotate_refresh_token(db, raw_token)
    except ApiError:
        log_audit(
            db,
            client,
            actor_type=AuditActorType.SYSTEM,
            actor_id="anonymous",
            action="SESSION_REFRESH_FAIL",
            success=False,
        )
        raise

    request.state.actor = "user"
    request.state.actor_id = str(tokens.user_id)
    log_audit(
        db,
        client,
        actor_type=AuditActorType.USER,
        actor_id=tokens.user_id,
        action="SESSION_REFRESHED",
        success=True,
    )
    _set_session_cookies(response=response, request=request, tokens=tokens)
    return OkResponse(ok=True)


@router.post("/logout", response_model=OkResponse)
def logout(
    request: Request,
    response: Response,
    principal: AuthenticatedUser = Depends(require_session_user),
    db: Session = Depends(get_db),
) -> OkResponse:
    clear_refresh_token(db, user_id=principal.user_id)
    log_audit(
        db,
        client_info(request),
        actor_type=AuditActorType.USER,
        actor_id=principal.user_id,
        action="SESSION_LOGOUT",
        success=True,
    )
    _clear_session_cookies(response)
    return OkResponse(ok=True)


@router.get("/me", response_model=MeResponse)
def me(
    principal: AuthenticatedUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> MeResponse:
    user = get_user(db, principal.user_id)
    return MeResponse(id=user.id, email=user.email, name=user.name, picture=user.picture, via=principal.via)


@router.get("/cli/whoami", response_model=MeResponse)
def cli_whoami(
    principal: AuthenticatedUser = Depends(require_cli_user),
    db: Session = Depends(get_db),
) -> MeResponse:
    user = get_user(db, principal.user_id)
    return MeResponse(id=user.id, email=user.email, name=user.name, picture=user.picture, via=principal.via)
