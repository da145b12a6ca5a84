import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
import structlog

import llm_client
from access import AuthContext, authenticate
from config import Settings, get_settings
from errors import AuthorizationError, LockViolationError, ValidationError
from logging_utils import email_domain, request_logger, subject_prefix
from memory import (
    build_tiered_messages,
    build_tiered_system_prompt,
    commit_turn_memory,
)
from profiles import (
    default_memory_mode,
    default_use_case_id,
    get_prompt_profile,
    is_memory_mode_available,
    list_memory_modes_for_client,
    list_use_cases_for_client,
)
from rate_limit import respond_rate_limit_key
from runtime_state import runtime_state
from session import derive_session_id, require_matching_session
from use_case_lock import (
    USE_CASE_LOCK_COOKIE,
    USE_CASE_LOCK_COOKIE_PATH,
    UseCaseLock,
    mint_lock_token,
    verify_lock_token,
)
from usage import UsageLedger
from validation import RespondRequest, validate_reset_payload, validate_respond_payload


@dataclass
class RequestContext:
    request_id: str
    logger: structlog.stdlib.BoundLogger
    started: float

    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


async def request_context(request: Request) -> RequestContext:
    existing = getattr(request.state, "chat_context", None)
    if isinstance(existing, RequestContext):
        return existing
    request_id = str(uuid.uuid4())
    context = RequestContext(
        request_id=request_id,
        logger=request_logger(
            "api.chat",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ),
        started=time.monotonic(),
    )
    request.state.request_id = request_id
    request.state.chat_context = context
    context.logger.debug(
        "request.received",
        origin_present=bool(request.headers.get("Origin")),
        user_agent=request.headers.get("User-Agent") or "unknown",
    )
    return context


async def require_chat_auth(
    request: Request,
    context: RequestContext = Depends(request_context),
) -> AuthContext:
    settings = get_settings()
    token = request.headers.get(settings.access.assertion_header)
    auth = await authenticate(token, settings, runtime_state.jwks_cache)
    request.state.subject_prefix = subject_prefix(auth.claims.sub)
    return auth


router = APIRouter(
    prefix="/api/chat",
    tags=["chat"],
    dependencies=[Depends(request_context)],
)


def _utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _epoch_iso(epoch_seconds: int) -> str:
    return _utc_iso(datetime.fromtimestamp(epoch_seconds, timezone.utc))


async def _read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise ValidationError("Malformed JSON body.") from exc


def _verify_any(
    secret: str, tokens: List[Optional[str]], session_id: str, now: int
) -> Tuple[Optional[UseCaseLock], Optional[str]]:
    for token in tokens:
        lock = verify_lock_token(secret, token, session_id, now)
        if lock is not None:
            return lock, token
    return None, None


def resolve_use_case_lock(
    payload: RespondRequest,
    cookie_token: Optional[str],
    *,
    session_id: str,
    settings: Settings,
    now: int,
    expires_at: int,
) -> Tuple[UseCaseLock, str, bool]:
    """Return the session's lock, its token and whether it was minted just now."""
    secret = settings.use_case_lock_secret
    lock, token = _verify_any(
        secret, [payload.use_case_lock_token, cookie_token], session_id, now
    )
    if lock is not None and token is not None:
        if payload.use_case_id is not None and payload.use_case_id != lock.use_case_id:
            raise LockViolationError("use_case_id is locked for this session.")
        if payload.memory_mode is not None and payload.memory_mode != lock.memory_mode:
            raise LockViolationError("memory_mode is locked for this session.")
        return lock, token, False

    if not payload.is_first_turn:
        raise LockViolationError("use_case_lock_token is required after the first turn.")

    use_case_id = payload.use_case_id or default_use_case_id()
    if get_prompt_profile(use_case_id) is None:
        raise ValidationError("Unknown use_case_id.")
    memory_mode = payload.memory_mode or default_memory_mode()
    if not is_memory_mode_available(memory_mode, settings.memory.enabled):
        raise ValidationError("memory_mode is not available.")

    token = mint_lock_token(secret, session_id, use_case_id, memory_mode, expires_at)
    return UseCaseLock(use_case_id, memory_mode, expires_at), token, True


def _set_lock_cookie(response: Response, token: str, expires_at: int, now: int) -> None:
    response.set_cookie(
        USE_CASE_LOCK_COOKIE,
        token,
        max_age=max(0, expires_at - now),
        path=USE_CASE_LOCK_COOKIE_PATH,
        secure=True,
        httponly=True,
        samesite="none",
    )


def _clear_lock_cookie(response: Response) -> None:
    response.delete_cookie(
        USE_CASE_LOCK_COOKIE,
        path=USE_CASE_LOCK_COOKIE_PATH,
        secure=True,
        httponly=True,
        samesite="none",
    )


async def _record_usage(
    ledger: UsageLedger,
    context: RequestContext,
    auth: AuthContext,
    lock: UseCaseLock,
    completion: llm_client.ChatCompletion,
) -> None:
    try:
        await ledger.record(
            request_id=context.request_id,
            user_id=auth.identity.user_id,
            username=auth.identity.username,
            use_case_id=lock.use_case_id,
            memory_mode=lock.memory_mode,
            model=completion.model,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
    except Exception as exc:
        context.logger.warning(
            "usage.record_failed",
            error_type=type(exc).__name__,
        )


@router.get("/session")
async def get_session(
    request: Request,
    auth: AuthContext = Depends(require_chat_auth),
    context: RequestContext = Depends(request_context),
):
    settings = get_settings()
    session_id = derive_session_id(auth.claims, settings.session_hmac_secret)
    lock = verify_lock_token(
        settings.use_case_lock_secret,
        request.cookies.get(USE_CASE_LOCK_COOKIE),
        session_id,
        int(time.time()),
    )

    context.logger.info(
        "chat.session.success",
        subject_prefix=subject_prefix(auth.claims.sub),
        email_domain=email_domain(auth.email),
        use_case_locked=lock is not None,
        duration_ms=context.duration_ms(),
    )
    return {
        "ok": True,
        "session_id": session_id,
        "user": {"username": auth.identity.username},
        "capabilities": {"control_center": auth.identity.is_admin},
        "expires_at": _epoch_iso(auth.claims.exp),
        "limits": {
            "max_turns": settings.limits.max_turns,
            "max_user_chars": settings.limits.max_user_chars,
            "max_context_messages": settings.limits.max_context_messages,
        },
        "use_cases": list_use_cases_for_client(),
        "memory_modes": list_memory_modes_for_client(settings.memory.enabled),
        "selected_use_case_id": lock.use_case_id if lock else default_use_case_id(),
        "selected_memory_mode": lock.memory_mode if lock else default_memory_mode(),
        "use_case_locked": lock is not None,
    }


@router.post("/respond")
async def respond(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_chat_auth),
    context: RequestContext = Depends(request_context),
):
    settings = get_settings()
    await runtime_state.rate_limiter.hit(
        respond_rate_limit_key(auth.claims.sub), settings.rate_limits
    )

    payload = validate_respond_payload(await _read_json_body(request), settings.limits)
    session_id = require_matching_session(
        payload.session_id, auth, settings.session_hmac_secret
    )

    now = int(time.time())
    lock, lock_token, minted = resolve_use_case_lock(
        payload,
        request.cookies.get(USE_CASE_LOCK_COOKIE),
        session_id=session_id,
        settings=settings,
        now=now,
        expires_at=auth.claims.exp,
    )
    profile = get_prompt_profile(lock.use_case_id)
    if profile is None:
        raise ValidationError("Unknown use_case_id.")

    user_id = auth.identity.user_id
    latest = payload.latest_user_message
    tiered = lock.memory_mode == "tiered" and settings.memory.enabled
    if tiered:
        store = runtime_state.memory_store
        store.evict_expired()
        memory = store.get(session_id, user_id)
        system_prompt = (
            build_tiered_system_prompt(profile.system_prompt, memory)
            if memory is not None
            else profile.system_prompt
        )
        chat_messages = build_tiered_messages(memory, latest.content)
    else:
        system_prompt = profile.system_prompt
        chat_messages = [
            {"role": m.role, "content": m.content}
            for m in payload.messages[-settings.limits.max_context_messages :]
        ]

    completion = await llm_client.complete_chat(settings.ai, system_prompt, chat_messages)
    assistant_ts = _utc_iso(datetime.now(timezone.utc))

    await _record_usage(runtime_state.usage_ledger, context, auth, lock, completion)

    if tiered:
        limits = settings.memory.store_limits
        expires_at_ms = auth.claims.exp * 1000

        async def _commit():
            return await commit_turn_memory(
                runtime_state.memory_store,
                runtime_state.memory_locks,
                session_id=session_id,
                user_id=user_id,
                expires_at_ms=expires_at_ms,
                user_message=latest.content,
                assistant_message=completion.content,
                ai=settings.ai,
                limits=limits,
                user_ts=latest.ts,
                assistant_ts=assistant_ts,
            )

        if settings.memory.commit_mode == "background":
            background_tasks.add_task(
                runtime_state.memory_commits.run,
                _commit,
                request_id=context.request_id,
                session_prefix=session_id[:8],
            )
        else:
            await runtime_state.memory_commits.run(
                _commit,
                request_id=context.request_id,
                session_prefix=session_id[:8],
            )

    _set_lock_cookie(response, lock_token, lock.expires_at, now)

    context.logger.info(
        "chat.respond.success",
        subject_prefix=subject_prefix(auth.claims.sub),
        email_domain=email_domain(auth.email),
        use_case_id=lock.use_case_id,
        memory_mode=lock.memory_mode,
        lock_minted=minted,
        model=completion.model,
        input_tokens=completion.input_tokens,
        output_tokens=completion.output_tokens,
        duration_ms=context.duration_ms(),
    )
    body: Dict[str, Any] = {
        "ok": True,
        "assistant_message": {
            "role": "assistant",
            "content": completion.content,
            "ts": assistant_ts,
        },
        "usage": completion.usage(),
        "session": {
            "session_id": session_id,
            "expires_at": _epoch_iso(auth.claims.exp),
            "use_case_id": lock.use_case_id,
            "memory_mode": lock.memory_mode,
            "use_case_locked": True,
            "use_case_lock_token": lock_token,
        },
    }
    return body


@router.post("/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset(
    request: Request,
    auth: AuthContext = Depends(require_chat_auth),
    context: RequestContext = Depends(request_context),
):
    settings = get_settings()
    payload = validate_reset_payload(await _read_json_body(request))
    session_id = require_matching_session(
        payload.session_id, auth, settings.session_hmac_secret
    )

    user_id = auth.identity.user_id
    async with runtime_state.memory_locks.hold(session_id, user_id):
        cleared = runtime_state.memory_store.clear(session_id, user_id)

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    _clear_lock_cookie(response)
    context.logger.info(
        "chat.reset.success",
        subject_prefix=subject_prefix(auth.claims.sub),
        memory_cleared=cleared,
        duration_ms=context.duration_ms(),
    )
    return response


@router.get("/admin/usage")
async def admin_usage(
    window_days: int = Query(default=30, ge=1, le=365),
    max_users: int = Query(default=25, ge=1, le=100),
    auth: AuthContext = Depends(require_chat_auth),
    context: RequestContext = Depends(request_context),
):
    if not auth.identity.is_admin:
        raise AuthorizationError(
            "Admin access required.",
            meta={"subject_prefix": subject_prefix(auth.claims.sub)},
        )
    summary = await runtime_state.usage_ledger.summary(
        window_days=window_days, max_users=max_users
    )
    context.logger.info(
        "chat.admin_usage.success",
        subject_prefix=subject_prefix(auth.claims.sub),
        users=len(summary["users"]),
        duration_ms=context.duration_ms(),
    )
    return summary
