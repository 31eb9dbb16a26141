from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from wowziri.api.schemas import (
    ChatCreateRequest,
    ChatStreamRequest,
    ChatUpdateRequest,
    EmailRequest,
    InterestsRequest,
    LoginRequest,
    SignupRequest,
    VerifyEmailRequest,
    VerifyOtpRequest,
)
from wowziri.config import Settings
from wowziri.logging import get_logger
from wowziri.service.auth import AuthContext, SessionResult, VerificationRequired
from wowziri.service.errors import (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    RateLimitedError,
)
from wowziri.service.relay import encode_frame
from wowziri.service.runtime import check_rate_limit, get_runtime
from wowziri.service.verification import IssuedChallenge
from wowziri.storage.models import ChatMessage

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

REFRESH_COOKIE = "refreshToken"


async def require_auth(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Reject the request with 401 unless it carries a valid access token."""
    ctx = get_runtime().auth.authenticate(authorization)
    if not ctx:
        raise AuthenticationError("Unauthorized")
    return ctx


async def optional_auth(authorization: Optional[str] = Header(None)) -> Optional[AuthContext]:
    """Attach the caller's identity when present; never rejects."""
    return get_runtime().auth.authenticate(authorization)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise RateLimitedError(
            "Too many requests, please try again later",
            retry_after_seconds=max(1, reset_seconds),
        )


def _apply_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.refresh_cookie_max_age,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def _with_dev_link(
    payload: Dict[str, Any], challenge: Optional[IssuedChallenge], settings: Settings
) -> Dict[str, Any]:
    if challenge is not None and not settings.is_production:
        payload["devLink"] = challenge.secret
    return payload


def _session_payload(result: SessionResult, response: Response, settings: Settings) -> dict:
    _apply_refresh_cookie(response, result.refresh_token, settings)
    return {"accessToken": result.access_token, "user": result.user.public_profile()}


# auth
@router.post("/auth/signup", status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"signup:{body.email}", runtime.settings.signup_rate_limit_per_minute
    )
    result = await asyncio.to_thread(
        runtime.auth.signup,
        full_name=body.full_name,
        gender=body.gender.value,
        email=body.email,
        phone=body.phone,
        password=body.password,
        interests=body.interests,
    )
    payload = {
        "message": "Signup successful, verification code sent to email.",
        "user": {"id": result.user_id, "email": result.email},
        "userId": result.user_id,
        "email": result.email,
    }
    return _with_dev_link(payload, result.challenge, runtime.settings)


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange credentials for a session.

    Unverified accounts get 403 with ``requiresVerification`` and a fresh
    challenge instead of tokens.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    result = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    if isinstance(result, VerificationRequired):
        payload = {"error": "Email not verified", "requiresVerification": True, "email": result.email}
        return JSONResponse(
            status_code=403, content=_with_dev_link(payload, result.challenge, runtime.settings)
        )
    return _session_payload(result, response, runtime.settings)


@router.post("/auth/verify-otp", tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify:{body.email}", runtime.settings.verify_rate_limit_per_minute
    )
    result = await asyncio.to_thread(runtime.auth.verify_otp, body.email, body.code)
    return _session_payload(result, response, runtime.settings)


@router.post("/auth/verify-email", tags=["auth"])
async def verify_email(body: VerifyEmailRequest, response: Response):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.verify_link, body.token)
    return _session_payload(result, response, runtime.settings)


async def _request_verification(body: EmailRequest) -> dict:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify:{body.email}", runtime.settings.verify_rate_limit_per_minute
    )
    challenge = await asyncio.to_thread(runtime.auth.request_verification, body.email)
    message = "Verification code sent" if challenge.strategy.value == "otp" else "Verification email sent"
    return _with_dev_link({"message": message}, challenge, runtime.settings)


@router.post("/auth/request-otp", tags=["auth"])
async def request_otp(body: EmailRequest):
    return await _request_verification(body)


@router.post("/auth/request-email-verify", tags=["auth"])
async def request_email_verify(body: EmailRequest):
    return await _request_verification(body)


@router.post("/auth/refresh", tags=["auth"])
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    try:
        result = runtime.auth.refresh(refresh_token)
    except AuthenticationError as exc:
        logger.info("refresh_rejected", reason=exc.message)
        rejected = JSONResponse(status_code=401, content={"error": exc.message})
        _clear_refresh_cookie(rejected, runtime.settings)
        return rejected
    return _session_payload(result, response, runtime.settings)


@router.post("/auth/logout", tags=["auth"])
async def logout(response: Response):
    runtime = get_runtime()
    runtime.auth.logout()
    _clear_refresh_cookie(response, runtime.settings)
    return {"message": "Logged out"}


@router.get("/auth/me", tags=["auth"])
async def me(principal: AuthContext = Depends(require_auth)):
    user = get_runtime().auth.get_profile(principal.user_id)
    return {"user": user.public_profile()}


@router.post("/auth/interests", tags=["auth"])
async def set_interests(body: InterestsRequest, principal: AuthContext = Depends(require_auth)):
    user = get_runtime().auth.set_interests(principal.user_id, body.interests)
    return {"user": user.public_profile()}


# chat relay
@router.post("/chat", tags=["chat"])
async def chat_stream(
    body: ChatStreamRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(optional_auth),
):
    """Relay the upstream model's answer as an incremental frame stream.

    Configuration and upstream failures before the first frame are plain
    JSON errors; after that the stream just ends early.
    """
    if not body.messages:
        raise BadRequestError("Request body must include messages array.")
    runtime = get_runtime()
    caller = principal.user_id if principal else (request.client.host if request.client else "anon")
    await _enforce_rate_limit(runtime, f"chat:{caller}", runtime.settings.chat_rate_limit_per_minute)
    stream = await runtime.relay.open([turn.model_dump() for turn in body.messages])

    async def body_iter():
        try:
            async for frame in stream:
                yield encode_frame(frame)
        finally:
            await stream.aclose()

    return StreamingResponse(
        body_iter(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        background=BackgroundTask(stream.aclose),
    )


# chat history
def _to_messages(turns) -> Optional[list]:
    if turns is None:
        return None
    return [ChatMessage(role=t.role, content=t.content) for t in turns]


@router.get("/chats", tags=["chats"])
async def list_chats(principal: AuthContext = Depends(require_auth)):
    chats = get_runtime().store.list_chats(principal.user_id, limit=50)
    return {"chats": [c.to_dict() for c in chats]}


@router.post("/chats", status_code=201, tags=["chats"])
async def create_chat(body: ChatCreateRequest, principal: AuthContext = Depends(require_auth)):
    chat = get_runtime().store.create_chat(
        principal.user_id,
        title=body.title or "New Chat",
        messages=_to_messages(body.messages),
    )
    return {"chat": chat.to_dict()}


@router.get("/chats/{chat_id}", tags=["chats"])
async def get_chat(chat_id: str, principal: AuthContext = Depends(require_auth)):
    chat = get_runtime().store.get_chat(chat_id, user_id=principal.user_id)
    if not chat:
        raise NotFoundError("Chat not found")
    return {"chat": chat.to_dict()}


@router.put("/chats/{chat_id}", tags=["chats"])
async def update_chat(
    chat_id: str, body: ChatUpdateRequest, principal: AuthContext = Depends(require_auth)
):
    chat = get_runtime().store.update_chat(
        chat_id,
        user_id=principal.user_id,
        title=body.title,
        messages=_to_messages(body.messages),
    )
    if not chat:
        raise NotFoundError("Chat not found")
    return {"chat": chat.to_dict()}


@router.delete("/chats/{chat_id}", tags=["chats"])
async def delete_chat(chat_id: str, principal: AuthContext = Depends(require_auth)):
    if not get_runtime().store.delete_chat(chat_id, user_id=principal.user_id):
        raise NotFoundError("Chat not found")
    return {"message": "Chat deleted"}
