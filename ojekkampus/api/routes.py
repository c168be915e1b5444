from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Path,
    Request,
    Response,
    UploadFile,
)
from fastapi.responses import FileResponse

from ojekkampus.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    RegisterPassengerRequest,
    ResendOTPRequest,
    SendOTPRequest,
    SendOTPResponse,
    TokenResponse,
    UserResponse,
    VerifyOTPRequest,
    VerifyOTPResponse,
    profile_response,
    validate_full_name,
    validate_optional_email,
)
from ojekkampus.logging import get_logger
from ojekkampus.service.documents import MAX_DOCUMENT_BYTES, UploadedDocument
from ojekkampus.service.errors import InvalidDocumentError
from ojekkampus.service.runtime import check_rate_limit, get_runtime
from ojekkampus.service.sessions import AuthResult, DriverRegistration
from ojekkampus.service.tokens import AccessClaims, DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    request: Request, scope: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Per-client-IP token bucket shared by the public auth endpoints."""
    runtime = get_runtime()
    limit = runtime.settings.ip_rate_limit_per_window
    window_seconds = runtime.settings.ip_rate_limit_window_seconds
    key = f"{scope}:{_client_ip(request) or 'unknown'}"
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, retry_after)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=scope, retry_after=retry_after)
        raise _http_error(
            "rate_limited",
            "too many requests",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )
    return info


def _device(request: Request, device_info: Optional[str], device_name: Optional[str]) -> DeviceInfo:
    return DeviceInfo(
        device_info=device_info or request.headers.get("User-Agent"),
        device_name=device_name,
        ip_address=_client_ip(request),
    )


def _auth_payload(result: AuthResult, model=AuthResponse) -> AuthResponse:
    return model(
        user=UserResponse.from_user(result.user),
        profile=profile_response(result.profile),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AccessClaims:
    if not authorization:
        raise _http_error("unauthorized", "authorization header required", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "invalid authorization header", status_code=401)
    runtime = get_runtime()
    return runtime.tokens.verify_access_token(token.strip())


# -- registration -------------------------------------------------------


@router.post("/auth/register/passenger", response_model=Envelope, status_code=201, tags=["auth"])
async def register_passenger(body: RegisterPassengerRequest, request: Request):
    """Create a passenger account and open its first session."""
    await _enforce_rate_limit(request, "register")
    runtime = get_runtime()
    result = await runtime.sessions.register_passenger(
        body.phone_number,
        body.password,
        body.full_name,
        email=body.email,
        device=_device(request, body.device_info, body.device_name),
    )
    return Envelope(status="ok", data=_auth_payload(result))


async def _read_upload(doc_type: str, upload: UploadFile) -> UploadedDocument:
    # One byte past the cap is enough to reject oversize files
    content = await upload.read(MAX_DOCUMENT_BYTES + 1)
    await upload.close()
    if len(content) > MAX_DOCUMENT_BYTES:
        raise InvalidDocumentError(
            "file size exceeds maximum limit",
            detail={"doc_type": doc_type, "max_bytes": MAX_DOCUMENT_BYTES},
        )
    return UploadedDocument(filename=upload.filename or "", content=content)


@router.post("/auth/register/driver", response_model=Envelope, status_code=201, tags=["auth"])
async def register_driver(
    request: Request,
    phone_number: str = Form(...),
    password: str = Form(..., max_length=128),
    full_name: str = Form(...),
    vehicle_plate: str = Form(..., max_length=20),
    email: Optional[str] = Form(None),
    vehicle_brand: Optional[str] = Form(None, max_length=100),
    vehicle_model: Optional[str] = Form(None, max_length=100),
    vehicle_color: Optional[str] = Form(None, max_length=50),
    device_info: Optional[str] = Form(None, max_length=255),
    device_name: Optional[str] = Form(None, max_length=255),
    ktp: UploadFile = File(...),
    sim: UploadFile = File(...),
    stnk: UploadFile = File(...),
    ktm: UploadFile = File(...),
):
    """Create a driver account from a multipart form with four identity documents.

    The account starts in PENDING_VERIFICATION until an admin reviews the
    uploaded KTP, SIM, STNK and KTM.
    """
    await _enforce_rate_limit(request, "register")
    try:
        full_name = validate_full_name(full_name)
        email = validate_optional_email(email)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400)

    documents = {
        "ktp": await _read_upload("ktp", ktp),
        "sim": await _read_upload("sim", sim),
        "stnk": await _read_upload("stnk", stnk),
        "ktm": await _read_upload("ktm", ktm),
    }
    runtime = get_runtime()
    result = await runtime.sessions.register_driver(
        phone_number,
        password,
        full_name,
        DriverRegistration(
            vehicle_plate=vehicle_plate,
            documents=documents,
            vehicle_brand=vehicle_brand,
            vehicle_model=vehicle_model,
            vehicle_color=vehicle_color,
        ),
        email=email,
        device=_device(request, device_info, device_name),
    )
    return Envelope(status="ok", data=_auth_payload(result))


# -- sessions -----------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate by phone number and password.

    Raises:
        401: unknown phone or wrong password (same message for both)
        403: suspended account
        429: rate limit exceeded for this client
    """
    await _enforce_rate_limit(request, "login", response=response)
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.phone_number,
        body.password,
        device=_device(request, body.device_info, body.device_name),
    )
    return Envelope(status="ok", data=_auth_payload(result, LoginResponse))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    await _enforce_rate_limit(request, "refresh")
    runtime = get_runtime()
    pair = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(access_token=pair.access_token, expires_in=pair.expires_in),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.sessions.logout(body.refresh_token)
    return Envelope(status="ok", data=LogoutResponse())


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AccessClaims = Depends(get_principal)):
    """Revoke every live refresh token of the caller.

    Access tokens already issued stay valid until they expire.
    """
    runtime = get_runtime()
    revoked = await runtime.sessions.logout_all(principal.user_id)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.sessions.current_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- OTP ----------------------------------------------------------------


@router.post("/auth/send-otp", response_model=Envelope, tags=["otp"])
async def send_otp(body: SendOTPRequest, request: Request):
    """Send a six-digit code over WhatsApp.

    A second request for the same phone and purpose within 60 seconds is
    refused with 429 and a ``Retry-After`` header.
    """
    await _enforce_rate_limit(request, "otp")
    runtime = get_runtime()
    dispatch = await runtime.otp.send_otp(
        body.phone_number,
        body.purpose,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok",
        data=SendOTPResponse(
            phone_number=dispatch.phone_number,
            expires_in=dispatch.expires_in,
            message=dispatch.message,
        ),
    )


@router.post("/auth/resend-otp", response_model=Envelope, tags=["otp"])
async def resend_otp(body: ResendOTPRequest, request: Request):
    await _enforce_rate_limit(request, "otp")
    runtime = get_runtime()
    dispatch = await runtime.otp.resend_otp(
        body.phone_number,
        body.purpose,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok",
        data=SendOTPResponse(
            phone_number=dispatch.phone_number,
            expires_in=dispatch.expires_in,
            message=dispatch.message,
        ),
    )


@router.post("/auth/verify-otp", response_model=Envelope, tags=["otp"])
async def verify_otp(body: VerifyOTPRequest, request: Request):
    """Check a code; a wrong or stale code is a 200 with ``verified`` false."""
    await _enforce_rate_limit(request, "otp-verify")
    runtime = get_runtime()
    result = await runtime.otp.verify_otp(body.phone_number, body.otp_code)
    return Envelope(
        status="ok",
        data=VerifyOTPResponse(
            phone_number=result.phone_number,
            verified=result.verified,
            outcome=result.outcome.value,
            message=result.message,
        ),
    )


# -- documents ----------------------------------------------------------


@router.get("/documents/{doc_type}/{filename}", tags=["documents"])
async def get_document(
    doc_type: str = Path(..., max_length=16),
    filename: str = Path(..., max_length=255),
    principal: AccessClaims = Depends(get_principal),
):
    """Stream a stored driver document to its owner or an admin.

    Passengers are refused with 403 by the document store itself.
    """
    runtime = get_runtime()
    path, content_type = runtime.documents.resolve(
        principal.user_id, principal.user_type, doc_type, filename
    )
    return FileResponse(
        path,
        media_type=content_type,
        headers={"Content-Disposition": f'inline; filename="{path.name}"'},
    )
