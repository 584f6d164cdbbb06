import hmac
import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import Depends, FastAPI, Header, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from analysis_pipeline import AnalysisHistory, AnalysisPipeline
from auth import (
    REFRESH_COOKIE,
    authenticate_user,
    force_logout,
    get_current_claims,
    get_current_user,
    get_token_codec,
    refresh_session,
    register_user,
    require_admin,
    security,
    set_auth_cookies,
)
from config import ConfidenceThresholds, PlanAllowances, Settings
from credit_ledger import CreditLedger
from database import SessionLocal, create_tables, get_db
from errors import AppError, InternalError, Unauthorized, UpstreamUnavailable
from jobs import run_credit_reset
from models import User
from scoring_client import ScoringClient
from tokens import AccessClaims, TokenCodec

logging.basicConfig(level=Settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="TrueCheck AI Detection API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_tables()

credit_ledger = CreditLedger(SessionLocal, PlanAllowances())
confidence_thresholds = ConfidenceThresholds()
_scoring_client: Optional[ScoringClient] = None

DISCONNECT_POLL_SECONDS = 0.5


def get_ledger() -> CreditLedger:
    return credit_ledger


def get_scoring_client() -> ScoringClient:
    global _scoring_client
    if _scoring_client is None:
        if not Settings.GEMINI_API_KEY:
            logger.error("GEMINI_API_KEY not configured; analysis is unavailable")
            raise UpstreamUnavailable()
        _scoring_client = ScoringClient(Settings.GEMINI_API_KEY, Settings.scoring())
    return _scoring_client


def get_pipeline(
    ledger: CreditLedger = Depends(get_ledger),
    scorer: ScoringClient = Depends(get_scoring_client),
) -> AnalysisPipeline:
    return AnalysisPipeline(ledger.session_factory, ledger, scorer, confidence_thresholds)


def get_history(ledger: CreditLedger = Depends(get_ledger)) -> AnalysisHistory:
    return AnalysisHistory(ledger.session_factory)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


class AnalyzeTextRequest(BaseModel):
    text: str
    language: Optional[str] = None


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = [str(error.get("msg")) for error in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"code": "VALIDATION_ERROR", "message": "; ".join(messages) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=InternalError().to_dict())


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "plan": user.plan.value,
        "role": user.role.value,
        "credits": user.credits,
        "emailVerified": bool(user.email_verified),
    }


def session_response(user: User, codec: TokenCodec, status_code: int = 200) -> JSONResponse:
    tokens = codec.issue(user)
    response = JSONResponse(
        status_code=status_code,
        content={
            "user": user_payload(user),
            "accessToken": tokens.access_token,
            "refreshToken": tokens.refresh_token,
        },
    )
    set_auth_cookies(response, tokens, codec)
    return response


@app.get("/")
async def root():
    return {"message": "TrueCheck AI Detection API", "status": "running"}


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "gemini": "configured" if Settings.GEMINI_API_KEY else "not configured",
        "database": "connected",
    }


@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
    codec: TokenCodec = Depends(get_token_codec),
):
    user = register_user(db, ledger, request.email, request.password, request.name)
    return session_response(user, codec, status_code=status.HTTP_201_CREATED)


@app.post("/api/auth/login")
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db),
    codec: TokenCodec = Depends(get_token_codec),
):
    user = authenticate_user(db, request.email, request.password)
    return session_response(user, codec)


@app.post("/api/auth/refresh")
async def refresh(
    request: Request,
    payload: Optional[RefreshRequest] = None,
    db: Session = Depends(get_db),
    codec: TokenCodec = Depends(get_token_codec),
):
    token = (payload.refreshToken if payload else None) or request.cookies.get(REFRESH_COOKIE)
    user, tokens = refresh_session(db, codec, token)
    response = JSONResponse(
        content={"accessToken": tokens.access_token, "refreshToken": tokens.refresh_token}
    )
    set_auth_cookies(response, tokens, codec)
    return response


@app.api_route("/api/auth/force-logout", methods=["GET", "POST"])
@app.post("/api/auth/logout")
async def logout(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    codec: TokenCodec = Depends(get_token_codec),
):
    response = JSONResponse(content={"success": True, "message": "Logged out successfully"})
    force_logout(request, response, codec, credentials)
    return response


@app.get("/api/auth/me")
async def get_me(current_user: User = Depends(get_current_user)):
    return user_payload(current_user)


@app.get("/api/auth/validate")
async def validate(claims: AccessClaims = Depends(get_current_claims)):
    return {
        "valid": True,
        "userId": claims.user_id,
        "email": claims.email,
        "role": claims.role,
        "plan": claims.plan,
        "expiresAt": claims.exp.isoformat(),
    }


async def run_until_disconnected(request: Request, coro):
    """Await ``coro``, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info(f"Client disconnected from {request.url.path}; cancelling")
                task.cancel()
                try:
                    return await task
                except asyncio.CancelledError:
                    return None
    finally:
        if not task.done():
            task.cancel()


@app.post("/api/analysis", status_code=status.HTTP_201_CREATED)
async def create_analysis(
    request: Request,
    payload: AnalyzeTextRequest,
    current_user: User = Depends(get_current_user),
    pipeline: AnalysisPipeline = Depends(get_pipeline),
):
    result = await run_until_disconnected(
        request, pipeline.analyze(current_user.id, payload.text, payload.language)
    )
    if result is None:
        return Response(status_code=499)
    return result


@app.get("/api/analysis/history")
async def analysis_history(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    history: AnalysisHistory = Depends(get_history),
):
    return history.history(current_user.id, page=page, limit=limit)


@app.get("/api/analysis/{analysis_id}")
async def get_analysis(
    analysis_id: int,
    current_user: User = Depends(get_current_user),
    history: AnalysisHistory = Depends(get_history),
):
    return history.get_analysis(current_user.id, analysis_id)


@app.delete("/api/analysis/{analysis_id}")
async def delete_analysis(
    analysis_id: int,
    current_user: User = Depends(get_current_user),
    history: AnalysisHistory = Depends(get_history),
):
    history.delete_analysis(current_user.id, analysis_id)
    return {"success": True, "message": "Analysis deleted successfully"}


@app.get("/api/credits")
async def credit_usage(
    current_user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    return ledger.usage(current_user.id)


def verify_cron_secret(authorization: Optional[str] = Header(None)):
    expected = f"Bearer {Settings.CRON_SECRET}"
    if not Settings.CRON_SECRET or not authorization or not hmac.compare_digest(authorization, expected):
        raise Unauthorized("Invalid cron secret")


@app.api_route("/api/cron/reset-credits", methods=["GET", "POST"], dependencies=[Depends(verify_cron_secret)])
def cron_reset_credits(ledger: CreditLedger = Depends(get_ledger)):
    return run_credit_reset(ledger)


@app.post("/api/admin/users/{user_id}/reset-credits")
async def admin_reset_credits(
    user_id: int,
    admin: User = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    credits = ledger.reset_credits(user_id, force=True)
    logger.info(f"Admin {admin.id} forced credit reset for user {user_id}")
    return {"success": True, "userId": user_id, "credits": credits}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
