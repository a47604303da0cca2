"""
GoVision API: Local Development Server
======================================

In-memory stand-in for the GoVision inference API, speaking the same
contract as the real service so the client can be run end-to-end on a
laptop or in tests.

Nothing is persisted: users, tokens, uploaded images and jobs live in
module-level dicts and vanish on restart.  Inference is faked: every
job reports a single ``object`` box covering the central half of the
image.

Jobs advance one step per status request (queued -> pending ->
completed) so a polling client sees every state without any timing
dependence.

Endpoints (under /v1 except /health):
    POST /auth/register     create an account
    POST /auth/login        exchange credentials for tokens
    POST /auth/refresh      rotate tokens
    POST /image/upload      upload an image (returns job_id)
    GET  /jobs/{id}         poll job status and predictions
    GET  /images/{id}       the uploaded image (image_url target)
    GET  /health            liveness probe

Run locally:
    uvicorn govision.devserver:app --port 8080
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import secrets
import time
import uuid
from typing import Optional

import cv2
import numpy as np
from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException


# ---------------------------------------------------------------------------
#  Logging
# ---------------------------------------------------------------------------
log = logging.getLogger("govision-devserver")


# ---------------------------------------------------------------------------
#  Config from environment
# ---------------------------------------------------------------------------
ACCESS_TTL_SECONDS  = int(os.getenv("DEVSERVER_ACCESS_TTL", "900"))
MAX_UPLOAD_MB       = int(os.getenv("DEVSERVER_MAX_UPLOAD_MB", "5"))
ALLOWED_ORIGINS     = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")

VALID_CONTENT_TYPES = {"image/jpeg", "image/png", "image/gif"}

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_EMAIL_LENGTH    = 255
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Used when the upload can't be decoded (e.g. GIF on older OpenCV builds)
FALLBACK_SIZE = (640, 480)


# ---------------------------------------------------------------------------
#  Shared state
# ---------------------------------------------------------------------------
USERS: dict[str, str] = {}                       # email -> salted password hash
ACCESS_TOKENS: dict[str, tuple[str, float]] = {}  # token -> (email, expires_at)
REFRESH_TOKENS: dict[str, str] = {}               # token -> email
JOBS: dict[str, dict] = {}
IMAGES: dict[str, tuple[bytes, str]] = {}         # job_id -> (content, content_type)

NEXT_STATUS = {"queued": "pending", "pending": "completed"}


def reset_state() -> None:
    """Forget every user, token, job and image."""
    for d in (USERS, ACCESS_TOKENS, REFRESH_TOKENS, JOBS, IMAGES):
        d.clear()


# ---------------------------------------------------------------------------
#  Pydantic models
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    email: str = ""
    password: str = ""


class RefreshRequest(BaseModel):
    refresh_token: str = ""


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str


class UploadAccepted(BaseModel):
    job_id: str
    status: str


class Prediction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x: float
    y: float
    width: float
    height: float
    confidence: float
    class_id: int
    class_: str = Field(alias="class")


class JobStatus(BaseModel):
    job_id: str
    status: str
    image_url: Optional[str] = None
    predictions: list[Prediction] = []


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def _hash_password(password: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()
    return f"{salt}${digest}"


def _check_password(password: str, stored: str) -> bool:
    salt, _ = stored.split("$", 1)
    return secrets.compare_digest(_hash_password(password, salt), stored)


def _validate_registration(email: str, password: str) -> None:
    """Same rules as the production API; raises HTTPException(400)."""
    if not email:
        raise HTTPException(400, "email is required")
    if len(email) > MAX_EMAIL_LENGTH:
        raise HTTPException(400, f"email must not exceed {MAX_EMAIL_LENGTH} characters")
    if not EMAIL_RE.match(email):
        raise HTTPException(400, "invalid email format")
    if not password:
        raise HTTPException(400, "password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise HTTPException(400, f"password must not exceed {MAX_PASSWORD_LENGTH} characters")
    if not (any(c.isupper() for c in password)
            and any(c.islower() for c in password)
            and any(c.isdigit() for c in password)):
        raise HTTPException(
            400,
            "password must contain at least one uppercase letter, one lowercase letter, and one digit",
        )


def _issue_tokens(email: str) -> TokenPair:
    access = secrets.token_urlsafe(24)
    refresh = secrets.token_urlsafe(32)
    ACCESS_TOKENS[access] = (email, time.time() + ACCESS_TTL_SECONDS)
    REFRESH_TOKENS[refresh] = email
    return TokenPair(access_token=access, refresh_token=refresh)


def current_user(authorization: str = Header(default="")) -> str:
    """Resolve the bearer token to an e-mail, or 401."""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(401, "missing or malformed authorization header")
    entry = ACCESS_TOKENS.get(token)
    if entry is None:
        raise HTTPException(401, "invalid token")
    email, expires_at = entry
    if time.time() >= expires_at:
        ACCESS_TOKENS.pop(token, None)
        raise HTTPException(401, "token expired")
    return email


def _fake_predictions(content: bytes) -> list[Prediction]:
    image = None
    if content:
        image = cv2.imdecode(np.frombuffer(content, dtype=np.uint8), cv2.IMREAD_COLOR)
    w, h = (image.shape[1], image.shape[0]) if image is not None else FALLBACK_SIZE
    return [Prediction(x=w / 2, y=h / 2, width=w / 2, height=h / 2,
                       confidence=0.9, class_id=0, class_="object")]


# ---------------------------------------------------------------------------
#  App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="GoVision API (dev server)",
    description="In-memory stand-in for the GoVision inference API.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def _message_error(request: Request, exc: StarletteHTTPException):
    # The client reads error text from "message", not FastAPI's "detail"
    return JSONResponse({"message": str(exc.detail)}, status_code=exc.status_code)


v1 = APIRouter(prefix="/v1")


@v1.post("/auth/register", status_code=201)
async def register(body: Credentials):
    email = body.email.strip().lower()
    _validate_registration(email, body.password)
    if email in USERS:
        raise HTTPException(409, "email already registered")
    USERS[email] = _hash_password(body.password)
    log.info("Registered %s", email)
    return {"message": "user created"}


@v1.post("/auth/login", response_model=TokenPair)
async def login(body: Credentials):
    email = body.email.strip().lower()
    if not email or not body.password:
        raise HTTPException(400, "email and password are required")
    stored = USERS.get(email)
    if stored is None or not _check_password(body.password, stored):
        raise HTTPException(401, "invalid email or password")
    return _issue_tokens(email)


@v1.post("/auth/refresh", response_model=TokenPair)
async def refresh(body: RefreshRequest):
    email = REFRESH_TOKENS.pop(body.refresh_token, None)
    if email is None:
        raise HTTPException(400, "invalid refresh token")
    return _issue_tokens(email)


@v1.post("/image/upload", response_model=UploadAccepted, status_code=202)
async def upload_image(
    file: UploadFile = File(..., description="Image file (.jpg, .png, .gif)"),
    user: str = Depends(current_user),
):
    content_type = (file.content_type or "").lower()
    if content_type not in VALID_CONTENT_TYPES:
        raise HTTPException(400, f"unsupported file type '{content_type or 'unknown'}'")
    content = await file.read()
    if len(content) > MAX_UPLOAD_MB * 1024 * 1024:
        raise HTTPException(413, f"file exceeds {MAX_UPLOAD_MB} MB limit")

    job_id = str(uuid.uuid4())
    IMAGES[job_id] = (content, content_type)
    JOBS[job_id] = {
        "owner": user,
        "status": "queued",
        "file_name": file.filename,
        "predictions": [],
        "_created": time.time(),
    }
    log.info("Job %s: queued (%s)", job_id, file.filename)
    return UploadAccepted(job_id=job_id, status="queued")


@v1.get("/jobs/{job_id}", response_model=JobStatus, response_model_by_alias=True)
async def get_job(job_id: str, request: Request, user: str = Depends(current_user)):
    job = JOBS.get(job_id)
    if job is None or job["owner"] != user:
        raise HTTPException(404, "job not found")

    next_status = NEXT_STATUS.get(job["status"])
    if next_status is not None:
        job["status"] = next_status
        if next_status == "completed":
            job["predictions"] = _fake_predictions(IMAGES[job_id][0])
            log.info("Job %s: completed", job_id)

    completed = job["status"] == "completed"
    return JobStatus(
        job_id=job_id,
        status=job["status"],
        image_url=str(request.url_for("get_image", job_id=job_id)) if completed else None,
        predictions=job["predictions"],
    )


@v1.get("/images/{job_id}", name="get_image")
async def get_image(job_id: str):
    if job_id not in IMAGES:
        raise HTTPException(404, "image not found")
    content, content_type = IMAGES[job_id]
    return Response(content=content, media_type=content_type)


app.include_router(v1)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "users": len(USERS),
        "queued_jobs": sum(1 for j in JOBS.values() if j["status"] == "queued"),
        "pending_jobs": sum(1 for j in JOBS.values() if j["status"] == "pending"),
        "total_jobs": len(JOBS),
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
