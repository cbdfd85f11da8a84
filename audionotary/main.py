import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .db import Store
from .errors import AuthError, NotaryError, ValidationError
from .hashing import sha256_bytes
from .providers import (
    AcousticLookupClient,
    AcoustIdClient,
    AlgorandNotarizationProvider,
    CloudinaryMirror,
    HeaderIdentityProvider,
    IdentityProvider,
    LighthouseUploader,
    NotarizationProvider,
    StorageUploader,
)
from .services import RegistrationService, VerificationService

logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    title: Optional[str] = None
    artist: Optional[str] = None
    storage_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("storage_id", "cid_audio")
    )
    content_hash: Optional[str] = Field(
        None, validation_alias=AliasChoices("content_hash", "sha256_audio")
    )
    fingerprint: Optional[str] = None
    metadata: Optional[Any] = None


class LookupRequest(BaseModel):
    fingerprint: Optional[str] = None
    duration: Optional[Any] = None


# ── Request-scoped access to the app's collaborators ─────────────────────────

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registration(request: Request) -> RegistrationService:
    return request.app.state.registration


def get_verification(request: Request) -> VerificationService:
    return request.app.state.verification


router = APIRouter()


@router.get("/")
def root():
    return {
        "status": "ok",
        "message": "Audio notary API is running",
        "endpoints": ["/register", "/verify", "/whoami", "/acoustid/lookup", "/upload", "/hash"],
    }


@router.post("/register")
def register_work(
    body: RegisterRequest,
    request: Request,
    registration: RegistrationService = Depends(get_registration),
):
    """
    Notarize an uploaded work and record it.

    The caller's address comes from the identity provider and the timestamp
    from the notarization provider; neither is taken from the body.
    """
    result = registration.register(
        request.headers,
        storage_id=body.storage_id,
        content_hash=body.content_hash,
        title=body.title,
        artist=body.artist,
        fingerprint=body.fingerprint,
        metadata=body.metadata,
    )
    return {
        "ok": True,
        "notarized": True,
        "payload": result["payload"],
        "oracle_commitment": result["oracle_commitment"],
    }


@router.get("/verify")
def verify_work(
    content_hash: Optional[str] = Query(None),
    storage_id: Optional[str] = Query(None),
    sha256: Optional[str] = Query(None),
    cid: Optional[str] = Query(None),
    verification: VerificationService = Depends(get_verification),
):
    """Look a work up by content hash (preferred) or storage identifier."""
    return verification.verify(
        content_hash=content_hash or sha256,
        storage_id=storage_id or cid,
    )


@router.get("/whoami")
def whoami(request: Request, registration: RegistrationService = Depends(get_registration)):
    try:
        address = registration.resolve_address(request.headers)
    except AuthError as e:
        if e.http_status != 401:
            raise
        logger.info(f"[AUTH] /whoami with unusable identity: {e.message}")
        address = None
    return {"address": address}


@router.post("/acoustid/lookup")
def acoustid_lookup(request: Request, body: Optional[LookupRequest] = None):
    """Proxy a fingerprint lookup; upstream status and body are passed through."""
    lookup: AcousticLookupClient = request.app.state.lookup
    body = body or LookupRequest()
    status, data = lookup.lookup(body.fingerprint, body.duration)
    return JSONResponse(jsonable_encoder(data), status_code=status)


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    # One byte past the limit is enough to know it was exceeded
    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise ValidationError(
            "File size exceeds maximum allowed",
            details={"max_size": settings.max_upload_bytes},
        )
    return data


@router.post("/upload")
async def upload_audio(
    request: Request,
    file: Optional[UploadFile] = File(None),
    settings: Settings = Depends(get_settings),
):
    """Pin an audio file to IPFS and return its CID."""
    if file is None:
        raise ValidationError("No file")
    data = await _read_upload(file, settings)

    uploader: StorageUploader = request.app.state.uploader
    cid = await run_in_threadpool(uploader.upload, data, file.filename or "upload.bin")
    response = {"cid": cid}

    mirror: Optional[CloudinaryMirror] = request.app.state.mirror
    if mirror is not None:
        try:
            response["mirror_url"] = await run_in_threadpool(mirror.upload, data, sha256_bytes(data))
        except Exception as e:
            logger.warning(f"[CLOUDINARY] Mirror upload error (non-fatal): {e}")
    return response


@router.post("/hash")
async def compute_hash(file: Optional[UploadFile] = File(None), settings: Settings = Depends(get_settings)):
    """SHA-256 of an uploaded file, for clients that cannot hash locally."""
    if file is None:
        raise ValidationError("No file")
    data = await _read_upload(file, settings)
    return {"content_hash": sha256_bytes(data), "size": len(data)}


# ── Error boundary: every failure leaves as {"message": ...} ─────────────────

async def _notary_error_handler(request: Request, exc: NotaryError):
    if exc.http_status >= 500:
        logger.error(f"[{request.url.path}] {type(exc).__name__}: {exc.message}")
    return JSONResponse(jsonable_encoder(exc.to_dict()), status_code=exc.http_status)


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        status_code=400,
    )


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"message": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)


async def _unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"[{request.url.path}] Unhandled error")
    return JSONResponse({"message": str(exc) or "Internal error"}, status_code=500)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[Store] = None,
    identity: Optional[IdentityProvider] = None,
    notary: Optional[NotarizationProvider] = None,
    uploader: Optional[StorageUploader] = None,
    lookup: Optional[AcousticLookupClient] = None,
    mirror: Optional[CloudinaryMirror] = None,
) -> FastAPI:
    """Build the application; any collaborator not passed in uses its production adapter."""
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    store = store or Store(settings.database_url)
    identity = identity or HeaderIdentityProvider(settings.identity_header)
    notary = notary or AlgorandNotarizationProvider(
        settings.algod_url,
        token=settings.algod_token,
        network=settings.algod_network,
        timeout=settings.upstream_timeout,
    )
    uploader = uploader or LighthouseUploader(
        settings.lighthouse_api_key, settings.lighthouse_upload_url, timeout=settings.upstream_timeout
    )
    lookup = lookup or AcoustIdClient(
        settings.acoustid_client, settings.acoustid_url, timeout=settings.upstream_timeout
    )
    if mirror is None and settings.cloudinary_url:
        mirror = CloudinaryMirror(settings.cloudinary_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.migrate()
        logger.info(f"[MIGRATE] Database ready: {settings.database_url}")
        yield
        store.dispose()

    app = FastAPI(title="Audio Notary API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.registration = RegistrationService(store, identity, notary)
    app.state.verification = VerificationService(store)
    app.state.uploader = uploader
    app.state.lookup = lookup
    app.state.mirror = mirror

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", settings.identity_header],
        max_age=86400,
    )

    app.add_exception_handler(NotaryError, _notary_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
