import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the working directory, then from the package's parent
load_dotenv()
load_dotenv(Path(__file__).parent.parent / '.env')

# ── Defaults ──────────────────────────────────────────────────────────────────
ALGOD_URL         = "https://testnet-api.algonode.cloud"
LIGHTHOUSE_URL    = "https://node.lighthouse.storage/api/v0/add"
ACOUSTID_URL      = "https://api.acoustid.org/v2/lookup"
MAX_UPLOAD_BYTES  = 50 * 1024 * 1024


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./data/works.db"
    allowed_origin: str = "http://localhost:4000"
    identity_header: str = "x-address"
    algod_url: str = ALGOD_URL
    algod_token: str = ""
    algod_network: str = "testnet"
    lighthouse_api_key: str = ""
    lighthouse_upload_url: str = LIGHTHOUSE_URL
    acoustid_client: str = ""
    acoustid_url: str = ACOUSTID_URL
    cloudinary_url: str = ""
    upstream_timeout: float = 15.0
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            allowed_origin=os.getenv("ALLOWED_ORIGIN", cls.allowed_origin),
            identity_header=os.getenv("IDENTITY_HEADER", cls.identity_header).lower(),
            algod_url=os.getenv("ALGOD_URL", ALGOD_URL).rstrip("/"),
            algod_token=os.getenv("ALGOD_TOKEN", ""),
            algod_network=os.getenv("ALGOD_NETWORK", cls.algod_network),
            lighthouse_api_key=os.getenv("LIGHTHOUSE_API_KEY", ""),
            lighthouse_upload_url=os.getenv("LIGHTHOUSE_UPLOAD_URL", LIGHTHOUSE_URL),
            acoustid_client=os.getenv("ACOUSTID_CLIENT", ""),
            acoustid_url=os.getenv("ACOUSTID_URL", ACOUSTID_URL),
            cloudinary_url=os.getenv("CLOUDINARY_URL", ""),
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT_SECONDS", cls.upstream_timeout),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", MAX_UPLOAD_BYTES),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)
