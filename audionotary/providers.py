"""
Narrow interfaces over the external collaborators, one production adapter each.

  IdentityProvider       → wallet address injected by the wallet gateway
  NotarizationProvider   → trusted time from the latest Algorand block
  StorageUploader        → Lighthouse (IPFS) HTTP upload API
  AcousticLookupClient   → AcoustID web service (POST, then GET fallback)

Every network call carries a bounded timeout. Timeouts surface as
``UpstreamTimeout`` so the client workflow can decide whether to retry.
"""
import io
import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import cloudinary
import cloudinary.uploader
import requests
from algosdk import encoding

from .errors import AuthError, NotaryError, UpstreamError, UpstreamTimeout, ValidationError

logger = logging.getLogger(__name__)


def _decode_body(resp: requests.Response) -> Any:
    """Upstream JSON body, or the raw text wrapped under ``raw``."""
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


# ── Identity ──────────────────────────────────────────────────────────────────

class IdentityProvider(ABC):
    @abstractmethod
    def get_address(self, credentials: Mapping[str, str]) -> Optional[str]:
        """Resolve the caller's address from request credentials, or None."""


class HeaderIdentityProvider(IdentityProvider):
    """Reads the Algorand wallet address the gateway injects as a request header."""

    def __init__(self, header: str = "x-address"):
        self.header = header.lower()

    def get_address(self, credentials: Mapping[str, str]) -> Optional[str]:
        value = (credentials.get(self.header) or "").strip()
        if not value:
            return None
        if not encoding.is_valid_address(value):
            raise AuthError(
                f"Invalid wallet address in '{self.header}' header",
                details={"address": value},
            )
        return value


# ── Notarization ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Notarization:
    value: Dict[str, Any]
    commitment: Optional[str] = None


class NotarizationProvider(ABC):
    @abstractmethod
    def now(self) -> int:
        """Trusted current time, epoch seconds."""

    @abstractmethod
    def notarize(self, build: Callable[[], Dict[str, Any]]) -> Notarization:
        """Run ``build`` under notarization and return what the provider attests."""


class AlgorandNotarizationProvider(NotarizationProvider):
    """
    Uses the latest confirmed Algorand block as the time source.

    ``now()`` reads /v2/status for the last round and /v2/blocks/{round} for
    its timestamp. The commitment names the block that supplied the time, so
    anyone can re-read it from any algod or indexer node.
    """

    def __init__(self, algod_url: str, token: str = "", network: str = "testnet", timeout: float = 15.0):
        self.algod_url = algod_url.rstrip("/")
        self.token = token
        self.network = network
        self.timeout = timeout
        self._local = threading.local()

    def _get(self, path: str, **params) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["X-Algo-API-Token"] = self.token
        url = f"{self.algod_url}{path}"
        try:
            resp = requests.get(url, params=params or None, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise UpstreamTimeout(f"algod request timed out after {self.timeout}s: {path}") from e
        except requests.RequestException as e:
            raise UpstreamError(f"algod unreachable: {e}") from e

        body = _decode_body(resp)
        if not resp.ok:
            raise UpstreamError(
                f"algod returned {resp.status_code} for {path}",
                details={"upstream_status": resp.status_code, "upstream_body": body},
                upstream_status=resp.status_code,
                upstream_body=body,
            )
        return body

    def latest_block(self) -> Tuple[int, int]:
        status = self._get("/v2/status")
        try:
            rnd = int(status["last-round"])
            block = self._get(f"/v2/blocks/{rnd}", format="json")
            ts = int(block["block"]["ts"])
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Unexpected algod response: {e}") from e
        logger.info(f"[CHAIN] Round {rnd} ts={ts}")
        return rnd, ts

    def now(self) -> int:
        rnd, ts = self.latest_block()
        self._local.round = rnd
        return ts

    def notarize(self, build: Callable[[], Dict[str, Any]]) -> Notarization:
        self._local.round = None
        value = build()
        rnd = getattr(self._local, "round", None)
        commitment = f"algorand:{self.network}:{rnd}" if rnd is not None else None
        return Notarization(value=value, commitment=commitment)


# ── Storage ───────────────────────────────────────────────────────────────────

class StorageUploader(ABC):
    @abstractmethod
    def upload(self, data: bytes, filename: str) -> str:
        """Pin ``data`` and return its content identifier."""


def extract_cid(res: Any) -> Optional[str]:
    """Pull the CID out of the differently shaped upload responses."""
    if isinstance(res, list):
        res = res[0] if res else None
    if not isinstance(res, dict):
        return None
    for key in ("Hash", "cid"):
        if res.get(key):
            return res[key]
    data = res.get("data")
    if data is not None:
        return extract_cid(data)
    return None


class LighthouseUploader(StorageUploader):
    def __init__(self, api_key: str, upload_url: str, timeout: float = 15.0):
        self.api_key = api_key
        self.upload_url = upload_url
        self.timeout = timeout

    def upload(self, data: bytes, filename: str) -> str:
        if not self.api_key:
            raise NotaryError("LIGHTHOUSE_API_KEY is not configured", http_status=500)

        try:
            resp = requests.post(
                self.upload_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": (filename or "upload.bin", data)},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise UpstreamTimeout(f"Lighthouse upload timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise UpstreamError(f"Lighthouse upload failed: {e}") from e

        body = _decode_body(resp)
        if not resp.ok:
            raise UpstreamError(
                f"Lighthouse upload failed with status {resp.status_code}",
                details={"upstream_status": resp.status_code, "upstream_body": body},
                upstream_status=resp.status_code,
                upstream_body=body,
            )

        cid = extract_cid(body)
        if not cid:
            logger.error(f"[UPLOAD] Unexpected Lighthouse response: {body}")
            raise UpstreamError("Could not obtain a CID from Lighthouse", details={"extra": {"raw": body}})
        logger.info(f"[UPLOAD] Pinned {filename} -> {cid}")
        return cid


class CloudinaryMirror:
    """Optional second copy of uploaded audio on Cloudinary."""

    def __init__(self, cloudinary_url: str, folder: str = "audionotary"):
        self.folder = folder
        cloudinary.config(cloudinary_url=cloudinary_url)

    def upload(self, data: bytes, content_hash: str) -> str:
        # Cloudinary files audio under the "video" resource type
        result = cloudinary.uploader.upload(
            io.BytesIO(data),
            folder=self.folder,
            public_id=f"audio_{content_hash}",
            resource_type="video",
            overwrite=False,
        )
        return result.get("secure_url", "")


# ── Acoustic lookup ───────────────────────────────────────────────────────────

class AcousticLookupClient(ABC):
    @abstractmethod
    def lookup(self, fingerprint: Optional[str], duration: Any) -> Tuple[int, Any]:
        """Return the upstream (status, body) for a fingerprint lookup."""


def parse_duration(duration: Any) -> int:
    """Round a duration to whole seconds; must end up > 0."""
    try:
        value = float(duration)
    except (TypeError, ValueError, OverflowError):
        value = math.nan
    if not math.isfinite(value) or isinstance(duration, bool):
        raise ValidationError(
            "Invalid duration (must be an integer > 0)", details={"extra": {"duration": duration}}
        )
    seconds = max(0, int(math.floor(value + 0.5)))
    if seconds <= 0:
        raise ValidationError(
            "Invalid duration (must be an integer > 0)", details={"extra": {"duration": duration}}
        )
    return seconds


class AcoustIdClient(AcousticLookupClient):
    META = "recordings+releasegroups+compress"

    def __init__(self, client_key: str, url: str, timeout: float = 15.0):
        self.client_key = client_key
        self.url = url
        self.timeout = timeout

    def _send(self, method: str, params: Dict[str, str]) -> Tuple[int, Any]:
        if method == "POST":
            resp = requests.post(
                self.url,
                data=params,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        else:
            resp = requests.get(
                self.url, params=params, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        return resp.status_code, _decode_body(resp)

    def lookup(self, fingerprint: Optional[str], duration: Any) -> Tuple[int, Any]:
        if not self.client_key:
            raise NotaryError("ACOUSTID_CLIENT is not configured", http_status=500)
        if not fingerprint:
            raise ValidationError("Missing fingerprint")
        if duration is None:
            raise ValidationError("Missing duration")

        params = {
            "client": self.client_key,
            "format": "json",
            "meta": self.META,
            "duration": str(parse_duration(duration)),
            "fingerprint": fingerprint,
        }

        # 1) form-encoded POST
        try:
            post_status, post_body = self._send("POST", params)
        except requests.RequestException as e:
            logger.warning(f"[ACOUSTID] POST failed: {e}")
            post_status, post_body = None, {"error": str(e)}

        if post_status is not None and 200 <= post_status < 300:
            return post_status, post_body

        # 2) GET fallback; some proxies reject form POSTs
        logger.info(f"[ACOUSTID] POST returned {post_status}, retrying with GET")
        attempts = {"post": {"status": post_status, "body": post_body}}
        try:
            get_status, get_body = self._send("GET", params)
        except requests.Timeout as e:
            attempts["get"] = {"status": None, "body": {"error": str(e)}}
            raise UpstreamTimeout("AcoustID lookup timed out", details=attempts) from e
        except requests.RequestException as e:
            attempts["get"] = {"status": None, "body": {"error": str(e)}}
            raise UpstreamError("AcoustID unreachable", details=attempts) from e

        if not 200 <= get_status < 300:
            attempts["get"] = {"status": get_status, "body": get_body}
            raise UpstreamError(
                "Upstream AcoustID non-OK",
                http_status=get_status,
                details=attempts,
                upstream_status=get_status,
                upstream_body=get_body,
            )
        return get_status, get_body
