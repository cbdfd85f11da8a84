"""
HTTP client for the notary API and the end-to-end registration workflow.

``register_file`` runs the same sequence a browser client does:

    hash → (fingerprint lookup) → upload → register

reporting each step through a status callback. A step that times out (or
that the server reports as 504) is retried once; every other failure stops
the workflow.
"""
import logging
import mimetypes
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import requests

from .config import MAX_UPLOAD_BYTES
from .errors import AuthError, NotaryError, UpstreamError, UpstreamTimeout, ValidationError
from .hashing import sha256_file

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]


def _error_for_status(status: int, message: str, body: Any) -> NotaryError:
    details = {"status": status, "body": body}
    if status == 504:
        return UpstreamTimeout(message, details=details)
    if status == 401:
        return AuthError(message, details=details)
    if 400 <= status < 500:
        return ValidationError(message, http_status=status, details=details)
    return UpstreamError(message, http_status=status, details=details, upstream_status=status, upstream_body=body)


class NotaryClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 60.0,
        address: Optional[str] = None,
        identity_header: str = "x-address",
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if address:
            self.session.headers[identity_header] = address

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise UpstreamTimeout(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise UpstreamError(f"{method} {path} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {"message": resp.text or resp.reason}

        if not resp.ok:
            message = data.get("message") if isinstance(data, dict) else None
            raise _error_for_status(resp.status_code, message or f"{method} {path} returned {resp.status_code}", data)
        return data

    def whoami(self) -> Optional[str]:
        return self._request("GET", "/whoami").get("address")

    def upload(self, data: bytes, filename: str) -> str:
        result = self._request("POST", "/upload", files={"file": (filename, data)})
        cid = result.get("cid") if isinstance(result, dict) else None
        if not cid:
            raise UpstreamError("Upload response has no CID", details={"body": result})
        return cid

    def register(
        self,
        storage_id: str,
        content_hash: str,
        title: Optional[str] = None,
        artist: Optional[str] = None,
        fingerprint: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._request("POST", "/register", json={
            "title": title,
            "artist": artist,
            "storage_id": storage_id,
            "content_hash": content_hash,
            "fingerprint": fingerprint,
            "metadata": metadata,
        })

    def verify(self, content_hash: Optional[str] = None, storage_id: Optional[str] = None) -> Dict[str, Any]:
        params = {}
        if content_hash:
            params["content_hash"] = content_hash
        if storage_id:
            params["storage_id"] = storage_id
        return self._request("GET", "/verify", params=params)

    def lookup(self, fingerprint: str, duration: Union[int, float]) -> Any:
        return self._request("POST", "/acoustid/lookup", json={"fingerprint": fingerprint, "duration": duration})


def _retry_once(step: str, fn: Callable[[], Any], status: StatusCallback) -> Any:
    try:
        return fn()
    except NotaryError as e:
        if not e.retryable:
            raise
        status(f"{step} timed out, retrying once…")
        return fn()


def register_file(
    client: NotaryClient,
    path: Union[str, Path],
    title: Optional[str] = None,
    artist: Optional[str] = None,
    fingerprint: Optional[str] = None,
    duration: Optional[int] = None,
    on_status: Optional[StatusCallback] = None,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> Dict[str, Any]:
    """Hash, upload and register one audio file. Returns every step's result."""
    status = on_status or (lambda message: logger.info(message))
    path = Path(path)

    size = path.stat().st_size
    if size > max_bytes:
        raise ValidationError(
            f"File exceeds the upload limit ({max_bytes // (1024 * 1024)} MB)",
            details={"file_size": size, "max_size": max_bytes},
        )

    status("Step 1/4 — Computing SHA-256…")
    with path.open("rb") as fh:
        content_hash = sha256_file(fh)
    status(f"  Hash ready: {content_hash}")

    result: Dict[str, Any] = {"content_hash": content_hash}

    if fingerprint and duration:
        status("Step 2/4 — Querying AcoustID…")
        try:
            result["lookup"] = _retry_once("Lookup", lambda: client.lookup(fingerprint, duration), status)
            status("  AcoustID lookup complete")
        except NotaryError as e:
            # Lookup only informs the user; registration does not depend on it
            result["lookup_error"] = e.message
            status(f"  AcoustID lookup failed: {e.message}")
    else:
        status("Step 2/4 — No fingerprint, skipping AcoustID lookup")

    status("Step 3/4 — Uploading to IPFS…")
    data = path.read_bytes()
    cid = _retry_once("Upload", lambda: client.upload(data, path.name), status)
    result["cid"] = cid
    status(f"  Uploaded, CID: {cid}")

    status("Step 4/4 — Notarizing and saving…")
    mime, _ = mimetypes.guess_type(path.name)
    metadata = {"size": size, "type": mime or "application/octet-stream"}
    if duration:
        metadata["duration"] = duration
    registration = _retry_once(
        "Registration",
        lambda: client.register(
            storage_id=cid,
            content_hash=content_hash,
            title=title or path.name,
            artist=artist,
            fingerprint=fingerprint,
            metadata=metadata,
        ),
        status,
    )
    result["registration"] = registration
    timestamp = (registration.get("payload") or {}).get("timestamp")
    status("Registration complete" + (f" (ts: {timestamp})" if timestamp else ""))
    return result
