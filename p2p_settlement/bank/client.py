"""
Session-based client for the MB Bank retail web API.

Login flow:
  1. POST getCaptchaImage -> base64 captcha image
  2. solve the captcha (see bank.captcha); unreadable -> start over
  3. build the credential payload, encrypt it with the vendor cipher
     (see bank.cipher) and POST it to doLogin
  4. result.ok -> keep sessionId; GW283 (captcha rejected) -> start over;
     any other code -> AuthError

Login attempts are bounded (``max_login_attempts``) with exponential backoff
between attempts, and serialized per client by an asyncio.Lock so that
concurrent callers never race two captcha solves against each other.

Authenticated calls carry the session in the JSON envelope. A GW200
(session expired) response triggers exactly one renewal and one retry.
"""

import asyncio
import base64
import hashlib
import logging
import random
import string
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import httpx

from p2p_settlement.bank.captcha import CaptchaSolver
from p2p_settlement.bank.cipher import CipherGateway
from p2p_settlement.engine.retry import backoff_delay
from p2p_settlement.exceptions import (
    AuthError,
    RequestError,
    SessionExpiredError,
    TransientNetworkError,
)

logger = logging.getLogger("p2p_settlement.bank")

DEFAULT_BASE_URL = "https://online.mbbank.com.vn"
CAPTCHA_PATH = "/api/retail-web-internetbankingms/getCaptchaImage"
LOGIN_PATH = "/api/retail_web/internetbanking/v2.0/doLogin"
KEY_MATERIAL_PATH = "/assets/wasm/main.wasm"

CAPTCHA_REJECTED = "GW283"
SESSION_EXPIRED = "GW200"

# Fixed marker the web client sends in the login payload
AUTH_FLOW_MARKER = "c7a1beebb9400375bb187daa33de9659"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)


def timestamp_now(now: Optional[datetime] = None) -> str:
    """Request timestamp as the web client formats it: YYYYMMDDHHMMSS + centiseconds."""
    now = now or datetime.now()
    return now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 10000:02d}"


def generate_device_id() -> str:
    prefix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"{prefix}-mbib-0000-0000-{timestamp_now()}"


@dataclass
class Session:
    """A server-issued bank session."""

    session_id: str
    device_id: str
    issued_at: datetime = field(default_factory=datetime.now)


class BankSessionClient:
    """Owns login, session lifetime and authenticated request retries."""

    def __init__(
        self,
        username: str,
        password: str,
        captcha_solver: CaptchaSolver,
        cipher: CipherGateway,
        base_url: str = DEFAULT_BASE_URL,
        basic_auth: Optional[str] = None,
        timeout: float = 15.0,
        max_login_attempts: int = 5,
        login_backoff_base: float = 1.0,
        cipher_version: str = "0",
        key_material_path: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not username or not password:
            raise ValueError("A bank username and password are required")

        self.username = username
        self._password = password
        self.captcha_solver = captcha_solver
        self.cipher = cipher
        self.base_url = base_url.rstrip("/")
        self.max_login_attempts = max_login_attempts
        self.login_backoff_base = login_backoff_base
        self.cipher_version = cipher_version
        self.key_material_path = key_material_path
        self.device_id = generate_device_id()

        self._basic_auth = basic_auth
        self._session: Optional[Session] = None
        self._key_material: Optional[bytes] = None
        self._login_lock = asyncio.Lock()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "Cache-Control": "max-age=0",
            "Accept": "application/json, text/plain, */*",
            "User-Agent": USER_AGENT,
            "Origin": self.base_url,
            "Referer": f"{self.base_url}/pl/login?returnUrl=%2F",
            "Content-Type": "application/json; charset=UTF-8",
            "app": "MB_WEB",
        }
        if self._basic_auth:
            headers["Authorization"] = self._basic_auth
        headers.update(extra)
        return headers

    async def _post(self, path: str, body: dict[str, Any], headers: dict[str, str]) -> Optional[dict]:
        """POST JSON; returns the decoded object, or None if the body is not a JSON object."""
        try:
            response = await self._client.post(path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Bank API timeout on {path}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Bank API connection error on {path}: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(f"Bank API error {response.status_code} on {path}")

        try:
            data = response.json()
        except ValueError:
            logger.warning("Non-JSON response from %s (HTTP %d)", path, response.status_code)
            return None
        return data if isinstance(data, dict) else None

    async def _get_key_material(self) -> bytes:
        """Cipher key material, fetched once per client lifetime."""
        if self._key_material is not None:
            return self._key_material

        cache = Path(self.key_material_path) if self.key_material_path else None
        if cache is not None and cache.is_file():
            self._key_material = cache.read_bytes()
            return self._key_material

        try:
            response = await self._client.get(KEY_MATERIAL_PATH, headers=self._headers())
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Could not fetch cipher key material: {e}") from e
        if response.status_code != 200:
            raise AuthError(f"Could not fetch cipher key material (HTTP {response.status_code})")

        self._key_material = response.content
        if cache is not None:
            try:
                cache.write_bytes(self._key_material)
                logger.info("Cached cipher key material at %s", cache)
            except OSError as e:
                logger.warning("Could not cache cipher key material at %s: %s", cache, e)
        return self._key_material

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self) -> Session:
        """Log in, replacing any current session."""
        async with self._login_lock:
            return await self._login_locked()

    async def relogin(self) -> Session:
        """Force a new session unless another caller renewed it meanwhile."""
        return await self._renew_session(self._session)

    async def _login_locked(self) -> Session:
        for attempt in range(1, self.max_login_attempts + 1):
            if attempt > 1:
                delay = backoff_delay(attempt - 1, self.login_backoff_base)
                logger.info(
                    "Retrying login (attempt %d/%d) in %.1fs",
                    attempt,
                    self.max_login_attempts,
                    delay,
                )
                await asyncio.sleep(delay)

            session = await self._attempt_login()
            if session is not None:
                return session

        raise AuthError(
            f"Login failed after {self.max_login_attempts} attempts",
            code="LOGIN_ATTEMPTS_EXHAUSTED",
        )

    async def _attempt_login(self) -> Optional[Session]:
        """One login attempt. Returns None when a new captcha challenge is needed."""
        request_id = timestamp_now()
        challenge = await self._post(
            CAPTCHA_PATH,
            {"sessionId": "", "refNo": request_id, "deviceIdCommon": self.device_id},
            self._headers(**{"X-Request-Id": request_id}),
        )
        if not challenge or not challenge.get("imageString"):
            logger.warning("Captcha challenge returned no image")
            return None

        try:
            image = base64.b64decode(challenge["imageString"])
        except ValueError:
            logger.warning("Captcha image is not valid base64")
            return None

        captcha = await self.captcha_solver.solve(image)
        if captcha is None:
            logger.info("Captcha not recognised by %s solver", self.captcha_solver.name)
            return None

        key_material = await self._get_key_material()
        payload = {
            "userId": self.username,
            "password": hashlib.md5(self._password.encode("utf-8")).hexdigest(),
            "captcha": captcha,
            "ibAuthen2faString": AUTH_FLOW_MARKER,
            "sessionId": None,
            "refNo": timestamp_now(),
            "deviceIdCommon": self.device_id,
        }
        data_enc = await self.cipher.encrypt(payload, key_material, self.cipher_version)

        response = await self._post(LOGIN_PATH, {"dataEnc": data_enc}, self._headers())
        result = response.get("result") if response else None
        if not isinstance(result, dict):
            raise AuthError("Login failed: Unknown data")

        if result.get("ok"):
            session_id = response.get("sessionId")
            if not session_id:
                raise AuthError("Login succeeded without a session id")
            self._session = Session(session_id=session_id, device_id=self.device_id)
            logger.info("Logged in to bank as %s", self.username)
            return self._session

        code = result.get("responseCode")
        if code == CAPTCHA_REJECTED:
            logger.info("Captcha rejected by bank (%s)", code)
            return None

        raise AuthError(f"Login failed: {result.get('message', 'unknown error')}", code=code)

    async def _renew_session(self, stale: Optional[Session]) -> Session:
        async with self._login_lock:
            if self._session is not None and self._session is not stale:
                return self._session
            return await self._login_locked()

    # ------------------------------------------------------------------
    # Authenticated requests
    # ------------------------------------------------------------------

    def reference_id(self) -> str:
        return f"{self.username}-{timestamp_now()}"

    async def authenticated_request(
        self, path: str, body: Optional[dict[str, Any]] = None
    ) -> Optional[dict]:
        """
        POST an authenticated request.

        Returns:
            The response payload, or None if the response was malformed.

        Raises:
            RequestError: The bank answered with a failing code.
            SessionExpiredError: The session expired again right after renewal.
            TransientNetworkError: Connection or timeout failure.
        """
        session = self._session or await self._renew_session(None)
        try:
            return await self._send(session, path, body)
        except SessionExpiredError:
            logger.info("Bank session expired on %s, renewing", path)

        session = await self._renew_session(session)
        try:
            return await self._send(session, path, body)
        except SessionExpiredError:
            if self._session is session:
                self._session = None
            raise

    async def _send(self, session: Session, path: str, body: Optional[dict[str, Any]]) -> Optional[dict]:
        ref_no = self.reference_id()
        headers = self._headers(
            **{"X-Request-Id": ref_no, "Deviceid": session.device_id, "Refno": ref_no}
        )
        envelope = {
            "sessionId": session.session_id,
            "refNo": ref_no,
            "deviceIdCommon": session.device_id,
        }
        envelope.update(body or {})

        response = await self._post(path, envelope, headers)
        result = response.get("result") if response else None
        if not isinstance(result, dict):
            logger.warning("Malformed response from %s", path)
            return None

        if result.get("ok"):
            return response

        code = result.get("responseCode")
        message = result.get("message", "")
        if code == SESSION_EXPIRED:
            raise SessionExpiredError(message or "Session expired", code=code)
        raise RequestError(code, message)
