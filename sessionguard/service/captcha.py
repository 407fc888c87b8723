from __future__ import annotations

from typing import Optional, Protocol

import httpx

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class CaptchaVerifier(Protocol):
    async def verify(self, token: str, ip: Optional[str]) -> bool:
        ...


class HttpCaptchaVerifier:
    """Verify CAPTCHA responses against a siteverify-style endpoint.

    Works with providers that accept ``secret``/``response``/``remoteip`` form
    fields and answer ``{"success": bool}`` (reCAPTCHA, hCaptcha, Turnstile).
    Any transport failure counts as an unverified response.
    """

    def __init__(
        self,
        verify_url: str,
        secret: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.verify_url = verify_url
        self.secret = secret
        self.timeout = timeout
        self._client = client

    async def verify(self, token: str, ip: Optional[str]) -> bool:
        if not token:
            return False
        data = {"secret": self.secret, "response": token}
        if ip:
            data["remoteip"] = ip
        try:
            if self._client is not None:
                resp = await self._client.post(self.verify_url, data=data, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.verify_url, data=data)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("captcha_verify_failed", error=str(exc))
            return False
        success = bool(payload.get("success")) if isinstance(payload, dict) else False
        if not success:
            logger.info(
                "captcha_rejected",
                error_codes=payload.get("error-codes") if isinstance(payload, dict) else None,
            )
        return success
