from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``, a stable ``error_code`` and an
    English/Bengali message pair. Authentication failures also carry a
    ``reason`` code so clients can tell an expired session from a revoked one
    without the message revealing anything about the account.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"
    default_message_bn: str = "অবৈধ অনুরোধ"
    default_reason: Optional[str] = None

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
        message_bn: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.message_bn = message_bn or self.default_message_bn
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.reason = reason or self.default_reason
        self.detail = detail or {}

    def to_details(self) -> dict:
        details = dict(self.detail)
        if self.reason:
            details.setdefault("reason", self.reason)
        return details


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"
    default_message_bn = "প্রমাণীকরণ প্রয়োজন"


class InvalidCredentialsError(AuthenticationError):
    """Wrong identifier or password; never says which."""

    error_code = "invalid_credentials"
    default_message = "Invalid email/phone or password"
    default_message_bn = "অবৈধ ইমেল/ফোন বা পাসওয়ার্ড"
    default_reason = "invalid_credentials"


class TokenInvalidError(AuthenticationError):
    """Bearer token failed signature, issuer, audience or format checks."""

    error_code = "token_invalid"
    default_message = "Invalid or expired token"
    default_message_bn = "অবৈধ বা মেয়াদোত্তীর্ণ টোকেন"
    default_reason = "malformed"


class InvalidSignatureError(TokenInvalidError):
    default_reason = "invalid_signature"


class AudienceMismatchError(TokenInvalidError):
    default_reason = "audience_mismatch"


class TokenMalformedError(TokenInvalidError):
    default_reason = "malformed"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"
    default_message = "Invalid or expired token"
    default_message_bn = "অবৈধ বা মেয়াদোত্তীর্ণ টোকেন"
    default_reason = "expired"


class SessionInvalidError(AuthenticationError):
    """Base for session failures; all share one client-facing message."""

    error_code = "session_invalid"
    default_message = "Session is no longer valid, please sign in again"
    default_message_bn = "সেশনটি আর বৈধ নয়, অনুগ্রহ করে আবার সাইন ইন করুন"


class SessionExpiredError(SessionInvalidError):
    error_code = "session_expired"
    default_reason = "expired"


class SessionRevokedError(SessionInvalidError):
    error_code = "session_revoked"
    default_reason = "revoked"


class SessionFingerprintMismatchError(SessionInvalidError):
    error_code = "fingerprint_mismatch"
    default_reason = "fingerprint_mismatch"


class SessionUnavailableError(SessionInvalidError):
    """Session could not be checked because the store did not answer."""

    error_code = "session_unavailable"
    default_reason = "unavailable"


class RememberTokenInvalidError(SessionInvalidError):
    error_code = "remember_token_invalid"
    default_reason = "revoked"


class ForbiddenError(ServiceError):
    """Access denied (403)."""

    status_code = 403
    error_code = "forbidden"
    default_message = "access denied"
    default_message_bn = "প্রবেশাধিকার নেই"


class VerificationRequiredError(ForbiddenError):
    error_code = "verification_required"
    default_message = "Account verification required before signing in"
    default_message_bn = "সাইন ইন করার আগে অ্যাকাউন্ট যাচাই প্রয়োজন"
    default_reason = "unverified"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "not found"
    default_message_bn = "পাওয়া যায়নি"


class RateLimitedError(ServiceError):
    """Too many attempts (429). ``retry_after`` is in whole seconds."""

    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many login attempts, please try again later"
    default_message_bn = "অত্যধিক লগইন চেষ্টা, অনুগ্রহ করে পরে আবার চেষ্টা করুন"
    default_reason = "rate_limited"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))

    def to_details(self) -> dict:
        details = super().to_details()
        details["retry_after"] = self.retry_after
        return details


class CaptchaRequiredError(RateLimitedError):
    error_code = "captcha_required"
    default_message = "CAPTCHA verification required"
    default_message_bn = "ক্যাপচা যাচাই প্রয়োজন"
    default_reason = "captcha_required"


class ServiceUnavailableError(ServiceError):
    """A backing store did not answer in time (503)."""

    status_code = 503
    error_code = "service_unavailable"
    default_message = "service temporarily unavailable, please try again"
    default_message_bn = "সেবা সাময়িকভাবে অনুপলব্ধ, অনুগ্রহ করে আবার চেষ্টা করুন"


class ServerError(ServiceError):
    """Internal server error (500)."""

    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"
    default_message_bn = "অভ্যন্তরীণ সার্ভার ত্রুটি"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "InvalidSignatureError",
    "AudienceMismatchError",
    "TokenMalformedError",
    "TokenExpiredError",
    "SessionInvalidError",
    "SessionExpiredError",
    "SessionRevokedError",
    "SessionFingerprintMismatchError",
    "SessionUnavailableError",
    "RememberTokenInvalidError",
    "ForbiddenError",
    "VerificationRequiredError",
    "NotFoundError",
    "RateLimitedError",
    "CaptchaRequiredError",
    "ServiceUnavailableError",
    "ServerError",
]
