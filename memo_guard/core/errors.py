"""
Domain exceptions.

Services raise these; the API layer maps each to an HTTP status and a
machine-readable ``code``.
"""

from typing import Any, Dict, Optional


class MemoGuardError(Exception):
    """Base class for every domain error."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class MissingIdentity(MemoGuardError):
    status_code = 400
    code = "missing_wallet_address"

    def __init__(self, message: str = "Wallet address is required"):
        super().__init__(message)


class InvalidRequest(MemoGuardError):
    """Malformed input, e.g. a missing quest id or an out-of-range score."""
    status_code = 400
    code = "invalid_request"


class AlreadyCheckedIn(MemoGuardError):
    status_code = 400
    code = "already_checked_in"

    def __init__(self, seconds_until_reset: int):
        super().__init__("Already checked in today")
        self.seconds_until_reset = seconds_until_reset

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["secondsUntilReset"] = self.seconds_until_reset
        return payload


class AlreadyCompleted(MemoGuardError):
    status_code = 400
    code = "already_completed"

    def __init__(self, quest_id: str):
        super().__init__(f"Adventure {quest_id} already completed")
        self.quest_id = quest_id


class SecretDecryptionError(MemoGuardError):
    """Stored API key could not be decrypted. Never carries key material."""
    status_code = 500
    code = "key_decryption_failed"


class ProviderNotConfigured(MemoGuardError):
    status_code = 503
    code = "ai_service_not_configured"

    def __init__(self, message: str = "AI service is not configured"):
        super().__init__(message)


class UpstreamUnavailable(MemoGuardError):
    status_code = 504
    code = "upstream_unavailable"
