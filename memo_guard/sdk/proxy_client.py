"""
Guarded AI completion proxy.

Forwards chat completions to an OpenAI-compatible provider behind the token
quota gate, and records every upstream call in the usage audit log.
All failures are loud: upstream errors are passed through verbatim and still
audited.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from openai import APIConnectionError, APIStatusError, OpenAI

from ..config.loader import Settings
from ..core.calendar import isoformat, utc_now
from ..core.errors import InvalidRequest, MissingIdentity, ProviderNotConfigured, UpstreamUnavailable
from ..core.guardrails import QuotaGate, QuotaViolation, enforce_post_call
from ..core.routing import Route, normalize_messages, select_route
from ..core.secrets import decrypt_api_key
from ..core.token_counter import TokenUsage, clamp_max_tokens, estimate_request_tokens
from ..storage.ledger_repository import LedgerRepository
from ..storage.models import UsageAuditEntry
from ..storage.repository import UsageRepository

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
ERROR_TEXT_LIMIT = 500
CHAT_COMPLETIONS_SUFFIX = "/chat/completions"


@dataclass(frozen=True)
class ProxyResponse:
    """Upstream status and body, returned to the caller unchanged."""
    status_code: int
    body: str
    content_type: str = "application/json"
    usage: TokenUsage = field(default_factory=lambda: TokenUsage(0, 0))


@dataclass(frozen=True)
class Credentials:
    api_key: str = field(repr=False)
    base_url: str


def _base_url(endpoint_url: Optional[str], default: str) -> str:
    """SDK base URL from a stored endpoint, which may be the full completions URL."""
    if not endpoint_url:
        return default
    url = endpoint_url.rstrip("/")
    if url.endswith(CHAT_COMPLETIONS_SUFFIX):
        url = url[: -len(CHAT_COMPLETIONS_SUFFIX)]
    return url


class GuardedProxyClient:
    """OpenAI-compatible completion proxy with quota enforcement and auditing.

    One instance per request or per process; it holds no per-wallet state.
    """

    def __init__(self, settings: Settings):
        """Initialize the proxy.

        Args:
            settings: Service settings (database, quota, provider, secrets)
        """
        self.settings = settings
        self.gate = QuotaGate(settings.quota, settings.db_path)
        self.usage = UsageRepository(settings.db_path)
        self.ledger = LedgerRepository(settings.db_path)

    def resolve_credentials(self) -> Credentials:
        """Find the upstream API key.

        An explicit plaintext key in the environment takes precedence over the
        stored encrypted key.

        Raises:
            SecretDecryptionError: If the stored key cannot be decrypted
            ProviderNotConfigured: If no key is available at all
        """
        provider = self.settings.provider
        stored = self.usage.get_active_api_key(provider.service)
        base_url = _base_url(stored.endpoint_url if stored else None, provider.base_url)

        if self.settings.plaintext_api_key:
            return Credentials(api_key=self.settings.plaintext_api_key.strip(), base_url=base_url)
        if stored is None or not stored.encrypted_key:
            raise ProviderNotConfigured()
        api_key = decrypt_api_key(stored.encrypted_key, self.settings.encryption_key)
        if not api_key:
            raise ProviderNotConfigured()
        return Credentials(api_key=api_key, base_url=base_url)

    def _client(self, credentials: Credentials) -> OpenAI:
        return OpenAI(
            api_key=credentials.api_key,
            base_url=credentials.base_url,
            timeout=self.settings.provider.timeout_seconds,
            max_retries=0
        )

    def _audit(
        self,
        wallet_address: str,
        route: Route,
        usage: TokenUsage,
        latency_ms: int,
        success: bool,
        moment: datetime,
        error_message: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> None:
        self.usage.insert_audit_entry(UsageAuditEntry(
            wallet_address=wallet_address,
            model=route.upstream_model,
            function_type=route.function_type,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            latency_ms=latency_ms,
            success=success,
            created_at=isoformat(moment),
            error_message=error_message[:ERROR_TEXT_LIMIT] if error_message else None,
            request_id=request_id
        ))

    def complete(
        self,
        wallet_address: Optional[str],
        request: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> ProxyResponse:
        """Forward one chat completion request.

        Args:
            wallet_address: Identity charged for the tokens
            request: Body with ``messages`` and optional ``model``,
                ``max_tokens``, ``temperature``, ``function_type`` and
                ``enable_search``
            now: Clock override

        Returns:
            ProxyResponse carrying the upstream status and body verbatim

        Raises:
            MissingIdentity: If the wallet address is blank
            InvalidRequest: If there are no messages
            QuotaViolation: If a quota window rejects the request
            SecretDecryptionError: If the stored key cannot be decrypted
            ProviderNotConfigured: If no upstream key is available
            UpstreamUnavailable: On upstream timeout or connection failure
        """
        if not wallet_address or not wallet_address.strip():
            raise MissingIdentity()
        wallet_address = wallet_address.strip()
        moment = utc_now(now)
        self.ledger.ensure_account(wallet_address, isoformat(moment))

        snapshot = self.gate.snapshot(wallet_address, moment)
        messages = normalize_messages(request.get("messages"))
        if not messages:
            raise InvalidRequest("messages is required and cannot be empty", "messages_required")

        route = select_route(
            messages,
            self.settings.provider,
            requested_model=str(request.get("model") or ""),
            function_type=str(request.get("function_type") or ""),
            enable_search=request.get("enable_search")
        )
        max_tokens = clamp_max_tokens(
            _as_int(request.get("max_tokens")),
            self.settings.quota.max_tokens_hard_cap,
            self.settings.quota.default_max_tokens
        )
        self.gate.check(snapshot, estimate_request_tokens(messages, max_tokens))

        credentials = self.resolve_credentials()
        extra_body = None
        if route.enable_search:
            extra_body = {"enable_search": True, "search_options": {"search_strategy": "agent"}}

        started = time.monotonic()
        try:
            raw = self._client(credentials).chat.completions.with_raw_response.create(
                model=route.upstream_model,
                messages=messages,
                temperature=request.get("temperature") or DEFAULT_TEMPERATURE,
                max_tokens=max_tokens,
                stream=False,
                extra_body=extra_body
            )
        except APIStatusError as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            text = e.response.text
            logger.error(f"Upstream returned {e.status_code} for {wallet_address} ({route.upstream_model})")
            self._audit(wallet_address, route, TokenUsage(0, 0), latency_ms, False, moment,
                        error_message=text or str(e))
            return ProxyResponse(
                status_code=e.status_code,
                body=text,
                content_type=e.response.headers.get("content-type", "application/json")
            )
        except APIConnectionError as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Upstream unreachable for {wallet_address} ({route.upstream_model}): {e}")
            self._audit(wallet_address, route, TokenUsage(0, 0), latency_ms, False, moment,
                        error_message=str(e))
            raise UpstreamUnavailable(f"Upstream provider unavailable: {e}")

        latency_ms = int((time.monotonic() - started) * 1000)
        http_response = raw.http_response
        text = http_response.text
        body = _parse_body(text)
        usage = TokenUsage.from_response(body)
        request_id = body.get("id") if isinstance(body, dict) else None

        try:
            enforce_post_call(snapshot, usage.total_tokens)
        except QuotaViolation as e:
            # tokens were consumed upstream; they still count locally
            self.gate.record_usage(wallet_address, usage.total_tokens, moment)
            self._audit(wallet_address, route, usage, latency_ms, False, moment,
                        error_message=e.code, request_id=request_id)
            logger.warning(
                f"Post-call quota rejection for {wallet_address}: used {usage.total_tokens}, "
                f"monthly {snapshot.monthly_used}/{snapshot.monthly_limit}"
            )
            raise

        self.gate.record_usage(wallet_address, usage.total_tokens, moment)
        self._audit(wallet_address, route, usage, latency_ms, True, moment, request_id=request_id)
        logger.info(
            f"Proxied {route.upstream_model} for {wallet_address}: "
            f"{usage.total_tokens} tokens in {latency_ms}ms"
        )
        return ProxyResponse(
            status_code=http_response.status_code,
            body=text,
            content_type=http_response.headers.get("content-type", "application/json"),
            usage=usage
        )


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _parse_body(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        logger.warning("Upstream response body is not JSON; usage counted as zero")
        return None
