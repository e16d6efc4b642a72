"""
Payd callback ingestion.

Checks run in order and nothing touches payment state until all pass:

1. Per-IP rate limit (``webhook_rate_limit`` per minute)
2. Source IP allowlist, when ``webhook_allowed_ips`` is set
3. HMAC-SHA256 of the raw body in ``X-Payd-Signature``, when
   ``webhook_secret`` is set
4. Content type and JSON body with a usable reference

Payment-in and payout callbacks arrive on different paths and are handed to
different routines; a reference is never looked up in the other table.
"""
import hashlib
import hmac
import json
import logging
import re
import time
from typing import Any, Callable, Dict, Mapping, Optional

from shared.config import Settings

from .adapters import parse_provider_payload
from .errors import MalformedPayloadError, WebhookAuthError
from .models import ReasonCode, ResolutionSource, SecurityAlert, WebhookChannel, WebhookLog
from .settlement import Settlement, SettlementStatus
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-payd-signature"
TIMESTAMP_HEADER = "x-webhook-timestamp"


def client_ip_allowed(client_ip: Optional[str], allowed: list[str]) -> bool:
    """
    Match an IP against allowlist entries.

    Entries may be exact (``41.90.64.10``), wildcard (``41.90.*.*`` or
    ``41.90.x.x``); IPv4-mapped IPv6 clients (``::ffff:41.90.64.10``) match
    their IPv4 entry.
    """
    if not client_ip:
        return False
    candidates = {client_ip}
    if client_ip.lower().startswith("::ffff:"):
        candidates.add(client_ip[7:])

    for entry in allowed:
        if entry in candidates:
            return True
        if "*" in entry or "x" in entry.lower():
            pattern = "^" + re.sub(r"[*xX]", r"\\d+", re.escape(entry).replace("\\*", "*")) + "$"
            if any(re.match(pattern, candidate) for candidate in candidates):
                return True
    return False


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookRateLimiter:
    """Fixed one-minute window per client IP."""

    def __init__(self, limit: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, list] = {}  # ip -> [count, reset_at]

    def allow(self, client_ip: str) -> bool:
        now = self.clock()
        window = self._windows.get(client_ip)
        if window is None or now >= window[1]:
            self._windows[client_ip] = [1, now + self.window_seconds]
            self._evict(now)
            return True

        window[0] += 1
        return window[0] <= self.limit

    def _evict(self, now: float):
        expired = [ip for ip, (_, reset_at) in self._windows.items() if now >= reset_at]
        for ip in expired:
            del self._windows[ip]


class WebhookVerifier:
    """Authenticates a callback before its body is trusted."""

    def __init__(self, settings: Settings, rate_limiter: Optional[WebhookRateLimiter] = None):
        self.settings = settings
        self.rate_limiter = rate_limiter or WebhookRateLimiter(settings.webhook_rate_limit)
        self._warned_unconfigured = False

    def verify(self, body: bytes, headers: Mapping[str, str], client_ip: Optional[str]):
        """
        Raises:
            WebhookAuthError: 429 rate limited, 403 source not allowed or
                security unconfigured in production, 401 bad signature
        """
        if not self.rate_limiter.allow(client_ip or "unknown"):
            raise WebhookAuthError(
                f"Too many webhook requests from {client_ip}", status_code=429, alert_type="rate_limited"
            )

        secret = self.settings.webhook_secret
        allowed_ips = self.settings.allowed_ips

        if not secret and not allowed_ips:
            if self.settings.is_production:
                raise WebhookAuthError(
                    "Webhook security not configured", status_code=403, alert_type="security_unconfigured"
                )
            if not self._warned_unconfigured:
                logger.warning(
                    "Webhook signature and IP allowlist are both unset; accepting unauthenticated "
                    "callbacks. Never run like this in production."
                )
                self._warned_unconfigured = True

        if allowed_ips and not client_ip_allowed(client_ip, allowed_ips):
            raise WebhookAuthError(
                f"Forbidden: IP {client_ip} not whitelisted", status_code=403, alert_type="ip_not_allowed"
            )

        if secret:
            provided = headers.get(SIGNATURE_HEADER) or ""
            if provided.lower().startswith("sha256="):
                provided = provided[7:]
            if not provided:
                raise WebhookAuthError("Missing webhook signature", status_code=401, alert_type="missing_signature")
            if not hmac.compare_digest(sign_payload(secret, body), provided.strip().lower()):
                raise WebhookAuthError("Invalid webhook signature", status_code=401, alert_type="invalid_signature")


class WebhookIngestor:
    """Verifies, parses and applies Payd callbacks."""

    def __init__(
        self,
        session_factory,
        verifier: WebhookVerifier,
        settlement: Settlement,
        withdrawals: WithdrawalService,
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.settlement = settlement
        self.withdrawals = withdrawals

    async def handle(
        self,
        channel: WebhookChannel,
        body: bytes,
        headers: Mapping[str, str],
        client_ip: Optional[str],
    ) -> Dict[str, Any]:
        """
        Process one callback.

        Returns:
            Response body for a 200 acknowledgement

        Raises:
            WebhookAuthError: Authenticity checks failed (nothing was applied)
            MalformedPayloadError: Body unusable (nothing was applied)
        """
        logger.info(f"Incoming Payd {channel.value} callback from {client_ip}")

        try:
            self.verifier.verify(body, headers, client_ip)
        except WebhookAuthError as e:
            logger.error(f"Rejected {channel.value} callback from {client_ip}: {e.message}")
            await self._record_alert(e.alert_type, channel, client_ip, headers)
            raise

        content_type = headers.get("content-type") or ""
        if "application/json" not in content_type:
            logger.warning(f"Invalid Content-Type on {channel.value} callback: {content_type!r}")
            await self._record_log(channel, None, client_ip, None, "malformed")
            raise MalformedPayloadError("Invalid Content-Type. Expected application/json")

        try:
            payload = json.loads(body)
        except ValueError as e:
            await self._record_log(channel, None, client_ip, None, "malformed")
            raise MalformedPayloadError("Invalid JSON body") from e

        try:
            result = parse_provider_payload(payload, channel, timestamp_header=headers.get(TIMESTAMP_HEADER))
        except MalformedPayloadError as e:
            logger.warning(f"Unusable {channel.value} callback: {e.message}. Keys: {self._keys(payload)}")
            await self._record_log(channel, None, client_ip, payload, "malformed")
            raise

        if result.is_stale():
            logger.warning(f"Stale {channel.value} callback for {result.reference} (sent {result.timestamp})")

        logger.info(
            f"Payd {channel.value} callback: reference={result.reference} "
            f"outcome={result.outcome.value} status={result.status} result_code={result.result_code}"
        )

        if channel is WebhookChannel.PAYMENT:
            outcome = await self.settlement.apply(
                result.reference,
                result,
                source=ResolutionSource.WEBHOOK,
                reason=ReasonCode.PROVIDER_CALLBACK,
            )
            status = outcome.status
        else:
            status = (await self.withdrawals.apply_payout_result(result)).status

        if status is SettlementStatus.NOT_FOUND:
            logger.warning(f"Unknown {channel.value} reference {result.reference}; acknowledged without changes")

        await self._record_log(channel, result.reference, client_ip, result.raw, status.value)
        return {"status": status.value, "reference": result.reference}

    @staticmethod
    def _keys(payload: Any) -> list:
        return sorted(payload) if isinstance(payload, dict) else []

    async def _record_log(self, channel, reference, client_ip, payload, outcome: str):
        async with self.session_factory() as session:
            session.add(WebhookLog(
                channel=channel.value,
                reference=reference,
                client_ip=client_ip,
                payload=payload if isinstance(payload, dict) else {"body": payload},
                outcome=outcome,
            ))
            await session.commit()

    async def _record_alert(self, alert_type: str, channel, client_ip, headers: Mapping[str, str]):
        async with self.session_factory() as session:
            session.add(SecurityAlert(
                alert_type=alert_type,
                details={
                    "channel": channel.value,
                    "ip": client_ip,
                    "user_agent": headers.get("user-agent"),
                    "forwarded_for": headers.get("x-forwarded-for"),
                },
            ))
            await session.commit()
