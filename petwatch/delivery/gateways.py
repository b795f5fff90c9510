"""
Delivery Gateway Chain.

Ordered fallback of SMS backends. The first *configured* backend handles the
whole dispatch; a configured backend that fails at runtime never falls
through to the next one. Transport errors are captured per recipient (or per
batch) and reported in the DeliveryResult, never raised.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from curl_cffi.requests import AsyncSession

from petwatch.core.config import Settings, settings
from petwatch.core.errors import DeliveryError, map_delivery_error
from petwatch.core.logger import logger
from petwatch.delivery.composer import render_for
from petwatch.delivery.phone import normalize_phone
from petwatch.watch.schemas import DeliveryBackend, DeliveryResult, Recipient

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def unique_by_phone(recipients: Sequence[Recipient]) -> list[tuple[Recipient, str]]:
    """Pair recipients with their normalized phone, dropping duplicate numbers."""
    seen: dict[str, Recipient] = {}
    for recipient in recipients:
        phone = normalize_phone(recipient.phone)
        if phone not in seen:
            seen[phone] = recipient
    return [(recipient, phone) for phone, recipient in seen.items()]


def summarize(sent_to: Sequence[str], total: int) -> str:
    return f"SMS sent to {len(sent_to)} of {total} contacts"


class SmsGateway(ABC):
    """One delivery backend."""

    name: DeliveryBackend

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock

    @abstractmethod
    async def send(self, recipients: Sequence[Recipient], template: str) -> DeliveryResult:
        """Deliver the templated alert to every recipient."""

    def _result(self, sent_to: list[str], failed_to: list[str], message: str) -> DeliveryResult:
        return DeliveryResult(
            sent=len(sent_to) > 0,
            sent_to=tuple(sent_to),
            failed_to=tuple(failed_to),
            message=message,
            timestamp=self._clock(),
            backend=self.name,
        )


class TwilioGateway(SmsGateway):
    """
    Primary channel: keyed messaging API, one request per recipient.

    Each recipient succeeds or fails independently.
    """

    name: DeliveryBackend = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 15.0,
        session_factory: Callable[[], Any] = AsyncSession,
        clock: Clock = utc_now,
    ):
        super().__init__(clock)
        self.account_sid = account_sid
        self._auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session_factory = session_factory

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"

    async def _send_one(self, session: Any, to: str, body: str) -> None:
        response = await session.post(
            self.messages_url,
            data={"From": self.from_number, "To": to, "Body": body},
            auth=(self.account_sid, self._auth_token),
            timeout=self.timeout,
        )
        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"{self.name} returned HTTP {response.status_code}",
                backend=self.name,
                status_code=response.status_code,
            )

    async def send(self, recipients: Sequence[Recipient], template: str) -> DeliveryResult:
        targets = unique_by_phone(recipients)
        sent_to: list[str] = []
        failed_to: list[str] = []

        async with self._session_factory() as session:
            for recipient, phone in targets:
                try:
                    await self._send_one(session, phone, render_for(template, recipient.name))
                except Exception as e:
                    error = map_delivery_error(e, self.name)
                    logger.warning(f"SMS to {recipient.name} ({phone}) failed: {error.message}")
                    failed_to.append(phone)
                else:
                    logger.info(f"SMS sent to {recipient.name} ({phone})")
                    sent_to.append(phone)

        return self._result(sent_to, failed_to, summarize(sent_to, len(targets)))


class BatchBackendGateway(SmsGateway):
    """
    Secondary channel: generic HTTP endpoint taking the whole batch at once.

    Each contact carries its own rendered message. The top-level message is
    rendered with a neutral greeting; the raw template travels separately for
    backends that substitute {contactName} themselves.

    Non-2xx or transport failure fails every recipient in the batch. On 2xx
    the endpoint's own sentTo list decides who was reached.
    """

    name: DeliveryBackend = "backend"

    def __init__(
        self,
        service_url: str,
        timeout: float = 15.0,
        session_factory: Callable[[], Any] = AsyncSession,
        clock: Clock = utc_now,
    ):
        super().__init__(clock)
        self.service_url = service_url.rstrip("/")
        self.timeout = timeout
        self._session_factory = session_factory

    @property
    def send_url(self) -> str:
        return f"{self.service_url}/send-sms"

    async def send(self, recipients: Sequence[Recipient], template: str) -> DeliveryResult:
        targets = unique_by_phone(recipients)
        phones = [phone for _, phone in targets]
        payload = {
            "contacts": [
                {"name": r.name, "phone": phone, "message": render_for(template, r.name)}
                for r, phone in targets
            ],
            "message": render_for(template, ""),
            "template": template,
        }

        try:
            async with self._session_factory() as session:
                response = await session.post(self.send_url, json=payload, timeout=self.timeout)
            if not 200 <= response.status_code < 300:
                raise DeliveryError(
                    f"SMS backend returned HTTP {response.status_code}",
                    backend=self.name,
                    status_code=response.status_code,
                )
            body = response.json()
        except Exception as e:
            error = map_delivery_error(e, self.name)
            logger.warning(f"Batch SMS delivery failed for {len(phones)} contacts: {error.message}")
            return self._result([], phones, f"Backend SMS service error: {error.message}")

        reported = body.get("sentTo", []) if isinstance(body, dict) else []
        reached = {normalize_phone(str(p)) for p in reported}
        sent_to = [p for p in phones if p in reached]
        failed_to = [p for p in phones if p not in reached]
        if failed_to:
            logger.warning(f"SMS backend missed {len(failed_to)} of {len(phones)} contacts")
        return self._result(sent_to, failed_to, summarize(sent_to, len(phones)))


class LocalFallbackGateway(SmsGateway):
    """Simulated send used only when no real channel is configured."""

    name: DeliveryBackend = "local"

    async def send(self, recipients: Sequence[Recipient], template: str) -> DeliveryResult:
        targets = unique_by_phone(recipients)
        for recipient, phone in targets:
            body = render_for(template, recipient.name)
            logger.info(f"SIMULATED SMS to {recipient.name} ({phone}):\n{body}")
        sent_to = [phone for _, phone in targets]
        return self._result(
            sent_to,
            [],
            f"No SMS service configured; simulated alert to {len(sent_to)} contacts",
        )


class DeliveryGatewayChain:
    """
    Selects one backend from configuration and dispatches through it.

    Priority: Twilio credentials > batch backend URL > local fallback.
    """

    def __init__(self, gateway: SmsGateway, clock: Clock = utc_now):
        self.gateway = gateway
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        session_factory: Callable[[], Any] = AsyncSession,
        clock: Clock = utc_now,
    ) -> "DeliveryGatewayChain":
        config = config or settings
        gateway: SmsGateway
        if config.twilio_configured:
            gateway = TwilioGateway(
                account_sid=config.twilio_account_sid,
                auth_token=config.twilio_auth_token.get_secret_value(),
                from_number=config.twilio_phone_number,
                api_base=config.twilio_api_base,
                timeout=config.delivery_timeout_seconds,
                session_factory=session_factory,
                clock=clock,
            )
        elif config.sms_service_configured:
            gateway = BatchBackendGateway(
                service_url=config.sms_service_url,
                timeout=config.delivery_timeout_seconds,
                session_factory=session_factory,
                clock=clock,
            )
        else:
            gateway = LocalFallbackGateway(clock=clock)
        logger.info(f"Delivery gateway selected: {gateway.name}")
        return cls(gateway, clock=clock)

    @property
    def backend(self) -> DeliveryBackend:
        return self.gateway.name

    async def dispatch(self, recipients: Sequence[Recipient], template: str) -> DeliveryResult:
        """
        Send the alert to every recipient through the selected backend.

        Never raises: every failure ends up in failed_to.
        """
        if not recipients:
            return DeliveryResult(
                sent=False,
                message="No emergency contacts to notify",
                timestamp=self._clock(),
                backend="none",
            )

        try:
            return await self.gateway.send(recipients, template)
        except Exception as e:
            logger.error(f"Gateway {self.backend} crashed during dispatch: {e}", exc_info=True)
            phones = [phone for _, phone in unique_by_phone(recipients)]
            return DeliveryResult(
                sent=False,
                sent_to=(),
                failed_to=tuple(phones),
                message=f"SMS delivery failed: {type(e).__name__}",
                timestamp=self._clock(),
                backend=self.backend,
            )
