import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com"


@dataclass(frozen=True)
class MailMessage:
    sender: str
    to: List[str]
    subject: str
    html: str

    def as_payload(self) -> dict:
        return {"from": self.sender, "to": self.to, "subject": self.subject, "html": self.html}


@dataclass(frozen=True)
class MailResult:
    id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MailClient:
    """Thin client for the Resend transactional email API.

    ``send`` never raises: every failure comes back as ``MailResult.error``.
    """

    def __init__(self, api_key: str, http_client: httpx.AsyncClient, base_url: str = RESEND_API_URL):
        self.api_key = api_key
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def send(self, message: MailMessage) -> MailResult:
        if not self.api_key:
            return MailResult(error="RESEND_API_KEY is not configured")
        try:
            response = await self.http_client.post(
                f"{self.base_url}/emails",
                json=message.as_payload(),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            logger.warning("Mail provider unreachable for %r: %s", message.subject, e)
            return MailResult(error=f"transport error: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except ValueError:
                detail = response.text
            return MailResult(error=f"HTTP {response.status_code}: {detail}")

        try:
            return MailResult(id=response.json().get("id"))
        except ValueError:
            return MailResult()
