"""
Membership-invite collaborator.

After a code is consumed the allocator asks this collaborator to invite the
buyer onto the chosen resource. Failures never undo the redemption.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from seat_redemption.core.records import TargetResource

logger = structlog.get_logger(__name__)


class MembershipError(Exception):
    """Raised when an invite could not be delivered."""

    pass


@dataclass(frozen=True)
class InviteResult:
    sent: bool
    detail: Optional[str] = None


class MembershipClient(Protocol):
    async def invite(self, resource: TargetResource, email: str) -> InviteResult:
        ...


class DisabledMembershipClient:
    """Used when no membership API is configured; invites are left to operators."""

    async def invite(self, resource: TargetResource, email: str) -> InviteResult:
        logger.info("membership_invite_skipped", resource_id=resource.id, reason="disabled")
        return InviteResult(sent=False, detail="membership_disabled")


class HttpMembershipClient:
    """Invites members through an HTTP API: ``POST /accounts/{id}/invites``."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict) -> httpx.Response:
        return await self._client.post(path, json=payload)

    async def invite(self, resource: TargetResource, email: str) -> InviteResult:
        """
        Send an invite for ``email`` on ``resource``.

        Raises:
            MembershipError: If the API is unreachable or rejects the invite
        """
        account = resource.external_account_id or str(resource.id)
        try:
            response = await self._post(f"/accounts/{account}/invites", {"email": email})
        except httpx.HTTPError as e:
            raise MembershipError(f"membership API unreachable: {e}") from e
        if response.status_code >= 400:
            raise MembershipError(f"membership API returned HTTP {response.status_code}")
        logger.info("membership_invite_sent", resource_id=resource.id, email=email)
        return InviteResult(sent=True, detail="invited")
