"""External integrations: payment gateways and the membership-invite API."""
from .gateway import GatewayClient
from .membership import DisabledMembershipClient, HttpMembershipClient, MembershipError

__all__ = ["DisabledMembershipClient", "GatewayClient", "HttpMembershipClient", "MembershipError"]
