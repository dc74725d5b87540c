"""Directory client backed by the IAM Identity Center identity store."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import TransportError


class IdentityStoreDirectoryClient:
    """:class:`~asset_monitor.directory.DirectoryClient` over ``identitystore``.

    Groups are addressed by their display name, which holds the group email,
    and users by their user name. The identity store id plays the role of the
    directory customer id.
    """

    def __init__(self, client, identity_store_id: str, *, page_size: int = 100) -> None:
        self._client = client
        self._identity_store_id = identity_store_id
        self._page_size = page_size

    @classmethod
    def from_session(
        cls, session: boto3.session.Session, identity_store_id: str, **kwargs
    ) -> "IdentityStoreDirectoryClient":
        return cls(session.client("identitystore"), identity_store_id, **kwargs)

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            return getattr(self._client, operation)(IdentityStoreId=self._identity_store_id, **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"identitystore {operation}: {exc}") from exc

    def _group_id(self, group_email: str) -> str:
        response = self._call(
            "get_group_id",
            AlternateIdentifier={
                "UniqueAttribute": {"AttributePath": "displayName", "AttributeValue": group_email}
            },
        )
        return response["GroupId"]

    def _user_id(self, user_email: str) -> str:
        response = self._call(
            "get_user_id",
            AlternateIdentifier={
                "UniqueAttribute": {"AttributePath": "userName", "AttributeValue": user_email}
            },
        )
        return response["UserId"]

    def get_group(self, group_email: str) -> Dict[str, Any]:
        group = self._call("describe_group", GroupId=self._group_id(group_email))
        return {
            "id": group["GroupId"],
            "email": group.get("DisplayName", group_email).lower(),
            "name": group.get("DisplayName", ""),
            "description": group.get("Description", ""),
            "kind": "identitystore#group",
        }

    def get_member(self, group_email: str, member_email: str) -> Dict[str, Any]:
        group_id = self._group_id(group_email)
        user_id = self._user_id(member_email)
        membership = self._call(
            "get_group_membership_id", GroupId=group_id, MemberId={"UserId": user_id}
        )
        return {
            "id": user_id,
            "email": member_email.lower(),
            "kind": "identitystore#member",
            "role": "MEMBER",
            "type": "USER",
            "membershipId": membership.get("MembershipId", ""),
        }

    def get_group_settings(self, group_email: str) -> Dict[str, Any]:
        group = self._call("describe_group", GroupId=self._group_id(group_email))
        return {
            "email": group.get("DisplayName", group_email).lower(),
            "name": group.get("DisplayName", ""),
            "description": group.get("Description", ""),
            "externalIds": group.get("ExternalIds", []),
        }

    def list_members(
        self, group_id: str, page_token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        kwargs: Dict[str, Any] = {"GroupId": group_id, "MaxResults": self._page_size}
        if page_token:
            kwargs["NextToken"] = page_token
        response = self._call("list_group_memberships", **kwargs)
        members: List[Dict[str, Any]] = []
        for membership in response.get("GroupMemberships", []):
            user_id = (membership.get("MemberId") or {}).get("UserId")
            if not user_id:
                continue
            user = self._call("describe_user", UserId=user_id)
            members.append(
                {
                    "id": user_id,
                    "email": user.get("UserName", "").lower(),
                    "kind": "identitystore#member",
                    "role": "MEMBER",
                    "type": "USER",
                }
            )
        return members, response.get("NextToken")

    def customer_id(self, organization_id: str) -> str:
        return self._identity_store_id


__all__ = ["IdentityStoreDirectoryClient"]
