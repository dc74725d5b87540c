"""Group membership events and the group member fan-out."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..cache import reconstruct_deletions
from ..errors import MalformedInputError
from ..logs import fields
from ..model import Asset, FeedMessage
from ..publisher import FanOutResult, Publisher, fan_out
from . import LOG_EXPORT_ORIGIN, MEMBER_ASSET_TYPE, DirectoryClient, EventContext, register_event

logger = logging.getLogger(__name__)


def member_feed_message(
    group_asset_name: str,
    group_ancestors: List[str],
    group_id: str,
    group_email: str,
    member: Mapping[str, Any],
    *,
    start_time: Optional[datetime],
    origin: str,
) -> FeedMessage:
    """Build the live feed message of one group *member*.

    The member's parent is the group, followed by the group's own ancestors.
    """

    ancestors = [f"groups/{group_id}", *group_ancestors]
    return FeedMessage(
        asset=Asset(
            name=f"{group_asset_name}/members/{member['id']}",
            asset_type=MEMBER_ASSET_TYPE,
            ancestors=ancestors,
            ancestors_display_name=list(ancestors),
            ancestry_path=group_asset_name.lstrip("/"),
            resource={
                "groupEmail": group_email,
                "memberEmail": str(member.get("email", "")).lower(),
                "id": member["id"],
                "kind": member.get("kind", ""),
                "role": member.get("role", ""),
                "type": member.get("type", ""),
            },
        ),
        start_time=start_time,
        origin=origin,
    )


@register_event("ADD_GROUP_MEMBER")
def add_group_member(context: EventContext) -> int:
    member_email = context.parameters.get("USER_EMAIL", "")
    if not member_email:
        logger.error("noretry", extra=fields(context.log_base, description="USER_EMAIL parameter not found"))
        return 0
    member = dict(context.directory.get_member(context.group_email, member_email))
    member.setdefault("email", member_email)
    group = context.directory.get_group(context.group_email)
    message = member_feed_message(
        f"//{context.directory_ancestor}/groups/{group['id']}",
        [context.directory_ancestor],
        group["id"],
        context.group_email,
        member,
        start_time=context.start_time,
        origin=LOG_EXPORT_ORIGIN,
    )
    topic = context.settings.group_members_topic
    message_id = context.publisher.publish(message.to_dict(), topic)
    logger.info(
        f"member {message.asset.name} published",
        extra=fields(context.log_base, topic=topic, message_id=message_id),
    )
    return 1


@register_event("REMOVE_GROUP_MEMBER")
def remove_group_member(context: EventContext) -> int:
    """Publish a deletion for every cached copy of the membership."""

    member_email = context.parameters.get("USER_EMAIL", "")
    if not member_email:
        logger.error("noretry", extra=fields(context.log_base, description="USER_EMAIL parameter not found"))
        return 0
    deletions = reconstruct_deletions(
        context.cache,
        {
            "asset.assetType": MEMBER_ASSET_TYPE,
            "asset.resource.groupEmail": context.group_email,
            "asset.resource.memberEmail": member_email.lower(),
        },
        start_time=context.start_time,
        origin=LOG_EXPORT_ORIGIN,
    )
    topic = context.settings.group_members_topic
    for message in deletions:
        context.publisher.publish(message.to_dict(), topic)
    return len(deletions)


@dataclass
class MemberListing:
    """Paging state of one group's member listing."""

    group_feed: FeedMessage
    group_id: str
    group_email: str
    page_token: Optional[str] = None
    pages: int = 0
    members: int = 0
    ancestors: List[str] = field(default_factory=list)

    @classmethod
    def for_group(cls, group_feed: FeedMessage) -> "MemberListing":
        resource = group_feed.asset.resource
        if not isinstance(resource, Mapping) or not resource.get("id"):
            raise MalformedInputError(f"group {group_feed.asset.name} has no resource id")
        return cls(
            group_feed=group_feed,
            group_id=str(resource["id"]),
            group_email=str(resource.get("email", "")).lower(),
            ancestors=list(group_feed.asset.ancestors),
        )

    def feed_messages(self, directory: DirectoryClient) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(label, record)`` for every member, page after page."""

        while True:
            members, self.page_token = directory.list_members(self.group_id, self.page_token)
            self.pages += 1
            for member in members:
                self.members += 1
                message = member_feed_message(
                    self.group_feed.asset.name,
                    self.ancestors,
                    self.group_id,
                    self.group_email,
                    member,
                    start_time=self.group_feed.start_time,
                    origin=self.group_feed.origin,
                )
                yield f"{self.group_feed.asset.name}/{member.get('email', member['id'])}", message.to_dict()
            if not self.page_token:
                return


def fan_out_group_members(
    group_feed: FeedMessage,
    directory: DirectoryClient,
    publisher: Publisher,
    *,
    topic: str,
    max_workers: int = 16,
    log_every: int = 100,
    log_base: Optional[Dict[str, Any]] = None,
) -> FanOutResult:
    """Publish one member feed message per member of the group in *group_feed*.

    Listing failures propagate so the group event is redelivered; individual
    publish failures are counted and do not stop the others.
    """

    if group_feed.deleted:
        logger.info("cancel", extra=fields(log_base, description=f"group {group_feed.asset.name} is deleted"))
        return FanOutResult(published=0, failed=0)
    listing = MemberListing.for_group(group_feed)
    result = fan_out(
        publisher,
        listing.feed_messages(directory),
        topic,
        max_workers=max_workers,
        log_every=log_every,
        log_base=log_base,
    )
    logger.info(
        f"finish group {listing.group_id} {listing.group_email}",
        extra=fields(
            log_base,
            topic=topic,
            pages=listing.pages,
            published=result.published,
            failed=result.failed,
        ),
    )
    return result


__all__ = [
    "MemberListing",
    "add_group_member",
    "fan_out_group_members",
    "member_feed_message",
    "remove_group_member",
]
