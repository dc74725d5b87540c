"""Group lifecycle and settings events."""
from __future__ import annotations

import logging
from typing import Any, Dict

from ..cache import reconstruct_deletions
from ..logs import fields
from ..model import Asset, FeedMessage
from ..publisher import directory_topic_name
from . import (
    GROUP_ASSET_TYPE,
    GROUP_SETTINGS_ASSET_TYPE,
    LOG_EXPORT_ORIGIN,
    EventContext,
    register_event,
)

logger = logging.getLogger(__name__)


def group_feed_message(context: EventContext, group: Dict[str, Any]) -> FeedMessage:
    """Build the live feed message of a directory *group*."""

    resource = {key: value for key, value in group.items() if key != "etag"}
    return FeedMessage(
        asset=Asset(
            name=f"//{context.directory_ancestor}/groups/{group['id']}",
            asset_type=GROUP_ASSET_TYPE,
            ancestors=[context.directory_ancestor],
            ancestors_display_name=[context.directory_ancestor],
            ancestry_path=context.directory_ancestor,
            resource=resource,
        ),
        start_time=context.start_time,
        origin=LOG_EXPORT_ORIGIN,
    )


def _publish_group(context: EventContext, message: FeedMessage) -> None:
    topic = directory_topic_name(context.settings.groups_topic_prefix, context.customer_id)
    message_id = context.publisher.publish(message.to_dict(), topic)
    logger.info(
        f"group {message.asset.name} published",
        extra=fields(context.log_base, topic=topic, deleted=message.deleted, message_id=message_id),
    )


@register_event("CREATE_GROUP")
def create_group(context: EventContext) -> int:
    group = context.directory.get_group(context.group_email)
    _publish_group(context, group_feed_message(context, group))
    return 1


@register_event("DELETE_GROUP")
def delete_group(context: EventContext) -> int:
    """Publish a deletion for every cached copy of the group."""

    deletions = reconstruct_deletions(
        context.cache,
        {"asset.assetType": GROUP_ASSET_TYPE, "asset.resource.email": context.group_email},
        start_time=context.start_time,
        origin=LOG_EXPORT_ORIGIN,
    )
    for message in deletions:
        _publish_group(context, message)
    return len(deletions)


@register_event("CHANGE_GROUP_SETTING")
def change_group_setting(context: EventContext) -> int:
    settings = context.directory.get_group_settings(context.group_email)
    group = context.directory.get_group(context.group_email)
    message = FeedMessage(
        asset=Asset(
            name=f"//{context.directory_ancestor}/groups/{group['id']}/groupSettings",
            asset_type=GROUP_SETTINGS_ASSET_TYPE,
            ancestors=[context.directory_ancestor],
            ancestors_display_name=[context.directory_ancestor],
            ancestry_path=context.directory_ancestor,
            resource=settings,
        ),
        start_time=context.start_time,
        origin=LOG_EXPORT_ORIGIN,
    )
    topic = context.settings.group_settings_topic
    message_id = context.publisher.publish(message.to_dict(), topic)
    logger.info(
        f"group settings {message.asset.name} published",
        extra=fields(context.log_base, topic=topic, message_id=message_id),
    )
    return 1


__all__ = ["change_group_setting", "create_group", "delete_group", "group_feed_message"]
