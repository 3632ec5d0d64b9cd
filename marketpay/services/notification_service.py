"""Notification service — queue in-app notifications.

Delivery is handled elsewhere; this module only adds rows to the current
session so they commit (or roll back) with the state change they describe.
"""

import logging

from marketpay.extensions import db
from marketpay.models.notification import Notification
from marketpay.models.vendor import Vendor

logger = logging.getLogger(__name__)


def notify_user(user_id, type_, title, message, data=None):
    """Add a notification for `user_id`. Returns None when there is no recipient."""
    if not user_id:
        return None
    notification = Notification(
        user_id=user_id,
        type=type_,
        title=title,
        message=message,
        data=data or {},
    )
    db.session.add(notification)
    return notification


def notify_vendor_owner(vendor_id, type_, title, message, data=None):
    """Notify the owner of a vendor, if the vendor has one."""
    vendor = db.session.get(Vendor, vendor_id)
    if not vendor or not vendor.owner_id:
        logger.info(f"Vendor {vendor_id} has no owner to notify ({type_})")
        return None
    return notify_user(vendor.owner_id, type_, title, message, data)
