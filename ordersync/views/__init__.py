"""
Live views over the sync layer: the customer's order tracking and support
chat pages, and the admin's order and chat dashboards.
"""

from ordersync.views.admin_chats import AdminChatDashboard
from ordersync.views.order_management import OrderManagementView
from ordersync.views.order_tracking import TRACKING_STEPS, OrderTrackingView
from ordersync.views.support_chat import SupportChatView

__all__ = [
    "AdminChatDashboard",
    "OrderManagementView",
    "OrderTrackingView",
    "SupportChatView",
    "TRACKING_STEPS",
]
