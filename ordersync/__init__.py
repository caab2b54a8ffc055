"""
                Restaurant Order Sync

Realtime synchronization layer for restaurant order tracking,
customer support chat and the admin order/chat dashboards.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
