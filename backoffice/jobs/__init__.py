# Jobs Package - Scheduled background tasks
from .order_sync import OrderSyncScheduler, start_scheduler, stop_scheduler

__all__ = ["OrderSyncScheduler", "start_scheduler", "stop_scheduler"]
