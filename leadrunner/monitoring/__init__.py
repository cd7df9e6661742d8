from .notifications import NotificationManager, ProgressEvent, ProgressFeed

__all__ = ["NotificationManager", "ProgressEvent", "ProgressFeed"]
