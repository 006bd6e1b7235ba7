# Background worker event type definitions

INSTALL = "install"
ACTIVATE = "activate"
FETCH = "fetch"
PUSH = "push"
NOTIFICATION_CLICK = "notificationclick"
MESSAGE = "message"
SYNC = "sync"

# Events whose failure aborts the lifecycle step they belong to
LIFECYCLE_EVENTS = frozenset({INSTALL, ACTIVATE})

# Control messages accepted by the message handler
MSG_SKIP_WAITING = "skip-waiting"

# Notification action that closes without navigating
ACTION_DISMISS = "dismiss"
