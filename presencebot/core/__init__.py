# Core package - centralized exports
# - configurations.py: Config, AttendanceSettings
# - db.py: Database class and schema
# - errors.py: ConflictError, NotFoundError, StoreError, NotificationError
# - rooms.py / sessions.py / events.py / recovery.py / reports.py / throttle.py: tracking engine parts
# - engine.py: PresenceEngine, the facade the cogs talk to

# Configurations
from .configurations import Config, AttendanceSettings, DEFAULT_CONFIG_TEMPLATE

# Database
from .db import Database

# Errors
from .errors import PresenceError, ConflictError, NotFoundError, StoreError, NotificationError

# Models
from .models import Session, Event, Participation, MembershipChange, Occupant, SummaryLine, Transition, TransitionResult

# Engine
from .rooms import RoomRegistry
from .sessions import SessionTracker, CheckoutResult, CheckoutStatus
from .events import EventStore, EventScheduler, CLOSE_AUTO, CLOSE_MANUAL, CLOSE_RECOVERY, AUTO_STOP_RETRY_SECONDS
from .recovery import RecoveryManager, RecoveryReport, OccupancySource
from .reports import ReportAggregator, sessions_to_csv
from .throttle import NotificationThrottle
from .timers import GuildTimers
from .engine import PresenceEngine

__all__ = [
    # Configurations
    'Config', 'AttendanceSettings', 'DEFAULT_CONFIG_TEMPLATE',
    # Database
    'Database',
    # Errors
    'PresenceError', 'ConflictError', 'NotFoundError', 'StoreError', 'NotificationError',
    # Models
    'Session', 'Event', 'Participation', 'MembershipChange', 'Occupant', 'SummaryLine',
    'Transition', 'TransitionResult',
    # Engine
    'RoomRegistry', 'SessionTracker', 'CheckoutResult', 'CheckoutStatus',
    'EventStore', 'EventScheduler', 'CLOSE_AUTO', 'CLOSE_MANUAL', 'CLOSE_RECOVERY', 'AUTO_STOP_RETRY_SECONDS',
    'RecoveryManager', 'RecoveryReport', 'OccupancySource',
    'ReportAggregator', 'sessions_to_csv',
    'NotificationThrottle', 'GuildTimers', 'PresenceEngine',
]
