from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base
import enum
import uuid

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, enum.Enum):
    """Scheduled job lifecycle"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INVALID = "invalid"


class DataSourceStatus(str, enum.Enum):
    """Data source activation"""
    ACTIVE = "active"
    INACTIVE = "inactive"


class SyncStatus(str, enum.Enum):
    """Whether a data source currently has a sync run in flight"""
    IDLE = "idle"
    SYNCING = "syncing"


class EntityState(str, enum.Enum):
    """Health marker derived from active alerts"""
    LOW = "low"
    NORMAL = "normal"
    WARN = "warn"
    CRITICAL = "critical"


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
