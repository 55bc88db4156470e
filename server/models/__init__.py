"""SQLAlchemy models — re-export all."""

from models.user import UserProfile, APIKey  # noqa: F401
from models.usage import PlanConfig, UsageLog, UserUsage  # noqa: F401
from models.workflow import N8nConnection, Workflow  # noqa: F401
from models.conversation import ChatMessage, Conversation  # noqa: F401
