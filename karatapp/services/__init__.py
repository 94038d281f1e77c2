"""Service layer.

Every service takes the ``Container`` and the acting ``AuthUser`` (or None)
explicitly; errors are raised as ``KaratappError`` subclasses.
"""

from .attachments import AttachmentEditSession, AttachmentStore
from .auth import AuthService, SessionPersistence
from .avatars import AvatarService
from .content import ContentService
from .forum import ForumFeed, ForumService
from .interactions import InteractionService
from .mutes import MuteService
from .password import BreachChecker, PasswordPolicy, validate_new_password
from .roles import RoleService
from .settings import AccessibilityPreferences, DataUsagePreferences, LocalSettingsStore

__all__ = [
    "AccessibilityPreferences",
    "AttachmentEditSession",
    "AttachmentStore",
    "AuthService",
    "AvatarService",
    "BreachChecker",
    "ContentService",
    "DataUsagePreferences",
    "ForumFeed",
    "ForumService",
    "InteractionService",
    "LocalSettingsStore",
    "MuteService",
    "PasswordPolicy",
    "RoleService",
    "SessionPersistence",
    "validate_new_password",
]
