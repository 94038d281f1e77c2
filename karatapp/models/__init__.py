"""Data models.

- SQLAlchemy ORM models (accounts, profiles, roles, mutes, forum, katas, ohyos, interactions)
- Enumerations shared across services
- Pydantic records and plain dataclasses handed to callers
- The preset avatar catalog
"""

from .enums import ContentKind, ForumCategory, MuteDuration, OhyoCategory, Permission, TargetType, UserRole
from .models import (
    Base,
    Favorite,
    ForumComment,
    ForumPost,
    Kata,
    KataComment,
    Like,
    Ohyo,
    OhyoComment,
    UserAccount,
    UserMute,
    UserProfile,
    UserRoleAssignment,
)
from .schemas import (
    AuthSession,
    AuthUser,
    FavoriteRecord,
    LikeRecord,
    MuteInfo,
    MuteStatistics,
    PostWithComments,
    UploadFile,
    UserWithRole,
)
