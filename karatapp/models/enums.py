"""Enumerations shared by the models and services."""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum


class ForumCategory(StrEnum):
    """Forum post category.

    Values match the strings stored in ``forum_posts.category``.
    """

    GENERAL = "general"
    KATA_REQUESTS = "kataRequests"
    TECHNIQUES = "techniques"
    EVENTS = "events"
    FEEDBACK = "feedback"

    @property
    def display_name(self) -> str:
        return _FORUM_CATEGORY_NAMES[self]

    @classmethod
    def parse(cls, value: str | None) -> ForumCategory:
        """Parse a stored category, falling back to ``general``."""
        try:
            return cls(value)
        except ValueError:
            return cls.GENERAL


_FORUM_CATEGORY_NAMES = {
    ForumCategory.GENERAL: "Algemene Discussie",
    ForumCategory.KATA_REQUESTS: "Kata Verzoeken",
    ForumCategory.TECHNIQUES: "Technieken & Tips",
    ForumCategory.EVENTS: "Evenementen & Aankondigingen",
    ForumCategory.FEEDBACK: "App Feedback",
}


class OhyoCategory(StrEnum):
    ALL = "all"
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return _OHYO_CATEGORY_NAMES[self]

    @classmethod
    def from_style(cls, style: str | None) -> OhyoCategory:
        """Derive the category from a free-form style string.

        The lowercased style is matched against the lowercased display names
        (``all`` is never derived). Anything unmatched is ``other``.
        """
        if not style:
            return cls.OTHER
        lowered = style.lower()
        for category in cls:
            if category is cls.ALL:
                continue
            if category.display_name.lower() in lowered:
                return category
        return cls.OTHER


_OHYO_CATEGORY_NAMES = {
    OhyoCategory.ALL: "Alle",
    OhyoCategory.BASIC: "Basis",
    OhyoCategory.INTERMEDIATE: "Gemiddeld",
    OhyoCategory.ADVANCED: "Gevorderd",
    OhyoCategory.OTHER: "Andere",
}


class UserRole(StrEnum):
    USER = "user"
    MEDIATOR = "mediator"
    HOST = "host"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def description(self) -> str:
        return _ROLE_DESCRIPTIONS[self]

    @classmethod
    def parse(cls, value: str | None) -> UserRole:
        try:
            return cls(value)
        except ValueError:
            return cls.USER


_ROLE_DESCRIPTIONS = {
    UserRole.USER: "Gewone gebruiker met basis rechten",
    UserRole.MEDIATOR: "Kan inhoud modereren en helpen bij het oplossen van conflicten",
    UserRole.HOST: "Volledige administratieve toegang tot de applicatie",
}


class Permission(StrEnum):
    MODERATE_CONTENT = "moderate_content"
    DELETE_ANY_POST = "delete_any_post"
    MUTE_USERS = "mute_users"
    ASSIGN_ROLES = "assign_roles"
    PIN_POSTS = "pin_posts"
    LOCK_POSTS = "lock_posts"


class MuteDuration(StrEnum):
    ONE_DAY = "1d"
    THREE_DAYS = "3d"
    ONE_WEEK = "7d"
    ONE_MONTH = "30d"
    THREE_MONTHS = "90d"
    SIX_MONTHS = "180d"
    ONE_YEAR = "365d"

    @property
    def duration(self) -> timedelta:
        return timedelta(days=int(self.value.removesuffix("d")))

    @property
    def display_name(self) -> str:
        return _MUTE_DURATION_TEXT[self][0]

    @property
    def description(self) -> str:
        return _MUTE_DURATION_TEXT[self][1]


_MUTE_DURATION_TEXT = {
    MuteDuration.ONE_DAY: ("1 Day", "Short timeout for minor issues"),
    MuteDuration.THREE_DAYS: ("3 Days", "Standard timeout for rule violations"),
    MuteDuration.ONE_WEEK: ("1 Week", "Extended timeout for repeated violations"),
    MuteDuration.ONE_MONTH: ("1 Month", "Serious violations or harassment"),
    MuteDuration.THREE_MONTHS: ("3 Months", "Severe violations or toxic behavior"),
    MuteDuration.SIX_MONTHS: ("6 Months", "Major violations requiring long break"),
    MuteDuration.ONE_YEAR: ("1 Year", "Extreme cases requiring extended separation"),
}


class TargetType(StrEnum):
    """Kinds of content that can be liked or favorited."""

    KATA = "kata"
    OHYO = "ohyo"
    FORUM_POST = "forum_post"


class ContentKind(StrEnum):
    """Technique collections with editable attachments."""

    KATA = "kata"
    OHYO = "ohyo"

    @property
    def target_type(self) -> TargetType:
        return TargetType(self.value)
