"""Preset avatar catalog and the avatar stored in user metadata."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from .models import ensure_aware


class AvatarType(StrEnum):
    PRESET = "preset"
    CUSTOM = "custom"


class AvatarFormat(StrEnum):
    SVG = "svg"
    PHOTO = "photo"


class AvatarCategory(StrEnum):
    ANIMALS = "animals"
    KARATE_MAN = "karateMan"
    KARATE_WOMAN = "karateWoman"
    MARTIAL_ARTS_CHARACTERS = "martialArtsCharacters"
    KARATE_ITEMS = "karateItems"

    @property
    def display_name(self) -> str:
        return _CATEGORY_NAMES[self]


_CATEGORY_NAMES = {
    AvatarCategory.ANIMALS: "Animals",
    AvatarCategory.KARATE_MAN: "Karate Men",
    AvatarCategory.KARATE_WOMAN: "Karate Women",
    AvatarCategory.MARTIAL_ARTS_CHARACTERS: "Martial Arts",
    AvatarCategory.KARATE_ITEMS: "Dojo & Items",
}


@dataclass(slots=True, frozen=True)
class Avatar:
    id: str
    name: str
    asset_path: str
    category: AvatarCategory
    format: AvatarFormat = AvatarFormat.PHOTO

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "asset_path": self.asset_path,
            "category": self.category.value,
            "format": self.format.value,
        }


_PHOTOS = "assets/avatars/photos"


def _preset(avatar_id: str, name: str, path: str, category: AvatarCategory) -> Avatar:
    return Avatar(id=avatar_id, name=name, asset_path=f"{_PHOTOS}/{path}", category=category)


PRESET_AVATARS: tuple[Avatar, ...] = (
    _preset("karate_man_white_gi", "Karateka (White Gi)", "karate_men/white_gi.jpg", AvatarCategory.KARATE_MAN),
    _preset("karate_man_black_gi", "Karateka (Black Gi)", "karate_men/black_gi.jpg", AvatarCategory.KARATE_MAN),
    _preset("karate_sensei", "Sensei Master", "karate_men/sensei_master.jpg", AvatarCategory.KARATE_MAN),
    _preset("karate_student", "Young Karate Student", "karate_men/student_young.jpg", AvatarCategory.KARATE_MAN),
    _preset(
        "karate_competitor",
        "Tournament Competitor",
        "karate_men/competitor_tournament.jpg",
        AvatarCategory.KARATE_MAN,
    ),
    _preset("karate_referee", "Referee", "karate_men/referee.jpg", AvatarCategory.KARATE_MAN),
    _preset("karate_woman_white_gi", "Karateka (White Gi)", "karate_women/white_gi.jpg", AvatarCategory.KARATE_WOMAN),
    _preset("karate_woman_black_gi", "Karateka (Black Gi)", "karate_women/black_gi.jpg", AvatarCategory.KARATE_WOMAN),
    _preset(
        "karate_female_sensei",
        "Female Sensei Master",
        "karate_women/sensei_master.jpg",
        AvatarCategory.KARATE_WOMAN,
    ),
    _preset(
        "karate_female_student",
        "Young Female Student",
        "karate_women/student_young.jpg",
        AvatarCategory.KARATE_WOMAN,
    ),
    _preset(
        "karate_female_competitor",
        "Tournament Competitor",
        "karate_women/competitor_tournament.jpg",
        AvatarCategory.KARATE_WOMAN,
    ),
    _preset("karate_female_referee", "Referee", "karate_women/referee.jpg", AvatarCategory.KARATE_WOMAN),
    _preset(
        "samurai_warrior",
        "Traditional Samurai",
        "characters/samurai_traditional.jpg",
        AvatarCategory.MARTIAL_ARTS_CHARACTERS,
    ),
    _preset("ninja", "Modern Ninja", "characters/ninja_modern.jpg", AvatarCategory.MARTIAL_ARTS_CHARACTERS),
    _preset(
        "kung_fu_master",
        "Kung Fu Master",
        "characters/kung_fu_master.jpg",
        AvatarCategory.MARTIAL_ARTS_CHARACTERS,
    ),
    _preset(
        "aikido_practitioner",
        "Aikido Master",
        "characters/aikido_master.jpg",
        AvatarCategory.MARTIAL_ARTS_CHARACTERS,
    ),
    _preset("judo_fighter", "Judo Champion", "characters/judo_champion.jpg", AvatarCategory.MARTIAL_ARTS_CHARACTERS),
    _preset(
        "taekwondo_athlete",
        "Taekwondo Athlete",
        "characters/taekwondo_athlete.jpg",
        AvatarCategory.MARTIAL_ARTS_CHARACTERS,
    ),
    _preset("animal_dog", "Dog", "animals/dog.jpg", AvatarCategory.ANIMALS),
    _preset("animal_cat", "Cat", "animals/cat.jpg", AvatarCategory.ANIMALS),
    _preset("animal_panda", "Panda", "animals/panda.jpg", AvatarCategory.ANIMALS),
    _preset("animal_fox", "Fox", "animals/fox.jpg", AvatarCategory.ANIMALS),
    _preset("animal_lion", "Lion", "animals/lion.jpg", AvatarCategory.ANIMALS),
    _preset("animal_flamingo", "Flamingo", "animals/flamingo.jpg", AvatarCategory.ANIMALS),
    _preset("animal_unicorn", "Unicorn", "animals/unicorn.jpg", AvatarCategory.ANIMALS),
    _preset("katana_sword", "Katana", "items/katana.jpg", AvatarCategory.KARATE_ITEMS),
    _preset("nunchucks", "Nunchucks", "items/nunchucks.jpg", AvatarCategory.KARATE_ITEMS),
    _preset("trophy", "Trophy", "items/trophy.jpg", AvatarCategory.KARATE_ITEMS),
    _preset("medal", "Medal", "items/medal.jpg", AvatarCategory.KARATE_ITEMS),
    _preset("dojo_building", "Dojo", "items/dojo.jpg", AvatarCategory.KARATE_ITEMS),
    _preset("yin_yang", "Yin Yang", "items/yin_yang.jpg", AvatarCategory.KARATE_ITEMS),
)

_BY_ID = {avatar.id: avatar for avatar in PRESET_AVATARS}


def avatars_by_category(category: AvatarCategory) -> list[Avatar]:
    return [avatar for avatar in PRESET_AVATARS if avatar.category is category]


def avatar_by_id(avatar_id: str | None) -> Avatar | None:
    if not avatar_id:
        return None
    return _BY_ID.get(avatar_id)


def default_avatar() -> Avatar:
    return PRESET_AVATARS[0]


@dataclass(slots=True, frozen=True)
class UserAvatar:
    """The avatar a user has chosen.

    Attributes:
        type: preset or custom.
        avatar_id: preset id when ``type`` is preset.
        custom_url: signed URL of the uploaded image when ``type`` is custom.
        last_updated: when the choice was stored, if known.
    """

    type: AvatarType
    avatar_id: str | None = None
    custom_url: str | None = None
    last_updated: datetime | None = None

    @property
    def preset(self) -> Avatar | None:
        if self.type is AvatarType.PRESET:
            return avatar_by_id(self.avatar_id)
        return None

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> UserAvatar:
        """Build from account metadata; falls back to the default preset."""
        metadata = metadata or {}
        last_updated = None
        raw = metadata.get("avatar_updated_at")
        if isinstance(raw, str):
            try:
                last_updated = ensure_aware(datetime.fromisoformat(raw))
            except ValueError:
                last_updated = None

        if metadata.get("avatar_type") == AvatarType.CUSTOM.value and metadata.get("avatar_url"):
            return cls(type=AvatarType.CUSTOM, custom_url=metadata["avatar_url"], last_updated=last_updated)

        avatar_id = metadata.get("avatar_id") or metadata.get("preset_avatar_id")
        if avatar_by_id(avatar_id) is None:
            avatar_id = default_avatar().id
        return cls(type=AvatarType.PRESET, avatar_id=avatar_id, last_updated=last_updated)

    def to_metadata(self) -> dict[str, Any]:
        return {
            "avatar_type": self.type.value,
            "avatar_id": self.avatar_id,
            "avatar_url": self.custom_url,
            "avatar_updated_at": self.last_updated.isoformat() if self.last_updated else None,
        }
