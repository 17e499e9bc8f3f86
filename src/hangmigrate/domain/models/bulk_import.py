from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, ClassVar

CURRENT_VERSION = 1
MAX_ATTACHMENTS_PER_POST = 5


class RecordKind(str, Enum):
    """Bulk import record kinds, declared in the order the importer requires."""

    VERSION = "version"
    SCHEME = "scheme"
    TEAM = "team"
    CHANNEL = "channel"
    USER = "user"
    POST = "post"
    DIRECT_CHANNEL = "direct_channel"
    DIRECT_POST = "direct_post"

    @property
    def ordinal(self) -> int:
        return _KIND_ORDINALS[self]


_KIND_ORDINALS = {kind: index for index, kind in enumerate(RecordKind)}

TEAM_TYPE_OPEN = "O"
TEAM_TYPE_INVITE_ONLY = "I"

CHANNEL_TYPE_PUBLIC = "O"
CHANNEL_TYPE_PRIVATE = "P"

USER_ROLE_USER = "system_user"
USER_ROLE_ADMIN = "system_admin system_user"
TEAM_ROLE_USER = "team_user"
TEAM_ROLE_ADMIN = "team_admin team_user"
CHANNEL_ROLE_USER = "channel_user"
CHANNEL_ROLE_ADMIN = "channel_admin channel_user"


def _optional(default: Any = None, *, json_name: str | None = None) -> Any:
    """Field left out of the JSON payload when it is None or empty."""
    metadata: dict[str, Any] = {"omit_empty": True}
    if json_name:
        metadata["json_name"] = json_name
    if isinstance(default, list):
        return field(default_factory=list, metadata=metadata)
    return field(default=default, metadata=metadata)


def to_payload(obj: Any) -> Any:
    """Convert a record dataclass into JSON-ready data, honouring omit-empty fields."""
    if is_dataclass(obj) and not isinstance(obj, type):
        payload: dict[str, Any] = {}
        for f in fields(obj):
            value = getattr(obj, f.name)
            if f.metadata.get("omit_empty") and value in (None, "", [], {}):
                continue
            payload[f.metadata.get("json_name", f.name)] = to_payload(value)
        return payload
    if isinstance(obj, list):
        return [to_payload(item) for item in obj]
    if isinstance(obj, Enum):
        return obj.value
    return obj


@dataclass(slots=True)
class Version:
    kind: ClassVar[RecordKind] = RecordKind.VERSION

    version: int = CURRENT_VERSION

    def to_payload(self) -> Any:
        return self.version


@dataclass(slots=True)
class Team:
    kind: ClassVar[RecordKind] = RecordKind.TEAM

    name: str
    display_name: str
    type: str = TEAM_TYPE_INVITE_ONLY
    description: str = _optional("")
    allow_open_invite: bool | None = _optional()
    scheme: str = _optional("")

    def to_payload(self) -> dict[str, Any]:
        return to_payload(self)


@dataclass(slots=True)
class Channel:
    kind: ClassVar[RecordKind] = RecordKind.CHANNEL

    team: str
    name: str
    display_name: str
    type: str = CHANNEL_TYPE_PRIVATE
    header: str = _optional("")
    purpose: str = _optional("")
    scheme: str = _optional("")

    def to_payload(self) -> dict[str, Any]:
        return to_payload(self)


@dataclass(slots=True)
class UserChannelMembership:
    name: str
    roles: str = _optional("")
    favorite: bool | None = _optional()


@dataclass(slots=True)
class UserTeamMembership:
    name: str
    roles: str = _optional("")
    channels: list[UserChannelMembership] = _optional([])


@dataclass(slots=True)
class User:
    kind: ClassVar[RecordKind] = RecordKind.USER

    username: str
    email: str
    role: str = _optional("")
    teams: list[UserTeamMembership] = _optional([])

    def to_payload(self) -> dict[str, Any]:
        return to_payload(self)


@dataclass(slots=True)
class Reaction:
    user: str
    emoji_name: str
    create_at: int


@dataclass(slots=True)
class Attachment:
    path: str


@dataclass(slots=True)
class Reply:
    user: str
    message: str
    create_at: int
    flagged_by: list[str] = _optional([])
    reactions: list[Reaction] = _optional([])
    attachments: list[Attachment] = _optional([])


@dataclass(slots=True)
class Post:
    kind: ClassVar[RecordKind] = RecordKind.POST

    team: str
    channel: str
    user: str
    message: str
    # Milliseconds since the Unix epoch.
    create_at: int
    flagged_by: list[str] = _optional([])
    replies: list[Reply] = _optional([])
    # The importer reads post reactions from the singular "reaction" key.
    reactions: list[Reaction] = _optional([], json_name="reaction")
    attachments: list[Attachment] = _optional([])

    def to_payload(self) -> dict[str, Any]:
        return to_payload(self)
