from __future__ import annotations

import json
import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from hangmigrate.core.errors import ManifestError
from hangmigrate.core.time import millis_from_datetime
from hangmigrate.domain.models.bulk_import import (
    CHANNEL_ROLE_ADMIN,
    CHANNEL_ROLE_USER,
    CHANNEL_TYPE_PRIVATE,
    MAX_ATTACHMENTS_PER_POST,
    TEAM_ROLE_ADMIN,
    TEAM_ROLE_USER,
    TEAM_TYPE_INVITE_ONLY,
    USER_ROLE_ADMIN,
    USER_ROLE_USER,
    Attachment,
    Channel,
    Post,
    Team,
    User,
    UserChannelMembership,
    UserTeamMembership,
    Version,
)
from hangmigrate.infrastructure.attachments.store import AttachmentStore
from hangmigrate.infrastructure.export.writer import BulkImportWriter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanUser:
    username: str
    email: str
    admin: bool = False


@dataclass(slots=True)
class PlanMessage:
    user: str
    text: str
    create_at: int
    attachment_keys: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExportPlan:
    team_name: str
    channel_name: str
    team_display_name: str = ""
    channel_display_name: str = ""
    users: list[PlanUser] = field(default_factory=list)
    messages: list[PlanMessage] = field(default_factory=list)


@dataclass(slots=True)
class ExportSummary:
    users: int = 0
    posts: int = 0
    skipped_messages: int = 0
    missing_attachments: int = 0


class BulkImportService:
    """Turn an export plan into bulk import records, in the order the importer needs them."""

    def __init__(self, attachment_store: AttachmentStore, remote_attachment_dir: str | None = None) -> None:
        self.attachment_store = attachment_store
        self.remote_attachment_dir = remote_attachment_dir

    def build(self, plan: ExportPlan, writer: BulkImportWriter) -> ExportSummary:
        summary = ExportSummary()
        writer.add(Version())
        writer.add(
            Team(
                name=plan.team_name,
                display_name=plan.team_display_name or plan.team_name,
                type=TEAM_TYPE_INVITE_ONLY,
            )
        )
        writer.add(
            Channel(
                team=plan.team_name,
                name=plan.channel_name,
                display_name=plan.channel_display_name or plan.channel_name,
                type=CHANNEL_TYPE_PRIVATE,
            )
        )

        known_users: set[str] = set()
        for user in plan.users:
            if user.username in known_users:
                continue
            known_users.add(user.username)
            writer.add(self._user_record(plan, user))
            summary.users += 1

        # Posts from the latest text post onwards stay buffered so later
        # attachment-only messages can still be folded into that text post.
        buffered: list[Post] = []
        last_text: Post | None = None
        for message in sorted(plan.messages, key=lambda m: m.create_at):
            if message.user not in known_users:
                logger.error("Skipping post by unmapped sender %s at %d", message.user, message.create_at)
                summary.skipped_messages += 1
                continue

            attachments = self._resolve_attachments(message, summary)

            if last_text is not None and not message.text and last_text.user == message.user:
                while attachments and len(last_text.attachments) < MAX_ATTACHMENTS_PER_POST:
                    last_text.attachments.append(attachments.pop(0))

            if not message.text and not attachments:
                continue

            post = Post(
                team=plan.team_name,
                channel=plan.channel_name,
                user=message.user,
                message=message.text,
                create_at=message.create_at,
                attachments=attachments,
            )
            if post.message:
                summary.posts += self._flush(buffered, writer)
                last_text = post
            buffered.append(post)

        summary.posts += self._flush(buffered, writer)
        return summary

    @staticmethod
    def _flush(buffered: list[Post], writer: BulkImportWriter) -> int:
        for post in buffered:
            writer.add(post)
        count = len(buffered)
        buffered.clear()
        return count

    @staticmethod
    def _user_record(plan: ExportPlan, user: PlanUser) -> User:
        if user.admin:
            user_role, team_role, channel_role = USER_ROLE_ADMIN, TEAM_ROLE_ADMIN, CHANNEL_ROLE_ADMIN
        else:
            user_role, team_role, channel_role = USER_ROLE_USER, TEAM_ROLE_USER, CHANNEL_ROLE_USER
        return User(
            username=user.username,
            email=user.email,
            role=user_role,
            teams=[
                UserTeamMembership(
                    name=plan.team_name,
                    roles=team_role,
                    channels=[
                        UserChannelMembership(name=plan.channel_name, roles=channel_role, favorite=True),
                    ],
                )
            ],
        )

    def _resolve_attachments(self, message: PlanMessage, summary: ExportSummary) -> list[Attachment]:
        attachments: list[Attachment] = []
        for key in message.attachment_keys:
            path = self.attachment_store.get_path(key)
            if path is None:
                logger.error("Skipping unmapped attachment %r", key)
                summary.missing_attachments += 1
                continue
            if self.remote_attachment_dir:
                path = posixpath.join(self.remote_attachment_dir, Path(path).name)
            attachments.append(Attachment(path=path))
        return attachments


def load_plan(path: Path) -> ExportPlan:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestError(f"Could not read export plan {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Export plan {path} is not valid JSON: {exc}") from exc
    return parse_plan(raw)


def parse_plan(raw: Any) -> ExportPlan:
    if not isinstance(raw, dict):
        raise ManifestError("Export plan must be a JSON object.")
    team = _require_object(raw, "team")
    channel = _require_object(raw, "channel")

    users = []
    for index, item in enumerate(raw.get("users") or []):
        if not isinstance(item, dict) or not item.get("username") or not item.get("email"):
            raise ManifestError(f"Plan user #{index} needs 'username' and 'email'")
        users.append(PlanUser(username=str(item["username"]), email=str(item["email"]), admin=bool(item.get("admin"))))

    messages = []
    for index, item in enumerate(raw.get("messages") or []):
        if not isinstance(item, dict) or not item.get("user"):
            raise ManifestError(f"Plan message #{index} needs a 'user'")
        keys = item.get("attachments") or []
        if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
            raise ManifestError(f"Plan message #{index} 'attachments' must be a list of keys")
        messages.append(
            PlanMessage(
                user=str(item["user"]),
                text=str(item.get("text") or ""),
                create_at=_parse_timestamp(item.get("timestamp"), index),
                attachment_keys=list(keys),
            )
        )

    return ExportPlan(
        team_name=_require_name(team, "team"),
        team_display_name=str(team.get("display_name") or ""),
        channel_name=_require_name(channel, "channel"),
        channel_display_name=str(channel.get("display_name") or ""),
        users=users,
        messages=messages,
    )


def _require_object(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    if not isinstance(value, dict):
        raise ManifestError(f"Export plan needs a '{name}' object.")
    return value


def _require_name(obj: dict[str, Any], label: str) -> str:
    name = obj.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"Export plan {label} needs a non-empty 'name'.")
    return name.strip()


def _parse_timestamp(value: Any, index: int) -> int:
    """Accept epoch milliseconds or an ISO 8601 string."""
    if isinstance(value, bool):
        raise ManifestError(f"Plan message #{index} has an invalid timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return millis_from_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError as exc:
            raise ManifestError(f"Plan message #{index} has an invalid timestamp: {value!r}") from exc
    raise ManifestError(f"Plan message #{index} needs a 'timestamp'")
