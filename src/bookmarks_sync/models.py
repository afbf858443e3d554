"""Data models for remote bookmark data and sync outcomes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .errors import IngestionError

PLATFORM = "x"


@dataclass
class RemoteAuthor:
    id: str
    username: str  # handle without @
    display_name: str


@dataclass
class EngagementMetrics:
    like_count: int = 0
    repost_count: int = 0
    reply_count: int = 0
    quote_count: int = 0


@dataclass
class RemoteBookmark:
    external_id: str
    author: RemoteAuthor
    text: str
    created_at: datetime
    url: str  # https://x.com/{username}/status/{external_id} unless the payload names one
    metrics: EngagementMetrics = field(default_factory=EngagementMetrics)
    media_urls: list[str] = field(default_factory=list)


@dataclass
class RemoteFolder:
    id: str
    name: str


@dataclass
class BookmarksPage:
    """A single page of bookmark results."""

    items: list[RemoteBookmark] = field(default_factory=list)
    rejected: list[IngestionError] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass
class MediaAsset:
    content_hash: str
    source_url: str
    local_path: str
    public_path: str


class UpsertOutcome(str, Enum):
    created = "created"
    updated = "updated"
    skipped = "skipped"


@dataclass
class UpsertResult:
    outcome: UpsertOutcome
    bookmark_id: int | None = None


@dataclass
class SyncRun:
    """Mutable tally for one orchestrator invocation. Never persisted."""

    added: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    pages: int = 0
    processed_external_ids: set[str] = field(default_factory=set)
    created_ids: list[int] = field(default_factory=list)

    def tally(self, result: UpsertResult) -> None:
        if result.outcome is UpsertOutcome.created:
            self.added += 1
            if result.bookmark_id is not None:
                self.created_ids.append(result.bookmark_id)
        elif result.outcome is UpsertOutcome.updated:
            self.updated += 1
        else:
            self.skipped += 1


@dataclass
class SyncResult:
    added: int
    updated: int
    errors: int
    skipped: int = 0
    pages: int = 0
    rate_limited: bool = False
    retry_after: float | None = None
    auth_expired: bool = False

    @classmethod
    def from_run(cls, run: SyncRun, **flags) -> "SyncResult":
        return cls(
            added=run.added,
            updated=run.updated,
            errors=run.errors,
            skipped=run.skipped,
            pages=run.pages,
            **flags,
        )

    def as_dict(self) -> dict:
        data: dict = {
            "added": self.added,
            "updated": self.updated,
            "errors": self.errors,
            "skipped": self.skipped,
            "pages": self.pages,
        }
        if self.rate_limited:
            data["rate_limited"] = True
            data["retry_after"] = self.retry_after
        if self.auth_expired:
            data["action_required"] = "reconnect"
        return data


@dataclass
class AuthorizationRequest:
    url: str
    session_handle: str
    state: str


@dataclass
class ConnectionStatus:
    connected: bool
    username: str | None = None
    last_sync: datetime | None = None


@dataclass
class FolderView:
    id: str
    name: str
    collection_id: int | None = None

    @property
    def mapped(self) -> bool:
        return self.collection_id is not None
