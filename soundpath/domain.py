from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from enum import IntEnum, StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class Phase(StrEnum):
    INBOX = "inbox"
    SECOND_LISTEN = "second_listen"
    TEAM_REVIEW = "team_review"
    CONTRACTING = "contracting"
    UPCOMING = "upcoming"
    VAULT = "vault"

    @classmethod
    def parse(cls, raw: str) -> "Phase":
        return cls(str(raw).strip().lower().replace("-", "_"))

    def next(self) -> "Phase | None":
        order = list(Phase)
        idx = order.index(self)
        if idx + 1 >= len(order):
            return None
        return order[idx + 1]


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class VoteValue(IntEnum):
    DOWN = -1
    RETRACT = 0
    UP = 1


class Role(StrEnum):
    OWNER = "Owner"
    MANAGER = "Manager"
    SCOUT = "Scout"

    @classmethod
    def parse(cls, raw: str) -> "Role":
        normalized = str(raw).strip().lower()
        for role in cls:
            if role.value.lower() == normalized:
                return role
        raise ValueError(f"unknown role: {raw}")


@dataclass(frozen=True)
class Permissions:
    can_vote: bool = False
    can_set_energy: bool = False
    can_advance_lobby: bool = False
    can_advance_office: bool = False
    can_advance_contract: bool = False
    can_access_archive: bool = False
    can_access_vault: bool = False
    can_edit_release_date: bool = False
    can_view_metrics: bool = False

    # flag -> value used when a membership row does not carry the flag
    MEMBERSHIP_DEFAULTS = {
        "can_vote": True,
        "can_set_energy": True,
        "can_advance_lobby": True,
        "can_advance_office": False,
        "can_advance_contract": False,
        "can_access_archive": True,
        "can_access_vault": True,
        "can_edit_release_date": False,
        "can_view_metrics": False,
    }

    @classmethod
    def all_granted(cls) -> "Permissions":
        return cls(**{f.name: True for f in fields(cls)})

    @classmethod
    def none(cls) -> "Permissions":
        return cls()

    @classmethod
    def from_json(cls, raw: dict[str, Any] | None) -> "Permissions":
        payload = raw if isinstance(raw, dict) else {}
        values = {}
        for name, default in cls.MEMBERSHIP_DEFAULTS.items():
            value = payload.get(name)
            values[name] = default if value is None else bool(value)
        return cls(**values)

    @classmethod
    def defaults_for_role(cls, role: Role) -> "Permissions":
        senior = role in {Role.OWNER, Role.MANAGER}
        owner = role == Role.OWNER
        return cls(
            can_vote=True,
            can_set_energy=True,
            can_advance_lobby=True,
            can_advance_office=senior,
            can_advance_contract=owner,
            can_access_archive=True,
            can_access_vault=True,
            can_edit_release_date=owner,
            can_view_metrics=senior,
        )

    def as_dict(self) -> dict[str, bool]:
        return {f.name: bool(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class Identity:
    staff_id: str
    is_system_admin: bool = False


@dataclass(frozen=True)
class PersonalWorkspace:
    owner_id: str


@dataclass(frozen=True)
class OrganizationWorkspace:
    organization_id: str
    subsidiary_filter: str = "all"


Workspace = PersonalWorkspace | OrganizationWorkspace


@dataclass(frozen=True)
class ScopeFilter:
    """Row predicate shared by the in-memory store, SQL repositories and the local cache."""

    kind: str
    owner_id: str | None = None
    organization_ids: tuple[str, ...] = ()

    GLOBAL = "global"
    PERSONAL = "personal"
    ORGANIZATIONS = "organizations"
    EMPTY = "empty"

    @classmethod
    def global_(cls) -> "ScopeFilter":
        return cls(kind=cls.GLOBAL)

    @classmethod
    def personal(cls, owner_id: str) -> "ScopeFilter":
        return cls(kind=cls.PERSONAL, owner_id=owner_id)

    @classmethod
    def organizations(cls, organization_ids: list[str] | tuple[str, ...]) -> "ScopeFilter":
        ids = tuple(dict.fromkeys(str(x) for x in organization_ids if str(x)))
        if not ids:
            return cls.empty()
        return cls(kind=cls.ORGANIZATIONS, organization_ids=ids)

    @classmethod
    def empty(cls) -> "ScopeFilter":
        return cls(kind=cls.EMPTY)

    @classmethod
    def for_row(cls, row: dict[str, Any]) -> "ScopeFilter":
        """The single workspace a track, artist or vote row belongs to."""
        organization_id = row.get("organization_id")
        if organization_id is not None:
            return cls.organizations([organization_id])
        owner_id = row.get("recipient_user_id")
        if owner_id:
            return cls.personal(str(owner_id))
        return cls.empty()

    @property
    def is_empty(self) -> bool:
        return self.kind == self.EMPTY

    def matches(self, row: dict[str, Any]) -> bool:
        if self.kind == self.GLOBAL:
            return True
        if self.kind == self.PERSONAL:
            return row.get("organization_id") is None and row.get("recipient_user_id") == self.owner_id
        if self.kind == self.ORGANIZATIONS:
            return row.get("organization_id") in self.organization_ids
        return False

    def cache_key(self) -> str:
        if self.kind == self.PERSONAL:
            return f"personal:{self.owner_id}"
        if self.kind == self.ORGANIZATIONS:
            return "org:" + ",".join(self.organization_ids)
        return self.kind


@dataclass
class Track:
    id: str
    title: str
    artist_name: str
    phase: Phase
    created_at: datetime
    genre: str = ""
    bpm: int = 0
    energy: int = 0
    archived: bool = False
    rejection_reason: str | None = None
    vote_total: int = 0
    votes_by_voter: dict[str, int] = field(default_factory=dict)
    moved_to_second_listen_at: datetime | None = None
    target_release_date: date | None = None
    release_date: date | None = None
    organization_id: str | None = None
    recipient_user_id: str | None = None
    contract_signed: bool = False
    watched: bool = False
    total_earnings: float = 0.0
    spotify_plays: int = 0
    link: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any], votes: list[dict[str, Any]] | None = None) -> "Track":
        votes_by_voter = {}
        for vote in votes or []:
            value = int(vote.get("value", 0))
            if value:
                votes_by_voter[str(vote["staff_id"])] = value
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            artist_name=str(row.get("artist_name") or ""),
            phase=Phase.parse(row.get("phase") or Phase.INBOX),
            created_at=parse_datetime(row.get("created_at")) or datetime.min,
            genre=str(row.get("genre") or ""),
            bpm=int(row.get("bpm") or 0),
            energy=int(row.get("energy") or 0),
            archived=bool(row.get("archived", False)),
            rejection_reason=row.get("rejection_reason"),
            vote_total=int(row.get("vote_total") or 0),
            votes_by_voter=votes_by_voter,
            moved_to_second_listen_at=parse_datetime(row.get("moved_to_second_listen_at")),
            target_release_date=parse_date(row.get("target_release_date")),
            release_date=parse_date(row.get("release_date")),
            organization_id=row.get("organization_id"),
            recipient_user_id=row.get("recipient_user_id"),
            contract_signed=bool(row.get("contract_signed", False)),
            watched=bool(row.get("watched", False)),
            total_earnings=float(row.get("total_earnings") or 0.0),
            spotify_plays=int(row.get("spotify_plays") or 0),
            link=str(row.get("link") or ""),
        )

    def with_updates(self, **changes: Any) -> "Track":
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "artist_name": self.artist_name,
            "genre": self.genre,
            "bpm": self.bpm,
            "energy": self.energy,
            "phase": self.phase.value,
            "archived": self.archived,
            "rejection_reason": self.rejection_reason,
            "vote_total": self.vote_total,
            "votes_by_voter": dict(self.votes_by_voter),
            "created_at": self.created_at.isoformat(),
            "moved_to_second_listen_at": _iso_or_none(self.moved_to_second_listen_at),
            "target_release_date": _iso_or_none(self.target_release_date),
            "release_date": _iso_or_none(self.release_date),
            "organization_id": self.organization_id,
            "recipient_user_id": self.recipient_user_id,
            "contract_signed": self.contract_signed,
            "watched": self.watched,
            "total_earnings": self.total_earnings,
            "spotify_plays": self.spotify_plays,
            "link": self.link,
        }


@dataclass(frozen=True)
class Membership:
    staff_id: str
    organization_id: str
    role: Role
    permissions: Permissions
    active: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Membership":
        return cls(
            staff_id=str(row["staff_id"]),
            organization_id=str(row["organization_id"]),
            role=Role.parse(row.get("role") or Role.SCOUT),
            permissions=Permissions.from_json(row.get("permissions")),
            active=bool(row.get("active", True)),
        )


@dataclass
class CacheEntry(Generic[T]):
    data: T
    computed_at: float


def parse_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def parse_date(raw: Any) -> date | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _iso_or_none(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()
