from __future__ import annotations

from datetime import UTC, datetime

import pytest

from soundpath.domain import ScopeFilter
from soundpath.repositories import (
    InMemoryListenLogsRepository,
    InMemoryTracksRepository,
    InMemoryVotesRepository,
    PostgresListenLogsRepository,
    PostgresTracksRepository,
    PostgresVotesRepository,
)
from soundpath.repositories._sql import scope_clause
from soundpath.repositories.tracks import TRACK_COLUMNS

SINCE = datetime(2026, 3, 10, tzinfo=UTC)


def _track_row(track_id: str, **fields) -> dict:
    row = {col: None for col in TRACK_COLUMNS}
    row.update(
        {
            "id": track_id,
            "title": track_id,
            "artist_name": "Kessler",
            "phase": "inbox",
            "archived": False,
            "created_at": "2026-03-10T12:00:00+00:00",
        }
    )
    row.update(fields)
    return row


class FakeCursor:
    def __init__(self, owner):
        self._owner = owner
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._owner.statements.append((" ".join(query.strip().split()), params))
        self.rowcount = self._owner.rowcount

    def fetchone(self):
        return self._owner.rows[0] if self._owner.rows else None

    def fetchall(self):
        return list(self._owner.rows)


class FakeConnection:
    def __init__(self, owner):
        self._owner = owner

    def cursor(self):
        return FakeCursor(self._owner)


class FakeRunner:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount
        self.scopes: list[ScopeFilter] = []
        self.statements: list[tuple[str, tuple | None]] = []

    def run_in_tx(self, *, scope: ScopeFilter, fn):
        self.scopes.append(scope)
        return fn(FakeConnection(self))


def test_scope_clause_per_kind():
    assert scope_clause(ScopeFilter.global_()) == ("TRUE", [])
    assert scope_clause(ScopeFilter.personal("staff_a")) == (
        "organization_id IS NULL AND recipient_user_id = %s",
        ["staff_a"],
    )
    assert scope_clause(ScopeFilter.organizations(["org_a", "org_b"])) == (
        "organization_id = ANY(%s)",
        [["org_a", "org_b"]],
    )
    assert scope_clause(ScopeFilter.empty()) == ("FALSE", [])


def test_inmemory_tracks_repository_filters_by_scope_and_phase():
    tracks: dict[str, dict] = {}
    repo = InMemoryTracksRepository(tracks)
    repo.insert(track=_track_row("t1", organization_id="org_a", phase="upcoming", release_date="2026-03-01"))
    repo.insert(track=_track_row("t2", organization_id="org_b", phase="upcoming", release_date="2026-03-01"))
    repo.insert(track=_track_row("t3", recipient_user_id="staff_a"))

    org_a = ScopeFilter.organizations(["org_a"])
    assert [r["id"] for r in repo.query(scope=org_a, phase="upcoming")] == ["t1"]
    assert repo.get(scope=org_a, track_id="t2") is None
    assert repo.update(scope=org_a, track_id="t2", updates={"phase": "vault"}) is None
    assert tracks["t2"]["phase"] == "upcoming"
    assert repo.count_created(scope=ScopeFilter.personal("staff_a"), since=SINCE) == 1
    assert repo.query(scope=ScopeFilter.global_(), released_on_or_before=datetime(2026, 3, 2).date()) != []


def test_inmemory_tracks_repository_update_honours_expected_columns():
    tracks: dict[str, dict] = {}
    repo = InMemoryTracksRepository(tracks)
    repo.insert(track=_track_row("t1", organization_id="org_a", phase="upcoming"))
    scope = ScopeFilter.organizations(["org_a"])

    stale = repo.update(
        scope=scope,
        track_id="t1",
        updates={"phase": "upcoming"},
        expected={"phase": "contracting", "archived": False},
    )
    assert stale is None
    assert tracks["t1"]["phase"] == "upcoming"

    moved = repo.update(
        scope=scope,
        track_id="t1",
        updates={"phase": "vault"},
        expected={"phase": "upcoming", "archived": False},
    )
    assert moved is not None and moved["phase"] == "vault"

    with pytest.raises(ValueError, match="unknown track columns"):
        repo.update(scope=scope, track_id="t1", updates={"energy": 1}, expected={"mood": "dark"})


def test_inmemory_tracks_repository_refuses_owner_columns():
    repo = InMemoryTracksRepository({})
    repo.insert(track=_track_row("t1", organization_id="org_a"))

    with pytest.raises(ValueError, match="not updatable"):
        repo.update(scope=ScopeFilter.global_(), track_id="t1", updates={"organization_id": "org_b"})


def test_inmemory_votes_repository_single_row_per_voter():
    tracks = {"t1": _track_row("t1", organization_id="org_a", vote_total=0)}
    repo = InMemoryVotesRepository({}, tracks)
    scope = ScopeFilter.organizations(["org_a"])
    vote = {"track_id": "t1", "staff_id": "s1", "value": 1, "organization_id": "org_a", "created_at": "x"}

    assert repo.insert(scope=scope, vote=vote) is not None
    assert repo.insert(scope=scope, vote={**vote, "value": -1}) is None
    assert repo.total(scope=scope, track_id="t1") == 1
    assert tracks["t1"]["vote_total"] == 1
    assert repo.delete(scope=scope, track_id="t1", staff_id="s1", organization_id="org_b") == 0
    assert repo.delete(scope=scope, track_id="t1", staff_id="s1", organization_id="org_a") == 1
    assert repo.total(scope=scope, track_id="t1") == 0
    assert tracks["t1"]["vote_total"] == 0


def test_inmemory_listen_logs_are_counted_per_workspace():
    repo = InMemoryListenLogsRepository([])
    for org in ("org_a", "org_a", None):
        repo.append(event={"staff_id": "s1", "organization_id": org, "listened_at": "2026-03-10T13:00:00+00:00"})
    repo.append(event={"staff_id": "s2", "organization_id": "org_a", "listened_at": "2026-03-01T13:00:00+00:00"})

    assert repo.count(staff_id="s1", organization_id="org_a", since=SINCE) == 2
    assert repo.count(staff_id="s1", organization_id=None, since=SINCE) == 1
    assert repo.counts_by_staff(organization_id="org_a", since=SINCE) == {"s1": 2}


def test_postgres_tracks_repository_rejects_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresTracksRepository(tx_runner=FakeRunner(), table_name="tracks;drop table tracks")


def test_postgres_tracks_repository_insert_runs_in_owner_scope():
    runner = FakeRunner()
    repo = PostgresTracksRepository(tx_runner=runner)

    repo.insert(track=_track_row("t1", recipient_user_id="staff_a"))

    assert runner.scopes == [ScopeFilter.personal("staff_a")]
    sql, params = runner.statements[0]
    assert sql.startswith("INSERT INTO tracks (id, title, artist_name")
    assert len(params) == len(TRACK_COLUMNS)


def test_postgres_tracks_repository_query_carries_scope_predicate():
    stored = tuple(_track_row("t1", organization_id="org_a")[col] for col in TRACK_COLUMNS)
    runner = FakeRunner(rows=[stored])
    repo = PostgresTracksRepository(tx_runner=runner)
    scope = ScopeFilter.organizations(["org_a", "org_b"])

    rows = repo.query(scope=scope, phase="upcoming", archived=False, released_on_or_before=SINCE.date())

    assert rows[0]["id"] == "t1"
    sql, params = runner.statements[0]
    assert "WHERE organization_id = ANY(%s) AND phase = %s AND archived = %s" in sql
    assert "release_date <= %s" in sql
    assert sql.endswith("ORDER BY created_at DESC")
    assert params == (["org_a", "org_b"], "upcoming", False, SINCE.date())


def test_postgres_tracks_repository_update_returns_none_when_invisible():
    runner = FakeRunner(rows=[])
    repo = PostgresTracksRepository(tx_runner=runner)

    result = repo.update(scope=ScopeFilter.personal("staff_a"), track_id="t1", updates={"energy": 3})

    assert result is None
    sql, params = runner.statements[0]
    assert sql.startswith("UPDATE tracks SET energy = %s WHERE organization_id IS NULL AND recipient_user_id = %s")
    assert params == (3, "staff_a", "t1")


def test_postgres_tracks_repository_update_appends_expected_guards():
    runner = FakeRunner(rows=[])
    repo = PostgresTracksRepository(tx_runner=runner)

    result = repo.update(
        scope=ScopeFilter.organizations(["org_a"]),
        track_id="t1",
        updates={"phase": "upcoming"},
        expected={"phase": "contracting", "archived": False},
    )

    assert result is None
    sql, params = runner.statements[0]
    assert "WHERE organization_id = ANY(%s) AND id = %s AND phase = %s AND archived = %s RETURNING" in sql
    assert params == ("upcoming", ["org_a"], "t1", "contracting", False)


def test_postgres_votes_repository_conflict_and_delete():
    runner = FakeRunner(rows=[], rowcount=1)
    repo = PostgresVotesRepository(tx_runner=runner)
    scope = ScopeFilter.organizations(["org_a"])
    vote = {"track_id": "t1", "staff_id": "s1", "value": 1, "organization_id": "org_a", "created_at": "x"}

    assert repo.insert(scope=scope, vote=vote) is None
    assert len(runner.scopes) == 1
    assert runner.statements[0] == ("SELECT id FROM tracks WHERE id = %s FOR UPDATE", ("t1",))
    assert "ON CONFLICT (track_id, staff_id) DO NOTHING" in runner.statements[1][0]
    assert len(runner.statements) == 2

    assert repo.delete(scope=scope, track_id="t1", staff_id="s1", organization_id=None) == 1
    assert len(runner.scopes) == 2
    assert runner.statements[2][0].endswith("FOR UPDATE")
    assert "organization_id IS NOT DISTINCT FROM %s" in runner.statements[3][0]
    assert runner.statements[3][1] == ("t1", "s1", None)
    assert runner.statements[4][0].startswith("UPDATE tracks SET vote_total = (SELECT COALESCE(SUM(value), 0) FROM votes")
    assert runner.statements[4][1] == ("t1", "t1")


def test_postgres_votes_repository_recounts_inside_the_insert_transaction():
    runner = FakeRunner(rows=[("t1",)])
    repo = PostgresVotesRepository(tx_runner=runner)
    scope = ScopeFilter.organizations(["org_a"])
    vote = {"track_id": "t1", "staff_id": "s1", "value": 1, "organization_id": "org_a", "created_at": "x"}

    assert repo.insert(scope=scope, vote=vote) == vote

    assert runner.scopes == [scope]
    statements = [sql for sql, _ in runner.statements]
    assert statements[0].endswith("FOR UPDATE")
    assert statements[1].startswith("INSERT INTO votes")
    assert statements[2].startswith("UPDATE tracks SET vote_total")


def test_postgres_votes_repository_total_and_listing():
    runner = FakeRunner(rows=[(3,)])
    repo = PostgresVotesRepository(tx_runner=runner)
    scope = ScopeFilter.organizations(["org_a"])

    assert repo.total(scope=scope, track_id="t1") == 3
    assert repo.list_for_tracks(scope=scope, track_ids=[]) == []
    assert len(runner.statements) == 1


def test_postgres_listen_logs_personal_count_uses_null_safe_org_match():
    runner = FakeRunner(rows=[(7,)])
    repo = PostgresListenLogsRepository(tx_runner=runner)

    assert repo.count(staff_id="s1", organization_id=None, since=SINCE) == 7
    assert runner.scopes == [ScopeFilter.personal("s1")]
    sql, params = runner.statements[0]
    assert "organization_id IS NOT DISTINCT FROM %s" in sql
    assert params == ("s1", None, SINCE)
