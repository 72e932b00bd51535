from datetime import date

from soundpath.domain import OrganizationWorkspace, Phase, ScopeFilter
from soundpath.pipeline import ReleaseSweeper
from soundpath.store import store
from soundpath.usage import UsageLimiter

TODAY = date(2026, 3, 10)


def _sweeper():
    return ReleaseSweeper(store, UsageLimiter(store), today=lambda: TODAY)


def _phase(track_id):
    return store.tracks[track_id]["phase"]


def test_due_releases_move_and_the_rest_stay(label, make_track):
    due = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-10")
    overdue = make_track(organization_id=label.org, phase="upcoming", release_date="2026-02-01")
    future = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-11")
    unscheduled = make_track(organization_id=label.org, phase="upcoming")
    archived = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-01", archived=True)

    report = _sweeper().sweep_workspace(ScopeFilter.organizations([label.org]))

    assert sorted(report.moved[f"org:{label.org}"]) == sorted([due["id"], overdue["id"]])
    assert _phase(due["id"]) == "vault"
    assert _phase(overdue["id"]) == "vault"
    assert _phase(future["id"]) == "upcoming"
    assert _phase(unscheduled["id"]) == "upcoming"
    assert _phase(archived["id"]) == "upcoming"


def test_second_sweep_moves_nothing(label, make_track):
    make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-09")
    sweeper = _sweeper()

    first = sweeper.sweep_for_staff(label.owner)
    second = sweeper.sweep_for_staff(label.owner)

    assert first.moved_count == 1
    assert second.moved_count == 0


def test_staff_sweep_covers_personal_and_administered_organizations_only(label, make_track):
    own = make_track(recipient_user_id=label.manager, phase="upcoming", release_date="2026-03-01")
    someone_elses = make_track(recipient_user_id=label.scout, phase="upcoming", release_date="2026-03-01")
    label_track = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-01")
    other_label = make_track(organization_id=label.other, phase="upcoming", release_date="2026-03-01")

    report = _sweeper().sweep_for_staff(label.manager)

    assert report.moved_count == 2
    assert _phase(own["id"]) == "vault"
    assert _phase(label_track["id"]) == "vault"
    assert _phase(someone_elses["id"]) == "upcoming"
    assert _phase(other_label["id"]) == "upcoming"


def test_scout_sweep_leaves_organization_tracks_alone(label, make_track):
    label_track = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-01")

    report = _sweeper().sweep_for_staff(label.scout)

    assert report.moved_count == 0
    assert _phase(label_track["id"]) == "upcoming"


def test_system_sweep_groups_by_workspace(label, make_track):
    a = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-01")
    b = make_track(organization_id=label.other, phase="upcoming", release_date="2026-03-02")
    c = make_track(recipient_user_id=label.scout, phase="upcoming", release_date="2026-03-03")

    report = _sweeper().sweep_all_workspaces()

    assert report.moved == {
        f"org:{label.org}": [a["id"]],
        f"org:{label.other}": [b["id"]],
        f"personal:{label.scout}": [c["id"]],
    }
    assert {_phase(x["id"]) for x in (a, b, c)} == {"vault"}


def test_vault_quota_skips_instead_of_failing(label, make_track):
    store.update_organization(label.org, plan_limits={"max_vault_tracks": 1})
    first = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-01")
    second = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-02")
    personal = make_track(recipient_user_id=label.owner, phase="upcoming", release_date="2026-03-02")

    report = _sweeper().sweep_for_staff(label.owner)

    assert report.moved_count == 2
    assert len(report.skipped[f"org:{label.org}"]) == 1
    assert sorted([_phase(first["id"]), _phase(second["id"])]) == ["upcoming", "vault"]
    assert _phase(personal["id"]) == "vault"


def test_explicit_cutoff_overrides_today(label, make_track):
    later = make_track(organization_id=label.org, phase="upcoming", release_date="2026-04-01")

    report = _sweeper().sweep_all_workspaces(today=date(2026, 4, 1))

    assert report.moved_count == 1
    assert _phase(later["id"]) == "vault"


def test_session_sweep_refreshes_the_local_view(label, make_track, open_session):
    track = make_track(organization_id=label.org, phase="upcoming", release_date="2026-03-10")
    owner = open_session(label.owner, workspace=OrganizationWorkspace(label.org))

    report = owner.sweep_releases()

    assert report.moved_count == 1
    assert owner.coordinator.find(track["id"]).phase == Phase.VAULT
