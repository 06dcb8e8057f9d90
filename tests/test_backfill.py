from datetime import date, timedelta

import ledger
import scoring
from backfill import run_backfill, users_in_active_challenges
from errors import ExternalProviderError
from models import HistorySource
from providers import DailyTelemetry

TODAY = date(2024, 1, 10)


def test_writes_every_day_including_zero_steps(db, make_user, make_challenge, make_participant, fake_provider):
    user = make_user(data_source="fitbit", token="abc")
    challenge = make_challenge(start=date(2024, 1, 1))
    participant = make_participant(challenge, user, step_goal_points=7, total_points=7)
    provider = fake_provider(history=[
        DailyTelemetry(day=date(2024, 1, 8), steps=12000),
        DailyTelemetry(day=date(2024, 1, 9), steps=0),
        DailyTelemetry(day=date(2024, 1, 10), steps=5000),
    ])

    report = run_backfill(db, today=TODAY, days=30, provider_factory=lambda u: provider)

    assert report.users_synced == 1
    assert report.days_written == 3
    assert report.participants_reconciled == 1
    assert provider.calls == [(TODAY - timedelta(days=29), TODAY, None)]

    zero_day = ledger.get_entry(db, user.id, date(2024, 1, 9))
    assert zero_day is not None and zero_day.steps == 0
    assert ledger.get_entry(db, user.id, date(2024, 1, 7)) is None

    db.refresh(participant)
    assert participant.step_goal_points == 1
    assert participant.last_step_count == 5000
    assert participant.total_points == participant.step_goal_points + participant.weight_loss_points


def test_provider_tag_is_used_as_source(db, make_user, make_challenge, make_participant, fake_provider):
    user = make_user(data_source="google-fit", token="abc")
    make_participant(make_challenge(start=date(2024, 1, 1)), user)
    provider = fake_provider(history=[DailyTelemetry(day=TODAY, steps=100)],
                             source_tag=HistorySource.aggregate_sync)

    run_backfill(db, today=TODAY, provider_factory=lambda u: provider)
    assert ledger.get_entry(db, user.id, TODAY).source == "aggregate-sync"


def test_failed_user_does_not_stop_the_others(db, make_user, make_challenge, make_participant, fake_provider):
    challenge = make_challenge(start=date(2024, 1, 1))
    broken = make_user("Rota", data_source="fitbit", token="expired")
    healthy = make_user("Sana", data_source="fitbit", token="ok")
    broken_state = make_participant(challenge, broken, step_goal_points=5, total_points=5)
    healthy_state = make_participant(challenge, healthy)

    providers = {
        broken.id: fake_provider(error=ExternalProviderError("fitbit", "token caducado", http_status=401)),
        healthy.id: fake_provider(history=[DailyTelemetry(day=TODAY, steps=11000)]),
    }

    report = run_backfill(db, today=TODAY, provider_factory=lambda u: providers[u.id])

    assert report.users_failed == 1
    assert report.users_synced == 1
    assert report.failures == {broken.id: "token caducado"}

    # The failed user is left exactly as it was
    db.refresh(broken_state)
    assert broken_state.step_goal_points == 5
    assert ledger.query(db, broken.id) == []

    db.refresh(healthy_state)
    assert healthy_state.step_goal_points == 1


def test_manual_users_are_reconciled_without_sync(db, make_user, make_challenge, make_participant):
    user = make_user(data_source="manual")
    participant = make_participant(make_challenge(start=date(2024, 1, 1)), user,
                                   step_goal_points=4, total_points=4)
    ledger.upsert(db, user.id, date(2024, 1, 3), steps=10000, source=HistorySource.manual)

    report = run_backfill(db, today=TODAY)

    assert report.users_skipped == 1
    assert report.participants_reconciled == 1
    db.refresh(participant)
    assert participant.step_goal_points == 1


def test_inactive_challenges_are_ignored(db, make_user, make_challenge, make_participant, fake_provider):
    user = make_user(data_source="fitbit", token="abc")
    make_participant(make_challenge(start=date(2023, 1, 1), end=date(2023, 2, 1)), user)
    calls = []

    report = run_backfill(db, today=TODAY, provider_factory=lambda u: calls.append(u) or fake_provider())

    assert calls == []
    assert users_in_active_challenges(db, TODAY) == []
    assert report.users_synced == 0


def test_backfill_keeps_manual_weight_and_starting_weight(db, make_user, make_challenge, make_participant,
                                                          fake_provider):
    user = make_user(data_source="fitbit", token="abc")
    challenge = make_challenge(start=date(2024, 1, 1), weigh_in_day="monday")
    participant = make_participant(challenge, user)
    scoring.log_manual_weight(db, user.id, challenge.id, 200.0, date(2024, 1, 1), today=date(2024, 1, 1))

    provider = fake_provider(history=[
        DailyTelemetry(day=date(2024, 1, 1), steps=3000, weight=205.0),
        DailyTelemetry(day=date(2024, 1, 9), steps=3000, weight=180.0),
    ])
    run_backfill(db, today=TODAY, provider_factory=lambda u: provider)

    assert ledger.get_entry(db, user.id, date(2024, 1, 1)).weight == 200.0
    db.refresh(participant)
    assert participant.starting_weight == 200.0
    assert participant.last_weight == 180.0
    assert participant.weight_loss_points == 10
    assert participant.total_points == participant.step_goal_points + 10


class UnparseableResponse:
    status_code = 200
    text = "<html>maintenance</html>"

    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_unparseable_provider_payload_only_fails_that_user(db, make_user, make_challenge, make_participant,
                                                          monkeypatch):
    import providers

    challenge = make_challenge(start=date(2024, 1, 1))
    synced = make_user("Bad", data_source="fitbit", token="abc")
    manual = make_user("Manu", data_source="manual")
    synced_state = make_participant(challenge, synced, step_goal_points=2, total_points=2)
    manual_state = make_participant(challenge, manual, step_goal_points=9, total_points=9)
    ledger.upsert(db, manual.id, date(2024, 1, 5), steps=10000, source=HistorySource.manual)

    monkeypatch.setattr(providers.requests, "request", lambda method, url, **kwargs: UnparseableResponse())

    report = run_backfill(db, today=TODAY)

    assert report.users_failed == 1
    assert report.users_skipped == 1
    assert report.failures[synced.id].startswith("[fitbit] Respuesta malformada")

    db.refresh(synced_state)
    assert synced_state.step_goal_points == 2
    db.refresh(manual_state)
    assert manual_state.step_goal_points == 1
